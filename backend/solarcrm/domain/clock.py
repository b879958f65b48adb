from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    # Integer arithmetic; float timestamps can be off by one millisecond.
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def format_local(dt: datetime, tz_name: str, *, with_time: bool = True) -> str:
    """`October 19, 2026 3:04 PM` in the business timezone."""
    local = dt.astimezone(ZoneInfo(tz_name))
    date_part = f"{local.strftime('%B')} {local.day}, {local.year}"
    if not with_time:
        return date_part
    hour = local.hour % 12 or 12
    return f"{date_part} {hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"
