from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

_DB_FIELDS = ("pk", "sk", "gsi1pk", "gsi1sk", "entityType")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:20]}"


def required_id(value: Any, name: str) -> str:
    v = str(value or "").strip()
    if not v:
        raise ValueError(f"{name} is required")
    return v


def plain(value: Any) -> Any:
    """boto3 returns every number as Decimal; orjson cannot render those."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [plain(v) for v in value]
    return value


def strip_db_fields(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    out = {k: v for k, v in item.items() if k not in _DB_FIELDS}
    return plain(out)


def ddb_number(value: Any) -> Decimal | None:
    # Floats are rejected by the boto3 serializer; go through str for exactness.
    if value is None or value == "":
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))
