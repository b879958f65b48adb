from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal

from ..errors import AlreadySignedError, ExpiredError, ValidationError
from .clock import parse_iso, to_epoch_ms

AgreementStatus = Literal["pending", "sent", "viewed", "signed"]

PENDING = "pending"
SENT = "sent"
VIEWED = "viewed"
SIGNED = "signed"

# Statuses from which a view is recorded; later statuses make it a no-op.
VIEWABLE_FROM = frozenset({PENDING, SENT})
# A reminder only goes out while the customer still owes a signature.
AWAITING_SIGNATURE = frozenset({SENT, VIEWED})

_DATA_URL_RE = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,\S+$", re.DOTALL)
MAX_SIGNATURE_CHARS = 3 * 1024 * 1024


def expires_at_ms(agreement: dict[str, Any]) -> int | None:
    raw = agreement.get("expiresAtMs")
    if raw is not None:
        return int(raw)
    dt = parse_iso(agreement.get("expiresAt"))
    return to_epoch_ms(dt) if dt else None


def is_expired(agreement: dict[str, Any], now: datetime) -> bool:
    # Computed on read; "expired" is never persisted.
    exp = expires_at_ms(agreement)
    if exp is None:
        return False
    return exp < to_epoch_ms(now)


def can_mark_sent(status: str | None) -> bool:
    return str(status or "") == PENDING


def can_mark_viewed(status: str | None) -> bool:
    return str(status or "") in VIEWABLE_FROM


def ensure_signable(agreement: dict[str, Any], now: datetime) -> None:
    """Raise the terminal error that blocks signing, if any. Signed wins over expired."""
    if str(agreement.get("status") or "") == SIGNED:
        raise AlreadySignedError()
    if is_expired(agreement, now):
        raise ExpiredError()


def validate_signature_payload(data_url: str | None) -> str:
    """
    Accept any base64 image data URL. Whether the image can be stamped onto the
    PDF is decided later by the placement engine; a signature in an exotic
    encoding is still a valid signature.
    """
    s = str(data_url or "").strip()
    if not _DATA_URL_RE.match(s):
        raise ValidationError(message="Signature must be an image data URL", code="invalid_signature")
    if len(s) > MAX_SIGNATURE_CHARS:
        raise ValidationError(message="Signature image is too large", code="invalid_signature")
    return s
