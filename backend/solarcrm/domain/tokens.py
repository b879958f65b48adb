from __future__ import annotations

import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Callable

SIGNING_TOKEN_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
SIGNING_TOKEN_LENGTH = 32
SIGNING_TOKEN_TTL = timedelta(days=30)


def issue_signing_token(*, choice: Callable[[str], str] = secrets.choice) -> str:
    """
    Return an unguessable 32-character signing token.

    Tokens are bearer credentials: whoever holds the link can view and sign the
    agreement, so the default source is the OS CSPRNG. Tests inject `choice`.
    """
    return "".join(choice(SIGNING_TOKEN_ALPHABET) for _ in range(SIGNING_TOKEN_LENGTH))


def compute_expiry(created_at: datetime) -> datetime:
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at + SIGNING_TOKEN_TTL


def is_well_formed_token(token: str | None) -> bool:
    t = str(token or "")
    return len(t) == SIGNING_TOKEN_LENGTH and all(ch in SIGNING_TOKEN_ALPHABET for ch in t)
