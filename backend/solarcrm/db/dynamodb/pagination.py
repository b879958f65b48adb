from __future__ import annotations

import base64
import hashlib
import json
import os
from decimal import Decimal
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ...settings import settings
from .errors import DdbValidation

_TOKEN_VERSION = "c1"


def _key() -> bytes:
    # Dev fallback is fine: production refuses to boot without a secret.
    raw = settings.pagination_token_secret or "solarcrm-dev-cursor-key"
    return hashlib.sha256(str(raw).encode("utf-8")).digest()


def _json_default(v: Any) -> Any:
    # LastEvaluatedKey values come back from boto3 as Decimal for numbers.
    if isinstance(v, Decimal):
        return int(v) if v == v.to_integral_value() else float(v)
    raise TypeError(f"Unserializable cursor value: {type(v).__name__}")


def encode_next_token(last_evaluated_key: dict[str, Any] | None) -> str | None:
    if not last_evaluated_key:
        return None

    raw = json.dumps(last_evaluated_key, separators=(",", ":"), default=_json_default).encode("utf-8")
    nonce = os.urandom(12)
    sealed = AESGCM(_key()).encrypt(nonce, raw, _TOKEN_VERSION.encode("ascii"))
    body = base64.urlsafe_b64encode(nonce + sealed).decode("ascii").rstrip("=")
    return f"{_TOKEN_VERSION}.{body}"


def decode_next_token(next_token: str | None) -> dict[str, Any] | None:
    if not next_token:
        return None

    version, _, body = str(next_token).partition(".")
    if version != _TOKEN_VERSION or not body:
        raise DdbValidation(message="Invalid nextToken")

    try:
        blob = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
        plain = AESGCM(_key()).decrypt(blob[:12], blob[12:], _TOKEN_VERSION.encode("ascii"))
        lek = json.loads(plain.decode("utf-8"))
    except (ValueError, InvalidTag) as e:
        raise DdbValidation(message="Invalid nextToken") from e

    if not isinstance(lek, dict):
        raise DdbValidation(message="Invalid nextToken")
    return lek
