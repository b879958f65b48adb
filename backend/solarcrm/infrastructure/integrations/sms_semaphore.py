from __future__ import annotations

import re
from typing import Any

import httpx

from ...observability.logging import get_logger
from ...settings import settings

log = get_logger("sms_semaphore")

_PH_MOBILE_RE = re.compile(r"^639\d{9}$")


def normalize_ph_number(phone: str | None) -> str | None:
    """
    Normalize a Philippine mobile number to `639XXXXXXXXX`.

    Accepts 09XXXXXXXXX, 9XXXXXXXXX, +639XXXXXXXXX and common punctuation.
    Returns None when the result is not a valid PH mobile number.
    """
    digits = re.sub(r"\D", "", str(phone or ""))
    if digits.startswith("0"):
        digits = "63" + digits[1:]
    elif len(digits) == 10 and digits.startswith("9"):
        digits = "63" + digits
    return digits if _PH_MOBILE_RE.fullmatch(digits) else None


def send_sms(*, to: str | None, message: str) -> dict[str, Any]:
    """
    Send one SMS through Semaphore.

    Configuration and input problems return {"ok": False, "error": ...} so the
    caller can record them; transport failures raise httpx.HTTPError.
    """
    api_key = str(settings.semaphore_api_key or "").strip()
    if not api_key:
        log.warning("sms_not_configured")
        return {"ok": False, "error": "sms_not_configured"}
    number = normalize_ph_number(to)
    if not number:
        return {"ok": False, "error": "invalid_phone"}
    text = str(message or "").strip()
    if not text:
        return {"ok": False, "error": "empty_message"}

    url = f"{settings.semaphore_api_base.rstrip('/')}/api/v4/messages"
    r = httpx.post(
        url,
        data={
            "apikey": api_key,
            "number": number,
            "message": text,
            "sendername": settings.semaphore_sender_name,
        },
        timeout=httpx.Timeout(float(settings.http_timeout_seconds), connect=5.0),
    )
    if r.status_code >= 400:
        log.warning("sms_send_failed", status_code=int(r.status_code), numberSuffix=number[-4:])
        return {"ok": False, "error": f"sms_http_{r.status_code}"}

    body = r.json() if r.content else None
    first = body[0] if isinstance(body, list) and body else {}
    msg_id = first.get("message_id") if isinstance(first, dict) else None
    log.info("sms_sent", numberSuffix=number[-4:], messageId=msg_id)
    return {"ok": True, "messageId": msg_id}
