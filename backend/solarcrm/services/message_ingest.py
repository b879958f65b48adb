from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..domain.clock import parse_iso, to_iso
from ..errors import ValidationError
from ..observability.logging import get_logger
from ..repositories import contacts_repo, messages_repo

log = get_logger("message_ingest")

CHANNELS = tuple(contacts_repo.PLATFORM_ID_FIELDS)


def _received_at(timestamp: Any) -> str:
    # Webhooks send epoch milliseconds; the API also accepts ISO strings.
    if timestamp is None or timestamp == "":
        return to_iso(datetime.now(timezone.utc))
    if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
        try:
            return to_iso(datetime.fromtimestamp(float(timestamp) / 1000.0, tz=timezone.utc))
        except (OverflowError, ValueError, OSError) as e:
            raise ValidationError(message="timestamp is out of range", code="invalid_timestamp") from e
    dt = parse_iso(str(timestamp))
    if dt is None:
        raise ValidationError(message="timestamp must be epoch milliseconds or ISO-8601", code="invalid_timestamp")
    return to_iso(dt)


def ingest_message(
    *,
    channel: str,
    platform_user_id: str,
    text: str | None,
    external_message_id: str,
    first_name: str | None = None,
    last_name: str | None = None,
    attachments: list[dict[str, Any]] | None = None,
    timestamp: Any = None,
) -> dict[str, Any]:
    """
    Idempotent inbound message upsert keyed by (channel, platformUserId).

    Webhook retries are expected: the contact is created at most once per
    platform identity and a message at most once per (channel, externalMessageId).
    """
    ch = str(channel or "").strip().lower()
    if ch not in CHANNELS:
        raise ValidationError(message=f"Unsupported channel: {channel}", code="invalid_channel")
    puid = str(platform_user_id or "").strip()
    if not puid:
        raise ValidationError(message="platformUserId is required", code="invalid_platform_user")
    ext_id = str(external_message_id or "").strip()
    if not ext_id:
        raise ValidationError(message="externalMessageId is required", code="invalid_external_message_id")
    content = str(text or "")
    atts = [a for a in (attachments or []) if isinstance(a, dict)]
    if not content.strip() and not atts:
        raise ValidationError(message="Message has no text or attachments", code="empty_message")
    received_at = _received_at(timestamp)

    # Fast path for replays: nothing to write.
    existing = messages_repo.get_message_for_external_id(ch, ext_id)
    if existing:
        log.info("message_ingest_duplicate", channel=ch, externalMessageId=ext_id)
        return {"contactId": existing.get("contactId"), "message": existing, "created": False, "contactCreated": False}

    contact, contact_created = contacts_repo.get_or_create_platform_contact(
        channel=ch,
        platform_user_id=puid,
        first_name=first_name,
        last_name=last_name,
    )
    contact_id = str(contact.get("contactId") or "")
    message, created = messages_repo.record_inbound_message(
        contact_id=contact_id,
        channel=ch,
        content=content,
        attachments=atts,
        external_message_id=ext_id,
        received_at=received_at,
    )
    messages_repo.touch_messaging_window(
        channel=ch,
        platform_user_id=puid,
        contact_id=contact_id,
        customer_message_at=received_at,
    )
    log.info(
        "message_ingested",
        channel=ch,
        contactId=contact_id,
        messageId=message.get("messageId"),
        created=created,
        contactCreated=contact_created,
    )
    return {"contactId": contact_id, "message": message, "created": created, "contactCreated": contact_created}
