from __future__ import annotations

from datetime import timedelta
from typing import Any

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from ..domain.clock import parse_iso, to_iso
from ._items import new_id, now_iso, required_id, strip_db_fields
from .contacts_repo import platform_user_pk

STANDARD_WINDOW = timedelta(hours=24)
HUMAN_AGENT_WINDOW = timedelta(days=7)


def message_key(contact_id: str, created_at: str, message_id: str) -> dict[str, str]:
    return {
        "pk": f"CONTACT#{required_id(contact_id, 'contact_id')}",
        "sk": f"MESSAGE#{created_at}#{required_id(message_id, 'message_id')}",
    }


def external_message_claim_key(channel: str, external_message_id: str) -> dict[str, str]:
    return {
        "pk": f"EXTERNAL_MESSAGE#{required_id(channel, 'channel')}#{required_id(external_message_id, 'external_message_id')}",
        "sk": "CLAIM",
    }


def messaging_window_key(channel: str, platform_user_id: str) -> dict[str, str]:
    return {"pk": platform_user_pk(channel, platform_user_id), "sk": "WINDOW"}


def get_message_for_external_id(channel: str, external_message_id: str) -> dict[str, Any] | None:
    t = get_main_table()
    claim = t.get_item(key=external_message_claim_key(channel, external_message_id), consistent=True)
    if not claim:
        return None
    msg = t.get_item(
        key=message_key(str(claim.get("contactId")), str(claim.get("createdAt")), str(claim.get("messageId")))
    )
    return strip_db_fields(msg)


def record_inbound_message(
    *,
    contact_id: str,
    channel: str,
    content: str,
    attachments: list[dict[str, Any]] | None,
    external_message_id: str,
    received_at: str | None,
) -> tuple[dict[str, Any], bool]:
    """
    Insert an inbound message exactly once per (channel, externalMessageId).

    Returns (message, created). A replay returns the first stored message.
    """
    mid = new_id("msg")
    created_at = received_at or now_iso()
    msg: dict[str, Any] = {
        **message_key(contact_id, created_at, mid),
        "entityType": "Message",
        "messageId": mid,
        "contactId": contact_id,
        "channel": channel,
        "content": content,
        "attachments": attachments or [],
        "externalMessageId": external_message_id,
        "isOutgoing": False,
        "isRead": False,
        "createdAt": created_at,
    }
    claim = {
        **external_message_claim_key(channel, external_message_id),
        "entityType": "ExternalMessageClaim",
        "contactId": contact_id,
        "messageId": mid,
        "createdAt": created_at,
    }
    t = get_main_table()
    try:
        t.transact_write(
            puts=[
                t.tx_put(item=claim, condition_expression="attribute_not_exists(pk)"),
                t.tx_put(item=msg, condition_expression="attribute_not_exists(pk)"),
            ]
        )
    except DdbConflict:
        existing = get_message_for_external_id(channel, external_message_id)
        if existing:
            return existing, False
        raise
    return strip_db_fields(msg) or {}, True


def touch_messaging_window(
    *, channel: str, platform_user_id: str, contact_id: str, customer_message_at: str
) -> dict[str, Any] | None:
    """
    Refresh the reply windows opened by a customer message.

    Only moves forward: an out-of-order (older) message never shortens a window.
    """
    at = parse_iso(customer_message_at)
    if at is None:
        raise ValueError("customer_message_at must be an ISO timestamp")
    try:
        updated = get_main_table().update_item(
            key=messaging_window_key(channel, platform_user_id),
            update_expression=(
                "SET entityType = :et, contactId = :c, channel = :ch, platformUserId = :p, "
                "lastCustomerMessageAt = :at, standardWindowExpiresAt = :std, "
                "humanAgentWindowExpiresAt = :hum, updatedAt = :u"
            ),
            expression_attribute_names=None,
            expression_attribute_values={
                ":et": "MessagingWindow",
                ":c": contact_id,
                ":ch": channel,
                ":p": platform_user_id,
                ":at": to_iso(at),
                ":std": to_iso(at + STANDARD_WINDOW),
                ":hum": to_iso(at + HUMAN_AGENT_WINDOW),
                ":u": now_iso(),
            },
            condition_expression="attribute_not_exists(lastCustomerMessageAt) OR lastCustomerMessageAt < :at",
            return_values="ALL_NEW",
        )
    except DdbConflict:
        return None
    return strip_db_fields(updated)
