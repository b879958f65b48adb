from __future__ import annotations

from typing import Any

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from ._items import new_id, now_iso, required_id, strip_db_fields

# Contact attribute holding the platform-scoped id, per inbound channel.
PLATFORM_ID_FIELDS = {"facebook": "facebookPsid", "instagram": "instagramScopedId"}


def contact_key(contact_id: str) -> dict[str, str]:
    return {"pk": f"CONTACT#{required_id(contact_id, 'contact_id')}", "sk": "PROFILE"}


def platform_user_pk(channel: str, platform_user_id: str) -> str:
    return f"PLATFORM_USER#{required_id(channel, 'channel')}#{required_id(platform_user_id, 'platform_user_id')}"


def platform_claim_key(channel: str, platform_user_id: str) -> dict[str, str]:
    return {"pk": platform_user_pk(channel, platform_user_id), "sk": "CLAIM"}


def normalize_contact(item: dict[str, Any] | None) -> dict[str, Any] | None:
    out = strip_db_fields(item)
    if out is None:
        return None
    out["_id"] = str(out.get("contactId") or "").strip() or None
    return out


def get_contact(contact_id: str) -> dict[str, Any] | None:
    return normalize_contact(get_main_table().get_item(key=contact_key(contact_id)))


def find_contact_by_platform_user(channel: str, platform_user_id: str) -> dict[str, Any] | None:
    claim = get_main_table().get_item(key=platform_claim_key(channel, platform_user_id), consistent=True)
    if not claim or not claim.get("contactId"):
        return None
    return get_contact(str(claim["contactId"]))


def get_or_create_platform_contact(
    *,
    channel: str,
    platform_user_id: str,
    first_name: str | None,
    last_name: str | None,
) -> tuple[dict[str, Any], bool]:
    """
    Resolve the contact for a (channel, platformUserId) pair, creating it if absent.

    Contact and identity claim are written together; if a concurrent ingest
    wins the claim, its contact is returned instead. Returns (contact, created).
    """
    existing = find_contact_by_platform_user(channel, platform_user_id)
    if existing:
        return existing, False

    cid = new_id("contact")
    now = now_iso()
    contact: dict[str, Any] = {
        **contact_key(cid),
        "entityType": "Contact",
        "contactId": cid,
        "firstName": str(first_name or "").strip() or "Unknown",
        "lastName": str(last_name or "").strip(),
        "source": channel,
        "preferredMessageChannel": channel,
        PLATFORM_ID_FIELDS[channel]: platform_user_id,
        "createdAt": now,
        "updatedAt": now,
    }
    claim = {
        **platform_claim_key(channel, platform_user_id),
        "entityType": "PlatformIdentityClaim",
        "contactId": cid,
        "channel": channel,
        "platformUserId": platform_user_id,
        "createdAt": now,
    }
    t = get_main_table()
    try:
        t.transact_write(
            puts=[
                t.tx_put(item=contact, condition_expression="attribute_not_exists(pk)"),
                t.tx_put(item=claim, condition_expression="attribute_not_exists(pk)"),
            ]
        )
    except DdbConflict:
        winner = find_contact_by_platform_user(channel, platform_user_id)
        if winner:
            return winner, False
        raise
    return normalize_contact(contact) or {}, True
