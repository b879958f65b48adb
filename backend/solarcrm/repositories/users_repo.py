from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from ._items import new_id, now_iso, required_id, strip_db_fields

ROLES = ("admin", "sales", "project_manager", "technician")


def user_key(user_id: str) -> dict[str, str]:
    return {"pk": f"USER#{required_id(user_id, 'user_id')}", "sk": "PROFILE"}


def notification_key(user_id: str, at: str, notification_id: str) -> dict[str, str]:
    return {"pk": f"USER#{required_id(user_id, 'user_id')}", "sk": f"NOTIFICATION#{at}#{notification_id}"}


def role_gsi_pk(role: str) -> str:
    return f"USER_ROLE#{required_id(role, 'role')}"


def get_user(user_id: str) -> dict[str, Any] | None:
    return strip_db_fields(get_main_table().get_item(key=user_key(user_id)))


def list_users_by_role(role: str, *, limit: int = 100) -> list[dict[str, Any]]:
    users: list[dict[str, Any]] = []
    next_token: str | None = None
    # Role membership is small (a handful of PMs); bound the walk anyway.
    for _ in range(10):
        pg = get_main_table().query_page(
            index_name="GSI1",
            key_condition_expression=Key("gsi1pk").eq(role_gsi_pk(role)),
            scan_index_forward=True,
            limit=limit,
            next_token=next_token,
        )
        users.extend(u for u in (strip_db_fields(it) for it in pg.items) if u)
        next_token = pg.next_token
        if not next_token:
            break
    return users


def create_notification(
    *,
    user_id: str,
    type: str,
    title: str,
    message: str,
    opportunity_id: str | None = None,
    agreement_id: str | None = None,
) -> dict[str, Any]:
    nid = new_id("ntf")
    now = now_iso()
    item = {
        **notification_key(user_id, now, nid),
        "entityType": "Notification",
        "notificationId": nid,
        "userId": user_id,
        "type": type,
        "title": title,
        "message": message,
        "opportunityId": opportunity_id,
        "agreementId": agreement_id,
        "read": False,
        "createdAt": now,
    }
    get_main_table().put_item(item=item)
    return strip_db_fields(item) or {}
