from __future__ import annotations

import uuid
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from ._items import now_iso, required_id, strip_db_fields


def opportunity_key(opportunity_id: str) -> dict[str, str]:
    return {"pk": f"OPPORTUNITY#{required_id(opportunity_id, 'opportunity_id')}", "sk": "PROFILE"}


def activity_key(opportunity_id: str, at: str, activity_id: str) -> dict[str, str]:
    return {
        "pk": f"OPPORTUNITY#{required_id(opportunity_id, 'opportunity_id')}",
        "sk": f"ACTIVITY#{at}#{activity_id}",
    }


def normalize_opportunity(item: dict[str, Any] | None) -> dict[str, Any] | None:
    out = strip_db_fields(item)
    if out is None:
        return None
    out["_id"] = str(out.get("opportunityId") or "").strip() or None
    return out


def get_opportunity(opportunity_id: str) -> dict[str, Any] | None:
    return normalize_opportunity(get_main_table().get_item(key=opportunity_key(opportunity_id), consistent=True))


def change_stage(
    opportunity_id: str,
    *,
    from_stage: str | None,
    to_stage: str,
    actor: str | None,
    automated: bool,
    reason: str | None = None,
) -> dict[str, Any] | None:
    """
    Move the opportunity from `from_stage` to `to_stage` and append one
    activity-log entry, atomically.

    Returns None if the stored stage no longer equals `from_stage` (someone
    else moved it first); nothing is written in that case.
    """
    now = now_iso()
    activity_id = uuid.uuid4().hex[:16]
    t = get_main_table()
    entry = {
        **activity_key(opportunity_id, now, activity_id),
        "entityType": "ActivityLog",
        "activityId": activity_id,
        "opportunityId": str(opportunity_id),
        "action": "stage_changed",
        "fromStage": from_stage,
        "toStage": to_stage,
        "actor": actor,
        "automated": bool(automated),
        "reason": reason,
        "createdAt": now,
    }
    if from_stage is None:
        condition = "attribute_exists(pk) AND attribute_not_exists(stage)"
        values: dict[str, Any] = {":to": to_stage, ":u": now}
    else:
        condition = "attribute_exists(pk) AND stage = :from"
        values = {":to": to_stage, ":u": now, ":from": from_stage}
    try:
        t.transact_write(
            puts=[t.tx_put(item=entry, condition_expression="attribute_not_exists(pk)")],
            updates=[
                t.tx_update(
                    key=opportunity_key(opportunity_id),
                    update_expression="SET stage = :to, updatedAt = :u",
                    expression_attribute_names=None,
                    expression_attribute_values=values,
                    condition_expression=condition,
                )
            ],
        )
    except DdbConflict:
        return None
    return strip_db_fields(entry)


def list_activity(opportunity_id: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    pg = get_main_table().query_page(
        key_condition_expression=Key("pk").eq(opportunity_key(opportunity_id)["pk"])
        & Key("sk").begins_with("ACTIVITY#"),
        scan_index_forward=False,
        limit=limit,
        next_token=next_token,
    )
    return {"data": [a for a in (strip_db_fields(it) for it in pg.items) if a], "nextToken": pg.next_token}
