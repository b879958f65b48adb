from __future__ import annotations

import uuid
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from ._items import now_iso, strip_db_fields

PENDING_GSI_PK = "OUTBOX#PENDING"


def outbox_key(event_id: str) -> dict[str, str]:
    eid = str(event_id or "").strip()
    if not eid:
        raise ValueError("event_id is required")
    return {"pk": f"OUTBOX#{eid}", "sk": "PROFILE"}


def enqueue_event(
    *,
    event_type: str,
    payload: dict[str, Any],
    dedupe_key: str | None = None,
    not_before: str | None = None,
) -> dict[str, Any]:
    """
    Enqueue an outbox event for async side effects (SMS, email, PDFs).

    - `dedupe_key` becomes the event id, so a repeated trigger collapses into
      the first event instead of sending twice.
    - `not_before` (ISO UTC) delays visibility; the worker only sees due events.
    """
    et = str(event_type or "").strip()
    if not et:
        raise ValueError("event_type is required")
    eid = str(dedupe_key or "").strip() or ("evt_" + uuid.uuid4().hex[:18])

    now = now_iso()
    due = str(not_before or "").strip() or now
    item: dict[str, Any] = {
        **outbox_key(eid),
        "entityType": "OutboxEvent",
        "eventId": eid,
        "eventType": et,
        "status": "pending",
        "attempts": 0,
        "notBefore": due,
        "createdAt": now,
        "updatedAt": now,
        "payload": payload if isinstance(payload, dict) else {},
        # GSI1: pending queue ordered by due time
        "gsi1pk": PENDING_GSI_PK,
        "gsi1sk": f"{due}#{eid}",
    }
    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    except DdbConflict:
        existing = get_main_table().get_item(key=outbox_key(eid))
        return strip_db_fields(existing) or {}
    return strip_db_fields(item) or {}


def get_event(event_id: str) -> dict[str, Any] | None:
    return strip_db_fields(get_main_table().get_item(key=outbox_key(event_id), consistent=True))


def list_due(*, now: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
    # "~" sorts after "#" and any id, so every event due at `now` is included.
    cutoff = f"{now or now_iso()}~"
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(PENDING_GSI_PK) & Key("gsi1sk").lte(cutoff),
        scan_index_forward=True,
        limit=max(1, min(200, int(limit or 50))),
    )
    return [e for e in (strip_db_fields(it) for it in pg.items) if e]


def claim_event(*, event_id: str) -> dict[str, Any] | None:
    """
    Atomically move an event from pending -> processing.

    Returns None when another worker claimed it first.
    """
    now = now_iso()
    try:
        updated = get_main_table().update_item(
            key=outbox_key(event_id),
            update_expression="SET #s = :s, lockedAt = :l, updatedAt = :u, attempts = attempts + :one REMOVE gsi1pk, gsi1sk",
            expression_attribute_names={"#s": "status"},
            expression_attribute_values={":s": "processing", ":l": now, ":u": now, ":one": 1, ":pending": "pending"},
            condition_expression="#s = :pending",
            return_values="ALL_NEW",
        )
    except DdbConflict:
        return None
    return strip_db_fields(updated)


def mark_done(*, event_id: str, result: dict[str, Any] | None = None) -> dict[str, Any] | None:
    now = now_iso()
    updated = get_main_table().update_item(
        key=outbox_key(event_id),
        update_expression="SET #s = :s, updatedAt = :u, completedAt = :u, #r = :r",
        expression_attribute_names={"#s": "status", "#r": "result"},
        expression_attribute_values={":s": "done", ":u": now, ":r": result if isinstance(result, dict) else {}},
        return_values="ALL_NEW",
    )
    return strip_db_fields(updated)


def mark_failed(*, event_id: str, error: str) -> dict[str, Any] | None:
    """
    Park a failed event. There is no automatic retry: a failed send stays
    failed until an operator re-queues it with `requeue_event`.
    """
    now = now_iso()
    updated = get_main_table().update_item(
        key=outbox_key(event_id),
        update_expression="SET #s = :s, lastError = :e, updatedAt = :u",
        expression_attribute_names={"#s": "status"},
        expression_attribute_values={":s": "failed", ":e": str(error or "")[:800], ":u": now},
        return_values="ALL_NEW",
    )
    return strip_db_fields(updated)


def requeue_event(*, event_id: str) -> dict[str, Any] | None:
    """failed -> pending, due now. None if the event is not in the failed state."""
    now = now_iso()
    try:
        updated = get_main_table().update_item(
            key=outbox_key(event_id),
            update_expression="SET #s = :s, notBefore = :n, updatedAt = :n, gsi1pk = :gpk, gsi1sk = :gsk",
            expression_attribute_names={"#s": "status"},
            expression_attribute_values={
                ":s": "pending",
                ":n": now,
                ":gpk": PENDING_GSI_PK,
                ":gsk": f"{now}#{event_id}",
                ":failed": "failed",
            },
            condition_expression="#s = :failed",
            return_values="ALL_NEW",
        )
    except DdbConflict:
        return None
    return strip_db_fields(updated)
