from __future__ import annotations

from ..db.dynamodb.table import get_main_table
from ._items import now_iso, required_id


def counter_key(name: str) -> dict[str, str]:
    return {"pk": f"COUNTER#{required_id(name, 'name')}", "sk": "COUNTER"}


def next_sequence(name: str) -> int:
    """Atomically increment and return a named counter (first value is 1)."""
    updated = get_main_table().update_item(
        key=counter_key(name),
        update_expression="SET entityType = :et, updatedAt = :u ADD seq :one",
        expression_attribute_names=None,
        expression_attribute_values={":one": 1, ":u": now_iso(), ":et": "Counter"},
        return_values="UPDATED_NEW",
    )
    return int((updated or {}).get("seq") or 0)
