from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable

from boto3.dynamodb.types import TypeSerializer

from ...infrastructure.aws import aws_client, dynamodb_table
from .errors import DdbInternal
from .pagination import decode_next_token, encode_next_token
from .retry import RetryPolicy, ddb_call

_serializer = TypeSerializer()

# Transactions (agreement + token claim, payment + invoice) are the writes most
# likely to hit TransactionConflict; give them a longer backoff.
_TX_RETRY = RetryPolicy(max_attempts=5, base_delay_s=0.08, max_delay_s=1.5)


def _wire(values: dict[str, Any]) -> dict[str, Any]:
    # TransactWriteItems goes through the low-level client ({'S': ...} shape).
    return {k: _serializer.serialize(v) for k, v in values.items()}


def _conditions(
    condition_expression: str | None,
    names: dict[str, str] | None,
    values: dict[str, Any] | None,
    *,
    wire: bool = False,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if condition_expression:
        out["ConditionExpression"] = condition_expression
    if names:
        out["ExpressionAttributeNames"] = names
    if values:
        out["ExpressionAttributeValues"] = _wire(values) if wire else values
    return out


@dataclass(slots=True)
class Page:
    items: list[dict[str, Any]]
    next_token: str | None


class DynamoTable:
    """The CRM's single table: pk/sk items plus the GSI1 list index."""

    def __init__(self, *, table_name: str):
        self.table_name = str(table_name)
        self._table = dynamodb_table(self.table_name)
        self._client = aws_client("dynamodb")

    def get_item(self, *, key: dict[str, Any], consistent: bool = False) -> dict[str, Any] | None:
        return ddb_call(
            "GetItem",
            lambda: self._table.get_item(Key=key, ConsistentRead=bool(consistent)).get("Item"),
            table_name=self.table_name,
            key=key,
        )

    def put_item(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        kwargs = {
            "Item": item,
            **_conditions(condition_expression, expression_attribute_names, expression_attribute_values),
        }
        return ddb_call(
            "PutItem",
            lambda: self._table.put_item(**kwargs),
            table_name=self.table_name,
            key={"pk": item.get("pk"), "sk": item.get("sk")},
        )

    def update_item(
        self,
        *,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_names: dict[str, str] | None,
        expression_attribute_values: dict[str, Any] | None,
        condition_expression: str | None = None,
        return_values: str = "ALL_NEW",
    ) -> dict[str, Any] | None:
        """Conditional update; a failed condition raises DdbConflict (never retried)."""
        kwargs = {
            "Key": key,
            "UpdateExpression": update_expression,
            "ReturnValues": return_values,
            **_conditions(condition_expression, expression_attribute_names, expression_attribute_values),
        }
        return ddb_call(
            "UpdateItem",
            lambda: self._table.update_item(**kwargs).get("Attributes"),
            table_name=self.table_name,
            key=key,
        )

    def query_page(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        limit: int = 50,
        scan_index_forward: bool = False,
        filter_expression: Any | None = None,
        next_token: str | None = None,
    ) -> Page:
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": key_condition_expression,
            "ScanIndexForward": bool(scan_index_forward),
            "Limit": max(1, min(500, int(limit or 50))),
        }
        if index_name:
            kwargs["IndexName"] = index_name
        if filter_expression is not None:
            kwargs["FilterExpression"] = filter_expression
        start_key = decode_next_token(next_token)
        if start_key:
            kwargs["ExclusiveStartKey"] = start_key

        resp = ddb_call("Query", lambda: self._table.query(**kwargs), table_name=self.table_name)
        return Page(items=resp.get("Items") or [], next_token=encode_next_token(resp.get("LastEvaluatedKey")))

    def transact_write(
        self,
        *,
        puts: Iterable[dict[str, Any]] = (),
        updates: Iterable[dict[str, Any]] = (),
    ) -> dict[str, Any]:
        # Entries come from tx_put / tx_update. DdbConflict.cancellation_codes
        # follow request order: puts first, then updates.
        items = [{"Put": p} for p in puts] + [{"Update": u} for u in updates]
        if not items:
            return {"ok": True}
        return ddb_call(
            "TransactWriteItems",
            lambda: self._client.transact_write_items(TransactItems=items),
            table_name=self.table_name,
            retry_policy=_TX_RETRY,
        )

    def tx_put(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "TableName": self.table_name,
            "Item": _wire(item),
            **_conditions(condition_expression, expression_attribute_names, expression_attribute_values, wire=True),
        }

    def tx_update(
        self,
        *,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_names: dict[str, str] | None,
        expression_attribute_values: dict[str, Any],
        condition_expression: str | None = None,
    ) -> dict[str, Any]:
        return {
            "TableName": self.table_name,
            "Key": _wire(key),
            "UpdateExpression": update_expression,
            **_conditions(condition_expression, expression_attribute_names, expression_attribute_values, wire=True),
        }


@lru_cache(maxsize=4)
def _table_for(table_name: str) -> DynamoTable:
    return DynamoTable(table_name=table_name)


def get_main_table() -> DynamoTable:
    from ...settings import settings

    if not settings.ddb_table_name:
        raise DdbInternal(message="DDB_TABLE_NAME is not set", operation="Config")
    return _table_for(settings.ddb_table_name)
