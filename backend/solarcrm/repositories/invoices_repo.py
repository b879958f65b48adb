from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from ._items import ddb_number, new_id, now_iso, required_id, strip_db_fields


def invoice_key(invoice_id: str) -> dict[str, str]:
    return {"pk": f"INVOICE#{required_id(invoice_id, 'invoice_id')}", "sk": "PROFILE"}


def payment_key(invoice_id: str, at: str, payment_id: str) -> dict[str, str]:
    return {"pk": f"INVOICE#{required_id(invoice_id, 'invoice_id')}", "sk": f"PAYMENT#{at}#{payment_id}"}


def receipt_key(receipt_id: str) -> dict[str, str]:
    return {"pk": f"RECEIPT#{required_id(receipt_id, 'receipt_id')}", "sk": "PROFILE"}


def opportunity_invoices_gsi_pk(opportunity_id: str) -> str:
    return f"OPPORTUNITY_INVOICES#{required_id(opportunity_id, 'opportunity_id')}"


def opportunity_receipts_gsi_pk(opportunity_id: str) -> str:
    return f"OPPORTUNITY_RECEIPTS#{required_id(opportunity_id, 'opportunity_id')}"


def normalize_invoice(item: dict[str, Any] | None) -> dict[str, Any] | None:
    out = strip_db_fields(item)
    if out is None:
        return None
    out["_id"] = str(out.get("invoiceId") or "").strip() or None
    return out


def create_invoice(*, invoice: dict[str, Any]) -> dict[str, Any]:
    iid = str(invoice.get("invoiceId") or "").strip() or new_id("inv")
    now = now_iso()
    item: dict[str, Any] = {
        **invoice_key(iid),
        "entityType": "Invoice",
        **invoice,
        "invoiceId": iid,
        "createdAt": now,
        "updatedAt": now,
        "gsi1pk": opportunity_invoices_gsi_pk(str(invoice.get("opportunityId") or "")),
        "gsi1sk": f"{now}#{iid}",
    }
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_invoice(item) or {}


def get_invoice(invoice_id: str) -> dict[str, Any] | None:
    return normalize_invoice(get_main_table().get_item(key=invoice_key(invoice_id), consistent=True))


def list_invoices_for_opportunity(opportunity_id: str, *, limit: int = 50) -> list[dict[str, Any]]:
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(opportunity_invoices_gsi_pk(opportunity_id)),
        scan_index_forward=False,
        limit=limit,
    )
    return [i for i in (normalize_invoice(it) for it in pg.items) if i]


def apply_payment(
    invoice_id: str,
    *,
    previous_amount_paid: Any,
    new_amount_paid: Any,
    new_status: str,
    payment: dict[str, Any],
) -> dict[str, Any]:
    """
    Insert the payment row and move the invoice totals in one transaction.

    The invoice update is conditioned on the amountPaid value the caller read,
    so two concurrent payments cannot both compute from the same baseline.
    Raises DdbConflict when that happened (caller re-reads and retries).
    """
    now = now_iso()
    pid = new_id("pay")
    paid_at = str(payment.get("paymentDate") or now)
    row = {
        **payment_key(invoice_id, paid_at, pid),
        "entityType": "Payment",
        **payment,
        "paymentId": pid,
        "invoiceId": invoice_id,
        "paymentDate": paid_at,
        "createdAt": now,
    }
    values: dict[str, Any] = {
        ":prev": ddb_number(previous_amount_paid),
        ":paid": ddb_number(new_amount_paid),
        ":s": new_status,
        ":u": now,
        ":cancelled": "cancelled",
    }
    update_expression = "SET amountPaid = :paid, #s = :s, updatedAt = :u"
    if new_status == "paid_full":
        update_expression += ", paidAt = :u"
    t = get_main_table()
    t.transact_write(
        puts=[t.tx_put(item=row, condition_expression="attribute_not_exists(pk)")],
        updates=[
            t.tx_update(
                key=invoice_key(invoice_id),
                update_expression=update_expression,
                expression_attribute_names={"#s": "status"},
                expression_attribute_values=values,
                condition_expression="amountPaid = :prev AND #s <> :cancelled",
            )
        ],
    )
    return strip_db_fields(row) or {}


def create_receipt(*, receipt: dict[str, Any]) -> dict[str, Any]:
    rid = str(receipt.get("receiptId") or "").strip() or new_id("rcpt")
    now = now_iso()
    item: dict[str, Any] = {
        **receipt_key(rid),
        "entityType": "Receipt",
        **receipt,
        "receiptId": rid,
        "issuedAt": receipt.get("issuedAt") or now,
        "createdAt": now,
        "gsi1pk": opportunity_receipts_gsi_pk(str(receipt.get("opportunityId") or "")),
        "gsi1sk": f"{now}#{rid}",
    }
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    out = strip_db_fields(item) or {}
    out["_id"] = rid
    return out


def get_receipt(receipt_id: str) -> dict[str, Any] | None:
    out = strip_db_fields(get_main_table().get_item(key=receipt_key(receipt_id), consistent=True))
    if out is not None:
        out["_id"] = str(out.get("receiptId") or "").strip() or None
    return out
