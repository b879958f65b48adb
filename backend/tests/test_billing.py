from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from solarcrm.db.dynamodb.errors import DdbConflict
from solarcrm.domain.billing import (
    LineItem,
    calculate_invoice_totals,
    determine_invoice_status,
    format_currency,
    format_invoice_number,
    format_receipt_number,
)
from solarcrm.errors import ValidationError


def test_invoice_totals_with_tax():
    items = [LineItem.from_dict({"description": "Panel", "quantity": 2, "unitPrice": "1000"})]
    t = calculate_invoice_totals(items, tax_rate=12)
    assert t.subtotal == Decimal("2000.00")
    assert t.tax_amount == Decimal("240.00")
    assert t.total == Decimal("2240.00")


def test_invoice_totals_with_discount_and_no_tax():
    items = [
        LineItem.from_dict({"description": "Inverter", "quantity": 1, "unitPrice": "45000.50"}),
        LineItem.from_dict({"description": "Labor", "quantity": "1.5", "unitPrice": "1000"}),
    ]
    t = calculate_invoice_totals(items, discount_amount="500")
    assert t.subtotal == Decimal("46500.50")
    assert t.tax_amount == Decimal("0.00")
    assert t.total == Decimal("46000.50")


def test_invalid_line_items_are_rejected():
    with pytest.raises(ValidationError):
        LineItem.from_dict({"description": "", "quantity": 1, "unitPrice": 1})
    with pytest.raises(ValidationError):
        LineItem.from_dict({"description": "x", "quantity": 0, "unitPrice": 1})
    with pytest.raises(ValidationError):
        LineItem.from_dict({"description": "x", "quantity": 1, "unitPrice": "abc"})


def test_invoice_status_follows_amount_paid():
    assert determine_invoice_status("2240", "0") == "pending"
    assert determine_invoice_status("2240", "1000") == "partially_paid"
    assert determine_invoice_status("2240", "2240") == "paid_full"
    assert determine_invoice_status("2240", "3000") == "paid_full"


def test_number_formats():
    assert format_invoice_number(2024, 7) == "INV-2024-007"
    assert format_invoice_number(2024, 1234) == "INV-2024-1234"
    assert format_receipt_number(2024, 3, 12) == "RCP-202403-0012"


def test_currency_format():
    assert format_currency("1234.56") == "PHP 1,234.56"
    assert format_currency(0) == "PHP 0.00"
    assert format_currency("-5", "USD") == "-USD 5.00"


def test_next_sequence_reads_updated_counter(monkeypatch):
    from solarcrm.repositories import counters_repo

    class FakeTable:
        def __init__(self):
            self.calls: list[dict[str, Any]] = []

        def update_item(self, **kwargs):
            self.calls.append(kwargs)
            return {"seq": Decimal("8")}

    fake = FakeTable()
    monkeypatch.setattr(counters_repo, "get_main_table", lambda: fake)

    assert counters_repo.next_sequence("invoice#2024") == 8
    assert fake.calls[0]["key"] == {"pk": "COUNTER#invoice#2024", "sk": "COUNTER"}
    assert "ADD seq :one" in fake.calls[0]["update_expression"]


@pytest.fixture()
def billing(monkeypatch):
    from solarcrm.repositories import agreements_repo, counters_repo, invoices_repo
    from solarcrm.services import billing_service, notification_dispatcher, opportunity_service

    state: dict[str, Any] = {
        "agreement": {
            "agreementId": "agr_1",
            "opportunityId": "opp_1",
            "contactId": "c_1",
            "status": "signed",
            "systemType": "hybrid",
            "systemSize": "8",
            "totalAmount": Decimal("2000.00"),
        },
        "invoices": {},
        "payments": [],
        "enqueued": [],
        "advanced": [],
        "closed": [],
        "conflicts": 0,
    }

    monkeypatch.setattr(agreements_repo, "get_agreement", lambda aid, consistent=False: dict(state["agreement"]))
    monkeypatch.setattr(counters_repo, "next_sequence", lambda name: 7)

    def _create_invoice(*, invoice):
        out = {**invoice, "invoiceId": "inv_1", "createdAt": "2024-05-01T08:00:00.000Z"}
        state["invoices"]["inv_1"] = out
        return dict(out)

    def _apply_payment(invoice_id, *, previous_amount_paid, new_amount_paid, new_status, payment):
        if state["conflicts"]:
            state["conflicts"] -= 1
            raise DdbConflict(message="DynamoDB conditional check failed")
        inv = state["invoices"][invoice_id]
        assert inv["amountPaid"] == previous_amount_paid
        inv.update(amountPaid=new_amount_paid, status=new_status)
        row = {**payment, "paymentId": f"pay_{len(state['payments']) + 1}"}
        state["payments"].append(row)
        return row

    monkeypatch.setattr(invoices_repo, "create_invoice", _create_invoice)
    monkeypatch.setattr(invoices_repo, "get_invoice", lambda iid: dict(state["invoices"][iid]) if iid in state["invoices"] else None)
    monkeypatch.setattr(invoices_repo, "apply_payment", _apply_payment)
    monkeypatch.setattr(notification_dispatcher, "invoice_created", lambda inv: state["enqueued"].append(inv["invoiceId"]))
    monkeypatch.setattr(
        notification_dispatcher,
        "opportunity_closed",
        lambda oid, trigger_id: state["closed"].append((oid, trigger_id)),
    )

    def _advance(oid, target, **kw):
        state["advanced"].append((oid, target, kw.get("reason")))
        return {"activityId": "act_close_1"}

    monkeypatch.setattr(opportunity_service, "advance_stage_if_behind", _advance)
    return billing_service, state


def test_invoice_from_signed_agreement_defaults_to_agreed_price(billing):
    svc, state = billing
    inv = svc.create_invoice_from_agreement(
        "agr_1", tax_rate=12, clock=lambda: datetime(2024, 12, 31, 17, 0, tzinfo=timezone.utc)
    )
    # 01:00 on Jan 1 in Manila: numbered in the business-timezone year.
    assert inv["invoiceNumber"] == "INV-2025-007"
    assert inv["total"] == Decimal("2240.00")
    assert inv["status"] == "pending"
    assert inv["lineItems"][0]["description"] == "Solar Installation - Hybrid System (8 kW)"
    assert state["enqueued"] == ["inv_1"]


def test_unsigned_agreement_cannot_be_invoiced(billing):
    svc, state = billing
    state["agreement"]["status"] = "viewed"
    with pytest.raises(ValidationError) as ei:
        svc.create_invoice_from_agreement("agr_1")
    assert ei.value.code == "agreement_not_signed"


def test_discount_larger_than_invoice_is_rejected(billing):
    svc, _ = billing
    with pytest.raises(ValidationError):
        svc.create_invoice_from_agreement("agr_1", discount_amount="5000")


def test_partial_then_full_payment_closes_once(billing):
    svc, state = billing
    svc.create_invoice_from_agreement("agr_1", tax_rate=12)

    first = svc.record_payment("inv_1", amount="1000", payment_method="bank_transfer")
    assert first["invoice"]["status"] == "partially_paid"
    assert state["advanced"] == []

    second = svc.record_payment("inv_1", amount="1240", payment_method="cash", actor="u_1")
    assert second["invoice"]["status"] == "paid_full"
    assert second["invoice"]["amountPaid"] == Decimal("2240.00")
    assert state["advanced"] == [("opp_1", "closed", "invoice_paid")]
    assert state["closed"] == [("opp_1", "act_close_1")]


def test_payment_retries_after_concurrent_update(billing):
    svc, state = billing
    svc.create_invoice_from_agreement("agr_1")
    state["conflicts"] = 2
    out = svc.record_payment("inv_1", amount="2000", payment_method="cash")
    assert out["invoice"]["status"] == "paid_full"
    assert len(state["payments"]) == 1


def test_payment_gives_up_after_repeated_conflicts(billing):
    from solarcrm.errors import CrmError

    svc, state = billing
    svc.create_invoice_from_agreement("agr_1")
    state["conflicts"] = 5
    with pytest.raises(CrmError) as ei:
        svc.record_payment("inv_1", amount="10", payment_method="cash")
    assert ei.value.status_code == 409


def test_non_positive_payment_is_rejected(billing):
    svc, _ = billing
    svc.create_invoice_from_agreement("agr_1")
    with pytest.raises(ValidationError):
        svc.record_payment("inv_1", amount="0", payment_method="cash")


def test_receipt_is_reused_for_the_same_close_event(monkeypatch):
    from solarcrm.infrastructure.storage import blob_store
    from solarcrm.repositories import documents_repo, invoices_repo
    from solarcrm.services import billing_service

    rid = billing_service._receipt_id("opp_1", "act_1")
    existing = {"receiptId": rid, "receiptNumber": "RCP-202405-0001", "documentId": "doc_r"}
    monkeypatch.setattr(invoices_repo, "get_receipt", lambda r: dict(existing) if r == rid else None)
    monkeypatch.setattr(
        documents_repo,
        "get_document",
        lambda did: {"documentId": did, "name": "Receipt_RCP-202405-0001_Juan.pdf", "storageId": "a" * 64},
    )
    monkeypatch.setattr(blob_store, "fetch", lambda sid: b"%PDF-receipt")

    def _no_new_receipt(**_kw):
        raise AssertionError("receipt must not be regenerated")

    monkeypatch.setattr(invoices_repo, "create_receipt", _no_new_receipt)

    issued = billing_service.issue_receipt({"opportunityId": "opp_1"}, {"firstName": "Juan"}, trigger_id="act_1")
    assert issued.receipt["receiptNumber"] == "RCP-202405-0001"
    assert issued.file_name == "Receipt_RCP-202405-0001_Juan.pdf"
    assert issued.data == b"%PDF-receipt"
