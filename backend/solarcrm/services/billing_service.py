from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo

from ..db.dynamodb.errors import DdbConflict
from ..domain.agreement_state import SIGNED
from ..domain.billing import (
    INVOICE_CANCELLED,
    INVOICE_PAID_FULL,
    INVOICE_PENDING,
    LineItem,
    calculate_invoice_totals,
    determine_invoice_status,
    format_invoice_number,
    format_receipt_number,
    to_money,
)
from ..domain.clock import Clock, format_local, parse_iso, to_iso, utc_now
from ..errors import CrmError, NotFoundError, ValidationError
from ..infrastructure.storage import blob_store
from ..observability.logging import get_logger
from ..pipeline.documents.document_pipeline import GeneratedPdfSource, ProducedDocument, produce_document
from ..pipeline.documents.invoice_pdf import render_invoice_pdf
from ..pipeline.documents.receipt_pdf import render_receipt_pdf
from ..repositories import agreements_repo, counters_repo, documents_repo, invoices_repo
from ..repositories._items import ddb_number
from ..settings import settings
from . import notification_dispatcher, opportunity_service

log = get_logger("billing_service")

_PAYMENT_ATTEMPTS = 3


def _file_part(s: str | None) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", str(s or "").strip()) or "Client"


def system_description(agreement: dict[str, Any] | None) -> str:
    a = agreement or {}
    kind = "Hybrid System" if a.get("systemType") == "hybrid" else "Grid-Tied System"
    return f"Solar Installation - {kind} ({a.get('systemSize') or 'N/A'} kW)"


def create_invoice_from_agreement(
    agreement_id: str,
    *,
    line_items: list[dict[str, Any]] | None = None,
    tax_rate: Any = None,
    discount_amount: Any = None,
    due_in_days: int = 7,
    notes: str | None = None,
    clock: Clock = utc_now,
) -> dict[str, Any]:
    """
    Invoice a signed agreement. Without explicit line items the agreed system
    price becomes a single line.
    """
    agreement = agreements_repo.get_agreement(agreement_id, consistent=True)
    if not agreement:
        raise NotFoundError(message="Agreement not found")
    if agreement.get("status") != SIGNED:
        raise ValidationError(message="Only signed agreements can be invoiced", code="agreement_not_signed")

    if line_items:
        items = [LineItem.from_dict(li) for li in line_items]
    else:
        items = [
            LineItem(
                description=system_description(agreement),
                quantity=Decimal(1),
                unit_price=to_money(agreement.get("totalAmount"), field="totalAmount"),
            )
        ]
    totals = calculate_invoice_totals(items, tax_rate=tax_rate, discount_amount=discount_amount)
    if totals.total < 0:
        raise ValidationError(message="Discount exceeds the invoice amount", code="invalid_discount")

    now = clock()
    year = now.astimezone(ZoneInfo(settings.business_timezone)).year
    number = format_invoice_number(year, counters_repo.next_sequence(f"invoice#{year}"))
    invoice = invoices_repo.create_invoice(
        invoice={
            "invoiceNumber": number,
            "opportunityId": agreement.get("opportunityId"),
            "agreementId": agreement.get("agreementId"),
            "contactId": agreement.get("contactId"),
            "lineItems": [li.to_dict(i) for i, li in enumerate(items)],
            "subtotal": totals.subtotal,
            "taxRate": ddb_number(tax_rate),
            "taxAmount": totals.tax_amount,
            "discountAmount": totals.discount_amount,
            "total": totals.total,
            "amountPaid": Decimal("0"),
            "status": INVOICE_PENDING,
            "dueDate": to_iso(now + timedelta(days=int(due_in_days))),
            "notes": notes,
        }
    )
    log.info("invoice_created", invoiceId=invoice.get("invoiceId"), invoiceNumber=number, total=str(totals.total))
    notification_dispatcher.invoice_created(invoice)
    return invoice


def record_payment(
    invoice_id: str,
    *,
    amount: Any,
    payment_method: str,
    reference_number: str | None = None,
    notes: str | None = None,
    payment_date: str | None = None,
    actor: str | None = None,
) -> dict[str, Any]:
    """
    Apply a payment. When the invoice becomes fully paid the opportunity is
    advanced to `closed` (automated, forward-only) and a close event fires.
    """
    amt = to_money(amount)
    if amt <= 0:
        raise ValidationError(message="Payment amount must be positive", code="invalid_amount")

    for _ in range(_PAYMENT_ATTEMPTS):
        invoice = invoices_repo.get_invoice(invoice_id)
        if not invoice:
            raise NotFoundError(message="Invoice not found")
        if invoice.get("status") == INVOICE_CANCELLED:
            raise ValidationError(message="Cannot add a payment to a cancelled invoice", code="invoice_cancelled")
        prev_status = invoice.get("status")
        prev_paid = to_money(invoice.get("amountPaid"))
        new_paid = prev_paid + amt
        new_status = determine_invoice_status(invoice.get("total"), new_paid)
        try:
            payment = invoices_repo.apply_payment(
                invoice_id,
                previous_amount_paid=prev_paid,
                new_amount_paid=new_paid,
                new_status=new_status,
                payment={
                    "amount": amt,
                    "paymentMethod": payment_method,
                    "referenceNumber": reference_number,
                    "notes": notes,
                    "paymentDate": payment_date,
                    "receivedBy": actor,
                },
            )
        except DdbConflict:
            log.info("payment_conflict_retry", invoiceId=invoice_id)
            continue
        break
    else:
        raise CrmError(message="Invoice was modified concurrently; retry", code="conflict", status_code=409)

    log.info("payment_recorded", invoiceId=invoice_id, amount=str(amt), status=new_status)
    if new_status == INVOICE_PAID_FULL and prev_status != INVOICE_PAID_FULL:
        opp_id = str(invoice.get("opportunityId") or "")
        try:
            entry = opportunity_service.advance_stage_if_behind(opp_id, "closed", reason="invoice_paid", actor=actor)
        except Exception:
            log.exception("close_on_payment_failed", invoiceId=invoice_id, opportunityId=opp_id)
            entry = None
        if entry:
            notification_dispatcher.opportunity_closed(opp_id, trigger_id=str(entry.get("activityId") or invoice_id))

    return {
        "payment": payment,
        "invoice": {**invoice, "amountPaid": new_paid, "status": new_status},
    }


def render_invoice_document(
    invoice: dict[str, Any], opportunity: dict[str, Any], contact: dict[str, Any]
) -> ProducedDocument:
    tz = settings.business_timezone
    created = parse_iso(invoice.get("createdAt")) or utc_now()
    due = parse_iso(invoice.get("dueDate"))
    client_name = " ".join(s for s in (contact.get("firstName"), contact.get("lastName")) if s) or "Client"
    number = str(invoice.get("invoiceNumber") or "")

    source = GeneratedPdfSource(
        kind="invoice",
        file_name=f"Invoice_{number}_{_file_part(client_name)}.pdf",
        draw=lambda: render_invoice_pdf(
            invoice=invoice,
            client_name=client_name,
            client_address=contact.get("address"),
            project_name=opportunity.get("name"),
            issued_on=format_local(created, tz, with_time=False),
            due_on=format_local(due, tz, with_time=False) if due else None,
        ),
    )
    return produce_document(
        source,
        opportunity_id=str(invoice.get("opportunityId") or ""),
        invoice_id=str(invoice.get("invoiceId") or "") or None,
    )


@dataclass(frozen=True, slots=True)
class IssuedReceipt:
    receipt: dict[str, Any]
    file_name: str
    data: bytes


def _receipt_id(opportunity_id: str, trigger_id: str) -> str:
    # Stable per close event, so an operator resend reuses the same receipt.
    return "rcpt_" + hashlib.sha256(f"{opportunity_id}#{trigger_id}".encode("utf-8")).hexdigest()[:20]


def _signed_agreement(opportunity_id: str) -> dict[str, Any] | None:
    page = agreements_repo.list_agreements_for_opportunity(opportunity_id, limit=50)
    return next((a for a in page.get("data") or [] if a.get("status") == SIGNED), None)


def _existing_receipt(receipt: dict[str, Any]) -> IssuedReceipt | None:
    doc = documents_repo.get_document(str(receipt.get("documentId") or "")) if receipt.get("documentId") else None
    if not doc or not doc.get("storageId"):
        return None
    return IssuedReceipt(receipt=receipt, file_name=str(doc.get("name") or "receipt.pdf"), data=blob_store.fetch(str(doc["storageId"])))


def issue_receipt(
    opportunity: dict[str, Any],
    contact: dict[str, Any],
    *,
    trigger_id: str,
    clock: Clock = utc_now,
) -> IssuedReceipt:
    """Generate, store and record the receipt for one close event (idempotent per event)."""
    opp_id = str(opportunity.get("opportunityId") or "")
    rid = _receipt_id(opp_id, trigger_id)
    existing = invoices_repo.get_receipt(rid)
    if existing:
        reused = _existing_receipt(existing)
        if reused:
            return reused

    agreement = _signed_agreement(opp_id)
    total = to_money((agreement or {}).get("totalAmount") or opportunity.get("estimatedValue"))
    local_now = clock().astimezone(ZoneInfo(settings.business_timezone))
    number = format_receipt_number(
        local_now.year,
        local_now.month,
        counters_repo.next_sequence(f"receipt#{local_now.year:04d}{local_now.month:02d}"),
    )
    client_name = " ".join(s for s in (contact.get("firstName"), contact.get("lastName")) if s) or "Client"
    file_name = f"Receipt_{number}_{_file_part(client_name)}.pdf"

    produced = produce_document(
        GeneratedPdfSource(
            kind="receipt",
            file_name=file_name,
            draw=lambda: render_receipt_pdf(
                receipt_number=number,
                issued_on=format_local(local_now, settings.business_timezone, with_time=False),
                client_name=client_name,
                client_address=contact.get("address") or "No address provided",
                project_name=opportunity.get("name"),
                project_location=(agreement or {}).get("projectLocation") or opportunity.get("location") or "N/A",
                description=system_description(agreement),
                total_amount=total,
                notes="Thank you for your business!",
            ),
        ),
        opportunity_id=opp_id,
    )
    try:
        receipt = invoices_repo.create_receipt(
            receipt={
                "receiptId": rid,
                "receiptNumber": number,
                "opportunityId": opp_id,
                "contactId": contact.get("contactId"),
                "totalAmount": total,
                "documentId": produced.document_id,
                "triggerId": trigger_id,
            }
        )
    except DdbConflict:
        # A concurrent run of the same event recorded it first.
        winner = invoices_repo.get_receipt(rid)
        if not winner:
            raise
        receipt = winner
    log.info("receipt_issued", receiptId=rid, receiptNumber=receipt.get("receiptNumber"), opportunityId=opp_id)
    return IssuedReceipt(receipt=receipt, file_name=file_name, data=produced.data)
