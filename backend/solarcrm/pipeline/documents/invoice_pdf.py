from __future__ import annotations

from decimal import Decimal
from typing import Any

from ...domain.billing import format_currency, to_money
from ...settings import settings
from .pdf_layout import BRAND_ORANGE, CONTENT_WIDTH, Column, DocumentCanvas, Party

_COLUMNS = (
    Column("Description", CONTENT_WIDTH * 0.46),
    Column("Qty", CONTENT_WIDTH * 0.12, align="right"),
    Column("Unit Price", CONTENT_WIDTH * 0.21, align="right"),
    Column("Total", CONTENT_WIDTH * 0.21, align="right"),
)


def _qty(v: Any) -> str:
    d = Decimal(str(v if v is not None else "0"))
    return str(int(d)) if d == d.to_integral_value() else f"{d.normalize()}"


def render_invoice_pdf(
    *,
    invoice: dict[str, Any],
    client_name: str,
    client_address: str | None,
    project_name: str | None,
    issued_on: str,
    due_on: str | None,
) -> bytes:
    cur = settings.currency_code
    doc = DocumentCanvas(title=f"Invoice {invoice.get('invoiceNumber') or ''}".strip())

    meta = [f"Invoice #: {invoice.get('invoiceNumber') or ''}", f"Date: {issued_on}"]
    if due_on:
        meta.append(f"Due: {due_on}")
    doc.brand_header(title="INVOICE", title_color=BRAND_ORANGE, meta=meta)

    doc.parties(
        left_label="BILLED FROM:",
        left=Party(settings.company_legal_name, (settings.company_address,)),
        right_label="BILLED TO:",
        right=Party(client_name or "Client", tuple(s.strip() for s in str(client_address or "").split(",") if s.strip())),
    )
    if project_name:
        doc.label_value("PROJECT:", project_name)
        doc.down(8)

    rows = [
        (
            str(li.get("description") or ""),
            _qty(li.get("quantity")),
            format_currency(li.get("unitPrice"), cur),
            format_currency(li.get("lineTotal"), cur),
        )
        for li in sorted(invoice.get("lineItems") or [], key=lambda x: int(x.get("sortOrder") or 0))
    ]
    doc.table(_COLUMNS, rows)
    doc.down(12)

    doc.summary_line("Subtotal", format_currency(invoice.get("subtotal"), cur))
    if to_money(invoice.get("taxAmount")) > 0:
        rate = invoice.get("taxRate")
        doc.summary_line(f"Tax ({rate}%)" if rate is not None else "Tax", format_currency(invoice.get("taxAmount"), cur))
    if to_money(invoice.get("discountAmount")) > 0:
        doc.summary_line("Discount", "-" + format_currency(invoice.get("discountAmount"), cur))
    doc.down(8)
    doc.total_box("TOTAL:", format_currency(invoice.get("total"), cur), fill=BRAND_ORANGE)

    if invoice.get("notes"):
        doc.paragraph("NOTES", str(invoice.get("notes")))
    doc.payment_instructions()
    return doc.finish()
