from __future__ import annotations

from typing import Any

from ...domain.billing import format_currency
from ...settings import settings
from .pdf_layout import CONTENT_WIDTH, RECEIPT_GREEN, Column, DocumentCanvas, Party

_COLUMNS = (
    Column("Description", CONTENT_WIDTH * 0.70),
    Column("Amount", CONTENT_WIDTH * 0.30, align="right"),
)


def render_receipt_pdf(
    *,
    receipt_number: str,
    issued_on: str,
    client_name: str,
    client_address: str | None,
    project_name: str | None,
    project_location: str | None,
    description: str,
    total_amount: Any,
    notes: str | None = None,
) -> bytes:
    cur = settings.currency_code
    doc = DocumentCanvas(title=f"Receipt {receipt_number}")
    doc.brand_header(
        title="RECEIPT",
        title_color=RECEIPT_GREEN,
        meta=[f"Receipt #: {receipt_number}", f"Date: {issued_on}"],
    )
    doc.parties(
        left_label="ISSUED BY:",
        left=Party(settings.company_legal_name, (settings.company_address,)),
        right_label="ISSUED TO:",
        right=Party(client_name or "Client", tuple(s.strip() for s in str(client_address or "").split(",") if s.strip())),
    )
    if project_name:
        doc.label_value("PROJECT:", project_name)
    if project_location:
        doc.label_value("LOCATION:", project_location)
    doc.down(8)

    doc.table(_COLUMNS, [(description, format_currency(total_amount, cur))])
    doc.down(16)
    doc.total_box("TOTAL PAID:", format_currency(total_amount, cur), fill=RECEIPT_GREEN)

    doc.text_center("PAID IN FULL", size=16, bold=True, color=RECEIPT_GREEN)
    doc.down(30)
    if notes:
        doc.paragraph("NOTES", notes)
    return doc.finish()
