from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..services import billing_service
from ._actor import actor_id

router = APIRouter(tags=["invoices"])


class LineItemIn(BaseModel):
    description: str = Field(..., min_length=1)
    quantity: Decimal = Field(default=Decimal(1), gt=0)
    unitPrice: Decimal = Field(..., ge=0)


class CreateInvoiceRequest(BaseModel):
    lineItems: list[LineItemIn] | None = None
    taxRate: Decimal | None = Field(default=None, ge=0, le=100)
    discountAmount: Decimal | None = Field(default=None, ge=0)
    dueInDays: int = Field(default=7, ge=0, le=365)
    notes: str | None = None


class RecordPaymentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    paymentMethod: str = Field(..., min_length=1)
    referenceNumber: str | None = None
    notes: str | None = None
    paymentDate: str | None = None


@router.post("/agreements/{agreementId}/invoice", status_code=201)
def create_invoice(agreementId: str, body: CreateInvoiceRequest):
    invoice = billing_service.create_invoice_from_agreement(
        agreementId,
        line_items=[li.model_dump() for li in body.lineItems] if body.lineItems else None,
        tax_rate=body.taxRate,
        discount_amount=body.discountAmount,
        due_in_days=body.dueInDays,
        notes=body.notes,
    )
    return {"ok": True, "invoice": invoice}


@router.post("/invoices/{invoiceId}/payments", status_code=201)
def record_payment(request: Request, invoiceId: str, body: RecordPaymentRequest):
    out = billing_service.record_payment(
        invoiceId,
        amount=body.amount,
        payment_method=body.paymentMethod,
        reference_number=body.referenceNumber,
        notes=body.notes,
        payment_date=body.paymentDate,
        actor=actor_id(request),
    )
    return {"ok": True, **out}
