from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from ..errors import ValidationError

CENT = Decimal("0.01")

INVOICE_PENDING = "pending"
INVOICE_PARTIALLY_PAID = "partially_paid"
INVOICE_PAID_FULL = "paid_full"
INVOICE_CANCELLED = "cancelled"


def to_money(value: Any, *, field: str = "amount") -> Decimal:
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value if value is not None else "0").strip() or "0")
        except InvalidOperation as e:
            raise ValidationError(message=f"{field} must be a number", code="invalid_amount") from e
    if not d.is_finite():
        raise ValidationError(message=f"{field} must be a number", code="invalid_amount")
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return (self.quantity * self.unit_price).quantize(CENT, rounding=ROUND_HALF_UP)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "LineItem":
        desc = str(raw.get("description") or "").strip()
        if not desc:
            raise ValidationError(message="Line item description is required", code="invalid_line_item")
        try:
            qty = Decimal(str(raw.get("quantity") if raw.get("quantity") is not None else "1"))
        except InvalidOperation as e:
            raise ValidationError(message="Line item quantity must be a number", code="invalid_line_item") from e
        if not qty.is_finite() or qty <= 0:
            raise ValidationError(message="Line item quantity must be positive", code="invalid_line_item")
        price = to_money(raw.get("unitPrice"), field="unitPrice")
        if price < 0:
            raise ValidationError(message="Line item unit price cannot be negative", code="invalid_line_item")
        return cls(description=desc, quantity=qty, unit_price=price)

    def to_dict(self, sort_order: int = 0) -> dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unitPrice": self.unit_price,
            "lineTotal": self.line_total,
            "sortOrder": int(sort_order),
        }


@dataclass(frozen=True, slots=True)
class InvoiceTotals:
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal


def calculate_invoice_totals(
    line_items: Iterable[LineItem],
    *,
    tax_rate: Any = None,
    discount_amount: Any = None,
) -> InvoiceTotals:
    """
    subtotal = sum(qty * unitPrice); tax = subtotal * rate / 100;
    total = subtotal + tax - discount. An unset tax rate means no tax.
    """
    subtotal = sum((li.line_total for li in line_items), Decimal("0")).quantize(CENT)
    rate = Decimal(str(tax_rate)) if tax_rate not in (None, "") else Decimal("0")
    tax = (subtotal * rate / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    discount = to_money(discount_amount, field="discountAmount") if discount_amount not in (None, "") else Decimal("0.00")
    return InvoiceTotals(
        subtotal=subtotal,
        tax_amount=tax,
        discount_amount=discount,
        total=(subtotal + tax - discount).quantize(CENT),
    )


def determine_invoice_status(total: Any, amount_paid: Any) -> str:
    t = to_money(total)
    paid = to_money(amount_paid)
    if paid <= 0:
        return INVOICE_PENDING
    if paid >= t:
        return INVOICE_PAID_FULL
    return INVOICE_PARTIALLY_PAID


def format_invoice_number(year: int, seq: int) -> str:
    return f"INV-{int(year):04d}-{int(seq):03d}"


def format_receipt_number(year: int, month: int, seq: int) -> str:
    return f"RCP-{int(year):04d}{int(month):02d}-{int(seq):04d}"


def format_currency(amount: Any, code: str = "PHP") -> str:
    """`PHP 1,234.56`: ISO code prefix, thousands separators, two decimals."""
    d = to_money(amount)
    sign = "-" if d < 0 else ""
    return f"{sign}{code} {abs(d):,.2f}"
