from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List, Optional

from pydantic import BaseModel, Field

from .validation import EntityRef, Money, Percent, TaxRate

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class CartValidationError(ValueError):
    pass


class Product(BaseModel):
    id: EntityRef
    name: str
    price: Money
    tax_rate: TaxRate = ZERO
    sku: Optional[str] = None
    barcode: Optional[str] = None


class CustomerSnapshot(BaseModel):
    id: EntityRef
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None


class CartLine(BaseModel):
    product: Product
    quantity: Decimal = Field(gt=0)
    unit_price: Money
    line_discount_percent: Percent = ZERO
    tax_rate: TaxRate = ZERO
    note: Optional[str] = None
    subtotal: Decimal = ZERO
    discount_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total: Decimal = ZERO


class CartTotals(BaseModel):
    subtotal: Decimal
    line_discount_amount: Decimal
    order_discount_amount: Decimal
    total_discount: Decimal
    tax: Decimal
    grand_total: Decimal
    # grand_total rounded to the cent; what the cashier collects.
    amount_due: Decimal
    item_count: Decimal


class CartSnapshot(BaseModel):
    lines: List[CartLine] = Field(default_factory=list)
    customer: Optional[CustomerSnapshot] = None
    order_discount_percent: Percent = ZERO
    notes: str = ""
    held_sale_id: Optional[str] = None


def _dec(value, field_name: str) -> Decimal:
    try:
        out = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise CartValidationError(f"invalid {field_name}: {value!r}")
    if not out.is_finite():
        raise CartValidationError(f"invalid {field_name}: {value!r}")
    return out


def _percent(value, field_name: str) -> Decimal:
    pct = _dec(value, field_name)
    if pct < 0 or pct > HUNDRED:
        raise CartValidationError(f"{field_name} must be between 0 and 100")
    return pct


def price_line(
    product: Product,
    quantity: Decimal,
    unit_price: Decimal,
    line_discount_percent: Decimal = ZERO,
    tax_rate: Decimal = ZERO,
    note: Optional[str] = None,
) -> CartLine:
    """
    Build a line with its computed amounts.

    Tax is charged on the subtotal after the line discount:
    total == subtotal - discount_amount + tax_amount.
    """
    subtotal = unit_price * quantity
    discount_amount = subtotal * line_discount_percent / HUNDRED
    tax_amount = (subtotal - discount_amount) * tax_rate / HUNDRED
    return CartLine(
        product=product,
        quantity=quantity,
        unit_price=unit_price,
        line_discount_percent=line_discount_percent,
        tax_rate=tax_rate,
        note=note,
        subtotal=subtotal,
        discount_amount=discount_amount,
        tax_amount=tax_amount,
        total=subtotal - discount_amount + tax_amount,
    )


class Cart:
    """In-progress sale for one register session. Pure derivation, no I/O."""

    def __init__(
        self,
        lines: Optional[List[CartLine]] = None,
        customer: Optional[CustomerSnapshot] = None,
        order_discount_percent: Decimal = ZERO,
        notes: str = "",
        held_sale_id: Optional[str] = None,
    ):
        self.lines: List[CartLine] = list(lines or [])
        self.customer = customer
        self.order_discount_percent = _percent(order_discount_percent, "order discount")
        self.notes = notes or ""
        self.held_sale_id = held_sale_id

    @classmethod
    def from_snapshot(cls, snap: CartSnapshot) -> "Cart":
        # Recompute rather than trust persisted amounts.
        lines = [
            price_line(ln.product, ln.quantity, ln.unit_price, ln.line_discount_percent, ln.tax_rate, ln.note)
            for ln in snap.lines
        ]
        return cls(
            lines=lines,
            customer=snap.customer,
            order_discount_percent=snap.order_discount_percent,
            notes=snap.notes,
            held_sale_id=snap.held_sale_id,
        )

    def snapshot(self) -> CartSnapshot:
        return CartSnapshot(
            lines=[ln.model_copy() for ln in self.lines],
            customer=self.customer,
            order_discount_percent=self.order_discount_percent,
            notes=self.notes,
            held_sale_id=self.held_sale_id,
        )

    def is_empty(self) -> bool:
        return not self.lines

    def _index(self, product_id: str) -> Optional[int]:
        for i, ln in enumerate(self.lines):
            if ln.product.id == product_id:
                return i
        return None

    def _replace(self, i: int, **changes) -> None:
        ln = self.lines[i]
        fields = {
            "quantity": ln.quantity,
            "unit_price": ln.unit_price,
            "line_discount_percent": ln.line_discount_percent,
            "tax_rate": ln.tax_rate,
            "note": ln.note,
        }
        fields.update(changes)
        self.lines[i] = price_line(ln.product, **fields)

    def add_line(self, product: Product, quantity=1) -> CartLine:
        qty = _dec(quantity, "quantity")
        if qty <= 0:
            raise CartValidationError("quantity must be > 0")
        i = self._index(product.id)
        if i is not None:
            self._replace(i, quantity=self.lines[i].quantity + qty)
            return self.lines[i]
        line = price_line(product, qty, product.price, ZERO, product.tax_rate)
        self.lines.append(line)
        return line

    def remove_line(self, product_id: str) -> None:
        self.lines = [ln for ln in self.lines if ln.product.id != product_id]

    def set_quantity(self, product_id: str, quantity) -> None:
        qty = _dec(quantity, "quantity")
        if qty <= 0:
            self.remove_line(product_id)
            return
        i = self._index(product_id)
        if i is None:
            return
        self._replace(i, quantity=qty)

    def set_line_price(self, product_id: str, price) -> None:
        unit_price = _dec(price, "price")
        if unit_price < 0:
            raise CartValidationError("price must be >= 0")
        i = self._index(product_id)
        if i is None:
            return
        self._replace(i, unit_price=unit_price)

    def set_line_discount(self, product_id: str, percent) -> None:
        pct = _percent(percent, "line discount")
        i = self._index(product_id)
        if i is None:
            return
        self._replace(i, line_discount_percent=pct)

    def set_line_note(self, product_id: str, note: Optional[str]) -> None:
        i = self._index(product_id)
        if i is None:
            return
        self.lines[i] = self.lines[i].model_copy(update={"note": (note or "").strip() or None})

    def set_order_discount(self, percent) -> None:
        self.order_discount_percent = _percent(percent, "order discount")

    def set_customer(self, customer: Optional[CustomerSnapshot]) -> None:
        self.customer = customer

    def set_notes(self, notes: str) -> None:
        self.notes = notes or ""

    def get_totals(self) -> CartTotals:
        """
        Cart totals at full precision, plus `amount_due` rounded to the cent.

        `total_discount` is line discounts plus the order discount, and
        `grand_total == subtotal - total_discount + tax` always holds. The order
        discount applies to the subtotal net of line discounts, so it equals
        `subtotal * order_discount_percent / 100` only when no line carries a
        discount; check the identity against `total_discount`, not the order
        discount alone.
        """
        subtotal = sum((ln.subtotal for ln in self.lines), ZERO)
        line_discount = sum((ln.discount_amount for ln in self.lines), ZERO)
        tax = sum((ln.tax_amount for ln in self.lines), ZERO)
        # Order discount is taken pre-tax from the grand total; it does not shrink the tax base.
        order_discount = (subtotal - line_discount) * self.order_discount_percent / HUNDRED
        total_discount = line_discount + order_discount
        grand_total = subtotal - total_discount + tax
        return CartTotals(
            subtotal=subtotal,
            line_discount_amount=line_discount,
            order_discount_amount=order_discount,
            total_discount=total_discount,
            tax=tax,
            grand_total=grand_total,
            amount_due=round_money(grand_total),
            item_count=sum((ln.quantity for ln in self.lines), ZERO),
        )

    def clear(self) -> None:
        self.lines = []
        self.customer = None
        self.order_discount_percent = ZERO
        self.notes = ""
        self.held_sale_id = None
