from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .cart import HUNDRED, ZERO, Cart, CustomerSnapshot, Product, price_line
from .validation import EntityRef, Money, Percent


class HeldSaleItem(BaseModel):
    product_id: EntityRef
    product_name: str = ""
    quantity: Decimal = Field(gt=0)
    unit_price: Money
    discount: Percent = ZERO
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    tax_amount: Optional[Decimal] = None


class HeldSale(BaseModel):
    """A parked sale as returned by the server's held-transactions endpoint."""

    id: EntityRef
    sale_number: str = ""
    items: List[HeldSaleItem] = Field(default_factory=list)
    customer: Optional[CustomerSnapshot] = None
    notes: str = ""
    total_discount: Money = ZERO
    grand_total: Optional[Decimal] = None
    # Server-side record version (e.g. its updated_at); lets the server reject stale finalizations.
    version: Optional[str] = None


class HeldSaleSnapshot(BaseModel):
    """What the register knew about the held record when it was resumed; shown on conflicts."""

    model_config = ConfigDict(frozen=True)

    id: str
    sale_number: str = ""
    version: Optional[str] = None
    grand_total: Optional[Decimal] = None
    item_count: int = 0


def _item_tax_rate(item: HeldSaleItem) -> Decimal:
    if item.tax_rate is not None:
        return item.tax_rate
    if not item.tax_amount:
        return ZERO
    base = item.unit_price * item.quantity * (HUNDRED - item.discount) / HUNDRED
    if base <= 0:
        return ZERO
    return item.tax_amount / base * HUNDRED


def cart_from_held_sale(held: HeldSale) -> Cart:
    lines = []
    for item in held.items:
        product = Product(id=item.product_id, name=item.product_name or item.product_id, price=item.unit_price)
        lines.append(price_line(product, item.quantity, item.unit_price, item.discount, _item_tax_rate(item)))

    # Line discounts are already inside each line; only the remainder is an order discount.
    subtotal = sum((ln.subtotal - ln.discount_amount for ln in lines), ZERO)
    pct = ZERO
    if subtotal > 0 and held.total_discount > 0:
        line_discounts = sum((ln.discount_amount for ln in lines), ZERO)
        order_part = max(ZERO, held.total_discount - line_discounts)
        pct = (order_part / subtotal * HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        pct = min(pct, HUNDRED)

    return Cart(
        lines=lines,
        customer=held.customer,
        order_discount_percent=pct,
        notes=held.notes,
        held_sale_id=held.id,
    )


def held_snapshot(held: HeldSale) -> HeldSaleSnapshot:
    return HeldSaleSnapshot(
        id=held.id,
        sale_number=held.sale_number,
        version=held.version,
        grand_total=held.grand_total,
        item_count=len(held.items),
    )


class HeldSaleNotResumable(ValueError):
    pass


def _customer_from_server(raw) -> Optional[CustomerSnapshot]:
    if not isinstance(raw, dict):
        return None
    cid = raw.get("_id") or raw.get("id")
    if not cid:
        return None
    return CustomerSnapshot(id=str(cid), name=raw.get("name") or "", phone=raw.get("phone"), email=raw.get("email"))


def held_sale_from_server(data: dict) -> HeldSale:
    """Map the server's sale document (camelCase, `_id`) onto a HeldSale."""
    status = str(data.get("status") or "held").lower()
    if status != "held":
        raise HeldSaleNotResumable(f"sale {data.get('saleNumber') or data.get('_id')} is {status}, not held")
    items = [
        HeldSaleItem(
            product_id=str(it.get("productId") or ""),
            product_name=it.get("productName") or "",
            quantity=Decimal(str(it.get("quantity") or 0)),
            unit_price=Decimal(str(it.get("unitPrice") or 0)),
            discount=Decimal(str(it.get("discount") or 0)),
            tax_amount=Decimal(str(it["taxAmount"])) if it.get("taxAmount") is not None else None,
        )
        for it in data.get("items") or []
    ]
    grand_total = data.get("grandTotal")
    return HeldSale(
        id=str(data.get("_id") or data.get("id") or ""),
        sale_number=str(data.get("saleNumber") or ""),
        items=items,
        customer=_customer_from_server(data.get("customer")),
        notes=data.get("notes") or "",
        total_discount=Decimal(str(data.get("totalDiscount") or 0)),
        grand_total=Decimal(str(grand_total)) if grand_total is not None else None,
        version=data.get("updatedAt") or data.get("version"),
    )
