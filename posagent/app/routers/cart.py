from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from decimal import Decimal
from ..cart import CustomerSnapshot, Product
from ..deps import Agent, get_agent
from ..held_sales import HeldSale, HeldSaleNotResumable, held_sale_from_server
from ..offline_queue import Payment
from ..validation import EntityRef
from ...workers.sale_client import SyncError

router = APIRouter(prefix="/cart", tags=["cart"])


class LineAddIn(BaseModel):
    product: Product
    quantity: Decimal = Decimal("1")


class LineUpdateIn(BaseModel):
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    line_discount_percent: Optional[Decimal] = None
    note: Optional[str] = None


class CustomerIn(BaseModel):
    customer: Optional[CustomerSnapshot] = None


class DiscountIn(BaseModel):
    percent: Decimal


class NotesIn(BaseModel):
    notes: str = ""


class CheckoutIn(BaseModel):
    payments: List[Payment] = Field(min_length=1)
    store_id: Optional[EntityRef] = None
    cashier_id: Optional[str] = None


def _cart_view(agent: Agent) -> dict:
    snap, totals = agent.register.view()
    return {"cart": snap, "totals": totals}


@router.get("")
def get_cart(agent: Agent = Depends(get_agent)):
    return _cart_view(agent)


@router.post("/lines")
def add_line(data: LineAddIn, agent: Agent = Depends(get_agent)):
    agent.register.add_line(data.product, data.quantity)
    return _cart_view(agent)


@router.patch("/lines/{product_id}")
def update_line(product_id: str, data: LineUpdateIn, agent: Agent = Depends(get_agent)):
    register = agent.register
    # Price and discount before quantity: quantity <= 0 removes the line.
    if data.unit_price is not None:
        register.set_line_price(product_id, data.unit_price)
    if data.line_discount_percent is not None:
        register.set_line_discount(product_id, data.line_discount_percent)
    if data.note is not None:
        register.set_line_note(product_id, data.note)
    if data.quantity is not None:
        register.set_quantity(product_id, data.quantity)
    return _cart_view(agent)


@router.delete("/lines/{product_id}")
def remove_line(product_id: str, agent: Agent = Depends(get_agent)):
    agent.register.remove_line(product_id)
    return _cart_view(agent)


@router.put("/customer")
def set_customer(data: CustomerIn, agent: Agent = Depends(get_agent)):
    agent.register.set_customer(data.customer)
    return _cart_view(agent)


@router.put("/discount")
def set_order_discount(data: DiscountIn, agent: Agent = Depends(get_agent)):
    agent.register.set_order_discount(data.percent)
    return _cart_view(agent)


@router.put("/notes")
def set_notes(data: NotesIn, agent: Agent = Depends(get_agent)):
    agent.register.set_notes(data.notes)
    return _cart_view(agent)


@router.post("/clear")
def clear_cart(agent: Agent = Depends(get_agent)):
    agent.register.clear()
    return _cart_view(agent)


@router.post("/resume-held")
def resume_held(data: HeldSale, agent: Agent = Depends(get_agent)):
    agent.register.resume_held(data)
    return _cart_view(agent)


@router.post("/resume-held/{sale_id}")
def resume_held_by_id(sale_id: str, agent: Agent = Depends(get_agent)):
    if agent.client is None:
        raise HTTPException(status_code=503, detail="server client not configured")
    try:
        raw = agent.client.fetch_sale(sale_id)
    except SyncError as ex:
        # Held sales live on the server; there is nothing to resume while offline.
        raise HTTPException(status_code=502, detail=f"could not fetch held sale: {ex}")
    try:
        held = held_sale_from_server(raw)
    except HeldSaleNotResumable as ex:
        raise HTTPException(status_code=409, detail=str(ex))
    except (ValueError, ArithmeticError) as ex:
        raise HTTPException(status_code=502, detail=f"unexpected held sale payload: {ex}")
    agent.register.resume_held(held)
    return _cart_view(agent)


@router.post("/checkout")
def checkout(data: CheckoutIn, agent: Agent = Depends(get_agent)):
    entry = agent.register.checkout(data.payments, store_id=data.store_id, cashier_id=data.cashier_id)
    # Online or not, the sale is captured; the sync worker delivers it.
    agent.engine.request_sync()
    return {
        "entry": entry,
        "amount_paid": entry.payload.amount_paid,
        "change": entry.payload.change,
        "online": agent.engine.online,
    }
