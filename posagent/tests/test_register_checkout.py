from decimal import Decimal

import pytest

from posagent.app.cart import CustomerSnapshot, Product
from posagent.app.held_sales import (
    HeldSale,
    HeldSaleItem,
    HeldSaleNotResumable,
    cart_from_held_sale,
    held_sale_from_server,
    held_snapshot,
)
from posagent.app.offline_queue import OfflineQueueStore, Payment
from posagent.app.register import CheckoutError, RegisterSession
from posagent.app.storage import MemoryBlobStorage


class _Crash(Exception):
    pass


class _CrashingStorage(MemoryBlobStorage):
    """Lets `allowed` more saves through, then dies like a killed process."""

    def __init__(self, raw=None):
        super().__init__(raw)
        self.allowed = None

    def save(self, state):
        if self.allowed is not None:
            if self.allowed <= 0:
                raise _Crash("power cut")
            self.allowed -= 1
        super().save(state)


def _coffee():
    return Product(id="p1", name="Coffee", price=Decimal("10.00"), tax_rate=Decimal("8"))


def _session(queue_storage=None, cart_storage=None, store_id="store-1"):
    queue = OfflineQueueStore(queue_storage or MemoryBlobStorage())
    return RegisterSession(queue, cart_storage or MemoryBlobStorage(), store_id=store_id, cashier_id="cashier-1")


def _ring_up_example(session):
    session.add_line(_coffee(), 3)
    session.set_order_discount(10)


def test_offline_checkout_example():
    cart_storage = MemoryBlobStorage()
    session = _session(cart_storage=cart_storage)
    _ring_up_example(session)

    entry = session.checkout([Payment(method="cash", amount=Decimal("29.40"))])

    assert entry.status == "pending"
    assert entry.type == "sale"
    assert entry.payload.subtotal == Decimal("30.00")
    assert entry.payload.total_tax == Decimal("2.40")
    assert entry.payload.total_discount == Decimal("3.00")
    assert entry.payload.grand_total == Decimal("29.40")
    assert entry.payload.cashier_id == "cashier-1"
    assert session.cart.is_empty()
    assert session.queue.list_pending() == [entry]
    saved = cart_storage.load()
    assert saved["cart"]["lines"] == []
    assert saved["checkout_entry_id"] is None


def test_checkout_rejects_short_payment_and_keeps_cart():
    session = _session()
    _ring_up_example(session)
    with pytest.raises(CheckoutError):
        session.checkout([Payment(method="cash", amount=Decimal("29.39"))])
    assert not session.cart.is_empty()
    assert session.queue.all_entries() == []


def test_checkout_split_payment_and_change():
    session = _session()
    _ring_up_example(session)
    entry = session.checkout(
        [Payment(method="card", amount=Decimal("20"), reference="auth-1"), Payment(method="cash", amount=Decimal("10"))]
    )
    assert entry.payload.amount_paid == Decimal("30")
    assert entry.payload.change == Decimal("0.60")
    assert [p.method for p in entry.payload.payments] == ["card", "cash"]


def test_checkout_accepts_the_displayed_cent_amount():
    session = _session()
    session.add_line(Product(id="p2", name="Sandwich", price=Decimal("9.99"), tax_rate=Decimal("8.25")), 1)
    with pytest.raises(CheckoutError):
        session.checkout([Payment(method="cash", amount=Decimal("10.80"))])

    entry = session.checkout([Payment(method="cash", amount=Decimal("10.81"))])
    assert entry.payload.grand_total == Decimal("10.81")
    assert entry.payload.total_tax == Decimal("0.82")
    assert entry.payload.change == Decimal("0")

    session.add_line(Product(id="p2", name="Sandwich", price=Decimal("9.99"), tax_rate=Decimal("8.25")), 1)
    entry = session.checkout([Payment(method="cash", amount=Decimal("10.82"))])
    assert entry.payload.change == Decimal("0.01")


def test_checkout_requires_items_and_store():
    session = _session()
    with pytest.raises(CheckoutError):
        session.checkout([Payment(method="cash", amount=Decimal("1"))])

    no_store = _session(store_id="")
    no_store.add_line(_coffee(), 1)
    with pytest.raises(CheckoutError):
        no_store.checkout([Payment(method="cash", amount=Decimal("100"))])
    entry = no_store.checkout([Payment(method="cash", amount=Decimal("100"))], store_id="store-2")
    assert entry.payload.store_id == "store-2"


def test_cart_survives_restart():
    cart_storage = MemoryBlobStorage()
    session = _session(cart_storage=cart_storage)
    _ring_up_example(session)
    session.set_customer(CustomerSnapshot(id="c1", name="Lina"))
    session.set_notes("table 4")

    restored = _session(cart_storage=cart_storage)
    assert restored.totals() == session.totals()
    assert restored.cart.customer.name == "Lina"
    assert restored.cart.notes == "table 4"


def test_crash_after_enqueue_before_clear_does_not_duplicate_sale():
    queue_storage = MemoryBlobStorage()
    cart_storage = _CrashingStorage()
    session = _session(queue_storage, cart_storage)
    _ring_up_example(session)

    # Allow the mid-checkout marker, then die on the post-clear save.
    cart_storage.allowed = 1
    with pytest.raises(_Crash):
        session.checkout([Payment(method="cash", amount=Decimal("29.40"))])

    cart_storage.allowed = None
    restarted = _session(queue_storage, cart_storage)
    assert len(restarted.queue.all_entries()) == 1
    assert restarted.cart.is_empty()


def test_crash_before_enqueue_keeps_cart_for_retry():
    queue_storage = _CrashingStorage()
    cart_storage = MemoryBlobStorage()
    session = _session(queue_storage, cart_storage)
    _ring_up_example(session)

    queue_storage.allowed = 0
    with pytest.raises(_Crash):
        session.checkout([Payment(method="cash", amount=Decimal("29.40"))])

    queue_storage.allowed = None
    restarted = _session(queue_storage, cart_storage)
    assert restarted.queue.all_entries() == []
    assert restarted.totals().grand_total == Decimal("29.40")


def test_corrupt_cart_blob_starts_empty():
    session = _session(cart_storage=MemoryBlobStorage("{broken"))
    assert session.cart.is_empty()
    session.add_line(_coffee(), 1)
    assert session.totals().subtotal == Decimal("10.00")


def _held_sale():
    return HeldSale(
        id="held-7",
        sale_number="S-0007",
        version="2026-03-01T08:00:00Z",
        items=[
            HeldSaleItem(product_id="p1", product_name="Coffee", quantity=2, unit_price=Decimal("50"), discount=Decimal("10"), tax_amount=Decimal("9")),
            HeldSaleItem(product_id="p2", product_name="Water", quantity=1, unit_price=Decimal("10"), tax_rate=Decimal("0")),
        ],
        customer=CustomerSnapshot(id="c9", name="Karim"),
        notes="parked at lunch",
        total_discount=Decimal("20"),
        grand_total=Decimal("99"),
    )


def test_cart_from_held_sale_derives_rates_and_order_discount():
    cart = cart_from_held_sale(_held_sale())
    coffee, water = cart.lines
    assert coffee.discount_amount == Decimal("10")
    assert coffee.tax_rate == Decimal("10")
    assert coffee.tax_amount == Decimal("9")
    assert water.tax_amount == Decimal("0")
    # 20 total discount - 10 already on the line = 10 over a net 100.
    assert cart.order_discount_percent == Decimal("10.00")
    assert cart.held_sale_id == "held-7"
    assert cart.customer.id == "c9"

    snap = held_snapshot(_held_sale())
    assert (snap.id, snap.version, snap.item_count) == ("held-7", "2026-03-01T08:00:00Z", 2)


def test_resume_held_then_checkout_enqueues_resume_entry():
    session = _session()
    session.resume_held(_held_sale())
    total = session.totals().grand_total

    entry = session.checkout([Payment(method="cash", amount=total)])

    assert entry.type == "resume_held"
    assert entry.payload.held_sale_id == "held-7"
    assert entry.payload.held_snapshot.sale_number == "S-0007"
    assert entry.payload.held_snapshot.version == "2026-03-01T08:00:00Z"
    assert entry.customer_snapshot.name == "Karim"
    assert session.cart.held_sale_id is None


def test_resume_held_requires_empty_cart():
    session = _session()
    session.add_line(_coffee(), 1)
    with pytest.raises(CheckoutError):
        session.resume_held(_held_sale())
    session.clear()
    session.resume_held(_held_sale())
    assert session.cart.held_sale_id == "held-7"


def test_resumed_held_sale_survives_restart():
    cart_storage = MemoryBlobStorage()
    session = _session(cart_storage=cart_storage)
    session.resume_held(_held_sale())

    restored = _session(cart_storage=cart_storage)
    assert restored.cart.held_sale_id == "held-7"
    entry = restored.checkout([Payment(method="cash", amount=restored.totals().grand_total)])
    assert entry.payload.held_snapshot.id == "held-7"


def test_held_sale_from_server_document():
    held = held_sale_from_server(
        {
            "_id": "66a1",
            "saleNumber": "S-0101",
            "status": "held",
            "customer": {"_id": "c5", "name": "Nour", "email": "nour@example.com"},
            "items": [
                {"productId": "p1", "productName": "Coffee", "quantity": 2, "unitPrice": 4.5, "discount": 0, "taxAmount": 0.72, "total": 9.72}
            ],
            "notes": "",
            "totalDiscount": 0,
            "grandTotal": 9.72,
            "updatedAt": "2026-03-01T08:00:00.000Z",
        }
    )
    assert (held.id, held.sale_number, held.version) == ("66a1", "S-0101", "2026-03-01T08:00:00.000Z")
    assert held.customer.email == "nour@example.com"
    cart = cart_from_held_sale(held)
    assert cart.lines[0].tax_rate == Decimal("8")
    assert cart.get_totals().grand_total == Decimal("9.72")


def test_completed_sale_cannot_be_resumed():
    with pytest.raises(HeldSaleNotResumable):
        held_sale_from_server({"_id": "66a2", "saleNumber": "S-0102", "status": "completed", "items": []})
