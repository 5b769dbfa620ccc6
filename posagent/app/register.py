"""
Active register session: the cart being rung up and its checkout into the offline queue.

Checkout order matters. The queue entry is written (and persisted) first; the
cart is cleared only afterwards. The cart blob records the entry id it is about
to check out, so a crash between the two steps is detected on restart and the
already-captured sale is not rung up a second time.
"""
import threading
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from pydantic import ValidationError

from .cart import Cart, CartSnapshot, CartTotals, CustomerSnapshot, Product
from .held_sales import HeldSale, HeldSaleSnapshot, cart_from_held_sale, held_snapshot
from .logs import json_log
from .offline_queue import CheckoutSnapshot, OfflineQueueStore, Payment, QueuedSale
from .storage import BlobStorage, StorageCorruptedError

CART_STORAGE_KEY = "pos-cart"
CART_SCHEMA_VERSION = 1


class CheckoutError(ValueError):
    pass


class RegisterSession:
    def __init__(
        self,
        queue: OfflineQueueStore,
        storage: BlobStorage,
        store_id: str = "",
        cashier_id: Optional[str] = None,
    ):
        self.queue = queue
        self.store_id = store_id
        self.cashier_id = cashier_id
        self._storage = storage
        self._lock = threading.RLock()
        self._held: Optional[HeldSaleSnapshot] = None
        self.cart = Cart()
        self._restore()

    def _restore(self) -> None:
        try:
            state = self._storage.load()
        except StorageCorruptedError as ex:
            # The cart is a scratchpad; captured sales live in the queue.
            json_log("error", "register.cart_restore_failed", error=str(ex))
            return
        if not state:
            return
        checkout_id = state.get("checkout_entry_id")
        if checkout_id and self.queue.contains(checkout_id):
            json_log("warning", "register.checkout_completed_before_crash", entry_id=checkout_id)
            self._persist()
            return
        try:
            self.cart = Cart.from_snapshot(CartSnapshot.model_validate(state.get("cart") or {}))
            raw_held = state.get("held_snapshot")
            self._held = HeldSaleSnapshot.model_validate(raw_held) if raw_held else None
        except (ValidationError, ValueError) as ex:
            json_log("error", "register.cart_restore_failed", error=str(ex))
            self.cart = Cart()
            self._held = None

    def _persist(self, checkout_entry_id: Optional[str] = None) -> None:
        self._storage.save(
            {
                "version": CART_SCHEMA_VERSION,
                "cart": self.cart.snapshot().model_dump(mode="json"),
                "held_snapshot": self._held.model_dump(mode="json") if self._held else None,
                "checkout_entry_id": checkout_entry_id,
            }
        )

    def _mutate(self, fn: Callable[[Cart], object]):
        with self._lock:
            out = fn(self.cart)
            self._persist()
            return out

    def add_line(self, product: Product, quantity=1):
        return self._mutate(lambda c: c.add_line(product, quantity))

    def remove_line(self, product_id: str) -> None:
        self._mutate(lambda c: c.remove_line(product_id))

    def set_quantity(self, product_id: str, quantity) -> None:
        self._mutate(lambda c: c.set_quantity(product_id, quantity))

    def set_line_price(self, product_id: str, price) -> None:
        self._mutate(lambda c: c.set_line_price(product_id, price))

    def set_line_discount(self, product_id: str, percent) -> None:
        self._mutate(lambda c: c.set_line_discount(product_id, percent))

    def set_line_note(self, product_id: str, note: Optional[str]) -> None:
        self._mutate(lambda c: c.set_line_note(product_id, note))

    def set_order_discount(self, percent) -> None:
        self._mutate(lambda c: c.set_order_discount(percent))

    def set_customer(self, customer: Optional[CustomerSnapshot]) -> None:
        self._mutate(lambda c: c.set_customer(customer))

    def set_notes(self, notes: str) -> None:
        self._mutate(lambda c: c.set_notes(notes))

    def clear(self) -> None:
        with self._lock:
            self.cart.clear()
            self._held = None
            self._persist()

    def totals(self) -> CartTotals:
        with self._lock:
            return self.cart.get_totals()

    def view(self) -> Tuple[CartSnapshot, CartTotals]:
        with self._lock:
            return self.cart.snapshot(), self.cart.get_totals()

    def resume_held(self, held: HeldSale) -> Cart:
        with self._lock:
            if not self.cart.is_empty():
                raise CheckoutError("finish or clear the current cart before resuming a held sale")
            self.cart = cart_from_held_sale(held)
            self._held = held_snapshot(held)
            self._persist()
        json_log("info", "register.held_sale_resumed", held_sale_id=held.id, sale_number=held.sale_number)
        return self.cart

    def checkout(
        self,
        payments: List[Payment],
        store_id: Optional[str] = None,
        cashier_id: Optional[str] = None,
    ) -> QueuedSale:
        with self._lock:
            if self.cart.is_empty():
                raise CheckoutError("empty cart")
            store = (store_id or self.store_id or "").strip()
            if not store:
                raise CheckoutError("missing store id")
            totals = self.cart.get_totals()
            paid = sum((p.amount for p in payments), Decimal("0"))
            if paid < totals.amount_due:
                raise CheckoutError(f"insufficient payment: required {totals.amount_due}, received {paid}")

            snapshot = CheckoutSnapshot(
                cart=self.cart.snapshot(),
                payments=list(payments),
                store_id=store,
                cashier_id=cashier_id or self.cashier_id,
            )
            entry_id = self.queue.reserve_id()
            # Mark the cart as mid-checkout before the entry exists, so a restart can tell.
            self._persist(checkout_entry_id=entry_id)
            if self.cart.held_sale_id:
                entry = self.queue.enqueue_held_sale(snapshot, self.cart.held_sale_id, self._held, entry_id=entry_id)
            else:
                entry = self.queue.enqueue_sale(snapshot, entry_id=entry_id)

            self.cart.clear()
            self._held = None
            self._persist()
        return entry
