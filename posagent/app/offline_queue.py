"""
Durable queue of sales captured at the register and not yet confirmed by the server.

Every checkout appends an entry here before the cart is cleared, online or
offline. The sync worker drains entries oldest-first; the server de-duplicates
by the entry id, so an entry may safely be delivered more than once.

Entry lifecycle:

    pending  -> syncing
    syncing  -> (removed) | failed | conflict | pending (restart recovery)
    failed   -> pending | (dismissed)
    conflict -> pending (overwrite/skip) | conflict (manual) | (dismissed)

The whole queue is persisted as one versioned blob. Older blob versions are
upgraded through MIGRATIONS; a blob that cannot be read is a startup failure,
never an empty queue.
"""
from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cart import Cart, CartSnapshot, CustomerSnapshot, round_money
from .held_sales import HeldSaleSnapshot
from .logs import json_log
from .storage import BlobStorage, StorageCorruptedError
from .validation import Money, PaymentMethod

SaleStatus = Literal["pending", "syncing", "failed", "conflict"]
SaleType = Literal["sale", "resume_held"]
ConflictResolution = Literal["overwrite", "skip", "manual"]

QUEUE_STORAGE_KEY = "pos-offline-queue"
SCHEMA_VERSION = 2

ALLOWED_TRANSITIONS: dict[str, frozenset] = {
    "pending": frozenset({"syncing"}),
    # syncing -> pending is only issued by restart recovery.
    "syncing": frozenset({"failed", "conflict", "pending"}),
    "failed": frozenset({"pending"}),
    "conflict": frozenset({"pending", "conflict"}),
}
# A pending entry has never been confirmed by the server; removing it would drop a sale.
REMOVABLE_FROM = frozenset({"syncing", "failed", "conflict"})
DISMISSABLE_FROM = frozenset({"failed", "conflict"})


class QueueCorruptedError(RuntimeError):
    pass


class IllegalTransitionError(RuntimeError):
    pass


class QueueEntryNotFound(KeyError):
    def __str__(self) -> str:
        return f"queue entry not found: {self.args[0] if self.args else ''}"


class Payment(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: PaymentMethod
    amount: Money
    reference: Optional[str] = None


class SaleLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    product_name: str
    quantity: Decimal
    unit_price: Decimal
    line_discount_percent: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    subtotal: Decimal
    discount_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total: Decimal
    note: Optional[str] = None


class SalePayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    store_id: str
    cashier_id: Optional[str] = None
    customer_id: Optional[str] = None
    lines: Tuple[SaleLine, ...]
    payments: Tuple[Payment, ...]
    notes: str = ""
    order_discount_percent: Decimal = Decimal("0")
    subtotal: Decimal
    total_tax: Decimal
    total_discount: Decimal
    grand_total: Decimal
    amount_paid: Decimal
    change: Decimal = Decimal("0")
    held_sale_id: Optional[str] = None
    held_snapshot: Optional[HeldSaleSnapshot] = None


class CheckoutSnapshot(BaseModel):
    """Everything captured at the moment the cashier completes payment."""

    cart: CartSnapshot
    payments: List[Payment] = Field(default_factory=list)
    store_id: str
    cashier_id: Optional[str] = None


class QueuedSale(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: SaleType = "sale"
    status: SaleStatus = "pending"
    payload: SalePayload
    customer_snapshot: Optional[CustomerSnapshot] = None
    error_message: Optional[str] = None
    conflict_resolution: Optional[ConflictResolution] = None
    created_at: datetime
    updated_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_sale_payload(
    snapshot: CheckoutSnapshot,
    held_sale_id: Optional[str] = None,
    held_snapshot: Optional[HeldSaleSnapshot] = None,
) -> SalePayload:
    cart = Cart.from_snapshot(snapshot.cart)
    totals = cart.get_totals()
    lines = tuple(
        SaleLine(
            product_id=ln.product.id,
            product_name=ln.product.name,
            quantity=ln.quantity,
            unit_price=ln.unit_price,
            line_discount_percent=ln.line_discount_percent,
            tax_rate=ln.tax_rate,
            subtotal=ln.subtotal,
            discount_amount=ln.discount_amount,
            tax_amount=ln.tax_amount,
            total=ln.total,
            note=ln.note,
        )
        for ln in cart.lines
    )
    amount_paid = sum((p.amount for p in snapshot.payments), Decimal("0"))
    return SalePayload(
        store_id=snapshot.store_id,
        cashier_id=snapshot.cashier_id,
        customer_id=cart.customer.id if cart.customer else None,
        lines=lines,
        payments=tuple(snapshot.payments),
        notes=cart.notes,
        order_discount_percent=cart.order_discount_percent,
        subtotal=round_money(totals.subtotal),
        total_tax=round_money(totals.tax),
        total_discount=round_money(totals.total_discount),
        grand_total=totals.amount_due,
        amount_paid=amount_paid,
        change=max(Decimal("0"), amount_paid - totals.amount_due),
        held_sale_id=held_sale_id,
        held_snapshot=held_snapshot,
    )


def _d(v, default="0") -> str:
    return str(v if v not in (None, "") else default)


def _migrate_v1_to_v2(state: dict) -> dict:
    # v1 was written by the browser register: camelCase keys, cart items with
    # nested products, no entry type and no conflict resolution.
    out = []
    for raw in state.get("queue") or []:
        p = raw.get("payload") or {}
        lines = []
        for item in p.get("cart") or []:
            product = item.get("product") or {}
            subtotal = Decimal(_d(item.get("subtotal")))
            discount_pct = Decimal(_d(item.get("discount")))
            lines.append(
                {
                    "product_id": str(product.get("_id") or product.get("id") or ""),
                    "product_name": product.get("name") or "",
                    "quantity": _d(item.get("quantity"), "1"),
                    "unit_price": _d(item.get("price")),
                    "line_discount_percent": str(discount_pct),
                    "tax_rate": _d(product.get("taxRate")),
                    "subtotal": str(subtotal),
                    "discount_amount": str(subtotal * discount_pct / Decimal("100")),
                    "tax_amount": _d(item.get("taxAmount")),
                    "total": _d(item.get("total")),
                    "note": item.get("note"),
                }
            )
        payments = [
            {"method": pm.get("method") or "cash", "amount": _d(pm.get("amount")), "reference": pm.get("reference")}
            for pm in (p.get("payments") or [])
        ]
        grand_total = Decimal(_d(p.get("grandTotal")))
        paid = sum((Decimal(pm["amount"]) for pm in payments), Decimal("0"))
        customer = raw.get("customerSnapshot")
        out.append(
            {
                "id": raw.get("id"),
                "type": "sale",
                "status": raw.get("status") or "pending",
                "payload": {
                    "store_id": p.get("storeId") or "",
                    "cashier_id": p.get("cashierId"),
                    "customer_id": p.get("customerId"),
                    "lines": lines,
                    "payments": payments,
                    "notes": p.get("notes") or "",
                    "order_discount_percent": _d(p.get("discount")),
                    "subtotal": _d(p.get("subtotal")),
                    "total_tax": _d(p.get("totalTax")),
                    "total_discount": _d(p.get("totalDiscount")),
                    "grand_total": str(grand_total),
                    "amount_paid": str(paid),
                    "change": str(max(Decimal("0"), paid - grand_total)),
                },
                "customer_snapshot": (
                    {"id": str(customer.get("_id") or customer.get("id")), "name": customer.get("name") or "",
                     "phone": customer.get("phone"), "email": customer.get("email")}
                    if isinstance(customer, dict) else None
                ),
                "error_message": raw.get("errorMessage"),
                "conflict_resolution": None,
                "created_at": raw.get("createdAt"),
                "updated_at": raw.get("updatedAt") or raw.get("createdAt"),
            }
        )
    return {"version": 2, "queue": out}


# MIGRATIONS[v] upgrades a version-v blob to version v+1. Every change to the
# QueuedSale shape must bump SCHEMA_VERSION and add an entry here.
MIGRATIONS: dict[int, Callable[[dict], dict]] = {
    1: _migrate_v1_to_v2,
}


def load_queue_state(state: Optional[dict]) -> List[QueuedSale]:
    if state is None:
        return []
    version = state.get("version")
    if not isinstance(version, int) or isinstance(version, bool):
        raise QueueCorruptedError("offline queue blob has no schema version")
    if version > SCHEMA_VERSION:
        raise QueueCorruptedError(f"offline queue schema v{version} is newer than supported v{SCHEMA_VERSION}")
    while version < SCHEMA_VERSION:
        migrate = MIGRATIONS.get(version)
        if migrate is None:
            raise QueueCorruptedError(f"no migration from offline queue schema v{version}")
        try:
            state = migrate(state)
        except (ArithmeticError, ValueError, TypeError, AttributeError) as ex:
            raise QueueCorruptedError(f"offline queue migration from v{version} failed: {ex}") from ex
        version = state.get("version")
    raw_queue = state.get("queue")
    if not isinstance(raw_queue, list):
        raise QueueCorruptedError("offline queue blob has no entry list")
    try:
        entries = [QueuedSale.model_validate(raw) for raw in raw_queue]
    except ValidationError as ex:
        raise QueueCorruptedError(f"offline queue entry invalid: {ex}") from ex
    ids = [e.id for e in entries]
    if len(set(ids)) != len(ids):
        raise QueueCorruptedError("offline queue contains duplicate entry ids")
    return entries


def dump_queue_state(entries: List[QueuedSale]) -> dict:
    return {"version": SCHEMA_VERSION, "queue": [e.model_dump(mode="json") for e in entries]}


def _by_age(entries) -> List[QueuedSale]:
    return sorted(entries, key=lambda e: e.created_at)


class OfflineQueueStore:
    """
    Single owner of the persisted queue.

    Mutations run under one lock and write storage before swapping the
    in-memory list, so a failed write leaves the queue unchanged and readers
    never see a partial update.
    """

    def __init__(
        self,
        storage: BlobStorage,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._storage = storage
        self._clock = clock or _utcnow
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._lock = threading.RLock()
        self._listeners: List[Callable[[str, QueuedSale], None]] = []
        try:
            self._entries = load_queue_state(storage.load())
        except StorageCorruptedError as ex:
            raise QueueCorruptedError(str(ex)) from ex
        self._issued_ids = {e.id for e in self._entries}
        self._reserved_ids: set = set()

    # -- notifications -------------------------------------------------

    def subscribe(self, callback: Callable[[str, QueuedSale], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def _notify(self, event: str, entries: List[QueuedSale]) -> None:
        for cb in list(self._listeners):
            for entry in entries:
                try:
                    cb(event, entry)
                except Exception as ex:
                    # A broken observer must not undo a committed change.
                    json_log("error", "queue.listener.error", queue_event=event, entry_id=entry.id, error=str(ex))

    def _commit(self, entries: List[QueuedSale]) -> None:
        self._storage.save(dump_queue_state(entries))
        self._entries = entries

    # -- writes --------------------------------------------------------

    def reserve_id(self) -> str:
        """Allocate an entry id ahead of enqueue; reserved ids are never handed out twice."""
        with self._lock:
            for _ in range(10):
                candidate = self._id_factory()
                if candidate not in self._issued_ids:
                    self._issued_ids.add(candidate)
                    self._reserved_ids.add(candidate)
                    return candidate
        raise RuntimeError("could not allocate a unique queue entry id")

    def _claim_id(self, entry_id: Optional[str]) -> str:
        if entry_id is None:
            entry_id = self.reserve_id()
        if entry_id not in self._reserved_ids:
            raise ValueError(f"entry id {entry_id} was not reserved or is already used")
        self._reserved_ids.discard(entry_id)
        return entry_id

    def _enqueue(
        self,
        sale_type: str,
        payload: SalePayload,
        customer: Optional[CustomerSnapshot],
        entry_id: Optional[str],
    ) -> QueuedSale:
        with self._lock:
            now = self._clock()
            entry = QueuedSale(
                id=self._claim_id(entry_id),
                type=sale_type,
                status="pending",
                payload=payload,
                customer_snapshot=customer,
                created_at=now,
                updated_at=now,
            )
            self._commit(self._entries + [entry])
        json_log(
            "info",
            "queue.enqueue",
            entry_id=entry.id,
            sale_type=sale_type,
            grand_total=payload.grand_total,
            held_sale_id=payload.held_sale_id,
        )
        self._notify("enqueued", [entry])
        return entry

    def enqueue_sale(self, snapshot: CheckoutSnapshot, entry_id: Optional[str] = None) -> QueuedSale:
        return self._enqueue("sale", build_sale_payload(snapshot), snapshot.cart.customer, entry_id)

    def enqueue_held_sale(
        self,
        snapshot: CheckoutSnapshot,
        held_sale_id: str,
        held_snapshot: Optional[HeldSaleSnapshot] = None,
        entry_id: Optional[str] = None,
    ) -> QueuedSale:
        payload = build_sale_payload(snapshot, held_sale_id=held_sale_id, held_snapshot=held_snapshot)
        return self._enqueue("resume_held", payload, snapshot.cart.customer, entry_id)

    def contains(self, entry_id: str) -> bool:
        with self._lock:
            return any(e.id == entry_id for e in self._entries)

    def _find(self, entry_id: str) -> Tuple[int, QueuedSale]:
        for i, e in enumerate(self._entries):
            if e.id == entry_id:
                return i, e
        raise QueueEntryNotFound(entry_id)

    def _transition(self, entry: QueuedSale, status: str, **changes) -> QueuedSale:
        if status not in ALLOWED_TRANSITIONS.get(entry.status, frozenset()):
            raise IllegalTransitionError(f"entry {entry.id}: {entry.status} -> {status} is not allowed")
        return entry.model_copy(update={"status": status, "updated_at": self._clock(), **changes})

    def mark_status(self, entry_id: str, status: SaleStatus, error_message: Optional[str] = None) -> QueuedSale:
        with self._lock:
            i, current = self._find(entry_id)
            changes = {"error_message": error_message}
            if status == "conflict" and current.status == "syncing":
                # A fresh conflict needs a fresh operator decision.
                changes["conflict_resolution"] = None
            updated = self._transition(current, status, **changes)
            entries = list(self._entries)
            entries[i] = updated
            self._commit(entries)
        json_log("info", "queue.transition", entry_id=entry_id, from_status=current.status, to_status=status, error=error_message)
        self._notify("status", [updated])
        return updated

    def resolve_conflict(self, entry_id: str, resolution: ConflictResolution) -> QueuedSale:
        if resolution not in ("overwrite", "skip", "manual"):
            raise ValueError(f"invalid conflict resolution: {resolution}")
        with self._lock:
            i, current = self._find(entry_id)
            if current.status != "conflict":
                raise IllegalTransitionError(f"entry {entry_id} is {current.status}, not in conflict")
            if resolution == "manual":
                updated = self._transition(current, "conflict", conflict_resolution="manual")
            else:
                # The resolution travels with the re-attempt so the server can apply it.
                updated = self._transition(current, "pending", conflict_resolution=resolution, error_message=None)
            entries = list(self._entries)
            entries[i] = updated
            self._commit(entries)
        json_log("info", "queue.conflict_resolved", entry_id=entry_id, resolution=resolution, to_status=updated.status)
        self._notify("status", [updated])
        return updated

    def _remove_locked(self, entry_id: str, allowed: frozenset, reason: str) -> QueuedSale:
        # Caller holds self._lock.
        i, current = self._find(entry_id)
        if current.status not in allowed:
            raise IllegalTransitionError(f"entry {entry_id} is {current.status}; {reason}")
        entries = list(self._entries)
        del entries[i]
        self._commit(entries)
        return current

    def remove_entry(self, entry_id: str) -> QueuedSale:
        with self._lock:
            current = self._remove_locked(entry_id, REMOVABLE_FROM, "cannot be removed")
        json_log("info", "queue.remove", entry_id=entry_id, from_status=current.status)
        self._notify("removed", [current])
        return current

    def dismiss_entry(self, entry_id: str) -> QueuedSale:
        """Operator discards a failed or conflicted sale after handling it out of band."""
        with self._lock:
            removed = self._remove_locked(entry_id, DISMISSABLE_FROM, "only failed or conflict entries can be dismissed")
        json_log("warning", "queue.dismissed", entry_id=entry_id, grand_total=removed.payload.grand_total)
        self._notify("removed", [removed])
        return removed

    def retry_entry(self, entry_id: str) -> QueuedSale:
        return self.mark_status(entry_id, "pending")

    def _bulk_transition(self, from_status: str, to_status: str, event: str) -> List[QueuedSale]:
        with self._lock:
            moved = []
            entries = []
            for e in self._entries:
                if e.status == from_status:
                    e = self._transition(e, to_status, error_message=None)
                    moved.append(e)
                entries.append(e)
            if moved:
                self._commit(entries)
        if moved:
            json_log("info", event, count=len(moved), entry_ids=[e.id for e in moved])
            self._notify("status", moved)
        return moved

    def retry_all_failed(self) -> List[QueuedSale]:
        return self._bulk_transition("failed", "pending", "queue.retry_all_failed")

    def recover_interrupted(self) -> List[QueuedSale]:
        # An entry left in syncing was cut off mid-request; the server de-duplicates by id.
        return self._bulk_transition("syncing", "pending", "queue.recovered_interrupted")

    # -- reads ---------------------------------------------------------

    def get(self, entry_id: str) -> QueuedSale:
        with self._lock:
            return self._find(entry_id)[1]

    def all_entries(self) -> List[QueuedSale]:
        with self._lock:
            return _by_age(self._entries)

    def _with_status(self, status: str) -> List[QueuedSale]:
        with self._lock:
            return _by_age(e for e in self._entries if e.status == status)

    def list_pending(self) -> List[QueuedSale]:
        return self._with_status("pending")

    def list_syncing(self) -> List[QueuedSale]:
        return self._with_status("syncing")

    def list_failed(self) -> List[QueuedSale]:
        return self._with_status("failed")

    def list_conflicted(self) -> List[QueuedSale]:
        return self._with_status("conflict")

    def list_held_resumes(self) -> List[QueuedSale]:
        with self._lock:
            return _by_age(e for e in self._entries if e.type == "resume_held")

    def next_pending(self) -> Optional[QueuedSale]:
        pending = self.list_pending()
        return pending[0] if pending else None

    def list_stale(self, max_age: timedelta) -> List[QueuedSale]:
        cutoff = self._clock() - max_age
        with self._lock:
            return _by_age(e for e in self._entries if e.created_at < cutoff)

    def summary(self, stale_after: Optional[timedelta] = None) -> dict:
        with self._lock:
            entries = list(self._entries)
        counts = {status: 0 for status in ALLOWED_TRANSITIONS}
        for e in entries:
            counts[e.status] += 1
        pending = _by_age(e for e in entries if e.status == "pending")
        out = {
            "total": len(entries),
            "counts": counts,
            "oldest_pending_at": pending[0].created_at if pending else None,
            "held_resumes": sum(1 for e in entries if e.type == "resume_held"),
        }
        if stale_after is not None:
            out["stale"] = len(self.list_stale(stale_after))
        return out
