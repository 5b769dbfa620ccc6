from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from posagent.agent import sync_once
from posagent.app.cart import Cart, Product
from posagent.app.config import Settings
from posagent.app.db import StoreLease, StoreLeaseHeld
from posagent.app.deps import build_agent
from posagent.app.offline_queue import QUEUE_STORAGE_KEY, CheckoutSnapshot, OfflineQueueStore, Payment, QueueCorruptedError
from posagent.app.storage import SqliteBlobStorage


def _settings(tmp_path):
    settings = Settings()
    settings.db_path = str(tmp_path / "pos.sqlite")
    # No server configured: probes report offline without touching the network.
    settings.api_base_url = ""
    settings.store_id = "store-1"
    return settings


def _snapshot():
    cart = Cart()
    cart.add_line(Product(id="p1", name="Coffee", price=Decimal("4.00")), 1)
    return CheckoutSnapshot(cart=cart.snapshot(), payments=[Payment(method="cash", amount=Decimal("4"))], store_id="store-1")


def test_lease_has_a_single_owner(tmp_path):
    db = str(tmp_path / "pos.sqlite")
    first = StoreLease(db)
    first.acquire()
    second = StoreLease(db)
    with pytest.raises(StoreLeaseHeld):
        second.acquire()

    first.renew()
    first.release()
    second.acquire()
    assert second.held is True


def test_lapsed_lease_can_be_taken_over(tmp_path):
    db = str(tmp_path / "pos.sqlite")
    t0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    crashed = StoreLease(db, ttl_seconds=60, clock=lambda: t0)
    crashed.acquire()

    later = StoreLease(db, ttl_seconds=60, clock=lambda: t0 + timedelta(seconds=61))
    later.acquire()

    with pytest.raises(StoreLeaseHeld):
        crashed.renew()


def test_sync_once_refuses_while_agent_owns_the_db(tmp_path):
    settings = _settings(tmp_path)
    agent = build_agent(settings)
    in_flight = agent.queue.enqueue_sale(_snapshot())
    agent.queue.mark_status(in_flight.id, "syncing")

    with pytest.raises(StoreLeaseHeld):
        sync_once(settings)

    # The running agent keeps its queue; a sale captured afterwards is persisted alongside.
    later = agent.queue.enqueue_sale(_snapshot())
    on_disk = OfflineQueueStore(SqliteBlobStorage(settings.db_path, QUEUE_STORAGE_KEY))
    assert on_disk.get(in_flight.id).status == "syncing"
    assert on_disk.get(later.id).status == "pending"

    agent.stop()
    out = sync_once(settings)
    assert out["recovered"] == 1
    assert out["online"] is False
    assert out["result"]["skipped_reason"] == "offline"
    assert out["queue"]["total"] == 2


def test_failed_build_releases_the_lease(tmp_path):
    settings = _settings(tmp_path)
    SqliteBlobStorage(settings.db_path, QUEUE_STORAGE_KEY).save({"version": 99, "queue": "nope"})
    with pytest.raises(QueueCorruptedError):
        build_agent(settings)

    lease = StoreLease(settings.db_path)
    lease.acquire()
    assert lease.held is True
