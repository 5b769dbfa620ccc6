from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from ..workers.connectivity import ConnectivityMonitor
from ..workers.sale_client import SaleSyncClient
from ..workers.sync_engine import SyncEngine
from .config import Settings
from .db import StoreLease
from .offline_queue import QUEUE_STORAGE_KEY, OfflineQueueStore
from .register import CART_STORAGE_KEY, RegisterSession
from .storage import SqliteBlobStorage


@dataclass
class Agent:
    settings: Settings
    queue: OfflineQueueStore
    register: RegisterSession
    engine: SyncEngine
    connectivity: ConnectivityMonitor
    client: Optional[SaleSyncClient] = None
    lease: Optional[StoreLease] = None

    def start(self) -> None:
        if self.lease is not None:
            self.lease.start_heartbeat()
        self.engine.start()

    def stop(self) -> None:
        self.engine.stop()
        if self.lease is not None:
            self.lease.release()


def build_agent(settings: Settings) -> Agent:
    # Raises StoreLeaseHeld while another agent process owns the DB.
    lease = StoreLease(settings.db_path, ttl_seconds=max(60.0, settings.sync_interval_seconds * 4))
    lease.acquire()
    try:
        return _build_agent(settings, lease)
    except Exception:
        lease.release()
        raise


def _build_agent(settings: Settings, lease: StoreLease) -> Agent:
    # Raises QueueCorruptedError on an unreadable queue; starting with an empty one would lose sales.
    queue = OfflineQueueStore(SqliteBlobStorage(settings.db_path, QUEUE_STORAGE_KEY))
    register = RegisterSession(
        queue,
        SqliteBlobStorage(settings.db_path, CART_STORAGE_KEY),
        store_id=settings.store_id,
        cashier_id=settings.cashier_id or None,
    )
    client = SaleSyncClient(
        settings.api_base_url,
        device_id=settings.device_id,
        device_token=settings.device_token,
        timeout=settings.sync_http_timeout_seconds,
    )
    connectivity = ConnectivityMonitor(settings.api_base_url, timeout_s=min(2.0, settings.sync_http_timeout_seconds))
    engine = SyncEngine(
        queue,
        client,
        connectivity=connectivity,
        interval_seconds=settings.sync_interval_seconds,
        backoff_cap_seconds=settings.sync_backoff_cap_seconds,
        paused=settings.sync_paused,
    )
    return Agent(
        settings=settings,
        queue=queue,
        register=register,
        engine=engine,
        connectivity=connectivity,
        client=client,
        lease=lease,
    )


def get_agent(request: Request) -> Agent:
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(status_code=503, detail="agent not ready")
    return agent
