"""
Drains the offline sale queue against the server.

One entry is in flight at a time, oldest first. A drain runs when the register
comes back online, when the periodic timer fires, when a new sale is queued,
or when someone presses "sync now". Concurrent triggers collapse into the
drain already running.

Every outcome becomes a queue status change; nothing raises out of a drain.
"""

import hashlib
import threading
import traceback
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ..app.logs import json_log
from ..app.offline_queue import IllegalTransitionError, OfflineQueueStore, QueuedSale, QueueEntryNotFound
from .connectivity import ConnectivityMonitor
from .sale_client import SaleConflictError, TransientSyncError

BACKOFF_CAP_SECONDS_DEFAULT = 300
MAX_PER_RUN_DEFAULT = 200


def retry_delay_seconds(attempt_count: int, entry_id: Optional[str] = None, cap: int = BACKOFF_CAP_SECONDS_DEFAULT) -> int:
    delay_seconds = min(cap, 2 ** max(attempt_count - 1, 0))
    if entry_id:
        # Deterministic per-entry jitter so registers coming back online together don't retry in lockstep.
        digest = hashlib.sha1(f"{entry_id}:{attempt_count}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay_seconds // 5 or 1))
        delay_seconds = min(cap, delay_seconds + (int(digest[:8], 16) % (jitter_window + 1)))
    return delay_seconds


@dataclass
class SyncRunResult:
    synced: int = 0
    failed: int = 0
    conflicts: int = 0
    retried: int = 0
    skipped_reason: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    def __init__(
        self,
        store: OfflineQueueStore,
        client,
        connectivity: Optional[ConnectivityMonitor] = None,
        interval_seconds: float = 15.0,
        backoff_cap_seconds: int = BACKOFF_CAP_SECONDS_DEFAULT,
        clock: Optional[Callable[[], datetime]] = None,
        paused: bool = False,
        probe_connectivity: bool = True,
        max_per_run: int = MAX_PER_RUN_DEFAULT,
    ):
        self.store = store
        self.client = client
        self.connectivity = connectivity
        self.interval_seconds = interval_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.probe_connectivity = probe_connectivity
        self.max_per_run = max_per_run
        self._clock = clock or _utcnow
        self._paused = paused
        self._drain_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._bookkeeping_lock = threading.Lock()
        self._attempts: Dict[str, int] = {}
        self._next_attempt_at: Dict[str, datetime] = {}
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[SyncRunResult] = None
        self.last_error: Optional[str] = None

        store.subscribe(self._on_queue_change)
        if connectivity is not None:
            connectivity.subscribe(self._on_connectivity)

    # -- triggers ------------------------------------------------------

    def _on_queue_change(self, event: str, entry: QueuedSale) -> None:
        if event == "removed":
            with self._bookkeeping_lock:
                self._attempts.pop(entry.id, None)
                self._next_attempt_at.pop(entry.id, None)
            return
        if entry.status == "pending":
            self._wake.set()

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self._wake.set()

    def request_sync(self) -> None:
        self._wake.set()

    @property
    def online(self) -> bool:
        return True if self.connectivity is None else self.connectivity.online

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True
        json_log("info", "sync.paused")

    def resume(self) -> None:
        self._paused = False
        json_log("info", "sync.resumed")
        self._wake.set()

    @property
    def running(self) -> bool:
        return self._drain_lock.locked()

    # -- retry bookkeeping ---------------------------------------------

    def _schedule_retry(self, entry_id: str) -> datetime:
        with self._bookkeeping_lock:
            attempts = self._attempts.get(entry_id, 0) + 1
            self._attempts[entry_id] = attempts
            at = self._clock() + timedelta(seconds=retry_delay_seconds(attempts, entry_id, self.backoff_cap_seconds))
            self._next_attempt_at[entry_id] = at
            return at

    def next_attempt_at(self, entry_id: str) -> Optional[datetime]:
        with self._bookkeeping_lock:
            return self._next_attempt_at.get(entry_id)

    def attempt_count(self, entry_id: str) -> int:
        with self._bookkeeping_lock:
            return self._attempts.get(entry_id, 0)

    def _retry_due_failures(self, result: SyncRunResult) -> None:
        now = self._clock()
        for entry in self.store.list_failed():
            due_at = self.next_attempt_at(entry.id)
            # No schedule means the failure predates this process; retry it now.
            if due_at is not None and due_at > now:
                continue
            try:
                self.store.retry_entry(entry.id)
                result.retried += 1
            except (IllegalTransitionError, QueueEntryNotFound):
                # Operator retried or dismissed it in the meantime.
                continue

    # -- draining ------------------------------------------------------

    def sync_now(self) -> SyncRunResult:
        if not self._drain_lock.acquire(blocking=False):
            return SyncRunResult(skipped_reason="already_running")
        try:
            result = self._drain()
            self.last_error = None
        except Exception as ex:
            # Storage trouble mid-drain. Entries keep their last committed status;
            # anything left in syncing is recovered as pending on the next start.
            json_log("error", "sync.drain.error", error=str(ex))
            traceback.print_exc(file=sys.stderr)
            self.last_error = str(ex)
            result = SyncRunResult(skipped_reason="error")
        finally:
            self._drain_lock.release()
        self.last_run_at = self._clock()
        self.last_result = result
        return result

    def _drain(self) -> SyncRunResult:
        result = SyncRunResult()
        if self._paused:
            result.skipped_reason = "paused"
            return result
        if not self.online:
            result.skipped_reason = "offline"
            return result

        self._retry_due_failures(result)
        for _ in range(self.max_per_run):
            if self._paused or not self.online:
                break
            entry = self.store.next_pending()
            if entry is None:
                break
            outcome = self._attempt(entry)
            if outcome == "synced":
                result.synced += 1
            elif outcome == "conflict":
                result.conflicts += 1
            elif outcome == "failed":
                result.failed += 1
                # The server or network is unhappy; later entries would fail the same way.
                break
        if result.synced or result.failed or result.conflicts:
            json_log("info", "sync.run", **result.as_dict())
        return result

    def _submit(self, entry: QueuedSale):
        if entry.type == "resume_held":
            held_sale_id = entry.payload.held_sale_id
            if not held_sale_id:
                raise SaleConflictError("resume_held entry has no held sale id")
            return self.client.resume_held_sale(held_sale_id, entry)
        return self.client.submit_sale(entry)

    def _finish(self, entry: QueuedSale, status: str, message: str) -> None:
        try:
            self.store.mark_status(entry.id, status, message)
        except (IllegalTransitionError, QueueEntryNotFound) as ex:
            json_log("error", "sync.finish.error", entry_id=entry.id, status=status, error=str(ex))

    def _attempt(self, entry: QueuedSale) -> str:
        try:
            entry = self.store.mark_status(entry.id, "syncing")
        except (IllegalTransitionError, QueueEntryNotFound):
            return "skipped"
        json_log("info", "sync.attempt", entry_id=entry.id, sale_type=entry.type, attempt=self.attempt_count(entry.id) + 1)

        try:
            res = self._submit(entry)
        except SaleConflictError as ex:
            json_log("warning", "sync.conflict", entry_id=entry.id, status_code=ex.status_code, error=str(ex))
            self._finish(entry, "conflict", str(ex))
            return "conflict"
        except TransientSyncError as ex:
            retry_at = self._schedule_retry(entry.id)
            json_log("warning", "sync.failed", entry_id=entry.id, status_code=ex.status_code, error=str(ex), retry_at=retry_at)
            self._finish(entry, "failed", str(ex))
            return "failed"
        except Exception as ex:
            retry_at = self._schedule_retry(entry.id)
            json_log("error", "sync.failed", entry_id=entry.id, error=str(ex), unexpected=True, retry_at=retry_at)
            traceback.print_exc(file=sys.stderr)
            self._finish(entry, "failed", f"unexpected error: {ex}")
            return "failed"

        self.store.remove_entry(entry.id)
        json_log(
            "info",
            "sync.success",
            entry_id=entry.id,
            sale_type=entry.type,
            sale_id=getattr(res, "sale_id", None),
            duplicate=getattr(res, "duplicate", False),
            held_sale_id=entry.payload.held_sale_id,
        )
        return "synced"

    # -- background loop -----------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        recovered = self.store.recover_interrupted()
        if recovered:
            json_log("warning", "sync.recovered", count=len(recovered), entry_ids=[e.id for e in recovered])
        self._stop.clear()
        self._wake.set()
        self._thread = threading.Thread(target=self._run, name="pos-sync-engine", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _should_probe(self, woken: bool) -> bool:
        if not self.probe_connectivity or self.connectivity is None or not self.connectivity.base_url:
            return False
        # Timer ticks re-check the link; wake-ups only probe while we believe we're offline.
        return not woken or not self.connectivity.online

    def _run(self) -> None:
        while not self._stop.is_set():
            woken = self._wake.wait(self.interval_seconds)
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                if self._should_probe(woken):
                    self.connectivity.probe()
                self.sync_now()
            except Exception as ex:
                # Never let the loop die; the next tick tries again.
                json_log("error", "sync.loop.error", error=str(ex))
                traceback.print_exc(file=sys.stderr)

    def status(self) -> dict:
        summary = self.store.summary()
        with self._bookkeeping_lock:
            retries = {k: v.isoformat() for k, v in self._next_attempt_at.items()}
        return {
            "online": self.online,
            "paused": self._paused,
            "running": self.running,
            "last_run_at": self.last_run_at,
            "last_result": self.last_result.as_dict() if self.last_result else None,
            "last_error": self.last_error,
            "queue": summary,
            "next_retry_at": retries,
        }
