import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from .logs import json_log

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
  key TEXT PRIMARY KEY,
  value_json TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS agent_lease (
  name TEXT PRIMARY KEY,
  owner TEXT NOT NULL,
  pid INTEGER,
  expires_at TEXT NOT NULL
);
"""


def db_connect(db_path: str) -> sqlite3.Connection:
    # One short-lived connection per operation; SQLite serializes writers itself.
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_conn(db_path: str):
    # Same semantics as the pooled Postgres helper:
    # - commit on success
    # - rollback on exception
    # - always close
    conn = db_connect(db_path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    parent = os.path.dirname(os.path.abspath(db_path))
    os.makedirs(parent, exist_ok=True)
    with get_conn(db_path) as conn:
        conn.executescript(SCHEMA)
        # WAL keeps readers (the HTTP API) from blocking the sync worker's writes.
        conn.execute("PRAGMA journal_mode=WAL")


class StoreLeaseHeld(RuntimeError):
    pass


class StoreLease:
    """
    Single-owner lease over a register DB.

    The queue and cart blobs are rewritten whole, so two processes holding
    their own copies would overwrite each other's sales. Whoever loads them
    must hold this lease first. A holder that dies stops renewing and the
    lease lapses after `ttl_seconds`.
    """

    def __init__(self, db_path: str, name: str = "register", ttl_seconds: float = 60.0, clock=None):
        self.db_path = db_path
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.owner = uuid.uuid4().hex
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.held = False
        init_db(db_path)

    def acquire(self) -> None:
        now = self._clock()
        with get_conn(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT owner, pid, expires_at FROM agent_lease WHERE name = ?", (self.name,)
            ).fetchone()
            if row and row["owner"] != self.owner and datetime.fromisoformat(row["expires_at"]) > now:
                raise StoreLeaseHeld(
                    f"{self.db_path} is in use by another agent process (pid {row['pid']}) until {row['expires_at']}"
                )
            conn.execute(
                """
                INSERT INTO agent_lease (name, owner, pid, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET owner = excluded.owner, pid = excluded.pid, expires_at = excluded.expires_at
                """,
                (self.name, self.owner, os.getpid(), (now + timedelta(seconds=self.ttl_seconds)).isoformat()),
            )
        self.held = True

    def renew(self) -> None:
        self.acquire()

    def release(self) -> None:
        self.stop_heartbeat()
        if not self.held:
            return
        with get_conn(self.db_path) as conn:
            conn.execute("DELETE FROM agent_lease WHERE name = ? AND owner = ?", (self.name, self.owner))
        self.held = False

    def start_heartbeat(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._heartbeat, name="pos-store-lease", daemon=True)
        self._thread.start()

    def stop_heartbeat(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(5)
            self._thread = None

    def _heartbeat(self) -> None:
        while not self._stop.wait(self.ttl_seconds / 3):
            try:
                self.renew()
            except Exception as ex:
                # Lost to another process or the DB is locked; keep trying until stopped.
                json_log("error", "lease.renew_failed", db_path=self.db_path, error=str(ex))
