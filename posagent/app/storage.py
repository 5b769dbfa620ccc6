"""
Key-value blob persistence for the register's local state.

The offline queue and the in-progress cart are each persisted as one JSON blob
under a fixed key. Blobs are written whole: a reader either sees the previous
blob or the new one, never a partial write.
"""

import json
import threading
from datetime import datetime, timezone
from typing import Optional, Protocol

from .db import get_conn, init_db


class BlobStorage(Protocol):
    def load(self) -> Optional[dict]:
        ...

    def save(self, state: dict) -> None:
        ...


class StorageCorruptedError(RuntimeError):
    """Persisted blob exists but cannot be decoded."""


class SqliteBlobStorage:
    def __init__(self, db_path: str, key: str):
        self.db_path = db_path
        self.key = key
        init_db(db_path)

    def load(self) -> Optional[dict]:
        with get_conn(self.db_path) as conn:
            row = conn.execute("SELECT value_json FROM kv_store WHERE key = ?", (self.key,)).fetchone()
        if not row:
            return None
        try:
            data = json.loads(row["value_json"])
        except ValueError as ex:
            raise StorageCorruptedError(f"{self.key}: invalid json ({ex})") from ex
        if not isinstance(data, dict):
            raise StorageCorruptedError(f"{self.key}: expected an object, got {type(data).__name__}")
        return data

    def save(self, state: dict) -> None:
        value_json = json.dumps(state, default=str)
        with get_conn(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO kv_store (key, value_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at
                """,
                (self.key, value_json, datetime.now(timezone.utc).isoformat()),
            )


class MemoryBlobStorage:
    """Process-local storage; still round-trips through JSON so tests see what SQLite would hold."""

    def __init__(self, raw: Optional[str] = None):
        self._raw = raw
        self._lock = threading.Lock()
        self.save_count = 0

    def load(self) -> Optional[dict]:
        with self._lock:
            raw = self._raw
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError as ex:
            raise StorageCorruptedError(f"invalid json ({ex})") from ex
        if not isinstance(data, dict):
            raise StorageCorruptedError(f"expected an object, got {type(data).__name__}")
        return data

    def save(self, state: dict) -> None:
        raw = json.dumps(state, default=str)
        with self._lock:
            self._raw = raw
            self.save_count += 1
