import json
import os
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self, config_path: Optional[str] = None) -> None:
        # Optional JSON config file written by the register setup; env always wins.
        file_cfg = {}
        config_path = config_path or os.getenv("POS_CONFIG_PATH")
        if config_path and os.path.exists(config_path):
            with open(config_path, "r", encoding="utf-8") as f:
                file_cfg = json.load(f) or {}

        def pick(env_name: str, key: str, default: str = "") -> str:
            raw = os.getenv(env_name)
            if raw is not None and raw.strip():
                return raw.strip()
            value = file_cfg.get(key)
            return str(value).strip() if value not in (None, "") else default

        self.env = os.getenv("APP_ENV", "local")
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.db_path = pick("POS_DB_PATH", "db_path", "pos.sqlite")
        self.api_base_url = pick("POS_API_BASE_URL", "api_base_url", "http://localhost:8001")
        self.device_id = pick("POS_DEVICE_ID", "device_id")
        self.device_token = pick("POS_DEVICE_TOKEN", "device_token")
        self.store_id = pick("POS_STORE_ID", "store_id")
        self.cashier_id = pick("POS_CASHIER_ID", "cashier_id")
        self.host = os.getenv("POS_HOST", "127.0.0.1")
        self.port = _env_int("POS_PORT", 7070)
        self.sync_interval_seconds = _env_float("SYNC_INTERVAL_SECONDS", 15.0)
        self.sync_backoff_cap_seconds = _env_int("SYNC_BACKOFF_CAP_SECONDS", 300)
        self.sync_http_timeout_seconds = _env_float("SYNC_HTTP_TIMEOUT_SECONDS", 10.0)
        self.sync_paused = _truthy(os.getenv("SYNC_PAUSED", "")) or bool(file_cfg.get("sync_paused"))
        # Unsynced sales older than this are surfaced for operator review (never dropped).
        self.queue_stale_minutes = _env_int("QUEUE_STALE_MINUTES", 60)
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )

    def public(self) -> dict:
        """
        Config payload safe to expose via the local HTTP API.

        The device token never leaves the agent, even when it is LAN-exposed.
        """
        return {
            "env": self.env,
            "version": self.api_version,
            "api_base_url": self.api_base_url,
            "device_id": self.device_id,
            "store_id": self.store_id,
            "cashier_id": self.cashier_id,
            "sync_interval_seconds": self.sync_interval_seconds,
            "sync_paused": self.sync_paused,
            "queue_stale_minutes": self.queue_stale_minutes,
        }


settings = Settings()
