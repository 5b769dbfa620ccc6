import json
import threading
import time
import urllib.request
from typing import Callable, List, Optional

from ..app.logs import json_log


def _fetch_json_timeout(url: str, timeout_s: float = 1.0) -> dict:
    req = urllib.request.Request(url, method="GET")
    with urllib.request.urlopen(req, timeout=max(0.2, float(timeout_s or 1.0))) as resp:
        body = resp.read().decode("utf-8")
    return json.loads(body) if body else {}


def server_health(base_url: str, timeout_s: float = 0.8) -> dict:
    base = (base_url or "").strip()
    if not base:
        return {"ok": False, "error": "missing api_base_url", "latency_ms": None, "url": ""}
    url = f"{base.rstrip('/')}/health"
    started = time.time()
    try:
        data = _fetch_json_timeout(url, timeout_s=timeout_s)
        ok = bool((data or {}).get("ok", True)) if isinstance(data, dict) else True
        lat = int((time.time() - started) * 1000)
        return {"ok": ok, "error": None, "latency_ms": lat, "url": url}
    except (OSError, ValueError) as ex:
        lat = int((time.time() - started) * 1000)
        return {"ok": False, "error": str(ex), "latency_ms": lat, "url": url}


class ConnectivityMonitor:
    """
    Online/offline signal for the sync engine.

    State changes come either from probing the server's /health endpoint or from
    an external signal (the register UI's navigator.onLine, an OS hook).
    Subscribers are called only when the state actually flips.
    """

    def __init__(self, base_url: str = "", timeout_s: float = 0.8, initial: Optional[bool] = None):
        self.base_url = base_url
        self.timeout_s = timeout_s
        self._online = initial
        self._lock = threading.Lock()
        self._listeners: List[Callable[[bool], None]] = []
        self.last_probe: Optional[dict] = None

    @property
    def online(self) -> bool:
        return bool(self._online)

    def subscribe(self, callback: Callable[[bool], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def set_online(self, online: bool) -> bool:
        online = bool(online)
        with self._lock:
            changed = self._online != online
            self._online = online
            listeners = list(self._listeners)
        if changed:
            json_log("info", "connectivity.changed", online=online)
            for cb in listeners:
                try:
                    cb(online)
                except Exception as ex:
                    json_log("error", "connectivity.listener.error", error=str(ex))
        return changed

    def probe(self) -> bool:
        self.last_probe = server_health(self.base_url, timeout_s=self.timeout_s)
        self.set_online(self.last_probe["ok"])
        return self.online
