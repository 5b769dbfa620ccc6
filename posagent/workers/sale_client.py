"""
HTTP client for the server's sale endpoints.

Every outcome is classified into one of three buckets the sync engine acts on:
- success (including the server acknowledging a duplicate of the same client id)
- TransientSyncError: worth retrying unchanged (network, timeouts, 5xx, auth)
- SaleConflictError: the server refuses the sale as-is; an operator must decide
"""

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from ..app.offline_queue import QueuedSale

CONFLICT_STATUS_CODES = {400, 404, 409, 422}
TRANSIENT_STATUS_CODES = {401, 403, 408, 425, 429}


class SyncError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientSyncError(SyncError):
    pass


class SaleConflictError(SyncError):
    pass


@dataclass(frozen=True)
class SubmitResult:
    sale_id: Optional[str]
    duplicate: bool = False


def _error_message(ex: urllib.error.HTTPError) -> str:
    try:
        body = ex.read().decode("utf-8")
    except (OSError, ValueError, AttributeError):
        body = ""
    detail = ""
    if body:
        try:
            parsed = json.loads(body)
            if isinstance(parsed, dict):
                detail = str(parsed.get("message") or parsed.get("detail") or parsed.get("error") or "")
        except ValueError:
            pass
        detail = detail or body[:500]
    msg = f"http {ex.code} {ex.reason or ''}".strip()
    return f"{msg}: {detail}" if detail else msg


def classify_http_error(ex: urllib.error.HTTPError) -> SyncError:
    msg = _error_message(ex)
    code = int(ex.code or 0)
    if code in CONFLICT_STATUS_CODES:
        return SaleConflictError(msg, status_code=code)
    if code >= 500 or code in TRANSIENT_STATUS_CODES:
        return TransientSyncError(msg, status_code=code)
    # Anything else we don't understand is retried rather than dropped.
    return TransientSyncError(msg, status_code=code)


def sale_request_body(entry: QueuedSale) -> dict:
    payload = entry.payload.model_dump(mode="json")
    body = {
        "client_id": entry.id,
        "offline_created_at": entry.created_at.isoformat(),
        "type": entry.type,
        "conflict_resolution": entry.conflict_resolution,
        **payload,
    }
    if entry.type == "resume_held" and entry.payload.held_snapshot is not None:
        body["held_version"] = entry.payload.held_snapshot.version
    return body


class SaleSyncClient:
    def __init__(self, base_url: str, device_id: str = "", device_token: str = "", timeout: float = 10.0):
        self.base_url = (base_url or "").rstrip("/")
        self.device_id = device_id
        self.device_token = device_token
        self.timeout = timeout

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        headers = {
            "Content-Type": "application/json",
            "X-Device-Id": self.device_id or "",
            "X-Device-Token": self.device_token or "",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(self, method: str, path: str, payload: Optional[dict] = None, idempotency_key: Optional[str] = None) -> dict:
        if not self.base_url:
            raise TransientSyncError("missing api_base_url")
        data = json.dumps(payload, default=str).encode("utf-8") if payload is not None else None
        req = urllib.request.Request(
            f"{self.base_url}{path}",
            data=data,
            headers=self._headers(idempotency_key),
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8") if resp else ""
        except urllib.error.HTTPError as ex:
            raise classify_http_error(ex) from ex
        except urllib.error.URLError as ex:
            raise TransientSyncError(f"network error: {ex.reason}") from ex
        except (socket.timeout, TimeoutError) as ex:
            raise TransientSyncError("request timed out") from ex
        except OSError as ex:
            raise TransientSyncError(f"network error: {ex}") from ex
        if not body:
            return {}
        try:
            parsed = json.loads(body)
        except ValueError:
            return {"raw": body}
        return parsed if isinstance(parsed, dict) else {"data": parsed}

    @staticmethod
    def _result(res: dict) -> SubmitResult:
        data = res.get("data") if isinstance(res.get("data"), dict) else res
        sale_id = data.get("sale_id") or data.get("saleId") or data.get("_id") or data.get("id")
        duplicate = str(res.get("status") or data.get("status") or "").lower() == "duplicate"
        return SubmitResult(sale_id=str(sale_id) if sale_id else None, duplicate=duplicate)

    def submit_sale(self, entry: QueuedSale) -> SubmitResult:
        res = self._request("POST", "/pos/sales", sale_request_body(entry), idempotency_key=entry.id)
        return self._result(res)

    def resume_held_sale(self, held_sale_id: str, entry: QueuedSale) -> SubmitResult:
        path = f"/pos/sales/resume/{quote(str(held_sale_id), safe='')}"
        res = self._request("POST", path, sale_request_body(entry), idempotency_key=entry.id)
        return self._result(res)

    def fetch_sale(self, sale_id: str) -> dict:
        res = self._request("GET", f"/pos/sales/{quote(str(sale_id), safe='')}")
        data = res.get("data")
        return data if isinstance(data, dict) else res
