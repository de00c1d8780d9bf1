# =========================================================
# owner_portal/hostkit.py
# Thin client for the tax/invoicing platform (Hostkit)
# =========================================================
#
# - Per-property APIKEY, dates sent as Unix epoch seconds
# - requests.Session pooling (one session per thread) and per-call timeout
# - Bounded exponential backoff on 429/5xx/network errors, opt-in per call
#   (invoices retry, optional modules fail fast)
#
# =========================================================

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, time as dtime, timezone
from typing import Any, Dict, List, Optional

import requests

from . import config
from .config import PropertyCredential
from .errors import UpstreamError

LOGGER = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def epoch_seconds(day: date, end_of_day: bool = False) -> int:
    t = dtime(23, 59, 59) if end_of_day else dtime(0, 0, 0)
    return int(datetime.combine(day, t, tzinfo=timezone.utc).timestamp())


# =========================
# API CALL LOG MODEL
# =========================

@dataclass
class ApiCall:
    operation: str
    ok: bool
    status_code: Optional[int]
    duration_ms: int
    error: Optional[str] = None


# =========================
# CONNECTOR CLIENT
# =========================

class HostkitConnector:
    _RETRY_BACKOFF_BASE = config.HOSTKIT_RETRY_BACKOFF

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None,
                 max_retries: Optional[int] = None):
        self.base_url = (base_url or config.HOSTKIT_API_URL).rstrip("/")
        self.timeout = timeout or config.HOSTKIT_TIMEOUT
        self.max_retries = config.HOSTKIT_MAX_RETRIES if max_retries is None else max_retries
        self.calls: List[ApiCall] = []
        self._calls_lock = threading.Lock()
        self._local = threading.local()

    @property
    def _session(self) -> requests.Session:
        # requests.Session is not thread-safe: one pooled session per thread
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = requests.Session()
        return session

    def _record(self, call: ApiCall) -> None:
        with self._calls_lock:
            self.calls.append(call)

    def _sleep_before_retry(self, attempt: int, resp: Optional[requests.Response]) -> None:
        delay = self._RETRY_BACKOFF_BASE * (2 ** attempt)
        if resp is not None:
            try:
                delay = max(delay, float(resp.headers.get("Retry-After", "")))
            except ValueError:
                pass
        time.sleep(delay)

    def _get(self, path: str, params: Dict[str, Any], headers: Optional[Dict[str, str]] = None,
             timeout: Optional[int] = None, retries: Optional[int] = None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        retries = self.max_retries if retries is None else retries
        attempt = 0

        while True:
            t0 = time.time()
            try:
                resp = self._session.get(url, params=params, headers=headers or {},
                                         timeout=(timeout or self.timeout))
            except (requests.ConnectionError, requests.Timeout) as e:
                dt = int((time.time() - t0) * 1000)
                self._record(ApiCall(operation=path, ok=False, status_code=None, duration_ms=dt, error=str(e)))
                if attempt < retries:
                    LOGGER.warning("Network error on %s (attempt %d/%d): %s", path, attempt + 1, retries + 1, e)
                    self._sleep_before_retry(attempt, None)
                    attempt += 1
                    continue
                raise UpstreamError(path, str(e)) from e
            except requests.RequestException as e:
                # broken body, redirect loop, bad URL: not worth retrying
                dt = int((time.time() - t0) * 1000)
                self._record(ApiCall(operation=path, ok=False, status_code=None, duration_ms=dt, error=str(e)))
                raise UpstreamError(path, f"{type(e).__name__}: {e}") from e

            dt = int((time.time() - t0) * 1000)
            try:
                data = resp.json()
            except ValueError:
                data = {"_raw": resp.text}

            err = None
            if not resp.ok:
                err = (data.get("message") or data.get("error")) if isinstance(data, dict) else str(data)
                err = err or str(data)
            self._record(ApiCall(operation=path, ok=bool(resp.ok), status_code=resp.status_code,
                                 duration_ms=dt, error=err))

            if resp.ok:
                if isinstance(data, dict) and "_raw" in data:
                    raise UpstreamError(path, "response is not JSON", resp.status_code)
                return data

            if resp.status_code in RETRYABLE_STATUS and attempt < retries:
                LOGGER.warning("HTTP %s on %s (attempt %d/%d), retrying",
                               resp.status_code, path, attempt + 1, retries + 1)
                self._sleep_before_retry(attempt, resp)
                attempt += 1
                continue

            raise UpstreamError(path, err, resp.status_code)

    # ---- invoices (fatal dependency: retried) ----

    def get_invoices(self, credential: PropertyCredential, start: date, end: date) -> List[Dict[str, Any]]:
        params = {
            "APIKEY": credential.api_key,
            "property_id": credential.hostkit_id,
            "date_start": epoch_seconds(start),
            "date_end": epoch_seconds(end, end_of_day=True),
        }
        data = self._get("getInvoices", params)
        if not isinstance(data, list):
            raise UpstreamError("getInvoices", f"expected a JSON array, got {type(data).__name__}")
        return [x for x in data if isinstance(x, dict)]

    # ---- optional modules (fail fast) ----

    def _get_module_list(self, path: str, key: str, credential: PropertyCredential,
                         property_id: int, start: date, end: date) -> List[Dict[str, Any]]:
        params = {
            "propertyId": property_id,
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
        }
        headers = {"X-Api-Key": credential.api_key, "Accept": "application/json"}
        data = self._get(path, params, headers=headers, timeout=config.HOSTKIT_OPTIONAL_TIMEOUT, retries=0)
        if isinstance(data, dict):
            data = data.get(key) or []
        if not isinstance(data, list):
            raise UpstreamError(path, f"expected a list of {key}")
        return [x for x in data if isinstance(x, dict)]

    def get_expenses(self, credential: PropertyCredential, property_id: int,
                     start: date, end: date) -> List[Dict[str, Any]]:
        return self._get_module_list("expenses", "expenses", credential, property_id, start, end)

    def get_commissions(self, credential: PropertyCredential, property_id: int,
                        start: date, end: date) -> List[Dict[str, Any]]:
        return self._get_module_list("commissions", "commissions", credential, property_id, start, end)

    # ---- SAFT ----

    def get_saft(self, credential: PropertyCredential, year: int, month: int, invoicing_nif: str) -> Dict[str, Any]:
        params = {
            "APIKEY": credential.api_key,
            "property_id": credential.hostkit_id,
            "invoicing_nif": invoicing_nif,
            "year": year,
            "month": month,
        }
        data = self._get("getSAFT", params)
        if not isinstance(data, dict):
            raise UpstreamError("getSAFT", "expected a JSON object")
        return data
