"""HTTP client for the stock service, with retries and a circuit breaker.

The storefront only asks the stock service for read snapshots (to refresh
carts) and for its health. Reservations never go over HTTP: they are part of
the order transaction in the ledger.

The client adds:

- Request correlation: ``X-Request-ID`` is taken from the ContextVar set by
  the gateway middleware.
- A circuit breaker shared by every client instance, so an unhealthy stock
  service is not hammered; after ``reset_timeout`` one trial call is let through.
- Retries with capped exponential backoff on transport errors and 5xx.
"""

import logging
import threading
import time
from typing import Dict, Iterable, Optional

import httpx
from django.conf import settings

from gateway.middleware import REQUEST_ID_CTX

logger = logging.getLogger("orders")


class CircuitOpen(RuntimeError):
    """Raised instead of calling a service whose breaker is open."""


class CircuitBreaker:
    """Thread-safe breaker with CLOSED, OPEN and HALF_OPEN states.

    ``fail_threshold`` consecutive failures open it; after ``reset_timeout``
    seconds it lets a single trial call through, which closes it on success and
    opens it again on failure.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float,
                 clock=time.monotonic):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and self.clock() - self._opened_at >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._trial_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Return the state the call runs under.

        Raises:
            CircuitOpen: If the breaker is open or a trial call is already running.
        """
        with self._lock:
            current = self.state
            if current == "OPEN":
                raise CircuitOpen(f"{self.name}: circuit open")
            if current == "HALF_OPEN":
                if self._trial_in_flight:
                    raise CircuitOpen(f"{self.name}: trial call in flight")
                self._trial_in_flight = True
            return current

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._trial_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (
                self._failures >= self.fail_threshold and self._state != "OPEN"
            ):
                self._state = "OPEN"
                self._opened_at = self.clock()
                self._trial_in_flight = False
                logger.warning("circuit opened", extra={"service": self.name, "failures": self._failures})

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._trial_in_flight = False


_stock_breaker: Optional[CircuitBreaker] = None
_breaker_lock = threading.Lock()


def stock_breaker() -> CircuitBreaker:
    global _stock_breaker
    with _breaker_lock:
        if _stock_breaker is None:
            _stock_breaker = CircuitBreaker(
                "inventory",
                settings.HTTP_CIRCUIT_FAIL_THRESHOLD,
                settings.HTTP_CIRCUIT_RESET_TIMEOUT,
            )
        return _stock_breaker


def reset_breakers() -> None:
    global _stock_breaker
    with _breaker_lock:
        _stock_breaker = None


def _request_headers(extra: Optional[dict] = None) -> dict:
    headers = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


class HttpStockClient:
    """``StockSnapshotPort`` backed by ``GET /stock`` on the stock service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None,
                 breaker: CircuitBreaker | None = None, sleep=time.sleep):
        self.base_url = (base_url or settings.INVENTORY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = breaker or stock_breaker()
        self.sleep = sleep

    def snapshot(self, variant_ids: Iterable) -> Dict[str, int]:
        """Fetch current stock for ``variant_ids``.

        Returns:
            dict: ``{str(variant_id): stock}``; ids the service does not know
            are left out.

        Raises:
            CircuitOpen: The breaker refused the call.
            httpx.RequestError: Transport failure after the last retry.
            httpx.HTTPStatusError: Non-2xx response that is not retried, or
                a 5xx after the last retry.
        """
        ids = [str(v) for v in variant_ids]
        if not ids:
            return {}
        resp = self._get("/stock", params=[("variant_id", v) for v in ids])
        return {str(k): int(v) for k, v in resp.json().get("stock", {}).items()}

    def health(self) -> bool:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.get(f"{self.base_url}/health", headers=_request_headers())
            return resp.status_code == 200
        except httpx.HTTPError:
            return False

    def _get(self, path: str, params=None) -> httpx.Response:
        max_retries = max(1, settings.HTTP_RETRY_MAX)
        backoff = settings.HTTP_RETRY_BACKOFF_BASE
        cap = settings.HTTP_RETRY_MAX_SLEEP
        tries = 0

        state = self.breaker.before_call()
        headers = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0"})
        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.get(f"{self.base_url}{path}", params=params, headers=headers)
                        if resp.status_code < 400:
                            self.breaker.on_success()
                            return resp
                        if not _should_retry(resp, None):
                            # 4xx is our mistake, not the service being down
                            self.breaker.on_success()
                            resp.raise_for_status()
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)
                    if tries >= max_retries:
                        self.breaker.on_failure()
                        if exc is not None:
                            raise exc
                        resp.raise_for_status()

                    self.sleep(min(backoff * (2 ** (tries - 1)), cap))
        finally:
            self.breaker.on_finish()
