"""Outbound HTTP plumbing shared by every downstream client.

- Request correlation: ``X-Request-ID`` is propagated from the ContextVar
  bound by the gateway middleware.
- One circuit breaker per downstream (cart, coupons, pricing, addresses,
  payment gateway), with HALF_OPEN probing after a timeout.
- Exponential backoff retries on transport errors and 5xx, only for calls
  the caller marks as safe to repeat. Money-moving calls go out once.
"""

import logging
import threading
import time
from enum import Enum
from typing import Optional

import httpx
from django.conf import settings

from gateway.middleware import REQUEST_ID_CTX

from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Per-downstream breaker.

    ``fail_threshold`` failed calls in a row open the circuit. Once
    ``reset_timeout`` seconds have passed a single probe call is admitted;
    its outcome closes the circuit or opens it again. Every state change is
    logged with the downstream's name.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float, clock=time.monotonic):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.RLock()
        self._failures = 0
        self._state = BreakerState.CLOSED
        self._opened_at = 0.0
        self._probing = False

    @property
    def state(self) -> str:
        with self._lock:
            return self._current().value

    @property
    def failures(self) -> int:
        return self._failures

    def before_call(self) -> str:
        """Admit or refuse a call; returns the state the call runs under.

        Raises:
            UpstreamUnavailable: ``CIRCUIT_OPEN`` while open, or
                ``CIRCUIT_HALF_OPEN_BUSY`` while another probe is out.
        """
        with self._lock:
            current = self._current()
            if current is BreakerState.OPEN:
                raise UpstreamUnavailable(f"circuit {self.name} open", code="CIRCUIT_OPEN")
            if current is BreakerState.HALF_OPEN:
                if self._probing:
                    raise UpstreamUnavailable(f"circuit {self.name} probing", code="CIRCUIT_HALF_OPEN_BUSY")
                self._probing = True
            return current.value

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._move(BreakerState.CLOSED)

    def on_failure(self):
        with self._lock:
            self._failures += 1
            current = self._current()
            if current is BreakerState.HALF_OPEN or (
                current is BreakerState.CLOSED and self._failures >= self.fail_threshold
            ):
                self._move(BreakerState.OPEN)

    def on_finish(self):
        with self._lock:
            self._probing = False

    def reset(self):
        with self._lock:
            self._failures = 0
            self._state = BreakerState.CLOSED
            self._probing = False

    def _current(self) -> BreakerState:
        if self._state is BreakerState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._move(BreakerState.HALF_OPEN)
        return self._state

    def _move(self, new: BreakerState) -> None:
        if new is self._state:
            return
        logger.log(
            logging.WARNING if new is BreakerState.OPEN else logging.INFO,
            "circuit state changed",
            extra={"circuit": self.name, "from_state": self._state.value, "to_state": new.value, "failures": self._failures},
        )
        self._state = new
        self._probing = False
        if new is BreakerState.OPEN:
            self._opened_at = self._clock()


_breakers: dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_breaker(name: str) -> CircuitBreaker:
    """Return the process-wide breaker for a downstream, creating it once."""
    with _breakers_lock:
        cb = _breakers.get(name)
        if cb is None:
            cb = CircuitBreaker(
                name,
                getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
                getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
            )
            _breakers[name] = cb
        return cb


def breaker_states() -> dict[str, str]:
    with _breakers_lock:
        items = list(_breakers.items())
    return {name: cb.state for name, cb in items}


def reset_breakers() -> None:
    with _breakers_lock:
        breakers = list(_breakers.values())
    for cb in breakers:
        cb.reset()


def request_headers(extra: Optional[dict] = None) -> dict:
    """Base outbound headers: ``X-Request-ID`` plus any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def retry_policy() -> tuple[int, float, float]:
    """Return ``(max_attempts, backoff_base_seconds, max_sleep_seconds)``."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or 5xx."""
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def send(
    breaker: CircuitBreaker,
    method: str,
    url: str,
    *,
    retry: bool = True,
    timeout: float | None = None,
    json: dict | None = None,
    params: dict | None = None,
    headers: dict | None = None,
    auth: httpx.Auth | tuple | None = None,
) -> httpx.Response:
    """Send one request under the breaker, retrying when allowed.

    Responses below 500 are returned to the caller for business mapping and
    count as a healthy downstream. A final 5xx response is returned as well
    (after being counted as a failure) so callers can read error bodies.

    Args:
        breaker: Breaker guarding the downstream.
        method: HTTP method.
        url: Absolute URL.
        retry: Whether repeating the request is safe.
        timeout: Per-attempt timeout; defaults to ``HTTP_TIMEOUT_SECS``.
        json: Optional JSON body.
        params: Optional query parameters.
        headers: Extra headers merged over the correlation headers.
        auth: Optional httpx auth.

    Returns:
        httpx.Response: The last response received.

    Raises:
        UpstreamUnavailable: When the circuit refuses the call.
        httpx.RequestError: For transport errors once attempts run out.
    """
    max_attempts, backoff, cap = retry_policy()
    if not retry:
        max_attempts = 1
    state = breaker.before_call()
    hdrs = request_headers({"X-Circuit-State": state, "X-Retry-Count": "0"})
    if headers:
        hdrs.update(headers)
    tries = 0
    try:
        with httpx.Client(timeout=timeout or settings.HTTP_TIMEOUT_SECS, auth=auth) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, json=json, params=params, headers=hdrs)
                    if not should_retry(resp, None):
                        breaker.on_success()
                        return resp
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                hdrs["X-Retry-Count"] = str(tries)
                if tries >= max_attempts:
                    breaker.on_failure()
                    if exc is not None:
                        raise exc
                    return resp

                sleep_s = min(backoff * (2 ** (tries - 1)), cap)
                if sleep_s > 0:
                    time.sleep(sleep_s)
    finally:
        breaker.on_finish()
