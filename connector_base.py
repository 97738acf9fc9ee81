"""Shared plumbing for the quote source connectors."""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class ConnectorError(RuntimeError):
    """An upstream API call failed or returned unusable data."""


class RateLimiter:
    """Blocks callers so consecutive requests are min_interval_s apart."""

    def __init__(
        self,
        min_interval_s: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request: Optional[float] = None
        self.request_count = 0

    def wait(self) -> float:
        """Reserve the next request slot. Returns seconds slept."""
        with self._lock:
            now = self._clock()
            slept = 0.0
            if self._last_request is not None:
                elapsed = now - self._last_request
                if elapsed < self.min_interval_s:
                    slept = self.min_interval_s - elapsed
                    self._sleep(slept)
                    now = self._clock()
            self._last_request = now
            self.request_count += 1
            return slept


def get_response(
    session: requests.Session,
    url: str,
    params: Optional[Dict[str, str]] = None,
    limiter: Optional[RateLimiter] = None,
    timeout: float = 20,
) -> requests.Response:
    """Rate-limited GET. Raises ConnectorError unless the status is 2xx."""
    if limiter is not None:
        limiter.wait()
    t0 = time.monotonic()
    try:
        r = session.get(url, params=params, timeout=timeout)
    except requests.RequestException as e:
        raise ConnectorError(f"GET {url} failed: {e}") from e

    logger.debug(
        "GET %s -> %d in %.0fms", url, r.status_code, (time.monotonic() - t0) * 1000,
    )
    if not r.ok:
        raise ConnectorError(f"GET {url} returned {r.status_code}: {r.text[:200]}")
    return r


def decode_json(r: requests.Response) -> Any:
    try:
        return r.json()
    except ValueError as e:
        raise ConnectorError(f"{r.url} returned invalid JSON") from e


def get_json(
    session: requests.Session,
    url: str,
    params: Optional[Dict[str, str]] = None,
    limiter: Optional[RateLimiter] = None,
    timeout: float = 20,
) -> Any:
    """Rate-limited GET returning decoded JSON; failures raise ConnectorError."""
    return decode_json(get_response(session, url, params, limiter, timeout))
