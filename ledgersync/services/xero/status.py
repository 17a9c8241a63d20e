"""
Connection status cache.

Connection checks hit the Xero API, so results are cached in memory:
connected results for ``ttl`` seconds, "not connected" results for
``negative_ttl`` and refresh failures for ``failure_ttl``. A disconnected
entry is never served once it is older than ``negative_ttl``. Within
``min_interval`` of the last live check a connected result is served even
if expired, flagged ``stale``.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

from .client import XeroError

logger = logging.getLogger(__name__)


class ConnectionStatusCache:

    def __init__(
        self,
        ttl: float = 120,
        negative_ttl: float = 30,
        failure_ttl: float = 60,
        min_interval: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.negative_ttl = negative_ttl
        self.failure_ttl = failure_ttl
        self.min_interval = min_interval
        self.clock = clock
        self._lock = threading.Lock()
        self._data: Optional[Dict[str, Any]] = None
        self._stored_at = 0.0
        self._expires_in = 0.0
        self._last_request_at: Optional[float] = None

    def _entry_ttl(self, data: Dict[str, Any]) -> float:
        if data.get("connected"):
            return self.ttl
        if data.get("reason") == "refresh_failed":
            return self.failure_ttl
        return self.negative_ttl

    def _store(self, data: Dict[str, Any], now: float):
        self._data = data
        self._stored_at = now
        self._expires_in = self._entry_ttl(data)

    def get_status(self, fetch: Callable[[], Dict[str, Any]], force: bool = False) -> Dict[str, Any]:
        """Return the cached status or call ``fetch`` for a live one."""
        with self._lock:
            now = self.clock()

            if not force and self._data is not None:
                age = now - self._stored_at
                disconnected_and_old = not self._data.get("connected") and age > self.negative_ttl
                if age < self._expires_in and not disconnected_and_old:
                    return {**self._data, "cached": True, "stale": False, "cache_age": int(age)}

                recently_checked = (
                    self._last_request_at is not None
                    and now - self._last_request_at < self.min_interval
                )
                if recently_checked and self._data.get("connected"):
                    return {**self._data, "cached": True, "stale": True, "cache_age": int(age)}

            self._last_request_at = now
            try:
                data = fetch()
            except (XeroError, requests.RequestException) as e:
                logger.error(f"Xero connection check failed: {e}")
                data = {
                    "connected": False,
                    "reason": "refresh_failed",
                    "message": f"Connection check failed: {e}",
                }
            self._store(data, now)
            return {**data, "cached": False, "stale": False, "cache_age": 0}

    def invalidate(self):
        with self._lock:
            self._data = None
            self._last_request_at = None
