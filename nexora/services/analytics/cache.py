"""
Short-lived in-process memoization of finished analytics reports.
"""
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import structlog


logger = structlog.get_logger(__name__)


def make_cache_key(scope: str, *parts: Any) -> str:
    return ":".join([scope] + ["" if p is None else str(p) for p in parts])


class ReportCache:
    """TTL map of report payloads.

    Entries are returned exactly as stored until they expire; there is no
    write-side invalidation, so staleness is bounded by ``ttl_seconds`` only.
    One instance is created per process and handed to every aggregator.
    """

    def __init__(self, ttl_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def get_or_compute(self, key: str, compute: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            logger.debug("analytics_cache_hit", key=key)
            return cached
        logger.debug("analytics_cache_miss", key=key)
        value = compute()
        self.set(key, value)
        return value

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
