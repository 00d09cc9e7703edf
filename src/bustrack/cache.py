"""TTL cache with injected clock and coalescing of concurrent loads."""

import logging
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

from .models import CacheEntry

logger = logging.getLogger(__name__)


def system_clock_ms() -> int:
    return int(time.time() * 1000)


class TTLCache:
    """
    In-memory cache of fetched payloads.

    Entries are valid while ``now - fetched_at < ttl``; stale entries are kept
    until overwritten by the next successful load.
    """

    def __init__(
        self,
        clock: Callable[[], int] = system_clock_ms,
        default_ttl_ms: int = 5 * 60 * 1000,
        max_entries: int = 2048,
    ):
        self._clock = clock
        self._default_ttl_ms = default_ttl_ms
        self._max_entries = max_entries
        self._entries: Dict[str, CacheEntry] = {}
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the stored entry regardless of age."""
        with self._lock:
            return self._entries.get(key)

    def get(self, key: str, ttl_ms: Optional[int] = None) -> Optional[Any]:
        """Return the payload for ``key`` if it is still fresh, else None."""
        ttl_ms = self._default_ttl_ms if ttl_ms is None else ttl_ms
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at_ms < ttl_ms:
            return entry.payload
        return None

    def put(self, key: str, payload: Any) -> CacheEntry:
        entry = CacheEntry(payload=payload, fetched_at_ms=self._clock())
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                # Drop the oldest entry
                oldest_key = min(self._entries, key=lambda k: self._entries[k].fetched_at_ms)
                del self._entries[oldest_key]
            self._entries[key] = entry
        return entry

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl_ms: Optional[int] = None) -> Any:
        """
        Return a fresh cached payload or run ``loader`` and store its result.

        Concurrent callers missing on the same key wait for the first caller's
        load instead of issuing their own. A failed load stores nothing and the
        exception is raised in every waiting caller.
        """
        cached = self.get(key, ttl_ms)
        if cached is not None:
            logger.debug(f"Cache hit for {key}")
            return cached

        with self._lock:
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key] = future

        if not owner:
            logger.debug(f"Joining in-flight load for {key}")
            return future.result()

        try:
            payload = loader()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            self.put(key, payload)
            future.set_result(payload)
            return payload
        finally:
            with self._lock:
                self._in_flight.pop(key, None)

    def clear(self) -> None:
        """Manually clear the cache."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
