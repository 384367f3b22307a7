"""
Anonymous identity store.

In-process cache of anonymous usage keyed by anon id, in front of the
durable AnonymousUsageBackend. Reads are read-through; every successful
commit writes through and replaces the cached entry with the counts the
backend returned. Entries don't expire on a timer; the cache is bounded by
dropping the least recently used ids.
"""

import logging
import threading
from collections import OrderedDict

from src.config import usage_limits
from src.db.anonymous_usage import AnonymousUsage, AnonymousUsageBackend, UsageSignals
from src.services.prometheus_metrics import record_cache_hit, record_cache_miss

logger = logging.getLogger(__name__)

CACHE_NAME = "anonymous_usage"


class AnonymousIdentityStore:
    """
    Two-tier anonymous usage store.

    Methods are synchronous (the backend is the sync Supabase client); call
    them through ``asyncio.to_thread`` from request handlers. The lock only
    guards the cache map and is never held across a backend call.
    """

    def __init__(
        self,
        backend: AnonymousUsageBackend,
        max_entries: int = usage_limits.ANON_CACHE_MAX_ENTRIES,
    ):
        self._backend = backend
        self._max_entries = max_entries
        self._cache: OrderedDict[str, AnonymousUsage] = OrderedDict()
        self._lock = threading.Lock()

    def _put(self, anon_id: str, usage: AnonymousUsage) -> None:
        with self._lock:
            self._cache[anon_id] = usage
            self._cache.move_to_end(anon_id)
            while len(self._cache) > self._max_entries:
                self._cache.popitem(last=False)

    def get(self, anon_id: str) -> AnonymousUsage:
        """
        Return usage for ``anon_id``, loading it from the backend on a miss.

        Raises:
            PersistenceError: If the backend lookup fails on a cache miss
        """
        with self._lock:
            cached = self._cache.get(anon_id)
            if cached is not None:
                self._cache.move_to_end(anon_id)
        if cached is not None:
            record_cache_hit(CACHE_NAME)
            return cached

        record_cache_miss(CACHE_NAME)
        usage = self._backend.get_anon_usage(anon_id)
        self._put(anon_id, usage)
        return usage

    def register(self, anon_id: str) -> AnonymousUsage:
        """Create the zeroed durable row for a freshly minted anon id."""
        usage = self._backend.create_anon_usage(anon_id)
        self._put(anon_id, usage)
        logger.info(f"Registered new anonymous identity {anon_id[:6]}…")
        return usage

    def record(
        self, anon_id: str, model_type: str, meta: UsageSignals, commit_id: str | None = None
    ) -> AnonymousUsage:
        """
        Durably count one generation and refresh the cache.

        On a backend failure the cached entry is dropped so the next read
        goes to storage instead of trusting a stale count.
        """
        try:
            usage = self._backend.increment_anon_usage(anon_id, model_type, meta, commit_id)
        except Exception:
            self.invalidate(anon_id)
            raise
        self._put(anon_id, usage)
        return usage

    def invalidate(self, anon_id: str) -> None:
        with self._lock:
            self._cache.pop(anon_id, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"cached": len(self._cache), "max_entries": self._max_entries}
