"""TTL cache with inflight coalescing to prevent repeat upstream fetches."""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from ..monitoring_metrics import CACHE_LOOKUPS

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: float


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    value: T
    cache_hit: bool


class TTLCache:
    """
    Get-or-load cache keyed by string.

    A fresh entry is served without calling the loader. Concurrent callers for
    a key that is already loading await the same task, so the loader runs at
    most once per key at a time. Entries are never evicted actively.
    """

    def __init__(self, namespace: str = "default", clock: Callable[[], float] = time.time):
        """
        Args:
            namespace: Label used for metrics and logs
            clock: Zero-argument callable returning the current time in seconds
        """
        self.namespace = namespace
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, "asyncio.Task[Any]"] = {}

    async def get_or_set(self, key: str, ttl: float, loader: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value for key, loading it with ttl seconds of life on a miss."""
        result = await self.lookup(key, ttl, loader)
        return result.value

    async def lookup(self, key: str, ttl: float, loader: Callable[[], Awaitable[T]]) -> CacheResult[T]:
        """
        Same as get_or_set but also reports whether the value came from cache.

        Joining an inflight load counts as a hit since no extra upstream call is made.
        """
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > self._clock():
            CACHE_LOOKUPS.labels(namespace=self.namespace, result="hit").inc()
            return CacheResult(entry.value, True)

        task = self._inflight.get(key)
        if task is not None:
            CACHE_LOOKUPS.labels(namespace=self.namespace, result="coalesced").inc()
            return CacheResult(await asyncio.shield(task), True)

        CACHE_LOOKUPS.labels(namespace=self.namespace, result="miss").inc()
        task = asyncio.ensure_future(self._load(key, ttl, loader))
        self._inflight[key] = task
        return CacheResult(await asyncio.shield(task), False)

    async def _load(self, key: str, ttl: float, loader: Callable[[], Awaitable[T]]) -> T:
        try:
            value = await loader()
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)
            return value
        finally:
            # Runs before the task resolves, so no caller can join a finished load
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

    def peek(self, key: str) -> Optional[Any]:
        """Return a fresh cached value without loading, or None."""
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > self._clock():
            return entry.value
        return None

    def cleanup(self) -> int:
        """Remove expired entries from cache and return how many were dropped."""
        now = self._clock()
        expired = [k for k, v in self._entries.items() if v.expires_at <= now]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug(f"Dropped {len(expired)} expired entries from {self.namespace} cache")
        return len(expired)

    def size(self) -> int:
        """Get number of cached entries."""
        return len(self._entries)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)
