"""Process-local embedding cache.

Classes:
    CacheEntry: Cached vector plus insertion and expiry timestamps.
    CacheStats: Snapshot of size and hit/miss counters.
    EmbeddingCache: TTL- and capacity-bounded map from content fingerprint to vector.
    CacheSweeper: Cancellable background task that periodically drops expired entries.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

_LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 1000
DEFAULT_TTL_SECONDS = 30 * 60.0


@dataclass(slots=True)
class CacheEntry:
    key: str
    vector: list[float]
    created_at: float
    expires_at: float


@dataclass(slots=True)
class CacheStats:
    size: int
    max_size: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class EmbeddingCache:
    """Capacity eviction is by insertion age, not recency of use."""

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock
        self._hits = 0
        self._misses = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[list[float]]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            return entry.vector

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def set(self, key: str, vector: list[float], ttl: float | None = None) -> None:
        now = self._clock()
        lifetime = self._default_ttl if ttl is None else ttl
        with self._lock:
            # re-setting a key counts as a fresh insertion
            self._entries.pop(key, None)
            while len(self._entries) >= self._max_size:
                self._entries.popitem(last=False)
            self._entries[key] = CacheEntry(
                key=key,
                vector=list(vector),
                created_at=now,
                expires_at=now + lifetime,
            )

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Drop every expired entry and return how many were removed."""

        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                max_size=self._max_size,
                hits=self._hits,
                misses=self._misses,
            )

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[key]
            return None
        return entry


class CacheSweeper:
    """Runs ``cache.cleanup()`` every ``interval`` seconds until stopped."""

    def __init__(self, cache: EmbeddingCache, interval: float) -> None:
        self._cache = cache
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="embedding-cache-sweeper")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            removed = self._cache.cleanup()
            if removed:
                _LOGGER.debug("Embedding cache sweep removed %d expired entries", removed)
