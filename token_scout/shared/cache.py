"""
TTL Cache

Bounded in-memory key/value store used to avoid redundant upstream calls.

- Lazy expiry on ``get``/``has`` plus a periodic background sweep
- Oldest-first eviction when full (by insertion time, NOT by last access:
  a hot entry inserted early is still the first to go)
- Thread-safe; last write wins on concurrent ``set`` of the same key

Usage:
    cache = TTLCache(default_ttl=300, max_size=10_000, sweep_interval=60)
    await cache.start()          # background sweep
    cache.set("rugcheck:abc", report, ttl=600)
    report = cache.get("rugcheck:abc")
    ...
    await cache.stop()
"""

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from token_scout.shared.errors import ConfigurationError
from token_scout.shared.prometheus import (
    cache_evictions,
    cache_hits,
    cache_misses,
    cache_size,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: Any
    created_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl_seconds


class TTLCache:
    """Thread-safe TTL cache with a size bound and a periodic sweep."""

    def __init__(
        self,
        default_ttl: float = 300,
        max_size: int = 10_000,
        sweep_interval: float = 60,
        clock: Callable[[], float] = time.time,
    ):
        if default_ttl <= 0:
            raise ConfigurationError("default_ttl must be > 0")
        if max_size < 1:
            raise ConfigurationError("max_size must be >= 1")

        self.default_ttl = default_ttl
        self.max_size = max_size
        self.sweep_interval = sweep_interval
        self._clock = clock

        # Insertion order == created_at order, so the first item is the oldest
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

        self.hits = 0
        self.misses = 0
        self.evictions = 0

        self._sweep_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if ttl is None:
            ttl = self.default_ttl
        elif ttl <= 0:
            raise ConfigurationError(f"ttl must be > 0, got {ttl}")

        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                self._evict_oldest()

            self._entries[key] = CacheEntry(
                key=key, data=value, created_at=self._clock(), ttl_seconds=ttl,
            )
            cache_size.set(len(self._entries))

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self.misses += 1
                cache_misses.inc()
                return None
            self.hits += 1
            cache_hits.inc()
            return entry.data

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            cache_size.set(len(self._entries))
            return removed

    def clear(self) -> None:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
            cache_size.set(0)
        logger.info("Cache cleared, removed %d entries", size)

    def cleanup_expired(self) -> int:
        """Remove every expired entry. O(n)."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            cache_size.set(len(self._entries))
        if expired:
            logger.debug("Cache sweep removed %d expired entries (%d left)", len(expired), len(self))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            oldest = next(iter(self._entries.values()), None)
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": (self.hits / total) if total else 0.0,
                "evictions": self.evictions,
                "default_ttl": self.default_ttl,
                "oldest_entry": (
                    datetime.fromtimestamp(oldest.created_at, tz=timezone.utc).isoformat()
                    if oldest else None
                ),
            }

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic sweep task (no-op if already running)."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Cache sweeper started (interval: %ss)", self.sweep_interval)

    async def stop(self) -> None:
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.cleanup_expired()
            except Exception as e:
                logger.error("Cache sweep failed: %s", e, exc_info=True)

    # ------------------------------------------------------------------
    # Internal (caller holds the lock)
    # ------------------------------------------------------------------

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            cache_size.set(len(self._entries))
            logger.debug("Cache expired: %s", key)
            return None
        return entry

    def _evict_oldest(self) -> None:
        key, _ = self._entries.popitem(last=False)
        self.evictions += 1
        cache_evictions.inc()
        logger.debug("Evicted oldest cache entry: %s", key)
