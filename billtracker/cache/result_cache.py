"""Short-lived TTL cache of successful results.

Provides:
- Canonical keys (``"{type}:{sorted JSON params}"``)
- Per-type TTLs resolved from the key prefix
- Capacity bound with oldest-insertion eviction
- Lazy expiry on read plus a periodic background sweep
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..monitoring.metrics import cache_evictions_total, cache_operations_total

logger = logging.getLogger(__name__)

DEFAULT_TTL = 5 * 60  # 5 minutes
DEFAULT_MAX_ENTRIES = 100
DEFAULT_CLEANUP_INTERVAL = 2 * 60


@dataclass
class CacheEntry:
    """A cached payload and its lifetime."""

    key: str
    payload: Any
    stored_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ResultCache:
    """In-memory TTL cache with a fixed capacity.

    Eviction removes the entry with the oldest ``stored_at`` (insertion order),
    not the least recently read one.
    """

    def __init__(
        self,
        name: str = "default",
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float = DEFAULT_TTL,
        ttl_by_type: Optional[dict[str, float]] = None,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache.

        Args:
            name: Cache name for logging and metrics
            max_entries: Maximum number of entries held
            default_ttl: TTL in seconds for keys with no type-specific TTL
            ttl_by_type: TTL in seconds per key prefix (e.g. ``{"bills": 600}``)
            cleanup_interval: Seconds between background sweeps
            clock: Time source in seconds
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.name = name
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.ttl_by_type = dict(ttl_by_type or {})
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    @staticmethod
    def generate_key(data_type: str, params: Optional[dict[str, Any]] = None) -> str:
        """Build a cache key that ignores parameter order."""
        canonical = json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=str)
        return f"{data_type}:{canonical}"

    def resolve_ttl(self, key: str) -> float:
        """TTL for a key from its type prefix, or the default."""
        data_type = key.split(":", 1)[0]
        return self.ttl_by_type.get(data_type, self.default_ttl)

    def set(self, key: str, payload: Any, ttl: Optional[float] = None) -> None:
        """Store a payload.

        Args:
            key: Cache key
            payload: Value to cache
            ttl: Seconds to keep the value (resolved from the key when omitted)
        """
        actual_ttl = ttl if ttl is not None else self.resolve_ttl(key)

        if key in self._entries:
            # Overwrite moves the entry to the back of the insertion order
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            self._evict_oldest()

        self._entries[key] = CacheEntry(key=key, payload=payload, stored_at=self._clock(), ttl=actual_ttl)
        self._stats["sets"] += 1
        cache_operations_total.labels(cache=self.name, result="set").inc()
        logger.debug(f"Cache {self.name} SET: {key} (TTL: {actual_ttl}s)")

    def get(self, key: str) -> Optional[Any]:
        """Get a payload if present and not expired.

        Expired entries are removed on read.
        """
        entry = self._entries.get(key)

        if entry is not None and entry.is_expired(self._clock()):
            self._remove(key)
            entry = None

        if entry is None:
            self._stats["misses"] += 1
            cache_operations_total.labels(cache=self.name, result="miss").inc()
            return None

        self._stats["hits"] += 1
        cache_operations_total.labels(cache=self.name, result="hit").inc()
        logger.debug(f"Cache {self.name} HIT: {key}")
        return entry.payload

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def delete(self, key: str) -> bool:
        """Delete an entry. Returns True if it existed."""
        if self._remove(key):
            self._stats["deletes"] += 1
            return True
        return False

    def _remove(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def _evict_oldest(self) -> None:
        oldest = min(self._entries.values(), key=lambda e: e.stored_at)
        self._remove(oldest.key)
        self._stats["evictions"] += 1
        cache_evictions_total.labels(cache=self.name).inc()
        logger.debug(f"Cache {self.name} evicted {oldest.key}")

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"Cache {self.name} cleared ({count} entries)")
        return count

    def clear_by_type(self, data_type: str) -> int:
        """Remove every entry whose key has the given type prefix."""
        return self._delete_matching(lambda key: key.startswith(f"{data_type}:"))

    def invalidate(self, pattern: str) -> int:
        """Remove every entry whose key contains ``pattern``."""
        return self._delete_matching(lambda key: pattern in key)

    def _delete_matching(self, predicate: Callable[[str], bool]) -> int:
        keys = [key for key in self._entries if predicate(key)]
        for key in keys:
            self.delete(key)
        if keys:
            logger.info(f"Cache {self.name}: removed {len(keys)} entries")
        return len(keys)

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def cleanup(self) -> int:
        """Purge expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)
        if expired:
            logger.info(f"Cache {self.name} cleanup: removed {len(expired)} expired entries")
        return len(expired)

    # -------------------------------------------------------------------------
    # Background sweep lifecycle
    # -------------------------------------------------------------------------

    def start_cleanup(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            logger.warning(f"Cache {self.name} cleanup already running")
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def stop_cleanup(self) -> None:
        """Stop the periodic sweep and wait for it to finish."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Cache {self.name} cleanup error: {e}")

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        now = self._clock()
        lookups = self._stats["hits"] + self._stats["misses"]
        valid = sum(1 for e in self._entries.values() if not e.is_expired(now))
        return {
            "name": self.name,
            **self._stats,
            "hit_rate": round(self._stats["hits"] / lookups * 100, 2) if lookups else 0.0,
            "total_entries": len(self._entries),
            "valid_entries": valid,
            "expired_entries": len(self._entries) - valid,
            "max_entries": self.max_entries,
        }


class CacheRegistry:
    """Server-side caches by data category.

    ``response`` holds generic API responses, ``summary`` AI summaries and
    ``news`` news search results, each with its own default TTL.
    """

    RESPONSE_TTL = 5 * 60
    SUMMARY_TTL = 30 * 60
    NEWS_TTL = 20 * 60

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        cleanup_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.response = ResultCache("response", max_entries, self.RESPONSE_TTL, cleanup_interval=cleanup_interval, clock=clock)
        self.summary = ResultCache("summary", max_entries, self.SUMMARY_TTL, cleanup_interval=cleanup_interval, clock=clock)
        self.news = ResultCache("news", max_entries, self.NEWS_TTL, cleanup_interval=cleanup_interval, clock=clock)

    @property
    def caches(self) -> list[ResultCache]:
        return [self.response, self.summary, self.news]

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        """Invalidate entries matching a pattern, or everything.

        Patterns starting with ``summary:`` or ``news:`` target that cache;
        any other pattern targets the response cache.

        Returns:
            Number of entries removed
        """
        if not pattern:
            return sum(cache.clear() for cache in self.caches)
        if pattern.startswith("summary:"):
            return self.summary.invalidate(pattern)
        if pattern.startswith("news:"):
            return self.news.invalidate(pattern)
        return self.response.invalidate(pattern)

    def get_stats(self) -> dict[str, Any]:
        per_cache = {cache.name: cache.get_stats() for cache in self.caches}
        hits = sum(s["hits"] for s in per_cache.values())
        misses = sum(s["misses"] for s in per_cache.values())
        return {
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / (hits + misses) * 100, 2) if hits + misses else 0.0,
            "caches": per_cache,
        }

    def start(self) -> None:
        for cache in self.caches:
            cache.start_cleanup()

    async def stop(self) -> None:
        for cache in self.caches:
            await cache.stop_cleanup()
