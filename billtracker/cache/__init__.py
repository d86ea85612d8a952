"""Result caches for the bill tracker.

This module provides:
- ResultCache: in-memory TTL cache with capacity eviction
- CacheRegistry: the server-side response/summary/news caches
- PersistentResultCache: client cache with a durable snapshot
"""

from .persistent import CLIENT_TTLS, FileSnapshotStorage, PersistentResultCache
from .result_cache import CacheEntry, CacheRegistry, ResultCache

__all__ = [
    "ResultCache",
    "CacheEntry",
    "CacheRegistry",
    "PersistentResultCache",
    "FileSnapshotStorage",
    "CLIENT_TTLS",
]
