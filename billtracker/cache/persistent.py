"""Client-side result cache with a durable snapshot.

The cache writes a JSON snapshot of its entries after every write to a
persisted data type. On construction the snapshot is restored if it is less
than an hour old, and each entry is reinstated only if its own TTL has not
passed yet.
"""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .result_cache import DEFAULT_MAX_ENTRIES, DEFAULT_TTL, CacheEntry, ResultCache

logger = logging.getLogger(__name__)

SNAPSHOT_NAMESPACE = "billTracker_cache"
SNAPSHOT_MAX_AGE = 60 * 60  # 1 hour

CLIENT_TTLS: dict[str, float] = {
    "bills": 10 * 60,
    "billDetail": 15 * 60,
    "summary": 30 * 60,
    "news": 20 * 60,
    "search": 5 * 60,
}

PERSISTED_TYPES = frozenset({"bills", "billDetail"})


class FileSnapshotStorage:
    """Stores one JSON document per namespace in a directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, namespace: str) -> Path:
        return self.directory / f"{namespace}.json"

    def read(self, namespace: str) -> Optional[str]:
        path = self._path(namespace)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write(self, namespace: str, data: str) -> None:
        """Atomically replace the namespace's document."""
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{namespace}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(data)
            os.replace(tmp_path, self._path(namespace))
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def remove(self, namespace: str) -> None:
        self._path(namespace).unlink(missing_ok=True)


class PersistentResultCache(ResultCache):
    """Result cache that survives restarts through a snapshot."""

    def __init__(
        self,
        storage: FileSnapshotStorage,
        name: str = "client",
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float = DEFAULT_TTL,
        ttl_by_type: Optional[dict[str, float]] = None,
        persisted_types: frozenset = PERSISTED_TYPES,
        namespace: str = SNAPSHOT_NAMESPACE,
        clock: Callable[[], float] = time.time,
        **kwargs,
    ):
        super().__init__(
            name=name,
            max_entries=max_entries,
            default_ttl=default_ttl,
            ttl_by_type=CLIENT_TTLS if ttl_by_type is None else ttl_by_type,
            clock=clock,
            **kwargs,
        )
        self.storage = storage
        self.persisted_types = persisted_types
        self.namespace = namespace
        self.load_from_storage()

    def set(self, key: str, payload: Any, ttl: Optional[float] = None) -> None:
        super().set(key, payload, ttl)
        if key.split(":", 1)[0] in self.persisted_types:
            self.save_to_storage()

    def clear(self) -> int:
        count = super().clear()
        self.storage.remove(self.namespace)
        return count

    def save_to_storage(self) -> bool:
        """Write a snapshot of all entries.

        Returns:
            True if the snapshot was written
        """
        snapshot = {
            "timestamp": self._clock(),
            "entries": [
                {"key": e.key, "payload": e.payload, "stored_at": e.stored_at, "ttl": e.ttl}
                for e in self._entries.values()
            ],
        }
        try:
            self.storage.write(self.namespace, json.dumps(snapshot))
        except (TypeError, ValueError, OSError) as e:
            logger.warning(f"Failed to save cache snapshot: {e}")
            return False
        return True

    def load_from_storage(self) -> int:
        """Restore entries from the snapshot.

        Returns:
            Number of entries restored
        """
        try:
            stored = self.storage.read(self.namespace)
        except OSError as e:
            logger.warning(f"Failed to read cache snapshot: {e}")
            return 0
        if not stored:
            return 0

        now = self._clock()
        try:
            snapshot = json.loads(stored)
            if now - float(snapshot["timestamp"]) >= SNAPSHOT_MAX_AGE:
                logger.info("Discarding cache snapshot older than one hour")
                self.storage.remove(self.namespace)
                return 0

            restored = 0
            for item in snapshot["entries"]:
                entry = CacheEntry(
                    key=item["key"],
                    payload=item["payload"],
                    stored_at=float(item["stored_at"]),
                    ttl=float(item["ttl"]),
                )
                if entry.is_expired(now) or len(self._entries) >= self.max_entries:
                    continue
                self._entries[entry.key] = entry
                restored += 1
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load cache snapshot: {e}")
            self._entries.clear()
            self.storage.remove(self.namespace)
            return 0

        logger.info(f"Cache loaded from storage: {restored} entries")
        return restored
