"""Per-partition cache with explicit invalidation."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

__all__ = ["PartitionCache"]

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class PartitionCache(Generic[K, V]):
    """Thread-safe map from partition key to a loaded value.

    Loaders run outside the lock, so two threads racing on the same key
    may both load; the first stored value wins.

    Example:
        cache: PartitionCache[str, dict] = PartitionCache()
        state = cache.get_or_load("acme/widgets", lambda: backend.load_state("acme/widgets"))
        ...
        cache.invalidate("acme/widgets")  # after a write
    """

    def __init__(self) -> None:
        self._entries: Dict[K, V] = {}
        self._lock = threading.Lock()

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            return self._entries.get(key)

    def get_or_load(self, key: K, loader: Callable[[], V]) -> V:
        with self._lock:
            value = self._entries.get(key, _MISSING)
        if value is not _MISSING:
            logger.debug("Using cached state for %s", key)
            return value  # type: ignore[return-value]

        loaded = loader()
        with self._lock:
            return self._entries.setdefault(key, loaded)

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = value

    def invalidate(self, key: K) -> bool:
        """Drop one entry. Returns True if it was cached."""
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.debug("Cleared partition cache")

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
