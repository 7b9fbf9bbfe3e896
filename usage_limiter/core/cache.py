"""
Cache stores for the limit catalog.

Provides read-through "remember" semantics with explicit invalidation.
Stores are selected by name and live for the lifetime of the process.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

from cachetools import TLRUCache

logger = logging.getLogger(__name__)

DEFAULT_STORE = "memory"

_MISSING = object()


class CacheStore:
    """Key/value store interface used by the catalog."""

    name = "base"

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        raise NotImplementedError

    def forget(self, key: str) -> bool:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def remember(self, key: str, ttl: Optional[float], loader: Callable[[], Any]) -> Any:
        """Return the cached value, or compute, store and return it.

        Args:
            key: Cache key
            ttl: Seconds to keep the value, None for no expiry
            loader: Called to compute the value on a miss

        Returns:
            Cached or freshly loaded value
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value

        logger.debug("Cache miss for %s in %s store", key, self.name)
        value = loader()
        self.put(key, value, ttl)
        return value


def _entry_expiry(key, value, now):
    ttl = value[0]
    if ttl is None:
        return float("inf")
    return now + ttl


class MemoryStore(CacheStore):
    """In-process store with per-entry expiration."""

    name = "memory"

    def __init__(self, maxsize: int = 1024):
        # Values are kept as (ttl, payload) so the expiry function can read the ttl
        self._cache = TLRUCache(maxsize=maxsize, ttu=_entry_expiry)
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._cache.get(key)
        if entry is None:
            return default
        return entry[1]

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._cache[key] = (ttl, value)

    def forget(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def remember(self, key: str, ttl: Optional[float], loader: Callable[[], Any]) -> Any:
        with self._lock:
            return super().remember(key, ttl, loader)


class NullStore(CacheStore):
    """Store that never keeps anything."""

    name = "null"

    def get(self, key: str, default: Any = None) -> Any:
        return default

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        return None

    def forget(self, key: str) -> bool:
        return False

    def clear(self) -> None:
        return None


_STORE_FACTORIES: Dict[str, Callable[[], CacheStore]] = {
    "memory": MemoryStore,
    "null": NullStore,
}

# Process-wide store instances, created on first use
_stores: Dict[str, CacheStore] = {}
_stores_lock = threading.Lock()


def get_cache_store(name: Optional[str] = None) -> CacheStore:
    """Get the process-wide store registered under name.

    "default" and None resolve to the memory store. Unknown names fall
    back to the memory store.

    Args:
        name: Store name

    Returns:
        Shared CacheStore instance
    """
    store_name = name or DEFAULT_STORE
    if store_name == "default":
        store_name = DEFAULT_STORE
    if store_name not in _STORE_FACTORIES:
        logger.warning("Unknown cache store %r, falling back to %r", name, DEFAULT_STORE)
        store_name = DEFAULT_STORE

    with _stores_lock:
        store = _stores.get(store_name)
        if store is None:
            store = _STORE_FACTORIES[store_name]()
            _stores[store_name] = store
        return store


def reset_cache_stores() -> None:
    """Drop every process-wide store instance."""
    with _stores_lock:
        for store in _stores.values():
            store.clear()
        _stores.clear()
