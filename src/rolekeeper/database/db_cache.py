"""
Invalidating read cache for repositories.

Each repository owns one :class:`InvalidatingCache`. Reads populate it; every
write clears it right after the store acknowledges the write, so a reader that
races a write can see stale data for at most one read.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

from rolekeeper.util.logger import get_logger

logger = get_logger("database_cache")


class InvalidatingCache:
    """
    Key → value memo with optional expiry.

    ``None`` is the miss marker, so ``None`` itself is never stored.
    """

    def __init__(self, namespace: str, ttl_seconds: Optional[float] = None):
        """
        Args:
            namespace: Name used in log lines (normally the collection name).
            ttl_seconds: Entry lifetime; ``None`` or ``0`` keeps entries until
                the next invalidation.
        """
        self._namespace = namespace
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._ttl_seconds = ttl_seconds or None
        self._hits = 0
        self._misses = 0

    def get(self, cache_key: str) -> Optional[Any]:
        """Return the cached value, or ``None`` on a miss or expired entry."""
        entry = self._cache.get(cache_key)
        if entry is None:
            self._misses += 1
            return None

        stored_at, value = entry
        if self._ttl_seconds is not None and time.monotonic() - stored_at >= self._ttl_seconds:
            del self._cache[cache_key]
            self._misses += 1
            logger.debug("[CACHE:%s] Expired key: %s", self._namespace, cache_key)
            return None

        self._hits += 1
        return value

    def set(self, cache_key: str, value: Any) -> None:
        if value is None:
            return
        self._cache[cache_key] = (time.monotonic(), value)
        logger.debug("[CACHE:%s] Set key: %s", self._namespace, cache_key)

    def delete(self, cache_key: str) -> bool:
        """Remove one entry; True if it was present."""
        return self._cache.pop(cache_key, None) is not None

    def clear(self) -> int:
        """Remove every entry and return how many there were."""
        count = len(self._cache)
        self._cache.clear()
        if count:
            logger.debug("[CACHE:%s] Cleared %d entries", self._namespace, count)
        return count

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        return {
            "namespace": self._namespace,
            "size": len(self._cache),
            "hits": self._hits,
            "misses": self._misses,
            "ttl_seconds": self._ttl_seconds,
        }
