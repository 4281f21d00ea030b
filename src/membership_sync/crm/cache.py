"""Process-wide read-through cache for CRM reference data.

Holds low-churn lists (funds, membership levels, campaigns, payment types).
Entries expire after a fixed TTL and are explicitly invalidated when the
matching setting is written. Writes are last-writer-wins.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float


class ReferenceCache:
    """TTL key/value store.

    Args:
        default_ttl: Seconds an entry lives when no ttl is given.
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(self, default_ttl: float = 3600.0, clock: Callable[[], float] | None = None) -> None:
        self.default_ttl = default_ttl
        self._clock = clock or time.monotonic
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
        self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)

    async def remember(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
    ) -> Any:
        """Return the cached value, loading and storing it on a miss.

        Loader failures propagate and nothing is cached.
        """
        value = self.get(key)
        if value is not None:
            return value
        value = await loader()
        self.set(key, value, ttl)
        logger.debug("reference_cache.populated", key=key)
        return value

    def invalidate(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            logger.info("reference_cache.invalidated", key=key)
        return removed

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info("reference_cache.invalidated_prefix", prefix=prefix, count=len(keys))
        return len(keys)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info("reference_cache.cleared", count=count)
        return count

    def stats(self) -> dict:
        now = self._clock()
        live = sum(1 for entry in self._entries.values() if entry.expires_at > now)
        return {
            "entries": live,
            "hits": self._hits,
            "misses": self._misses,
            "default_ttl": self.default_ttl,
        }
