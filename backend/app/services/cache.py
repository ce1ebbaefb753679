"""Process-wide TTL caches keyed by user id.

The retrieval index manager and ingestion pipeline receive a CacheManager
instead of reaching for module-level dicts. Caches are not locked: two
concurrent misses for the same user may both rebuild, and the last write
wins.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TTLCache:
    """Key/value cache whose entries expire a fixed time after being set."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def get(self, key: str) -> Any | None:
        """Cached value for key, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + self.ttl_seconds)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)


class CacheManager:
    """Hands out named TTLCache instances sharing one TTL policy."""

    def __init__(
        self,
        default_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl if default_ttl is not None else settings.index_cache_ttl_seconds
        self._clock = clock
        self._caches: dict[str, TTLCache] = {}

    def get_cache(self, name: str, ttl: float | None = None) -> TTLCache:
        """Get (or create) the cache with the given name."""
        cache = self._caches.get(name)
        if cache is None:
            cache = TTLCache(ttl or self.default_ttl, clock=self._clock)
            self._caches[name] = cache
        return cache

    def invalidate_user(self, user_id: str) -> None:
        """Drop a user's entry from every named cache."""
        for cache in self._caches.values():
            cache.invalidate(user_id)
        logger.debug(f"Invalidated cached state for user {user_id}")

    def clear(self) -> None:
        for cache in self._caches.values():
            cache.clear()
