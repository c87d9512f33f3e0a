"""
Metrics Engine — Memory Cache Backend

In-process cache with LRU eviction and per-entry TTL.
All access goes through one asyncio lock, so concurrent readers and writers
of a key always observe a consistent entry and deletes are visible to the
next read.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any

from ..interface import CacheInterface

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float | None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryCacheBackend(CacheInterface):
    """
    In-memory cache backend.

    Features:
    - LRU eviction when max_size is reached
    - Per-key TTL, expired entries dropped lazily on access or scan
    - Glob key scans for family-wide invalidation
    """

    def __init__(
        self,
        max_size: int = 10000,
        default_ttl: int = 300,
        namespace: str = "metrics",
    ):
        """
        Initialize memory cache backend.

        Args:
            max_size: Maximum number of entries (LRU eviction when exceeded)
            default_ttl: Default TTL in seconds (0 = no expiry)
            namespace: Cache key namespace/prefix
        """
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.namespace = namespace

        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._lock = asyncio.Lock()

    def _make_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _strip(self, cache_key: str) -> str:
        return cache_key[len(self.namespace) + 1 :]

    def _live(self, cache_key: str, now: float) -> _Entry | None:
        """Return the entry if present and fresh; drop it if expired. Caller holds the lock."""
        entry = self._entries.get(cache_key)
        if entry is None:
            return None
        if entry.expired(now):
            del self._entries[cache_key]
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        if not key:
            return None

        async with self._lock:
            cache_key = self._make_key(key)
            entry = self._live(cache_key, time.monotonic())
            if entry is None:
                self._misses += 1
                return None
            self._entries.move_to_end(cache_key)
            self._hits += 1
            return entry.value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        if not key:
            logger.warning("Attempted to set cache value with empty key")
            return False

        ttl = self.default_ttl if ttl is None else ttl
        async with self._lock:
            cache_key = self._make_key(key)
            if cache_key not in self._entries and len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Evicted key from memory cache: {evicted}")

            expires_at = time.monotonic() + ttl if ttl > 0 else None
            self._entries[cache_key] = _Entry(value, expires_at)
            self._entries.move_to_end(cache_key)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(self._make_key(key), None) is not None

    async def delete_many(self, keys: list[str]) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._entries.pop(self._make_key(key), None) is not None:
                    removed += 1
            return removed

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(self._make_key(key), time.monotonic()) is not None

    async def keys(self, pattern: str = "*") -> list[str]:
        namespaced = self._make_key(pattern)
        async with self._lock:
            now = time.monotonic()
            matched = []
            for cache_key in list(self._entries):
                if fnmatchcase(cache_key, namespaced) and self._live(cache_key, now) is not None:
                    matched.append(self._strip(cache_key))
            return matched

    async def clear(self) -> bool:
        async with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared {size} entries from memory cache namespace '{self.namespace}'")
        return True

    async def get_stats(self) -> dict[str, Any]:
        async with self._lock:
            total = self._hits + self._misses
            return {
                "backend": "memory",
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total * 100, 2) if total else 0.0,
                "evictions": self._evictions,
                "namespace": self.namespace,
            }

    async def close(self) -> None:
        logger.debug(f"Memory cache backend closed for namespace '{self.namespace}'")
