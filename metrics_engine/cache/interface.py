"""
Metrics Engine — Cache Interface

Defines the abstract interface that all cache backends must implement.
Values are JSON-compatible structures (dumped pydantic models); the metric
cache layer owns key naming and serialization.
"""

from abc import ABC, abstractmethod
from typing import Any


class CacheInterface(ABC):
    """
    Abstract base class for cache backends.

    All cache implementations must implement this interface to ensure
    consistent behavior across different backends (memory, Redis).
    Keys passed in and returned are un-namespaced; backends apply their
    namespace internally.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """
        Retrieve a value from the cache.

        Returns:
            Cached value if found and not expired, None otherwise
        """

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """
        Store a value in the cache.

        Args:
            key: Cache key
            value: JSON-compatible value
            ttl: Time-to-live in seconds (None = backend default, 0 = no expiry)

        Returns:
            True if stored successfully
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns False if it did not exist."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """True if the key exists and has not expired."""

    @abstractmethod
    async def keys(self, pattern: str = "*") -> list[str]:
        """
        List live keys matching a glob pattern.

        Args:
            pattern: Glob pattern over un-namespaced keys (``*``, ``?``, ``[...]``)

        Returns:
            Matching keys without the namespace prefix
        """

    @abstractmethod
    async def clear(self) -> bool:
        """Remove every entry in this backend's namespace."""

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]:
        """Backend statistics (size, hits, misses, ...)."""

    @abstractmethod
    async def close(self) -> None:
        """Release resources. Called during graceful shutdown."""

    async def delete_many(self, keys: list[str]) -> int:
        """
        Delete several keys.

        Default implementation calls delete() for each key.

        Returns:
            Number of keys that existed and were deleted
        """
        count = 0
        for key in keys:
            if await self.delete(key):
                count += 1
        return count

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every live key matching a glob pattern."""
        matched = await self.keys(pattern)
        if not matched:
            return 0
        return await self.delete_many(matched)
