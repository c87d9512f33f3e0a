"""
Metrics Engine — Redis Cache Backend Tests

Tests the interface methods, TTL handling, namespace isolation, key scans and
error conditions of the Redis backend.

Requires Redis server running on localhost:6379 (or TEST_REDIS_URL env var).
"""

import asyncio
from collections.abc import AsyncGenerator
from typing import Any

import pytest

from metrics_engine.cache.backends.redis import RedisCacheBackend
from metrics_engine.errors import CacheError

# Check if Redis is available
try:
    import socket

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(1)
    redis_available = sock.connect_ex(("localhost", 6379)) == 0
    sock.close()
except OSError:
    redis_available = False

pytestmark = pytest.mark.skipif(not redis_available, reason="Redis server not available")


class TestRedisCacheBackend:
    """Test suite for RedisCacheBackend."""

    @pytest.fixture
    async def cache(self, test_redis_url: str) -> AsyncGenerator[RedisCacheBackend, None]:
        """Create a fresh Redis cache instance for each test."""
        cache = RedisCacheBackend(
            redis_url=test_redis_url,
            namespace="test",
            default_ttl=3600,
            max_connections=5,
            socket_timeout=2,
        )
        await cache.clear()
        yield cache
        await cache.clear()
        await cache.close()

    async def test_initialization(self, test_redis_url: str) -> None:
        """Test cache initialization with custom parameters."""
        cache = RedisCacheBackend(
            redis_url=test_redis_url,
            namespace="custom",
            default_ttl=1800,
            max_connections=10,
            socket_timeout=5,
        )

        assert cache.namespace == "custom"
        assert cache.default_ttl == 1800

        stats = await cache.get_stats()
        assert stats["backend"] == "redis"
        assert stats["namespace"] == "custom"
        assert stats["connected"] is True

        await cache.close()

    def test_requires_url(self) -> None:
        with pytest.raises(ValueError):
            RedisCacheBackend(redis_url="")

    async def test_set_and_get(self, cache: RedisCacheBackend) -> None:
        """Test basic set and get operations."""
        assert await cache.set("key1", "value1") is True
        assert await cache.get("key1") == "value1"

        stats = await cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 0

    async def test_get_nonexistent_key(self, cache: RedisCacheBackend) -> None:
        """Test getting a key that doesn't exist."""
        assert await cache.get("nonexistent") is None

        stats = await cache.get_stats()
        assert stats["misses"] == 1

    async def test_json_round_trip_of_snapshot_payload(self, cache: RedisCacheBackend) -> None:
        """Values are stored as JSON, so model dumps survive unchanged."""
        payload: dict[str, Any] = {
            "id": "abc",
            "value": 1520.5,
            "dimensions": {"region": "north"},
            "metadata": {"trigger": "manual"},
            "status_message": None,
        }
        await cache.set("snapshot:m1:hash", payload)

        assert await cache.get("snapshot:m1:hash") == payload

    async def test_delete_and_exists(self, cache: RedisCacheBackend) -> None:
        await cache.set("key1", "value1")
        assert await cache.exists("key1") is True

        assert await cache.delete("key1") is True
        assert await cache.exists("key1") is False
        assert await cache.delete("key1") is False

    async def test_ttl_expiration(self, cache: RedisCacheBackend) -> None:
        """Test that entries expire after TTL."""
        await cache.set("short_lived", "value", ttl=1)
        assert await cache.get("short_lived") == "value"

        await asyncio.sleep(1.5)

        assert await cache.get("short_lived") is None

    async def test_keys_and_delete_pattern(self, cache: RedisCacheBackend) -> None:
        """Glob scans strip the namespace and drive family invalidation."""
        await cache.set("snapshot:m1:aaa", 1)
        await cache.set("snapshot:m1:bbb", 2)
        await cache.set("series:m1:aaa:range", 3)
        await cache.set("snapshot:m2:aaa", 4)

        assert sorted(await cache.keys("snapshot:m1:*")) == ["snapshot:m1:aaa", "snapshot:m1:bbb"]

        assert await cache.delete_pattern("*:m1:*") == 3
        assert await cache.keys() == ["snapshot:m2:aaa"]

    async def test_delete_many(self, cache: RedisCacheBackend) -> None:
        for i in range(4):
            await cache.set(f"key{i}", i)

        assert await cache.delete_many(["key0", "key1", "missing"]) == 2
        assert await cache.delete_many([]) == 0
        assert sorted(await cache.keys()) == ["key2", "key3"]

    async def test_namespace_isolation(self, test_redis_url: str) -> None:
        """Test that different namespaces don't see each other's keys."""
        cache1 = RedisCacheBackend(redis_url=test_redis_url, namespace="ns1")
        cache2 = RedisCacheBackend(redis_url=test_redis_url, namespace="ns2")
        try:
            await cache1.set("key", "value1")
            await cache2.set("key", "value2")

            assert await cache1.get("key") == "value1"
            assert await cache2.get("key") == "value2"

            await cache1.clear()
            assert await cache2.get("key") == "value2"
        finally:
            await cache1.clear()
            await cache2.clear()
            await cache1.close()
            await cache2.close()

    async def test_unreachable_server_raises_cache_error(self) -> None:
        """Connection failures surface as CacheError, never as raw redis errors."""
        cache = RedisCacheBackend(redis_url="redis://localhost:1/0", socket_timeout=1)
        try:
            with pytest.raises(CacheError):
                await cache.get("key")
        finally:
            await cache.close()
