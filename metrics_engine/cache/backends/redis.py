"""
Metrics Engine — Redis Cache Backend

Shared cache for engines running in several processes:
- JSON-encoded values under a namespace prefix
- Per-key expiry via SET EX (None -> default TTL, 0 -> no expiry)
- SCAN-based key listing for family-wide invalidation

Connection and protocol failures are raised as CacheError; the metric cache
layer treats them as misses and falls back to the store.

Example:
    cache = RedisCacheBackend(redis_url="redis://localhost:6379/0", namespace="metrics")
    await cache.set("definition:approval_rate", {...}, ttl=300)
"""

from __future__ import annotations

import json
import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ...errors import CacheError
from ..interface import CacheInterface

logger = logging.getLogger(__name__)

_SCAN_BATCH = 500


class RedisCacheBackend(CacheInterface):
    """Redis cache backend with JSON serialization and TTL."""

    def __init__(
        self,
        redis_url: str,
        namespace: str = "metrics",
        default_ttl: int = 300,
        max_connections: int = 10,
        socket_timeout: int = 5,
    ) -> None:
        """
        Initialize Redis cache backend.

        Args:
            redis_url: Connection URL, e.g. redis://localhost:6379/0 or rediss:// for TLS
            namespace: Prefix for all keys
            default_ttl: Default TTL in seconds (0 => no expiry)
            max_connections: Connection pool size
            socket_timeout: Socket timeout in seconds
        """
        if not redis_url:
            raise ValueError("redis_url is required")

        self.namespace = namespace.strip() or "metrics"
        self.default_ttl = max(0, int(default_ttl))
        self._hits = 0
        self._misses = 0

        # Lazy connection; connects on first command
        self._client = Redis.from_url(
            redis_url,
            decode_responses=True,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
        )

    def _make_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _expiry(self, ttl: int | None) -> int | None:
        ttl = self.default_ttl if ttl is None else int(ttl)
        return ttl if ttl > 0 else None

    def _failure(self, operation: str, error: RedisError, **context: Any) -> CacheError:
        logger.warning(
            f"Redis {operation} failed: {error}",
            extra={"operation": operation, "namespace": self.namespace, "error": str(error), **context},
        )
        return CacheError(f"Redis {operation} failed: {error}", details={"operation": operation, **context})

    async def get(self, key: str) -> Any | None:
        try:
            data = await self._client.get(self._make_key(key))
        except RedisError as e:
            raise self._failure("get", e, key=key) from e

        if data is None:
            self._misses += 1
            return None
        self._hits += 1
        return json.loads(data)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        try:
            return bool(await self._client.set(self._make_key(key), payload, ex=self._expiry(ttl)))
        except RedisError as e:
            raise self._failure("set", e, key=key) from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(self._make_key(key)))
        except RedisError as e:
            raise self._failure("delete", e, key=key) from e

    async def delete_many(self, keys: list[str]) -> int:
        if not keys:
            return 0
        try:
            return int(await self._client.delete(*(self._make_key(k) for k in keys)))
        except RedisError as e:
            raise self._failure("delete_many", e, key_count=len(keys)) from e

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(self._make_key(key)))
        except RedisError as e:
            raise self._failure("exists", e, key=key) from e

    async def keys(self, pattern: str = "*") -> list[str]:
        prefix_length = len(self.namespace) + 1
        try:
            return [
                key[prefix_length:]
                async for key in self._client.scan_iter(match=self._make_key(pattern), count=_SCAN_BATCH)
            ]
        except RedisError as e:
            raise self._failure("scan", e, pattern=pattern) from e

    async def clear(self) -> bool:
        removed = await self.delete_pattern("*")
        logger.info(f"Cleared {removed} keys from namespace '{self.namespace}'")
        return True

    async def get_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        stats: dict[str, Any] = {
            "backend": "redis",
            "namespace": self.namespace,
            "default_ttl": self.default_ttl,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 2) if total else 0.0,
            "connected": False,
        }
        try:
            stats["connected"] = bool(await self._client.ping())
            info = await self._client.info(section="server")
            stats["redis_version"] = info.get("redis_version")
        except RedisError as e:
            logger.warning(f"Failed to get Redis INFO: {e}", extra={"error": str(e)})
        return stats

    async def close(self) -> None:
        await self._client.aclose()
        logger.info(f"Closed Redis cache backend for namespace '{self.namespace}'")
