"""
Metrics Engine — Cache Factory

Creates cache backends from configuration and keeps a registry of named
instances so every component shares the same backend.

- Select backend with CACHE_BACKEND=memory|redis (defaults to memory unless
  REDIS_URL is set)
- All configuration is typed and validated via Pydantic models

Examples:
    from metrics_engine.cache import create_cache

    cache = create_cache()

    from metrics_engine.config import CacheConfig, CacheBackend
    cfg = CacheConfig(backend=CacheBackend.MEMORY, ttl_seconds=60)
    test_cache = create_cache(cfg, name="test")
"""

from __future__ import annotations

import logging

from ..config import CacheBackend, CacheConfig, get_config
from ..errors import ConfigurationError
from .backends.memory import MemoryCacheBackend
from .interface import CacheInterface

logger = logging.getLogger(__name__)

_cache_instances: dict[str, CacheInterface] = {}


def _build_backend(config: CacheConfig) -> CacheInterface:
    if config.backend == CacheBackend.MEMORY:
        return MemoryCacheBackend(
            max_size=config.max_size,
            default_ttl=config.ttl_seconds,
            namespace=config.namespace,
        )

    if config.backend == CacheBackend.REDIS:
        if not config.redis_url:
            raise ConfigurationError(
                "REDIS_URL must be set when CACHE_BACKEND=redis",
                details={"env": "REDIS_URL", "backend": "redis"},
            )
        # Imported on demand so memory-only deployments never open a pool
        from .backends.redis import RedisCacheBackend

        return RedisCacheBackend(
            redis_url=config.redis_url,
            namespace=config.namespace,
            default_ttl=config.ttl_seconds,
            max_connections=config.redis_max_connections,
            socket_timeout=config.redis_socket_timeout,
        )

    raise ConfigurationError(
        f"Unknown cache backend: {config.backend}",
        details={"backend": str(config.backend), "supported": ["memory", "redis"]},
    )


def create_cache(
    config: CacheConfig | None = None,
    name: str = "default",
) -> CacheInterface:
    """
    Create (or return the existing) named cache backend.

    Args:
        config: Cache configuration (uses global config if not provided)
        name: Cache instance name

    Returns:
        Configured cache backend instance

    Raises:
        ConfigurationError: If cache configuration is invalid
    """
    if name in _cache_instances:
        logger.debug("Returning existing cache instance: %s", name)
        return _cache_instances[name]

    if config is None:
        config = get_config().cache

    cache = _build_backend(config)
    _cache_instances[name] = cache

    logger.info(
        "Cache instance '%s' created with backend: %s",
        name,
        config.backend,
        extra={"cache_name": name, "backend": str(config.backend)},
    )
    return cache


def get_cache(name: str = "default") -> CacheInterface:
    """Get a named cache instance, creating it from global configuration if needed."""
    if name not in _cache_instances:
        return create_cache(name=name)
    return _cache_instances[name]


async def close_all_caches() -> None:
    """
    Close all cache instances and release resources.

    Called during graceful shutdown.
    """
    if not _cache_instances:
        return

    logger.info("Closing %d cache instance(s)...", len(_cache_instances))
    for name, cache in list(_cache_instances.items()):
        try:
            await cache.close()
        except Exception as e:
            logger.error(
                "Error closing cache instance '%s': %s",
                name,
                e,
                extra={"cache_name": name, "error": str(e)},
                exc_info=True,
            )
    _cache_instances.clear()


def reset_cache_factory() -> None:
    """
    Forget all instances without closing them.

    Warning: Only use this in testing contexts.
    """
    _cache_instances.clear()


def list_cache_instances() -> list[str]:
    return list(_cache_instances.keys())
