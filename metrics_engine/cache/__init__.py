"""
Metrics Engine — Cache Module

Pluggable cache backends (memory, redis) behind one async interface, and the
metric-aware cache layer built on top of them.

Usage:
    from metrics_engine.cache import MetricCache, create_cache

    cache = MetricCache(create_cache(), store, default_ttl=300)
    definition = await cache.get_definition("approval_rate")
    await cache.invalidate(definition.id)
"""

from .factory import (
    close_all_caches,
    create_cache,
    get_cache,
    list_cache_instances,
    reset_cache_factory,
)
from .interface import CacheInterface
from .metric_cache import CacheFamily, MetricCache

__all__ = [
    "create_cache",
    "get_cache",
    "close_all_caches",
    "list_cache_instances",
    "reset_cache_factory",
    "CacheInterface",
    "CacheFamily",
    "MetricCache",
]
