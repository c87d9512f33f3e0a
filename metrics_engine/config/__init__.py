"""
Metrics Engine — Configuration Module

Provides typed configuration loading and validation.
"""

from .loader import get_config, load_config, reload_config
from .schemas import (
    AnalyticsConfig,
    CacheBackend,
    CacheConfig,
    DatabaseConfig,
    Environment,
    LogLevel,
    MetricsEngineConfig,
    ObservabilityConfig,
    SchedulerConfig,
)

__all__ = [
    # Loader functions
    "load_config",
    "get_config",
    "reload_config",
    # Main config
    "MetricsEngineConfig",
    # Enums
    "Environment",
    "CacheBackend",
    "LogLevel",
    # Config sections
    "CacheConfig",
    "DatabaseConfig",
    "SchedulerConfig",
    "AnalyticsConfig",
    "ObservabilityConfig",
]
