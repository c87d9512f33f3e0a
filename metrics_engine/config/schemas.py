"""
Metrics Engine — Configuration Schemas

Defines typed configuration models using Pydantic for validation and type safety.
All configuration must be defined here and validated at startup.

- Only engine-level configuration lives here; per-metric operational policy
  (schedule, retention, cache, alerts) is stored with each metric configuration
- All config via environment variables
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Environment(str, Enum):
    """Runtime environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class CacheBackend(str, Enum):
    """Supported cache backends."""

    MEMORY = "memory"
    REDIS = "redis"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class CacheConfig(BaseModel):
    """Cache configuration."""

    backend: CacheBackend = Field(default=CacheBackend.MEMORY, description="Cache backend to use")
    ttl_seconds: int = Field(default=300, ge=1, description="Default TTL for metric entries in seconds")
    max_size: int = Field(default=10000, ge=1, description="Max cache entries (memory backend)")
    namespace: str = Field(default="metrics", description="Cache key namespace/prefix")

    # Redis-specific settings (only used when backend=redis)
    redis_url: str | None = Field(default=None, description="Redis connection URL")
    redis_max_connections: int = Field(default=10, ge=1, description="Redis connection pool size")
    redis_socket_timeout: int = Field(default=5, ge=1, description="Redis socket timeout in seconds")

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str | None, info: Any) -> str | None:
        """Ensure redis_url is provided when backend is redis."""
        backend = info.data.get("backend")
        if backend == CacheBackend.REDIS and not v:
            raise ValueError("redis_url is required when cache backend is 'redis'")
        return v


class DatabaseConfig(BaseModel):
    """Metric store configuration."""

    url: str = Field(
        default="sqlite+aiosqlite:///./data/metrics_engine.db",
        description="SQLAlchemy async database URL for definitions, configurations and snapshots",
    )
    echo: bool = Field(default=False, description="Log every SQL statement")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Require an async driver."""
        if "+" not in v.split("://", 1)[0]:
            raise ValueError("database url must name an async driver, e.g. sqlite+aiosqlite:///...")
        return v


class SchedulerConfig(BaseModel):
    """Collection scheduler configuration."""

    enabled: bool = Field(default=True, description="Start triggers on engine startup")
    timezone: str = Field(default="UTC", description="Timezone used to evaluate cron expressions")
    collection_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Upper bound on a single collection run"
    )
    reload_interval_seconds: int = Field(
        default=3600, ge=0, description="Re-read configurations and refresh triggers (0 = disabled)"
    )
    anomaly_batch_interval_seconds: int = Field(
        default=0, ge=0, description="Run the anomaly batch on a timer (0 = disabled)"
    )
    misfire_grace_seconds: int = Field(default=30, ge=1, description="Late-start tolerance for a trigger")


class AnalyticsConfig(BaseModel):
    """Anomaly, trend and forecast configuration."""

    min_samples: int = Field(default=5, ge=2, description="Minimum history size for a non-neutral result")
    anomaly_window_days: int = Field(default=30, ge=1, description="History window for snapshot anomaly checks")
    batch_window_days: int = Field(default=7, ge=1, description="Lookback window for the anomaly batch")
    forecast_history_days: int = Field(default=90, ge=1, description="History window fed to the forecaster")
    default_forecast_horizon: int = Field(default=3, ge=1, le=365, description="Forecast points when unspecified")


class ObservabilityConfig(BaseModel):
    """Observability and monitoring configuration."""

    enable_metrics: bool = Field(default=True, description="Enable in-process counters and histograms")
    enable_tracing: bool = Field(default=False, description="Log a line for every traced span")
    json_logs: bool = Field(default=True, description="Emit structured JSON log lines")


class MetricsEngineConfig(BaseModel):
    """Root configuration for the metrics engine."""

    environment: Environment = Field(default=Environment.DEVELOPMENT, description="Runtime environment")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")

    cache: CacheConfig = Field(default_factory=CacheConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @field_validator("database")
    @classmethod
    def validate_database(cls, v: DatabaseConfig, info: Any) -> DatabaseConfig:
        """Refuse SQL echo in production."""
        environment = info.data.get("environment")
        if environment == Environment.PRODUCTION and v.echo:
            raise ValueError("database echo must be disabled in production")
        return v

    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)
