"""
Metrics Engine — Configuration Loader

Loads and validates configuration from environment variables and .env files.
Provides a singleton configuration instance for the runtime.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from ..errors import ConfigurationError
from .schemas import MetricsEngineConfig

logger = logging.getLogger(__name__)

_config_instance: MetricsEngineConfig | None = None


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def load_config(
    env_file: str | None = None,
    reload: bool = False,
) -> MetricsEngineConfig:
    """
    Load configuration from environment variables and .env file.

    Args:
        env_file: Path to .env file (default: .env in working directory)
        reload: Force reload even if config already loaded

    Returns:
        Validated MetricsEngineConfig instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config_instance

    if _config_instance is not None and not reload:
        return _config_instance

    if env_file:
        env_path = Path(env_file)
    else:
        env_path = Path.cwd() / ".env"

    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        try:
            load_dotenv(env_path, override=True)
        except Exception as e:
            logger.error(
                f"Failed to load .env file from {env_path}: {e}",
                extra={"path": str(env_path), "error": str(e)},
                exc_info=True,
            )
            raise ConfigurationError(
                f"Failed to load environment file: {e}",
                details={"path": str(env_path), "error": str(e)},
            ) from e
    else:
        logger.debug("No .env file found, using environment variables only")

    # Auto-detect cache backend: Redis if REDIS_URL is set, else memory
    redis_url = os.getenv("REDIS_URL")
    cache_backend = "redis" if redis_url else "memory"

    try:
        config_dict = {
            "environment": os.getenv("ENVIRONMENT", "development"),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "cache": {
                "backend": os.getenv("CACHE_BACKEND", cache_backend),
                "ttl_seconds": int(os.getenv("CACHE_TTL_SECONDS", "300")),
                "max_size": int(os.getenv("CACHE_MAX_SIZE", "10000")),
                "namespace": os.getenv("CACHE_NAMESPACE", "metrics"),
                "redis_url": redis_url,
                "redis_max_connections": int(os.getenv("REDIS_MAX_CONNECTIONS", "10")),
                "redis_socket_timeout": int(os.getenv("REDIS_SOCKET_TIMEOUT", "5")),
            },
            "database": {
                "url": os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/metrics_engine.db"),
                "echo": _flag("DATABASE_ECHO", "false"),
            },
            "scheduler": {
                "enabled": _flag("SCHEDULER_ENABLED", "true"),
                "timezone": os.getenv("SCHEDULER_TIMEZONE", "UTC"),
                "collection_timeout_seconds": float(os.getenv("COLLECTION_TIMEOUT_SECONDS", "60")),
                "reload_interval_seconds": int(os.getenv("CONFIG_RELOAD_INTERVAL_SECONDS", "3600")),
                "anomaly_batch_interval_seconds": int(os.getenv("ANOMALY_BATCH_INTERVAL_SECONDS", "0")),
            },
            "analytics": {
                "min_samples": int(os.getenv("ANOMALY_MIN_SAMPLES", "5")),
                "anomaly_window_days": int(os.getenv("ANOMALY_WINDOW_DAYS", "30")),
                "batch_window_days": int(os.getenv("ANOMALY_BATCH_WINDOW_DAYS", "7")),
                "forecast_history_days": int(os.getenv("FORECAST_HISTORY_DAYS", "90")),
            },
            "observability": {
                "enable_metrics": _flag("ENABLE_METRICS", "true"),
                "enable_tracing": _flag("ENABLE_TRACING", "false"),
                "json_logs": _flag("JSON_LOGS", "true"),
            },
        }
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid numeric environment variable: {e}",
            details={"error": str(e)},
        ) from e

    try:
        _config_instance = MetricsEngineConfig(**config_dict)  # type: ignore[arg-type]
        logger.info(
            f"Configuration loaded successfully (environment: {_config_instance.environment})",
            extra={"environment": _config_instance.environment, "cache_backend": _config_instance.cache.backend},
        )
        return _config_instance
    except ValidationError as e:
        logger.error(
            f"Configuration validation failed: {e}",
            extra={"validation_errors": e.errors(), "config_dict_keys": list(config_dict.keys())},
            exc_info=True,
        )
        raise ConfigurationError(
            "Configuration validation failed. Check your environment variables and configuration.",
            details={"validation_errors": e.errors()},
        ) from e


def get_config() -> MetricsEngineConfig:
    """
    Get the current configuration instance.

    Returns:
        Current MetricsEngineConfig instance (loaded on first access)
    """
    if _config_instance is None:
        return load_config()

    return _config_instance


def reload_config(env_file: str | None = None) -> MetricsEngineConfig:
    """
    Force reload configuration.

    Args:
        env_file: Optional path to .env file

    Returns:
        Reloaded MetricsEngineConfig instance
    """
    return load_config(env_file=env_file, reload=True)
