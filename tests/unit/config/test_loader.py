"""
Tests for configuration loading from environment variables and .env files.
"""

from pathlib import Path

import pytest

from metrics_engine.config import CacheBackend, get_config, load_config, reload_config
from metrics_engine.errors import ConfigurationError

ENV_VARS = (
    "CACHE_BACKEND",
    "CACHE_TTL_SECONDS",
    "CACHE_MAX_SIZE",
    "CACHE_NAMESPACE",
    "REDIS_URL",
    "DATABASE_URL",
    "SCHEDULER_ENABLED",
    "COLLECTION_TIMEOUT_SECONDS",
    "CONFIG_RELOAD_INTERVAL_SECONDS",
    "ANOMALY_BATCH_INTERVAL_SECONDS",
    "ANOMALY_MIN_SAMPLES",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> str:
    """Strip engine variables; returns a .env path that does not exist."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # the loaded singleton is restored after the test
    monkeypatch.setattr("metrics_engine.config.loader._config_instance", None)
    return str(tmp_path / "missing.env")


class TestLoadConfig:
    def test_defaults(self, clean_env: str) -> None:
        config = load_config(env_file=clean_env, reload=True)

        assert config.environment == "test"
        assert config.cache.backend == CacheBackend.MEMORY
        assert config.cache.ttl_seconds == 300
        assert config.scheduler.enabled is True
        assert config.scheduler.reload_interval_seconds == 3600
        assert config.analytics.min_samples == 5

    def test_environment_overrides(self, clean_env: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CACHE_TTL_SECONDS", "60")
        monkeypatch.setenv("SCHEDULER_ENABLED", "false")
        monkeypatch.setenv("COLLECTION_TIMEOUT_SECONDS", "12.5")
        monkeypatch.setenv("ANOMALY_MIN_SAMPLES", "8")

        config = load_config(env_file=clean_env, reload=True)

        assert config.cache.ttl_seconds == 60
        assert config.scheduler.enabled is False
        assert config.scheduler.collection_timeout_seconds == 12.5
        assert config.analytics.min_samples == 8

    def test_redis_url_selects_redis(self, clean_env: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("REDIS_URL", "redis://cache.internal:6379/0")

        config = load_config(env_file=clean_env, reload=True)

        assert config.cache.backend == CacheBackend.REDIS
        assert config.cache.redis_url == "redis://cache.internal:6379/0"

    def test_env_file_is_read(self, clean_env: str, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("CACHE_NAMESPACE=from_file\n")
        # load_dotenv writes into os.environ; let monkeypatch restore it
        monkeypatch.setenv("CACHE_NAMESPACE", "placeholder")

        config = load_config(env_file=str(env_file), reload=True)

        assert config.cache.namespace == "from_file"

    def test_cached_until_reload(self, clean_env: str, monkeypatch: pytest.MonkeyPatch) -> None:
        first = load_config(env_file=clean_env, reload=True)
        monkeypatch.setenv("CACHE_TTL_SECONDS", "42")

        assert get_config() is first
        assert reload_config(env_file=clean_env).cache.ttl_seconds == 42


class TestInvalidConfig:
    def test_non_numeric_value(self, clean_env: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CACHE_TTL_SECONDS", "five minutes")

        with pytest.raises(ConfigurationError, match="Invalid numeric"):
            load_config(env_file=clean_env, reload=True)

    def test_out_of_range_value(self, clean_env: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("COLLECTION_TIMEOUT_SECONDS", "0")

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(env_file=clean_env, reload=True)

        assert exc_info.value.details["validation_errors"]

    def test_redis_backend_without_url(self, clean_env: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CACHE_BACKEND", "redis")

        with pytest.raises(ConfigurationError):
            load_config(env_file=clean_env, reload=True)

    def test_synchronous_database_driver(self, clean_env: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "sqlite:///metrics.db")

        with pytest.raises(ConfigurationError):
            load_config(env_file=clean_env, reload=True)
