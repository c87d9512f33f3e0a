"""
Metrics Engine — Test Configuration and Shared Fixtures

Provides pytest configuration and shared fixtures for unit and integration tests:
a file-backed SQLite store per test, an in-memory cache, a scripted data
source and a controllable clock.
"""

import asyncio
import os
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from redis.asyncio import Redis

from metrics_engine.cache import MetricCache
from metrics_engine.cache.backends.memory import MemoryCacheBackend
from metrics_engine.calculation import CalculationEngine
from metrics_engine.collection import CollectionScheduler
from metrics_engine.config import AnalyticsConfig, MetricsEngineConfig, SchedulerConfig
from metrics_engine.errors import ComputationError
from metrics_engine.events import EventBus
from metrics_engine.models import MetricConfiguration, MetricDefinition, MetricKind
from metrics_engine.observability import ObservabilityAdapter
from metrics_engine.service import MetricsEngine
from metrics_engine.storage import EngineDatabase, MetricStore

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "DEBUG"


# Redis availability checker
def is_redis_available() -> bool:
    """Check if Redis server is available for testing."""
    import socket

    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(("localhost", 6379))
        sock.close()
        return result == 0
    except OSError:
        return False


# Skip marker for Redis tests
redis_available = pytest.mark.skipif(not is_redis_available(), reason="Redis server not available")

NOW = datetime(2024, 3, 15, 10, 30, tzinfo=UTC)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class StubDataSource:
    """
    Data source answering query templates from a dict.

    A value may be a number, an exception to raise, or a callable
    (period_start, period_end, dimensions) -> number.
    """

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.calls: list[dict[str, Any]] = []
        self.delay = 0.0

    async def fetch_scalar(
        self,
        template: str,
        period_start: datetime,
        period_end: datetime,
        dimensions: dict[str, Any],
        percentile: float | None = None,
    ) -> float:
        self.calls.append(
            {
                "template": template,
                "period_start": period_start,
                "period_end": period_end,
                "dimensions": dict(dimensions),
                "percentile": percentile,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)

        value = self.values.get(template, 0.0)
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return float(value(period_start, period_end, dimensions))
        return float(value)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


@pytest.fixture
def test_redis_url() -> str:
    """Get Redis URL for testing (database 15 for isolation)."""
    return os.environ.get("TEST_REDIS_URL", "redis://localhost:6379/15")


@pytest_asyncio.fixture
async def redis_client(test_redis_url: str) -> AsyncGenerator[Redis, None]:
    """
    Create a Redis client for testing.

    Automatically skips tests if Redis is not available.
    Clears the test database before and after each test.
    """
    client: Redis = Redis.from_url(test_redis_url, decode_responses=False)

    try:
        await client.ping()
    except OSError as e:
        await client.aclose()
        pytest.skip(f"Redis not available for testing: {e}")

    await client.flushdb()

    yield client

    try:
        await client.flushdb()
    finally:
        await client.aclose()


@pytest.fixture
def mock_env_memory(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables for memory cache backend."""
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("CACHE_BACKEND", "memory")
    monkeypatch.setenv("CACHE_MAX_SIZE", "100")
    monkeypatch.setenv("CACHE_TTL_SECONDS", "3600")
    monkeypatch.setenv("CACHE_NAMESPACE", "test")


@pytest.fixture
def mock_env_redis(monkeypatch: pytest.MonkeyPatch, test_redis_url: str) -> None:
    """Set environment variables for Redis cache backend."""
    if not is_redis_available():
        pytest.skip("Redis not available")
    monkeypatch.setenv("CACHE_BACKEND", "redis")
    monkeypatch.setenv("REDIS_URL", test_redis_url)
    monkeypatch.setenv("REDIS_MAX_CONNECTIONS", "5")
    monkeypatch.setenv("REDIS_SOCKET_TIMEOUT", "2")
    monkeypatch.setenv("CACHE_TTL_SECONDS", "3600")
    monkeypatch.setenv("CACHE_NAMESPACE", "test")


@pytest.fixture(autouse=True)
def reset_cache_factory() -> Generator[None, None, None]:
    """Reset cache factory after each test to prevent state leakage."""
    yield
    from metrics_engine.cache.factory import reset_cache_factory

    reset_cache_factory()


# ---------------------------------------------------------------------------
# Engine components
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def observability() -> ObservabilityAdapter:
    return ObservabilityAdapter(enable_metrics=True)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}"


@pytest_asyncio.fixture
async def database(database_url: str) -> AsyncGenerator[EngineDatabase, None]:
    """Fresh SQLite database with the engine schema."""
    db = EngineDatabase(database_url)
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def store(database: EngineDatabase) -> MetricStore:
    return MetricStore(database)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def backend() -> MemoryCacheBackend:
    return MemoryCacheBackend(max_size=1000, default_ttl=300, namespace="test")


@pytest.fixture
def metric_cache(backend: MemoryCacheBackend, store: MetricStore) -> MetricCache:
    return MetricCache(backend, store, default_ttl=300)


@pytest.fixture
def data_source() -> StubDataSource:
    return StubDataSource()


@pytest.fixture
def calculator(data_source: StubDataSource, store: MetricStore) -> CalculationEngine:
    return CalculationEngine(data_source, store)


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(collection_timeout_seconds=1.0, reload_interval_seconds=0)


@pytest_asyncio.fixture
async def scheduler(
    store: MetricStore,
    calculator: CalculationEngine,
    metric_cache: MetricCache,
    events: EventBus,
    scheduler_config: SchedulerConfig,
    observability: ObservabilityAdapter,
    clock: FixedClock,
) -> AsyncGenerator[CollectionScheduler, None]:
    """Collection scheduler whose APScheduler instance is never started."""
    collection = CollectionScheduler(
        store,
        calculator,
        metric_cache,
        events,
        config=scheduler_config,
        observability=observability,
        clock=clock,
    )
    yield collection
    await collection.shutdown()


@pytest_asyncio.fixture
async def engine(
    database: EngineDatabase,
    backend: MemoryCacheBackend,
    events: EventBus,
    data_source: StubDataSource,
    observability: ObservabilityAdapter,
    clock: FixedClock,
    database_url: str,
) -> AsyncGenerator[MetricsEngine, None]:
    """Fully wired engine with the scheduler disabled."""
    config = MetricsEngineConfig(
        environment="test",
        database={"url": database_url},
        scheduler=SchedulerConfig(enabled=False, collection_timeout_seconds=1.0),
        analytics=AnalyticsConfig(),
    )
    metrics = MetricsEngine(
        config,
        database=database,
        cache_backend=backend,
        events=events,
        data_source=data_source,
        observability=observability,
        clock=clock,
    )
    await metrics.start()
    yield metrics
    await metrics.stop()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def query_for(code: str) -> str:
    """Query template the `define` factory gives a metric by default."""
    return f"SELECT value FROM source_{code}"


@pytest.fixture
def define(store: MetricStore, clock: FixedClock) -> Callable[..., Awaitable[MetricDefinition]]:
    """Save a definition straight to the store."""

    async def _define(code: str, kind: MetricKind = MetricKind.COUNT, **fields: Any) -> MetricDefinition:
        payload: dict[str, Any] = {"code": code, "name": code.replace("_", " ").title(), "kind": kind, **fields}
        if kind != MetricKind.COMPOSITE:
            payload.setdefault("query_template", query_for(code))
        definition = MetricDefinition(**payload, created_at=clock(), updated_at=clock())
        return await store.save_definition(definition)

    return _define


@pytest.fixture
def configure(store: MetricStore, clock: FixedClock) -> Callable[..., Awaitable[MetricConfiguration]]:
    """Save a configuration straight to the store."""

    async def _configure(definition: MetricDefinition, **fields: Any) -> MetricConfiguration:
        configuration = MetricConfiguration(
            metric_id=definition.id, **fields, created_at=clock(), updated_at=clock()
        )
        return await store.save_configuration(configuration)

    return _configure


@pytest.fixture
def failing_query() -> ComputationError:
    return ComputationError("Metric query failed: no such table: beneficiaries")
