"""
Metrics Engine — Service Facade

Wires the store, cache, calculation engine, scheduler, analytics and
definition manager together and exposes the manual invocation API:
collect by code, latest value, time series, anomaly/trend/forecast on demand,
cache maintenance, definition and configuration management, and status.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .analytics import AnalyticsService
from .cache import CacheInterface, MetricCache, create_cache
from .calculation import CalculationEngine, DataSource, SqlDataSource
from .collection import CollectionScheduler, CollectionState
from .config import MetricsEngineConfig, get_config
from .definitions import DefinitionManager
from .errors import NotFoundError, ValidationError
from .events import EventBus
from .models import (
    AnomalyResult,
    AnomalyScanResult,
    ConfidenceLevel,
    DefinitionFilter,
    ForecastModel,
    ForecastResult,
    MetricConfiguration,
    MetricDefinition,
    MetricDefinitionCreate,
    MetricDefinitionUpdate,
    MetricSnapshot,
    TrendResult,
    utc_now,
)
from .observability import ObservabilityAdapter, get_observability
from .storage import EngineDatabase, MetricStore

logger = logging.getLogger(__name__)

ANOMALY_BATCH_JOB_ID = "metrics:anomaly-batch"


class MetricsEngine:
    """One engine instance: shared store, cache and event bus for every component."""

    def __init__(
        self,
        config: MetricsEngineConfig | None = None,
        *,
        database: EngineDatabase | None = None,
        cache_backend: CacheInterface | None = None,
        events: EventBus | None = None,
        data_source: DataSource | None = None,
        observability: ObservabilityAdapter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or get_config()
        self.obs = observability or get_observability()
        self.clock = clock

        self.database = database or EngineDatabase(self.config.database.url, self.config.database.echo)
        self.store = MetricStore(self.database)
        self.events = events or EventBus()
        self.cache = MetricCache(
            cache_backend or create_cache(self.config.cache),
            self.store,
            default_ttl=self.config.cache.ttl_seconds,
        )
        self.calculator = CalculationEngine(data_source or SqlDataSource(self.database.engine), self.store)
        self.scheduler = CollectionScheduler(
            self.store,
            self.calculator,
            self.cache,
            self.events,
            config=self.config.scheduler,
            observability=self.obs,
            clock=clock,
        )
        self.analytics = AnalyticsService(
            self.store,
            self.cache,
            self.events,
            config=self.config.analytics,
            observability=self.obs,
            clock=clock,
        )
        self.definitions = DefinitionManager(
            self.store,
            self.calculator,
            self.cache,
            self.events,
            scheduler=self.scheduler,
            clock=clock,
        )
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Create the schema and, when enabled, start triggers and the anomaly batch."""
        if self._started:
            return
        await self.database.initialize()

        if self.config.scheduler.enabled:
            batch_interval = self.config.scheduler.anomaly_batch_interval_seconds
            if batch_interval > 0:
                self.scheduler.add_periodic_job(self.analytics.run_batch, batch_interval, ANOMALY_BATCH_JOB_ID)
            await self.scheduler.start()
        else:
            logger.info("Scheduler disabled; collections run on demand only")

        self._started = True
        self.obs.event("engine_started", {"scheduler_enabled": self.config.scheduler.enabled})

    async def stop(self) -> None:
        if not self._started:
            return
        await self.scheduler.shutdown()
        await self.cache.backend.close()
        await self.database.close()
        self._started = False
        self.obs.event("engine_stopped", {})

    # ------------------------------------------------------------------
    # Collection and reads
    # ------------------------------------------------------------------

    async def _active_definition(self, code: str) -> MetricDefinition:
        definition = await self.cache.get_definition(code)
        if definition is None:
            raise NotFoundError("MetricDefinition", code)
        return definition

    async def collect_metric(
        self,
        code: str,
        dimensions: dict[str, Any] | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> MetricSnapshot:
        """Collect now; computation errors are raised, the error snapshot is still stored."""
        definition = await self._active_definition(code)
        return await self.scheduler.collect(
            definition,
            dimensions=dimensions,
            period_start=period_start,
            period_end=period_end,
            trigger="manual",
        )

    async def get_latest_value(self, code: str, dimensions: dict[str, Any] | None = None) -> MetricSnapshot:
        definition = await self._active_definition(code)
        snapshot = await self.cache.get_latest_snapshot(definition.id, dimensions)
        if snapshot is None:
            raise NotFoundError("MetricSnapshot", f"{code} (no successful snapshot)")
        return snapshot

    async def get_time_series(
        self,
        code: str,
        start: datetime,
        end: datetime,
        dimensions: dict[str, Any] | None = None,
    ) -> list[MetricSnapshot]:
        definition = await self._active_definition(code)
        return await self.cache.get_time_series(definition.id, start, end, dimensions)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def detect_anomaly(
        self,
        code: str | None = None,
        snapshot_id: str | None = None,
        dimensions: dict[str, Any] | None = None,
        confidence: ConfidenceLevel | str = ConfidenceLevel.MEDIUM,
    ) -> AnomalyResult:
        """Score a stored snapshot, or the latest one of `code` and `dimensions`."""
        if snapshot_id is not None:
            return await self.analytics.detect_for_snapshot(snapshot_id, confidence)
        if code is None:
            raise ValidationError("Either code or snapshot_id is required")
        return await self.analytics.detect_latest(code, dimensions, confidence)

    async def scan_anomalies(
        self,
        code: str,
        start: datetime | None = None,
        end: datetime | None = None,
        dimensions: dict[str, Any] | None = None,
        confidence: ConfidenceLevel | str = ConfidenceLevel.MEDIUM,
    ) -> AnomalyScanResult:
        return await self.analytics.scan_series(code, start, end, dimensions, confidence)

    async def detect_anomalies_batch(
        self,
        confidence: ConfidenceLevel | str = ConfidenceLevel.MEDIUM,
        window_days: int | None = None,
    ) -> list[AnomalyResult]:
        return await self.analytics.detect_batch(confidence, window_days)

    async def analyze_trend(
        self,
        code: str,
        start: datetime | None = None,
        end: datetime | None = None,
        dimensions: dict[str, Any] | None = None,
    ) -> TrendResult:
        return await self.analytics.analyze_trend(code, start, end, dimensions)

    async def forecast(
        self,
        code: str,
        horizon: int | None = None,
        confidence_level: float = 0.95,
        model: ForecastModel | str | None = None,
        dimensions: dict[str, Any] | None = None,
    ) -> ForecastResult:
        return await self.analytics.forecast(code, horizon, confidence_level, model, dimensions)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def clear_cache(self, code: str | None = None) -> int:
        """Invalidate one metric's entries, or every engine entry when no code is given."""
        if code is None:
            return await self.cache.clear()
        definition = await self.definitions.get_definition_by_code(code)
        return await self.cache.invalidate(definition.id)

    async def get_cache_stats(self) -> dict[str, Any]:
        return await self.cache.get_stats()

    async def warm_cache(self) -> int:
        return await self.cache.warm()

    # ------------------------------------------------------------------
    # Definitions and configurations
    # ------------------------------------------------------------------

    async def create_definition(self, payload: MetricDefinitionCreate | dict[str, Any]) -> MetricDefinition:
        return await self.definitions.create_definition(payload)

    async def update_definition(
        self, code: str, changes: MetricDefinitionUpdate | dict[str, Any]
    ) -> MetricDefinition:
        definition = await self.definitions.get_definition_by_code(code)
        return await self.definitions.update_definition(definition.id, changes)

    async def deactivate_definition(self, code: str) -> MetricDefinition:
        definition = await self.definitions.get_definition_by_code(code)
        return await self.definitions.deactivate_definition(definition.id)

    async def get_definition(self, code: str) -> MetricDefinition:
        return await self.definitions.get_definition_by_code(code)

    async def list_definitions(
        self, filters: DefinitionFilter | dict[str, Any] | None = None
    ) -> tuple[list[MetricDefinition], int]:
        return await self.definitions.list_definitions(filters)

    async def configure_metric(self, code: str, settings: dict[str, Any]) -> MetricConfiguration:
        """Create the metric's configuration, or update the existing one with `settings`."""
        definition = await self.definitions.get_definition_by_code(code)
        existing = await self.store.get_configuration_for_metric(definition.id)
        if existing is None:
            return await self.definitions.create_configuration({**settings, "metric_id": definition.id})
        return await self.definitions.update_configuration(existing.id, settings)

    async def get_configuration(self, code: str) -> MetricConfiguration:
        definition = await self.definitions.get_definition_by_code(code)
        return await self.definitions.get_configuration_for_metric(definition.id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_collection_state(self, definition_id: str) -> CollectionState:
        return self.scheduler.get_state(definition_id)

    async def get_status(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "environment": self.config.environment,
            "scheduler": self.scheduler.status(),
            "events": self.events.subscriptions(),
            "cache": await self.cache.get_stats(),
            "observability": self.obs.get_metrics(),
        }


_engine: MetricsEngine | None = None


def get_engine(config: MetricsEngineConfig | None = None) -> MetricsEngine:
    """Process-wide engine instance, created on first use."""
    global _engine
    if _engine is None:
        _engine = MetricsEngine(config)
    return _engine


async def close_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.stop()
        _engine = None
