"""
Collection Scheduler

Owns one trigger per active, collection-enabled metric configuration:

- interval and cron schedules run as APScheduler jobs on the event loop
- event schedules subscribe to their exact event name on the event bus
- manual schedules only run when invoked

A collection derives the period window from the metric's granularity,
returns the stored snapshot when one already exists for the same period and
dimension set, and otherwise computes, persists, invalidates the cache,
evaluates alert rules and applies retention.

Within a metric, collections are serialized by a per-metric lock and the
store's uniqueness constraint; different metrics never wait on each other.
With several engine processes the uniqueness constraint is the only
deduplication, no distributed lock is taken.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..config import SchedulerConfig
from ..errors import (
    CacheError,
    CollectionTimeoutError,
    ComputationError,
    MetricsEngineError,
    NotFoundError,
    PersistenceError,
    ValidationError,
    is_retryable_error,
)
from ..events import EventBus
from ..models import (
    MetricConfiguration,
    MetricDefinition,
    MetricSnapshot,
    SamplingStrategy,
    ScheduleKind,
    SnapshotStatus,
    ensure_utc,
    utc_now,
)
from ..observability import ObservabilityAdapter, get_observability
from .alerts import AlertEvaluator
from .periods import dimension_hash, format_value, period_window
from .triggers import build_trigger

if TYPE_CHECKING:
    from ..cache.metric_cache import MetricCache
    from ..calculation.engine import CalculationEngine
    from ..storage.store import MetricStore

logger = logging.getLogger(__name__)

MAX_STATUS_MESSAGE = 500
RELOAD_JOB_ID = "metrics:reload-configurations"


class CollectionState(str, Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"


def _job_id(definition_id: str) -> str:
    return f"metrics:collect:{definition_id}"


def _next_run(job: Job) -> str | None:
    # Jobs added before the scheduler starts have no next_run_time yet
    next_run = getattr(job, "next_run_time", None)
    return next_run.isoformat() if next_run else None


class CollectionScheduler:
    """Per-metric triggers and idempotent snapshot creation."""

    def __init__(
        self,
        store: MetricStore,
        calculator: CalculationEngine,
        cache: MetricCache,
        events: EventBus,
        config: SchedulerConfig | None = None,
        scheduler: AsyncIOScheduler | None = None,
        observability: ObservabilityAdapter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.calculator = calculator
        self.cache = cache
        self.events = events
        self.config = config or SchedulerConfig()
        self.clock = clock
        self.obs = observability or get_observability()
        self.alerts = AlertEvaluator(store, events)

        self._scheduler = scheduler or AsyncIOScheduler(timezone=self.config.timezone)
        self._base_states: dict[str, CollectionState] = {}
        self._running: set[str] = set()
        self._event_routes: dict[str, set[str]] = defaultdict(set)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def start(self) -> None:
        """Register every configuration and start timers."""
        registered = await self.load_configurations()

        if self.config.reload_interval_seconds > 0:
            self.add_periodic_job(self._reload, self.config.reload_interval_seconds, RELOAD_JOB_ID)

        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(
            f"Collection scheduler started with {registered} metric(s)",
            extra={"registered": registered, "jobs": len(self._scheduler.get_jobs())},
        )

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        for event_name in list(self._event_routes):
            self.events.unsubscribe(event_name, self._on_event)
        self._event_routes.clear()
        self._base_states.clear()
        logger.info("Collection scheduler stopped")

    def add_periodic_job(self, func: Callable[[], Awaitable[Any]], seconds: int, job_id: str) -> None:
        """Run a housekeeping coroutine every `seconds`."""
        self._scheduler.add_job(
            func,
            "interval",
            seconds=seconds,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    async def _reload(self) -> None:
        try:
            await self.load_configurations()
        except MetricsEngineError as e:
            logger.error(f"Configuration reload failed: {e}", extra={"error": str(e)})

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def load_configurations(self) -> int:
        """(Re-)register every stored configuration. Returns the number with an active trigger."""
        active = 0
        for configuration in await self.store.list_configurations():
            definition = await self.store.get_definition(configuration.metric_id)
            if definition is None:
                logger.warning(
                    "Configuration references an unknown metric",
                    extra={"configuration_id": configuration.id, "metric_id": configuration.metric_id},
                )
                continue
            if self.register(definition, configuration) != CollectionState.DISABLED:
                active += 1
        return active

    def register(self, definition: MetricDefinition, configuration: MetricConfiguration) -> CollectionState:
        """Replace whatever trigger a metric had with the one its configuration asks for."""
        self.unregister(definition.id)

        if not definition.active or not configuration.collection_enabled:
            state = CollectionState.DISABLED
        elif configuration.schedule_kind in (ScheduleKind.INTERVAL, ScheduleKind.CRON):
            trigger = build_trigger(configuration, self.config.timezone)
            self._scheduler.add_job(
                self._run_scheduled,
                trigger,
                args=[definition.id],
                id=_job_id(definition.id),
                name=definition.code,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=self.config.misfire_grace_seconds,
            )
            state = CollectionState.SCHEDULED
        elif configuration.schedule_kind == ScheduleKind.EVENT:
            event_name = configuration.event_name or ""
            if not self._event_routes[event_name]:
                self.events.subscribe(event_name, self._on_event)
            self._event_routes[event_name].add(definition.id)
            state = CollectionState.SCHEDULED
        else:
            state = CollectionState.IDLE

        self._base_states[definition.id] = state
        logger.debug(
            f"Registered {definition.code} as {state.value}",
            extra={"metric": definition.code, "schedule_kind": configuration.schedule_kind.value},
        )
        return state

    def unregister(self, definition_id: str) -> None:
        if self._scheduler.get_job(_job_id(definition_id)) is not None:
            self._scheduler.remove_job(_job_id(definition_id))

        for event_name in list(self._event_routes):
            routes = self._event_routes[event_name]
            routes.discard(definition_id)
            if not routes:
                del self._event_routes[event_name]
                self.events.unsubscribe(event_name, self._on_event)

        self._base_states.pop(definition_id, None)

    async def refresh(self, definition_id: str) -> CollectionState:
        """Re-read a metric's definition and configuration and re-register it."""
        definition = await self.store.get_definition(definition_id)
        configuration = await self.store.get_configuration_for_metric(definition_id)
        if definition is None or configuration is None:
            self.unregister(definition_id)
            return CollectionState.DISABLED
        return self.register(definition, configuration)

    def get_state(self, definition_id: str) -> CollectionState:
        if definition_id in self._running:
            return CollectionState.RUNNING
        return self._base_states.get(definition_id, CollectionState.IDLE)

    def status(self) -> dict[str, Any]:
        jobs = self._scheduler.get_jobs()
        return {
            "running": self._scheduler.running,
            "jobs": [
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run_time": _next_run(job),
                }
                for job in jobs
            ],
            "event_routes": {name: sorted(ids) for name, ids in self._event_routes.items()},
            "states": {definition_id: self.get_state(definition_id).value for definition_id in self._base_states},
        }

    # ------------------------------------------------------------------
    # Trigger entry points
    # ------------------------------------------------------------------

    async def _run_scheduled(self, definition_id: str) -> None:
        try:
            await self.collect_by_id(definition_id, trigger="scheduled", raise_on_error=False)
        except MetricsEngineError as e:
            logger.error(
                f"Scheduled collection failed, next tick will retry: {e}",
                extra={
                    "definition_id": definition_id,
                    "error": str(e),
                    "retryable": is_retryable_error(e),
                },
            )

    async def _on_event(self, event_name: str, payload: dict[str, Any]) -> None:
        definition_ids = sorted(self._event_routes.get(event_name, ()))
        if not definition_ids:
            return

        dimensions = payload.get("dimensions") if isinstance(payload.get("dimensions"), dict) else {}
        results = await asyncio.gather(
            *(
                self.collect_by_id(
                    definition_id,
                    dimensions=dimensions,
                    metadata={"event": event_name, "event_payload": payload},
                    trigger="event",
                    raise_on_error=False,
                )
                for definition_id in definition_ids
            ),
            return_exceptions=True,
        )
        for definition_id, result in zip(definition_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    f"Event-triggered collection failed: {result}",
                    extra={"event_name": event_name, "definition_id": definition_id},
                    exc_info=result,
                )

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def collect_by_id(self, definition_id: str, **kwargs: Any) -> MetricSnapshot:
        definition = await self.store.get_definition(definition_id)
        if definition is None:
            raise NotFoundError("MetricDefinition", definition_id)
        return await self.collect(definition, **kwargs)

    async def collect(
        self,
        definition: MetricDefinition,
        configuration: MetricConfiguration | None = None,
        *,
        dimensions: dict[str, Any] | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        trigger: str = "manual",
        raise_on_error: bool = True,
    ) -> MetricSnapshot:
        """
        Collect one snapshot, or return the stored one for the same period and dimensions.

        Args:
            definition: Metric to collect
            configuration: Its configuration (loaded when omitted)
            dimensions: Dimension filters passed to the query/formula
            period_start: Period override start (requires period_end)
            period_end: Period override end (requires period_start)
            metadata: Extra metadata stored on the snapshot
            trigger: Origin label ("manual", "scheduled", "event")
            raise_on_error: Raise ComputationError instead of returning the error snapshot

        Raises:
            ValidationError: Inconsistent period override
            ComputationError: Computation failed and raise_on_error is set
        """
        if (period_start is None) != (period_end is None):
            raise ValidationError("period_start and period_end must be given together")
        if period_start is not None and period_end is not None:
            start, end = ensure_utc(period_start), ensure_utc(period_end)
            if start >= end:
                raise ValidationError("period_start must be before period_end")
        else:
            start, end = period_window(definition.granularity, self.clock())

        if configuration is None:
            configuration = await self.store.get_configuration_for_metric(definition.id)

        dimensions = dict(dimensions or {})
        dim_hash = dimension_hash(dimensions)

        async with self._locks[definition.id]:
            existing = await self.store.find_snapshot(definition.id, start, end, dim_hash)
            if existing is not None:
                self.obs.increment("collections.reused", tags={"metric": definition.code})
                logger.debug(
                    f"Snapshot for {definition.code} already exists",
                    extra={"metric": definition.code, "snapshot_id": existing.id},
                )
                return existing

            self._running.add(definition.id)
            try:
                return await self._compute_and_store(
                    definition,
                    configuration,
                    start,
                    end,
                    dimensions,
                    dim_hash,
                    {"trigger": trigger, **(metadata or {})},
                    raise_on_error,
                )
            finally:
                self._running.discard(definition.id)

    async def _compute_and_store(
        self,
        definition: MetricDefinition,
        configuration: MetricConfiguration | None,
        start: datetime,
        end: datetime,
        dimensions: dict[str, Any],
        dim_hash: str,
        metadata: dict[str, Any],
        raise_on_error: bool,
    ) -> MetricSnapshot:
        self.obs.generate_trace_id()
        started = time.perf_counter()
        timeout = self.config.collection_timeout_seconds

        try:
            with self.obs.trace("collection.compute", tags={"metric": definition.code}):
                value = await asyncio.wait_for(
                    self.calculator.compute(definition, start, end, dimensions),
                    timeout=timeout,
                )
        except TimeoutError as e:
            error = CollectionTimeoutError(definition.code, timeout)
            self.obs.increment("collections.timeout", tags={"metric": definition.code})
            failure = await self._store_failure(definition, start, end, dimensions, dim_hash, metadata, error, started)
            if raise_on_error:
                raise error from e
            return failure
        except ComputationError as e:
            self.obs.increment("collections.error", tags={"metric": definition.code})
            failure = await self._store_failure(definition, start, end, dimensions, dim_hash, metadata, e, started)
            if raise_on_error:
                raise
            return failure

        if configuration is not None and configuration.sampling_strategy != SamplingStrategy.FULL:
            metadata = {
                **metadata,
                "sampling_strategy": configuration.sampling_strategy.value,
                "sample_size": configuration.sample_size,
            }

        snapshot = MetricSnapshot(
            definition_id=definition.id,
            definition_version=definition.version,
            period_start=start,
            period_end=end,
            granularity=definition.granularity,
            value=value,
            formatted_value=format_value(definition, value),
            dimensions=dimensions,
            dimension_hash=dim_hash,
            metadata=metadata,
            duration_ms=int((time.perf_counter() - started) * 1000),
            status=SnapshotStatus.SUCCESS,
            collected_at=self.clock(),
        )
        stored, created = await self.store.insert_snapshot(snapshot)
        if not created:
            self.obs.increment("collections.reused", tags={"metric": definition.code})
            return stored

        await self.store.mark_collected(definition.id, stored.collected_at)
        try:
            await self.cache.invalidate(definition.id)
        except CacheError as e:
            logger.warning(f"Cache invalidation after collection failed: {e}", extra={"metric": definition.code})

        self.obs.increment("collections.success", tags={"metric": definition.code})
        self.obs.histogram("collection.duration_ms", stored.duration_ms, tags={"metric": definition.code})
        logger.info(
            f"Collected {definition.code} = {stored.formatted_value}",
            extra={
                "metric": definition.code,
                "snapshot_id": stored.id,
                "period_start": start.isoformat(),
                "period_end": end.isoformat(),
                "duration_ms": stored.duration_ms,
            },
        )

        if configuration is not None:
            await self.alerts.evaluate(definition, configuration, stored)
            await self.apply_retention(definition.id, configuration)
        return stored

    async def _store_failure(
        self,
        definition: MetricDefinition,
        start: datetime,
        end: datetime,
        dimensions: dict[str, Any],
        dim_hash: str,
        metadata: dict[str, Any],
        error: ComputationError,
        started: float,
    ) -> MetricSnapshot:
        """Persist an error snapshot stamped at the failure time so the next run can retry the period."""
        failed_at = self.clock()
        snapshot = MetricSnapshot(
            definition_id=definition.id,
            definition_version=definition.version,
            period_start=failed_at,
            period_end=failed_at,
            granularity=definition.granularity,
            value=0.0,
            formatted_value="",
            dimensions=dimensions,
            dimension_hash=dim_hash,
            metadata={
                **metadata,
                "requested_period_start": start.isoformat(),
                "requested_period_end": end.isoformat(),
                "error_type": type(error).__name__,
            },
            duration_ms=int((time.perf_counter() - started) * 1000),
            status=SnapshotStatus.ERROR,
            status_message=error.message[:MAX_STATUS_MESSAGE],
            collected_at=failed_at,
        )
        logger.error(
            f"Collection of {definition.code} failed: {error.message}",
            extra={"metric": definition.code, "error_code": error.code.value, "details": error.details},
        )
        try:
            stored, _ = await self.store.insert_snapshot(snapshot)
        except PersistenceError as e:
            logger.error(f"Error snapshot for {definition.code} was not stored: {e}", extra={"metric": definition.code})
            return snapshot
        return stored

    async def apply_retention(self, definition_id: str, configuration: MetricConfiguration) -> dict[str, int]:
        """Delete snapshots older than the max age, then the oldest beyond the max count."""
        removed = {"expired": 0, "excess": 0}
        try:
            if configuration.retention_days > 0:
                cutoff = self.clock() - timedelta(days=configuration.retention_days)
                removed["expired"] = await self.store.delete_snapshots_older_than(definition_id, cutoff)
            if configuration.max_snapshots > 0:
                removed["excess"] = await self.store.delete_snapshots_beyond(definition_id, configuration.max_snapshots)
        except PersistenceError as e:
            logger.error(f"Retention pruning failed: {e}", extra={"definition_id": definition_id})
            return removed

        if removed["expired"] or removed["excess"]:
            logger.info(
                "Pruned snapshots",
                extra={"definition_id": definition_id, **removed},
            )
        return removed
