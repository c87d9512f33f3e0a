"""
Metrics Engine — Server

FastMCP server using stdio transport (Model Context Protocol), exposing the
manual invocation API of the metrics engine as tools.

- Single entrypoint
- Graceful shutdown with resource cleanup
- Structured logging
- Configuration via typed Pydantic models only
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastmcp import FastMCP

from .cache import close_all_caches
from .config import load_config
from .models import ConfidenceLevel, ForecastModel, MetricCategory, MetricKind
from .observability import get_observability, initialize_observability, setup_logging
from .service import MetricsEngine, close_engine, get_engine
from .validation import (
    AnalyzeTrendInput,
    ClearCacheInput,
    CollectMetricInput,
    ConfigureMetricInput,
    CreateDefinitionInput,
    DeactivateDefinitionInput,
    DetectAnomaliesBatchInput,
    DetectAnomalyInput,
    ForecastInput,
    GetCacheStatsInput,
    GetConfigurationInput,
    GetDefinitionInput,
    GetLatestValueInput,
    GetStatusInput,
    GetTimeSeriesInput,
    ListDefinitionsInput,
    ScanAnomaliesInput,
    UpdateDefinitionInput,
    handle_engine_errors,
    validate_input,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def server_lifespan(server: Any) -> Any:
    """Server lifespan manager (startup/shutdown)."""
    await initialize_server()
    yield
    await cleanup_server()


mcp = FastMCP("Metrics Engine", lifespan=server_lifespan)

_initialized = False


def _engine() -> MetricsEngine:
    return get_engine()


def _count(tool: str) -> None:
    get_observability().increment(f"tools.{tool}")


# ============================================================================
# Collection and reads
# ============================================================================


@mcp.tool()
@validate_input(CollectMetricInput)
@handle_engine_errors
async def collect_metric(
    code: str,
    dimensions: dict[str, Any] | None = None,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> dict[str, Any]:
    """
    Collect a metric now, or return the existing snapshot for the same period.

    Args:
        code: Metric code
        dimensions: Dimension filters
        period_start: Period override start (ISO-8601, requires period_end)
        period_end: Period override end (ISO-8601, requires period_start)

    Returns:
        The stored snapshot
    """
    _count("collect_metric")
    snapshot = await _engine().collect_metric(code, dimensions, period_start, period_end)
    return {"success": True, "snapshot": snapshot.model_dump(mode="json")}


@mcp.tool()
@validate_input(GetLatestValueInput)
@handle_engine_errors
async def get_latest_value(code: str, dimensions: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Get the most recent successful value of a metric.

    Args:
        code: Metric code
        dimensions: Dimension filters

    Returns:
        Latest snapshot
    """
    _count("get_latest_value")
    snapshot = await _engine().get_latest_value(code, dimensions)
    return {"success": True, "snapshot": snapshot.model_dump(mode="json")}


@mcp.tool()
@validate_input(GetTimeSeriesInput)
@handle_engine_errors
async def get_time_series(
    code: str,
    start: datetime,
    end: datetime,
    dimensions: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Get the successful snapshots of a metric within a range, oldest first.

    Args:
        code: Metric code
        start: Range start (ISO-8601)
        end: Range end (ISO-8601)
        dimensions: Dimension filters

    Returns:
        Series points
    """
    _count("get_time_series")
    series = await _engine().get_time_series(code, start, end, dimensions)
    return {
        "success": True,
        "code": code,
        "count": len(series),
        "points": [snapshot.model_dump(mode="json") for snapshot in series],
    }


# ============================================================================
# Analytics
# ============================================================================


@mcp.tool()
@validate_input(DetectAnomalyInput)
@handle_engine_errors
async def detect_anomaly(
    code: str | None = None,
    snapshot_id: str | None = None,
    dimensions: dict[str, Any] | None = None,
    confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM,
) -> dict[str, Any]:
    """
    Score a snapshot against its history with a z-score test.

    Args:
        code: Metric code (scores its latest snapshot)
        snapshot_id: Snapshot to score (takes precedence over code)
        dimensions: Dimension filters used with code
        confidence: low (z > 2.0), medium (z > 2.5) or high (z > 3.0)

    Returns:
        Anomaly result
    """
    _count("detect_anomaly")
    result = await _engine().detect_anomaly(code, snapshot_id, dimensions, confidence)
    return {"success": True, "result": result.model_dump(mode="json")}


@mcp.tool()
@validate_input(ScanAnomaliesInput)
@handle_engine_errors
async def scan_anomalies(
    code: str,
    start: datetime | None = None,
    end: datetime | None = None,
    dimensions: dict[str, Any] | None = None,
    confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM,
) -> dict[str, Any]:
    """
    Summarize a metric's series and list its anomalous points.

    Args:
        code: Metric code
        start: Range start, defaults to the lookback window
        end: Range end, defaults to now
        dimensions: Dimension filters; all dimension sets when omitted
        confidence: Threshold for listing a point

    Returns:
        Series statistics and anomalies
    """
    _count("scan_anomalies")
    result = await _engine().scan_anomalies(code, start, end, dimensions, confidence)
    return {"success": True, "result": result.model_dump(mode="json")}


@mcp.tool()
@validate_input(DetectAnomaliesBatchInput)
@handle_engine_errors
async def detect_anomalies_batch(
    confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM,
    window_days: int | None = None,
) -> dict[str, Any]:
    """
    Score the latest snapshot of every series of every active metric.

    Args:
        confidence: Detection threshold
        window_days: Lookback window in days

    Returns:
        Anomalous results only
    """
    _count("detect_anomalies_batch")
    results = await _engine().detect_anomalies_batch(confidence, window_days)
    return {
        "success": True,
        "count": len(results),
        "anomalies": [result.model_dump(mode="json") for result in results],
    }


@mcp.tool()
@validate_input(AnalyzeTrendInput)
@handle_engine_errors
async def analyze_trend(
    code: str,
    dimensions: dict[str, Any] | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, Any]:
    """
    Fit a linear trend to a metric's series.

    Args:
        code: Metric code
        dimensions: Dimension filters
        start: Range start, defaults to the lookback window
        end: Range end, defaults to now

    Returns:
        Direction, intensity, confidence and next-value prediction
    """
    _count("analyze_trend")
    result = await _engine().analyze_trend(code, start, end, dimensions)
    return {"success": True, "result": result.model_dump(mode="json")}


@mcp.tool()
@validate_input(ForecastInput)
@handle_engine_errors
async def forecast(
    code: str,
    dimensions: dict[str, Any] | None = None,
    horizon: int | None = None,
    confidence_level: float = 0.95,
    model: ForecastModel | None = None,
) -> dict[str, Any]:
    """
    Forecast a metric with confidence intervals.

    Args:
        code: Metric code
        dimensions: Dimension filters
        horizon: Number of future points
        confidence_level: 0.90, 0.95 or 0.99
        model: linear_regression, moving_average or exponential_smoothing

    Returns:
        Forecast points and model fit
    """
    _count("forecast")
    result = await _engine().forecast(code, horizon, confidence_level, model, dimensions)
    return {"success": True, "result": result.model_dump(mode="json")}


# ============================================================================
# Cache
# ============================================================================


@mcp.tool()
@validate_input(ClearCacheInput)
@handle_engine_errors
async def clear_cache(code: str | None = None) -> dict[str, Any]:
    """
    Drop cached entries.

    Args:
        code: Only this metric's entries; everything when omitted

    Returns:
        Number of removed keys
    """
    _count("clear_cache")
    removed = await _engine().clear_cache(code)
    return {"success": True, "removed": removed}


@mcp.tool()
@validate_input(GetCacheStatsInput)
@handle_engine_errors
async def get_cache_stats() -> dict[str, Any]:
    """
    Get cache hit/miss counters and key counts by family.

    Returns:
        Cache statistics
    """
    _count("get_cache_stats")
    return {"success": True, **(await _engine().get_cache_stats())}


# ============================================================================
# Definitions and configurations
# ============================================================================


@mcp.tool()
@validate_input(CreateDefinitionInput)
@handle_engine_errors
async def create_definition(definition: dict[str, Any]) -> dict[str, Any]:
    """
    Register a metric definition.

    Args:
        definition: Definition payload (code, name, kind, query_template or
            formula and dependent_metrics, granularity, display settings)

    Returns:
        Stored definition
    """
    _count("create_definition")
    created = await _engine().create_definition(definition)
    return {"success": True, "definition": created.model_dump(mode="json")}


@mcp.tool()
@validate_input(UpdateDefinitionInput)
@handle_engine_errors
async def update_definition(code: str, changes: dict[str, Any]) -> dict[str, Any]:
    """
    Update a metric definition; bumps its version.

    Args:
        code: Metric code
        changes: Fields to change (the code itself is immutable)

    Returns:
        Updated definition
    """
    _count("update_definition")
    updated = await _engine().update_definition(code, changes)
    return {"success": True, "definition": updated.model_dump(mode="json")}


@mcp.tool()
@validate_input(DeactivateDefinitionInput)
@handle_engine_errors
async def deactivate_definition(code: str) -> dict[str, Any]:
    """
    Soft-deactivate a metric; its snapshots are kept.

    Args:
        code: Metric code

    Returns:
        Deactivated definition
    """
    _count("deactivate_definition")
    definition = await _engine().deactivate_definition(code)
    return {"success": True, "definition": definition.model_dump(mode="json")}


@mcp.tool()
@validate_input(GetDefinitionInput)
@handle_engine_errors
async def get_definition(code: str) -> dict[str, Any]:
    """Get a metric definition by code."""
    _count("get_definition")
    definition = await _engine().get_definition(code)
    return {"success": True, "definition": definition.model_dump(mode="json")}


@mcp.tool()
@validate_input(ListDefinitionsInput)
@handle_engine_errors
async def list_definitions(
    search: str | None = None,
    category: MetricCategory | None = None,
    kind: MetricKind | None = None,
    active: bool | None = None,
    tag: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict[str, Any]:
    """
    List metric definitions.

    Args:
        search: Substring of code or name
        category: Category filter
        kind: Kind filter
        active: Active flag filter
        tag: Tag filter
        page: Page number (1-based)
        limit: Page size

    Returns:
        Page of definitions and the total count
    """
    _count("list_definitions")
    items, total = await _engine().list_definitions(
        {
            "search": search,
            "category": category,
            "kind": kind,
            "active": active,
            "tag": tag,
            "page": page,
            "limit": limit,
        }
    )
    return {
        "success": True,
        "total": total,
        "page": page,
        "limit": limit,
        "items": [definition.model_dump(mode="json") for definition in items],
    }


@mcp.tool()
@validate_input(ConfigureMetricInput)
@handle_engine_errors
async def configure_metric(code: str, settings: dict[str, Any]) -> dict[str, Any]:
    """
    Create or update a metric's configuration (schedule, retention, cache, alerts).

    Args:
        code: Metric code
        settings: Configuration fields

    Returns:
        Stored configuration and the metric's collection state
    """
    _count("configure_metric")
    engine = _engine()
    configuration = await engine.configure_metric(code, settings)
    return {
        "success": True,
        "configuration": configuration.model_dump(mode="json"),
        "collection_state": engine.get_collection_state(configuration.metric_id).value,
    }


@mcp.tool()
@validate_input(GetConfigurationInput)
@handle_engine_errors
async def get_configuration(code: str) -> dict[str, Any]:
    """Get a metric's configuration by metric code."""
    _count("get_configuration")
    configuration = await _engine().get_configuration(code)
    return {"success": True, "configuration": configuration.model_dump(mode="json")}


# ============================================================================
# Status
# ============================================================================


@mcp.tool()
@validate_input(GetStatusInput)
@handle_engine_errors
async def get_status(include_metrics: bool = False) -> dict[str, Any]:
    """
    Check engine health: scheduler jobs, collection states, cache.

    Args:
        include_metrics: Include observability counters and histograms

    Returns:
        Engine status
    """
    _count("get_status")
    status = await _engine().get_status()
    if not include_metrics:
        status.pop("observability", None)
    return {"success": True, "status": "healthy", "service": "metrics-engine", **status}


# ============================================================================
# Lifecycle
# ============================================================================


async def initialize_server() -> None:
    """Initialize server resources on startup."""
    global _initialized

    if _initialized:
        return

    config = load_config()
    setup_logging(level=config.log_level, json_format=config.observability.json_logs)
    logger.info("Initializing Metrics Engine server...")

    obs = initialize_observability(
        enable_metrics=config.observability.enable_metrics,
        enable_tracing=config.observability.enable_tracing,
    )

    try:
        engine = get_engine(config)
        await engine.start()
        warmed = await engine.warm_cache()
    except Exception as e:
        logger.error(f"Failed to initialize server: {e}", exc_info=True)
        raise

    obs.increment("server.startup")
    obs.event(
        "server_started",
        {
            "environment": config.environment,
            "cache_backend": config.cache.backend,
            "scheduler_enabled": config.scheduler.enabled,
            "warmed_metrics": warmed,
        },
    )

    _initialized = True
    logger.info("Metrics Engine server initialized successfully")


async def cleanup_server() -> None:
    """Cleanup server resources on shutdown."""
    global _initialized

    if not _initialized:
        return

    logger.info("Cleaning up Metrics Engine server...")
    obs = get_observability()

    try:
        await close_engine()
        await close_all_caches()
    except Exception as e:
        logger.error(f"Error during cleanup: {e}", exc_info=True)
        raise
    finally:
        _initialized = False

    obs.increment("server.shutdown")
    obs.event("server_stopped", {})
    logger.info("Metrics Engine server cleanup complete")


def main() -> None:
    """CLI entry point for the metrics-engine command."""
    mcp.run()


if __name__ == "__main__":
    main()
