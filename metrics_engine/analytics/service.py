"""
Store-backed analytics: anomaly detection, trend analysis and forecasting over
stored snapshots, on demand or as a scheduled batch.

Results are derived and never persisted. Only successful snapshots are
analyzed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from ..collection.periods import dimension_hash
from ..config import AnalyticsConfig
from ..errors import MetricsEngineError, NotFoundError, ValidationError
from ..events import METRIC_ANOMALY_DETECTED, METRIC_TREND_ANALYZED, EventBus
from ..models import (
    AnomalyResult,
    AnomalyScanResult,
    ConfidenceLevel,
    ForecastModel,
    ForecastResult,
    MetricDefinition,
    MetricSnapshot,
    SeriesAnomaly,
    SnapshotStatus,
    TrendResult,
    ensure_utc,
    utc_now,
)
from ..observability import ObservabilityAdapter, get_observability
from .anomaly import Z_THRESHOLDS, AnomalyDetector
from .forecast import Forecaster
from .stats import mean, median, std_dev, z_score
from .trend import TrendAnalyzer

if TYPE_CHECKING:
    from ..cache.metric_cache import MetricCache
    from ..storage.store import MetricStore

logger = logging.getLogger(__name__)


class AnalyticsService:
    """Pulls snapshot windows from the store and runs the detectors over them."""

    def __init__(
        self,
        store: MetricStore,
        cache: MetricCache,
        events: EventBus,
        config: AnalyticsConfig | None = None,
        observability: ObservabilityAdapter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.cache = cache
        self.events = events
        self.config = config or AnalyticsConfig()
        self.obs = observability or get_observability()
        self.clock = clock

        self.detector = AnomalyDetector(self.config.min_samples)
        self.trends = TrendAnalyzer(self.config.min_samples)
        self.forecaster = Forecaster(self.config.min_samples)

    async def _definition(self, code: str) -> MetricDefinition:
        definition = await self.cache.get_definition(code)
        if definition is None:
            raise NotFoundError("MetricDefinition", code)
        return definition

    def _window(
        self, start: datetime | None, end: datetime | None, default_days: int
    ) -> tuple[datetime, datetime]:
        end = ensure_utc(end) if end is not None else self.clock()
        start = ensure_utc(start) if start is not None else end - timedelta(days=default_days)
        if start >= end:
            raise ValidationError("start must be before end", details={"start": start.isoformat(), "end": end.isoformat()})
        return start, end

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    async def detect_for_snapshot(
        self,
        snapshot_id: str,
        confidence: ConfidenceLevel | str = ConfidenceLevel.MEDIUM,
        window_days: int | None = None,
    ) -> AnomalyResult:
        """
        Score a stored snapshot against the same series' history.

        History is the metric's successful snapshots with the same dimension
        hash whose period ended within `window_days` before the snapshot's
        period started. Publishes `metric.anomaly.detected` when flagged.

        Raises:
            NotFoundError: Unknown snapshot or definition
            ValidationError: The snapshot records a failed collection
        """
        snapshot = await self.store.get_snapshot(snapshot_id)
        if snapshot is None:
            raise NotFoundError("MetricSnapshot", snapshot_id)
        if snapshot.status != SnapshotStatus.SUCCESS:
            raise ValidationError(
                "Only successful snapshots can be scored",
                details={"snapshot_id": snapshot_id, "status": snapshot.status.value},
            )
        definition = await self.store.get_definition(snapshot.definition_id)
        if definition is None:
            raise NotFoundError("MetricDefinition", snapshot.definition_id)

        window = timedelta(days=window_days or self.config.anomaly_window_days)
        history = await self.store.list_snapshots(
            definition.id,
            dimension_hash=snapshot.dimension_hash,
            period_end_from=snapshot.period_start - window,
            period_end_to=snapshot.period_start,
            exclude_id=snapshot.id,
        )
        return await self._score(definition, snapshot, [s.value for s in history], ConfidenceLevel(confidence))

    async def detect_latest(
        self,
        code: str,
        dimensions: dict[str, Any] | None = None,
        confidence: ConfidenceLevel | str = ConfidenceLevel.MEDIUM,
    ) -> AnomalyResult:
        """Score the most recent snapshot of a metric and dimension set."""
        definition = await self._definition(code)
        snapshot = await self.store.latest_snapshot(definition.id, dimension_hash(dimensions))
        if snapshot is None:
            raise NotFoundError("MetricSnapshot", f"{code} (no successful snapshot)")
        return await self.detect_for_snapshot(snapshot.id, confidence)

    async def _score(
        self,
        definition: MetricDefinition,
        snapshot: MetricSnapshot,
        history: list[float],
        confidence: ConfidenceLevel,
    ) -> AnomalyResult:
        detection = self.detector.detect(snapshot.value, history, confidence)
        result = AnomalyResult(
            metric_id=definition.id,
            metric_code=definition.code,
            metric_name=definition.name,
            snapshot_id=snapshot.id,
            value=snapshot.value,
            is_anomaly=detection.is_anomaly,
            z_score=detection.z_score,
            mean=detection.mean,
            std_dev=detection.std_dev,
            threshold=detection.threshold,
            confidence=confidence,
            sample_size=detection.sample_size,
            dimensions=snapshot.dimensions,
            analyzed_at=self.clock(),
        )

        if detection.sample_size < self.detector.min_samples:
            logger.debug(
                f"Not enough history to score {definition.code}",
                extra={"metric": definition.code, "sample_size": detection.sample_size},
            )
        elif result.is_anomaly:
            self.obs.increment("anomalies.detected", tags={"metric": definition.code})
            logger.warning(
                f"Anomaly detected for {definition.code}: value={snapshot.value}, z-score={detection.z_score:.2f}",
                extra={"metric": definition.code, "snapshot_id": snapshot.id, "z_score": detection.z_score},
            )
            await self.events.publish(METRIC_ANOMALY_DETECTED, result.model_dump(mode="json"))
        return result

    async def scan_series(
        self,
        code: str,
        start: datetime | None = None,
        end: datetime | None = None,
        dimensions: dict[str, Any] | None = None,
        confidence: ConfidenceLevel | str = ConfidenceLevel.MEDIUM,
    ) -> AnomalyScanResult:
        """
        Summarize a series and list every point beyond the confidence threshold.

        Without `dimensions` all dimension sets of the metric are pooled.
        Each flagged point is graded by the strictest threshold it exceeds.
        """
        definition = await self._definition(code)
        start, end = self._window(start, end, self.config.anomaly_window_days)
        snapshots = await self.store.list_snapshots(
            definition.id,
            dimension_hash=dimension_hash(dimensions) if dimensions is not None else None,
            period_end_from=start,
            period_end_to=end,
        )

        base = {
            "metric_id": definition.id,
            "metric_code": definition.code,
            "metric_name": definition.name,
            "sample_size": len(snapshots),
            "analyzed_at": self.clock(),
        }
        if len(snapshots) < self.detector.min_samples:
            return AnomalyScanResult(
                **base,
                mean=0.0,
                std_dev=0.0,
                median=0.0,
                minimum=0.0,
                maximum=0.0,
                message=f"Not enough points to analyze (minimum: {self.detector.min_samples})",
            )

        values = [s.value for s in snapshots]
        mu, sigma = mean(values), std_dev(values)
        threshold = Z_THRESHOLDS[ConfidenceLevel(confidence)]

        anomalies = []
        for snapshot in snapshots:
            score = z_score(snapshot.value, mu, sigma)
            severity = self.detector.severity(score)
            if score > threshold and severity is not None:
                anomalies.append(
                    SeriesAnomaly(
                        snapshot_id=snapshot.id,
                        period_end=snapshot.period_end,
                        value=snapshot.value,
                        z_score=score,
                        severity=severity,
                    )
                )

        return AnomalyScanResult(
            **base,
            mean=mu,
            std_dev=sigma,
            median=median(values),
            minimum=min(values),
            maximum=max(values),
            anomalies=anomalies,
        )

    async def detect_batch(
        self,
        confidence: ConfidenceLevel | str = ConfidenceLevel.MEDIUM,
        window_days: int | None = None,
    ) -> list[AnomalyResult]:
        """
        Score the latest snapshot of every dimension set of every active metric.

        A failure on one series is logged and does not stop the batch.

        Returns:
            The anomalous results only
        """
        window_days = window_days or self.config.batch_window_days
        since = self.clock() - timedelta(days=window_days)
        definitions = await self.store.list_active_definitions()
        logger.info(
            f"Starting anomaly batch over {len(definitions)} active metrics",
            extra={"window_days": window_days, "metrics": len(definitions)},
        )

        flagged: list[AnomalyResult] = []
        for definition in definitions:
            for dim_hash in await self.store.distinct_dimension_hashes(definition.id, since):
                latest = await self.store.latest_snapshot(definition.id, dim_hash)
                if latest is None:
                    continue
                try:
                    result = await self.detect_for_snapshot(latest.id, confidence, window_days)
                except MetricsEngineError as e:
                    logger.error(
                        f"Anomaly check failed for {definition.code} (snapshot {latest.id}): {e}",
                        extra={"metric": definition.code, "snapshot_id": latest.id},
                    )
                    continue
                if result.is_anomaly:
                    flagged.append(result)

        logger.info(f"Anomaly batch finished: {len(flagged)} anomalies", extra={"anomalies": len(flagged)})
        return flagged

    async def run_batch(self) -> None:
        """Scheduled entry point for the batch."""
        try:
            await self.detect_batch()
        except MetricsEngineError as e:
            logger.error(f"Scheduled anomaly batch failed: {e}", extra={"error": str(e)})

    # ------------------------------------------------------------------
    # Trends and forecasts
    # ------------------------------------------------------------------

    async def analyze_trend(
        self,
        code: str,
        start: datetime | None = None,
        end: datetime | None = None,
        dimensions: dict[str, Any] | None = None,
    ) -> TrendResult:
        """Fit a linear trend to a metric's series and publish `metric.trend.analyzed`."""
        definition = await self._definition(code)
        start, end = self._window(start, end, self.config.anomaly_window_days)
        series = await self.cache.get_time_series(definition.id, start, end, dimensions)

        estimate = self.trends.analyze([s.value for s in series])
        result = TrendResult(
            metric_id=definition.id,
            metric_code=definition.code,
            metric_name=definition.name,
            direction=estimate.direction,
            slope=estimate.slope,
            intercept=estimate.intercept,
            intensity=estimate.intensity,
            confidence=estimate.confidence,
            next_value=estimate.next_value,
            next_value_lower=estimate.next_value_lower,
            next_value_upper=estimate.next_value_upper,
            sample_size=estimate.sample_size,
            period_start=start,
            period_end=end,
            analyzed_at=self.clock(),
        )
        await self.events.publish(METRIC_TREND_ANALYZED, result.model_dump(mode="json"))
        return result

    async def forecast(
        self,
        code: str,
        horizon: int | None = None,
        confidence_level: float = 0.95,
        model: ForecastModel | str | None = None,
        dimensions: dict[str, Any] | None = None,
    ) -> ForecastResult:
        """
        Forecast a metric from its recent history.

        Uses the last `forecast_history_days` of the series. With too little
        history the result carries no model, no points and a message.
        """
        definition = await self._definition(code)
        horizon = horizon or self.config.default_forecast_horizon
        end = self.clock()
        history = await self.store.list_snapshots(
            definition.id,
            dimension_hash=dimension_hash(dimensions),
            period_end_from=end - timedelta(days=self.config.forecast_history_days),
            period_end_to=end,
        )

        try:
            outcome = self.forecaster.forecast(
                [s.value for s in history],
                [s.period_end for s in history],
                horizon,
                confidence_level,
                model,
            )
        except ValueError as e:
            raise ValidationError(str(e), details={"horizon": horizon, "model": str(model)}) from e

        return ForecastResult(
            metric_id=definition.id,
            metric_code=definition.code,
            metric_name=definition.name,
            model=outcome.model,
            horizon=horizon,
            confidence_level=confidence_level,
            goodness_of_fit=outcome.goodness_of_fit,
            mean_absolute_error=outcome.mean_absolute_error,
            sample_size=len(history),
            points=outcome.points,
            message=(
                None
                if outcome.model is not None
                else f"Not enough points to forecast (minimum: {self.forecaster.min_samples})"
            ),
            generated_at=end,
        )
