"""
Short-horizon forecasting with confidence intervals.

Models:
- linear regression over elapsed days; the interval widens with distance
  from the data centroid
- moving average over a trailing window of max(3, n // 4), fed back with its
  own predictions; interval from the spread of one-step residuals
- simple exponential smoothing (alpha 0.3); constant forecast, interval
  scaled by sqrt(step)

Without a pinned model: 20+ points use exponential smoothing, 10+ use the
moving average, fewer use linear regression.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..models import ForecastModel, ForecastPoint
from .anomaly import MIN_SAMPLES
from .stats import goodness_of_fit, linear_fit, mean, std_dev, z_for_confidence

SMOOTHING_ALPHA = 0.3
MIN_WINDOW = 3
SECONDS_PER_DAY = 86400.0


@dataclass
class ForecastOutcome:
    model: ForecastModel | None
    goodness_of_fit: float = 0.0
    mean_absolute_error: float = 0.0
    points: list[ForecastPoint] = field(default_factory=list)


def select_model(sample_size: int) -> ForecastModel:
    if sample_size >= 20:
        return ForecastModel.EXPONENTIAL_SMOOTHING
    if sample_size >= 10:
        return ForecastModel.MOVING_AVERAGE
    return ForecastModel.LINEAR_REGRESSION


def _step(timestamps: Sequence[datetime]) -> timedelta:
    """Average spacing between observations; one day when it cannot be measured."""
    if len(timestamps) < 2:
        return timedelta(days=1)
    spacing = (timestamps[-1] - timestamps[0]) / (len(timestamps) - 1)
    return spacing if spacing > timedelta(0) else timedelta(days=1)


def _point(timestamp: datetime, value: float, margin: float) -> ForecastPoint:
    return ForecastPoint(
        timestamp=timestamp,
        value=round(value, 2),
        lower=round(value - margin, 2),
        upper=round(value + margin, 2),
    )


class Forecaster:
    def __init__(self, min_samples: int = MIN_SAMPLES, alpha: float = SMOOTHING_ALPHA):
        if not 0 < alpha <= 1:
            raise ValueError("alpha must be in (0, 1]")
        self.min_samples = min_samples
        self.alpha = alpha

    def forecast(
        self,
        values: Sequence[float],
        timestamps: Sequence[datetime],
        horizon: int,
        confidence_level: float = 0.95,
        model: ForecastModel | str | None = None,
    ) -> ForecastOutcome:
        """
        Project `horizon` points past the last observation.

        Args:
            values: Observed values, oldest first
            timestamps: Observation times aligned with `values`
            horizon: Number of future points
            confidence_level: Two-sided interval level (0.90, 0.95 or 0.99)
            model: Pinned model, or None to select by sample size

        Returns:
            ForecastOutcome with no model and no points when the series is
            shorter than `min_samples`
        """
        if len(values) != len(timestamps):
            raise ValueError("values and timestamps must have the same length")
        if horizon < 1:
            raise ValueError("horizon must be at least 1")
        if len(values) < self.min_samples:
            return ForecastOutcome(model=None)

        chosen = ForecastModel(model) if model is not None else select_model(len(values))
        z = z_for_confidence(confidence_level)

        if chosen == ForecastModel.LINEAR_REGRESSION:
            return self._linear(values, timestamps, horizon, z)
        if chosen == ForecastModel.MOVING_AVERAGE:
            return self._moving_average(values, timestamps, horizon, z)
        return self._exponential_smoothing(values, timestamps, horizon, z)

    def _linear(
        self, values: Sequence[float], timestamps: Sequence[datetime], horizon: int, z: float
    ) -> ForecastOutcome:
        origin = timestamps[0]
        days = [(ts - origin).total_seconds() / SECONDS_PER_DAY for ts in timestamps]
        fit = linear_fit(days, values)

        residuals = [v - fit.predict(x) for x, v in zip(days, values, strict=True)]
        step = _step(timestamps)
        step_days = step.total_seconds() / SECONDS_PER_DAY

        points = []
        for i in range(1, horizon + 1):
            x = days[-1] + i * step_days
            points.append(_point(timestamps[-1] + i * step, fit.predict(x), fit.prediction_margin(x, z)))

        return ForecastOutcome(
            model=ForecastModel.LINEAR_REGRESSION,
            goodness_of_fit=round(fit.r_squared, 4),
            mean_absolute_error=round(mean([abs(r) for r in residuals]), 4),
            points=points,
        )

    def _moving_average(
        self, values: Sequence[float], timestamps: Sequence[datetime], horizon: int, z: float
    ) -> ForecastOutcome:
        window = max(MIN_WINDOW, len(values) // 4)
        residuals = [values[i] - mean(values[i - window : i]) for i in range(window, len(values))]
        margin = z * std_dev(residuals)

        extended = list(values)
        step = _step(timestamps)
        points = []
        for i in range(1, horizon + 1):
            predicted = mean(extended[-window:])
            extended.append(predicted)
            points.append(_point(timestamps[-1] + i * step, predicted, margin))

        return ForecastOutcome(
            model=ForecastModel.MOVING_AVERAGE,
            goodness_of_fit=round(goodness_of_fit(values, residuals), 4),
            mean_absolute_error=round(mean([abs(r) for r in residuals]), 4),
            points=points,
        )

    def _exponential_smoothing(
        self, values: Sequence[float], timestamps: Sequence[datetime], horizon: int, z: float
    ) -> ForecastOutcome:
        level = values[0]
        residuals = []
        for value in values[1:]:
            level = self.alpha * value + (1 - self.alpha) * level
            residuals.append(value - level)

        sigma = std_dev(residuals)
        step = _step(timestamps)
        points = [
            _point(timestamps[-1] + i * step, level, z * sigma * math.sqrt(i)) for i in range(1, horizon + 1)
        ]

        return ForecastOutcome(
            model=ForecastModel.EXPONENTIAL_SMOOTHING,
            goodness_of_fit=round(goodness_of_fit(values, residuals), 4),
            mean_absolute_error=round(mean([abs(r) for r in residuals]), 4),
            points=points,
        )
