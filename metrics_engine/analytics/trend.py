"""
Linear trend analysis over an ordered series.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ..models import TrendDirection
from .anomaly import MIN_SAMPLES
from .stats import linear_fit, mean

STABLE_SLOPE = 0.01
PREDICTION_Z = 1.96


@dataclass(frozen=True)
class TrendEstimate:
    direction: TrendDirection
    slope: float
    intercept: float
    intensity: float
    confidence: float
    next_value: float
    next_value_lower: float
    next_value_upper: float
    sample_size: int


class TrendAnalyzer:
    def __init__(self, min_samples: int = MIN_SAMPLES):
        self.min_samples = min_samples

    def analyze(self, values: Sequence[float]) -> TrendEstimate:
        """
        Fit value against sequence index 1..n and project index n+1.

        Intensity is the slope as a percentage of the series mean and
        confidence is R². The prediction interval is ±1.96 residual standard
        errors. Short series give a stable, all-zero estimate.
        """
        n = len(values)
        if n < self.min_samples:
            return TrendEstimate(TrendDirection.STABLE, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, n)

        fit = linear_fit(range(1, n + 1), values)

        if abs(fit.slope) < STABLE_SLOPE:
            direction = TrendDirection.STABLE
        elif fit.slope > 0:
            direction = TrendDirection.INCREASING
        else:
            direction = TrendDirection.DECREASING

        mu = mean(values)
        intensity = fit.slope / mu * 100 if mu != 0 else 0.0

        predicted = fit.predict(n + 1)
        margin = PREDICTION_Z * fit.standard_error

        return TrendEstimate(
            direction=direction,
            slope=fit.slope,
            intercept=fit.intercept,
            intensity=round(intensity, 2),
            confidence=round(fit.r_squared, 4),
            next_value=round(predicted, 2),
            next_value_lower=round(predicted - margin, 2),
            next_value_upper=round(predicted + margin, 2),
            sample_size=n,
        )
