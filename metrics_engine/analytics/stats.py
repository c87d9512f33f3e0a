"""
Descriptive statistics and least-squares helpers shared by the detectors.

Standard deviations are population deviations: the history window is treated
as the full reference population.
"""

from __future__ import annotations

import math
import statistics
from collections.abc import Sequence
from dataclasses import dataclass

_CONFIDENCE_Z = {0.90: 1.645, 0.95: 1.96, 0.99: 2.576}
DEFAULT_Z = 1.96


def mean(values: Sequence[float]) -> float:
    return statistics.fmean(values) if values else 0.0


def std_dev(values: Sequence[float]) -> float:
    return statistics.pstdev(values) if len(values) > 1 else 0.0


def median(values: Sequence[float]) -> float:
    return statistics.median(values) if values else 0.0


def z_score(value: float, mu: float, sigma: float) -> float:
    """Absolute distance from the mean in standard deviations; 0 for a flat history."""
    if sigma == 0:
        return 0.0
    return abs(value - mu) / sigma


def z_for_confidence(level: float) -> float:
    """Normal quantile for a two-sided interval at 0.90, 0.95 or 0.99; 1.96 otherwise."""
    for known, z in _CONFIDENCE_Z.items():
        if math.isclose(level, known, abs_tol=1e-9):
            return z
    return DEFAULT_Z


def goodness_of_fit(values: Sequence[float], residuals: Sequence[float]) -> float:
    """1 - SSE/SST over the observed values; 0 when the series has no variance."""
    mu = mean(values)
    sst = sum((v - mu) ** 2 for v in values)
    if sst == 0:
        return 0.0
    sse = sum(r * r for r in residuals)
    return 1 - sse / sst


@dataclass(frozen=True)
class LinearFit:
    slope: float
    intercept: float
    r_squared: float
    standard_error: float
    x_mean: float
    sxx: float
    n: int

    def predict(self, x: float) -> float:
        return self.intercept + self.slope * x

    def prediction_margin(self, x: float, z: float) -> float:
        """Half-width of the prediction interval at `x`, growing with distance from the centroid."""
        spread = 1 + 1 / self.n
        if self.sxx > 0:
            spread += (x - self.x_mean) ** 2 / self.sxx
        return z * self.standard_error * math.sqrt(spread)


def linear_fit(xs: Sequence[float], ys: Sequence[float]) -> LinearFit:
    """
    Ordinary least squares of ys against xs.

    A degenerate x axis (all equal) yields a flat line through the mean.
    The residual standard error uses n - 2 degrees of freedom.
    """
    if len(xs) != len(ys):
        raise ValueError("xs and ys must have the same length")
    n = len(xs)
    if n == 0:
        return LinearFit(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0)

    x_mean = mean(xs)
    y_mean = mean(ys)
    sxx = sum((x - x_mean) ** 2 for x in xs)
    sxy = sum((x - x_mean) * (y - y_mean) for x, y in zip(xs, ys, strict=True))

    slope = sxy / sxx if sxx > 0 else 0.0
    intercept = y_mean - slope * x_mean

    residuals = [y - (intercept + slope * x) for x, y in zip(xs, ys, strict=True)]
    sse = sum(r * r for r in residuals)
    standard_error = math.sqrt(sse / (n - 2)) if n > 2 else 0.0

    return LinearFit(
        slope=slope,
        intercept=intercept,
        r_squared=goodness_of_fit(ys, residuals),
        standard_error=standard_error,
        x_mean=x_mean,
        sxx=sxx,
        n=n,
    )
