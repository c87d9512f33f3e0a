"""
Z-score anomaly detection against a historical window.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ..models import ConfidenceLevel, Severity
from .stats import mean, std_dev, z_score

MIN_SAMPLES = 5

# Two-sided coverage under a normal assumption: ~95.5%, ~98.8%, ~99.7%
Z_THRESHOLDS: dict[ConfidenceLevel, float] = {
    ConfidenceLevel.LOW: 2.0,
    ConfidenceLevel.MEDIUM: 2.5,
    ConfidenceLevel.HIGH: 3.0,
}


@dataclass(frozen=True)
class Detection:
    is_anomaly: bool
    z_score: float
    mean: float
    std_dev: float
    threshold: float
    sample_size: int


class AnomalyDetector:
    """Flags a candidate value whose z-score exceeds the threshold of a confidence level."""

    def __init__(self, min_samples: int = MIN_SAMPLES):
        if min_samples < 2:
            raise ValueError("min_samples must be at least 2")
        self.min_samples = min_samples

    @staticmethod
    def threshold_for(confidence: ConfidenceLevel | str) -> float:
        return Z_THRESHOLDS[ConfidenceLevel(confidence)]

    def detect(
        self,
        candidate: float,
        history: Sequence[float],
        confidence: ConfidenceLevel | str = ConfidenceLevel.MEDIUM,
    ) -> Detection:
        """
        Score `candidate` against `history`.

        Below `min_samples` history points the result is neutral: not an
        anomaly, with zeroed statistics.
        """
        threshold = self.threshold_for(confidence)
        if len(history) < self.min_samples:
            return Detection(False, 0.0, 0.0, 0.0, threshold, len(history))

        mu = mean(history)
        sigma = std_dev(history)
        score = z_score(candidate, mu, sigma)
        return Detection(
            is_anomaly=score > threshold,
            z_score=score,
            mean=mu,
            std_dev=sigma,
            threshold=threshold,
            sample_size=len(history),
        )

    @staticmethod
    def severity(score: float) -> Severity | None:
        """Severity of the strictest threshold `score` exceeds, None when under all of them."""
        if score > Z_THRESHOLDS[ConfidenceLevel.HIGH]:
            return Severity.HIGH
        if score > Z_THRESHOLDS[ConfidenceLevel.MEDIUM]:
            return Severity.MEDIUM
        if score > Z_THRESHOLDS[ConfidenceLevel.LOW]:
            return Severity.LOW
        return None
