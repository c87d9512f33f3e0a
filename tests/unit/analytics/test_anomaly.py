"""Tests for z-score anomaly detection and the shared statistics helpers."""

import pytest

from metrics_engine.analytics import MIN_SAMPLES, AnomalyDetector, linear_fit, z_for_confidence
from metrics_engine.analytics.stats import goodness_of_fit, std_dev, z_score
from metrics_engine.models import ConfidenceLevel, Severity


class TestStatistics:
    def test_population_standard_deviation(self) -> None:
        assert std_dev([2, 4, 4, 4, 5, 5, 7, 9]) == pytest.approx(2.0)

    def test_single_value_has_no_spread(self) -> None:
        assert std_dev([5]) == 0.0

    def test_z_score_is_absolute(self) -> None:
        assert z_score(4, 10, 2) == 3.0

    def test_z_score_of_flat_history_is_zero(self) -> None:
        assert z_score(50, 10, 0) == 0.0

    @pytest.mark.parametrize(
        ("level", "z"),
        [(0.90, 1.645), (0.95, 1.96), (0.99, 2.576), (0.8, 1.96)],
    )
    def test_z_for_confidence(self, level, z) -> None:
        assert z_for_confidence(level) == z

    def test_goodness_of_fit_of_constant_series(self) -> None:
        assert goodness_of_fit([3, 3, 3], [0, 0, 0]) == 0.0

    def test_linear_fit_of_exact_line(self) -> None:
        fit = linear_fit([1, 2, 3, 4], [3, 5, 7, 9])

        assert fit.slope == pytest.approx(2.0)
        assert fit.intercept == pytest.approx(1.0)
        assert fit.r_squared == pytest.approx(1.0)
        assert fit.standard_error == pytest.approx(0.0)

    def test_linear_fit_with_degenerate_axis(self) -> None:
        fit = linear_fit([2, 2, 2], [1, 2, 3])

        assert fit.slope == 0.0
        assert fit.intercept == pytest.approx(2.0)

    def test_linear_fit_length_mismatch(self) -> None:
        with pytest.raises(ValueError):
            linear_fit([1, 2], [1])


class TestAnomalyDetector:
    @pytest.fixture
    def detector(self) -> AnomalyDetector:
        return AnomalyDetector()

    def test_thresholds_increase_with_confidence(self, detector: AnomalyDetector) -> None:
        low = detector.threshold_for(ConfidenceLevel.LOW)
        medium = detector.threshold_for(ConfidenceLevel.MEDIUM)
        high = detector.threshold_for("high")

        assert (low, medium, high) == (2.0, 2.5, 3.0)

    def test_flat_history_never_flags(self, detector: AnomalyDetector) -> None:
        """A constant history has no spread, so even a far value scores zero."""
        detection = detector.detect(50, [10] * 5)

        assert detection.z_score == 0.0
        assert detection.std_dev == 0.0
        assert detection.is_anomaly is False

    def test_outlier_is_flagged(self, detector: AnomalyDetector) -> None:
        history = [10, 12, 11, 9, 10, 11, 12, 10]

        detection = detector.detect(30, history, ConfidenceLevel.HIGH)

        assert detection.is_anomaly is True
        assert detection.z_score > 3.0
        assert detection.sample_size == len(history)

    def test_value_near_mean_is_normal(self, detector: AnomalyDetector) -> None:
        detection = detector.detect(11, [10, 12, 11, 9, 10, 11, 12, 10], ConfidenceLevel.LOW)

        assert detection.is_anomaly is False

    def test_confidence_changes_the_verdict(self, detector: AnomalyDetector) -> None:
        history = [8, 12, 8, 12, 8, 12]  # mean 10, std 2
        candidate = 15.4  # z = 2.7

        assert detector.detect(candidate, history, ConfidenceLevel.LOW).is_anomaly is True
        assert detector.detect(candidate, history, ConfidenceLevel.MEDIUM).is_anomaly is True
        assert detector.detect(candidate, history, ConfidenceLevel.HIGH).is_anomaly is False

    def test_insufficient_history_is_neutral(self, detector: AnomalyDetector) -> None:
        detection = detector.detect(1000, [1, 2, 3, 4])

        assert MIN_SAMPLES == 5
        assert detection.is_anomaly is False
        assert detection.z_score == 0.0
        assert detection.mean == 0.0
        assert detection.sample_size == 4

    def test_min_samples_must_allow_a_deviation(self) -> None:
        with pytest.raises(ValueError):
            AnomalyDetector(min_samples=1)

    @pytest.mark.parametrize(
        ("score", "severity"),
        [(3.5, Severity.HIGH), (2.7, Severity.MEDIUM), (2.2, Severity.LOW), (2.0, None), (0.0, None)],
    )
    def test_severity_grades(self, score, severity) -> None:
        assert AnomalyDetector.severity(score) == severity
