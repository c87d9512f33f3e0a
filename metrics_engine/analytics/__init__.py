"""
Metrics Engine — Analytics Module

Z-score anomaly detection, linear trend analysis and forecasting over
stored metric snapshots.
"""

from .anomaly import MIN_SAMPLES, Z_THRESHOLDS, AnomalyDetector, Detection
from .forecast import Forecaster, ForecastOutcome, select_model
from .service import AnalyticsService
from .stats import LinearFit, linear_fit, z_for_confidence
from .trend import TrendAnalyzer, TrendEstimate

__all__ = [
    "AnalyticsService",
    "AnomalyDetector",
    "Detection",
    "TrendAnalyzer",
    "TrendEstimate",
    "Forecaster",
    "ForecastOutcome",
    "select_model",
    "LinearFit",
    "linear_fit",
    "z_for_confidence",
    "MIN_SAMPLES",
    "Z_THRESHOLDS",
]
