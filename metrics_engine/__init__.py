"""
Metrics Engine

Business metric definitions, scheduled and event-driven collection with
idempotent snapshots, a TTL cache layer, and z-score anomaly detection,
trend analysis and forecasting over the resulting time series.
"""

__version__ = "1.0.0"

# Export main components for external use
from .service import MetricsEngine, close_engine, get_engine

__all__ = ["MetricsEngine", "get_engine", "close_engine"]
