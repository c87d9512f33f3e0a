"""
Metrics Engine — Observability Module

Single observability adapter for the engine runtime. All engine-health
counters, timings and structured event lines go through this module.

Usage:
    from metrics_engine.observability import get_observability

    obs = get_observability()
    obs.increment("collections.success")
    obs.histogram("collection.duration_ms", 12.5)

    with obs.trace("operation"):
        # traced code here
        pass
"""

from .monitoring import (
    JSONFormatter,
    ObservabilityAdapter,
    get_observability,
    initialize_observability,
    setup_logging,
)

__all__ = [
    "ObservabilityAdapter",
    "JSONFormatter",
    "get_observability",
    "initialize_observability",
    "setup_logging",
]
