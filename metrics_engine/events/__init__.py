"""
Metrics Engine — Events Module

Outbound notification of alerts, anomalies and trend results, and inbound
domain events that trigger event-scheduled collections.
"""

from .bus import (
    METRIC_ALERT,
    METRIC_ANOMALY_DETECTED,
    METRIC_CONFIGURATION_CHANGED,
    METRIC_CREATED,
    METRIC_DEACTIVATED,
    METRIC_TREND_ANALYZED,
    METRIC_UPDATED,
    EventBus,
    EventHandler,
)

__all__ = [
    "EventBus",
    "EventHandler",
    "METRIC_ALERT",
    "METRIC_ANOMALY_DETECTED",
    "METRIC_TREND_ANALYZED",
    "METRIC_CREATED",
    "METRIC_UPDATED",
    "METRIC_DEACTIVATED",
    "METRIC_CONFIGURATION_CHANGED",
]
