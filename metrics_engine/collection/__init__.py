"""
Metrics Engine — Collection Module

Periodic, cron, event-driven and manual snapshot collection, alert rule
evaluation and snapshot retention.
"""

from .alerts import AlertEvaluator
from .periods import dimension_hash, format_value, period_hash, period_window, previous_period
from .scheduler import CollectionScheduler, CollectionState
from .triggers import build_trigger, validate_cron_expression

__all__ = [
    "CollectionScheduler",
    "CollectionState",
    "AlertEvaluator",
    "build_trigger",
    "validate_cron_expression",
    "period_window",
    "previous_period",
    "dimension_hash",
    "period_hash",
    "format_value",
]
