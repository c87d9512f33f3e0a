"""
Trigger construction for scheduled collections.

Cron-like schedules are evaluated by APScheduler's crontab parser; interval
schedules become fixed interval triggers. Event and manual schedules have no
timer and return None.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from ..models import MetricConfiguration

# crontab counts weekdays from Sunday = 0 (7 is Sunday too); APScheduler counts from Monday
_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_WEEKDAY_ITEM = re.compile(r"^(?:(\*)|(\d+)(?:-(\d+))?)(?:/(\d+))?$")


def _weekday_item(item: str) -> str:
    """Expand one numeric weekday item (`5`, `0-5`, `1-7/2`, `*/2`) into day names."""
    match = _WEEKDAY_ITEM.match(item)
    if match is None or item == "*":
        return item
    star, first, last, step = match.groups()
    if star:
        start, stop = 0, 6
    else:
        start = int(first)
        stop = int(last) if last is not None else (6 if step else start)
    if start > 7 or stop > 7 or start > stop or step == "0":
        # left for APScheduler to reject
        return item
    days = sorted({day % 7 for day in range(start, stop + 1, int(step or 1))})
    return ",".join(_WEEKDAY_NAMES[day] for day in days)


def _crontab_weekdays(field: str) -> str:
    return ",".join(_weekday_item(item) for item in field.split(","))


def validate_cron_expression(expression: str, timezone: str = "UTC") -> CronTrigger:
    """
    Parse a five-field crontab expression.

    Raises:
        ValueError: If the expression cannot be parsed
    """
    try:
        fields = expression.split()
        if len(fields) == 5:
            fields[4] = _crontab_weekdays(fields[4])
        return CronTrigger.from_crontab(" ".join(fields), timezone=timezone)
    except (ValueError, TypeError) as e:
        raise ValueError(f"invalid cron expression {expression!r}: {e}") from e


def build_trigger(configuration: MetricConfiguration, timezone: str = "UTC") -> BaseTrigger | None:
    """Return the timer trigger for a configuration, or None for event/manual schedules."""
    kind = configuration.schedule_kind
    if kind == "interval" and configuration.interval_seconds:
        return IntervalTrigger(seconds=configuration.interval_seconds, timezone=timezone)
    if kind == "cron" and configuration.cron_expression:
        return validate_cron_expression(configuration.cron_expression, timezone)
    return None
