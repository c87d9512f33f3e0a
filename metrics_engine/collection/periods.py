"""
Period windows, dimension hashing and value formatting for snapshots.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta
from typing import Any

from ..models import Granularity, MetricDefinition, ensure_utc


def _shift_months(moment: datetime, months: int) -> datetime:
    """Move a first-of-month datetime by a number of months."""
    index = moment.year * 12 + (moment.month - 1) + months
    return moment.replace(year=index // 12, month=index % 12 + 1)


def period_window(granularity: Granularity | str, now: datetime) -> tuple[datetime, datetime]:
    """
    Return the last full bucket of the given granularity ending at or before `now`.

    granularity=day at 2026-03-15T10:30Z gives 2026-03-14T00:00Z .. 2026-03-15T00:00Z.
    Weeks start on Monday; quarters on January, April, July and October.
    """
    now = ensure_utc(now)
    granularity = Granularity(granularity)

    if granularity == Granularity.MINUTE:
        end = now.replace(second=0, microsecond=0)
        return end - timedelta(minutes=1), end
    if granularity == Granularity.HOUR:
        end = now.replace(minute=0, second=0, microsecond=0)
        return end - timedelta(hours=1), end

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == Granularity.DAY:
        return midnight - timedelta(days=1), midnight
    if granularity == Granularity.WEEK:
        end = midnight - timedelta(days=midnight.weekday())
        return end - timedelta(days=7), end

    first_of_month = midnight.replace(day=1)
    if granularity == Granularity.MONTH:
        return _shift_months(first_of_month, -1), first_of_month
    if granularity == Granularity.QUARTER:
        end = first_of_month.replace(month=(first_of_month.month - 1) // 3 * 3 + 1)
        return _shift_months(end, -3), end

    end = first_of_month.replace(month=1)
    return end.replace(year=end.year - 1), end


def previous_period(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """The immediately preceding period of equal length."""
    return start - (end - start), start


def dimension_hash(dimensions: dict[str, Any] | None) -> str:
    """Deterministic hash of a dimension map; key order does not matter."""
    canonical = json.dumps(dimensions or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def period_hash(start: datetime, end: datetime) -> str:
    raw = f"{ensure_utc(start).isoformat()}|{ensure_utc(end).isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def format_value(definition: MetricDefinition, value: float) -> str:
    """Render a value with the definition's prefix, decimals and suffix."""
    text = f"{value:.{definition.decimal_places}f}"
    if definition.prefix:
        text = f"{definition.prefix}{text}"
    if definition.suffix:
        text = f"{text}{definition.suffix}"
    return text
