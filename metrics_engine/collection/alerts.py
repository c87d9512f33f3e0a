"""
Alert rule evaluation after a successful snapshot.

Rules are evaluated in configuration order and isolated from each other: a
rule that fails to evaluate is logged and skipped, the rest still run.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from ..events import METRIC_ALERT, EventBus
from ..models import AlertKind, AlertRule, MetricConfiguration, MetricDefinition, MetricSnapshot, utc_now

if TYPE_CHECKING:
    from ..storage.store import MetricStore

logger = logging.getLogger(__name__)

_RULE_WORDING = {
    AlertKind.MAX: "above",
    AlertKind.MIN: "below",
    AlertKind.EQUALS: "equal to",
    AlertKind.PERCENT_CHANGE: "changed by more than",
}


class AlertEvaluator:
    """Checks alert rules against a new snapshot and publishes `metric.alert` events."""

    def __init__(self, store: MetricStore, events: EventBus, lookback: timedelta = timedelta(hours=24)):
        self.store = store
        self.events = events
        self.lookback = lookback

    async def evaluate(
        self,
        definition: MetricDefinition,
        configuration: MetricConfiguration,
        snapshot: MetricSnapshot,
    ) -> list[dict[str, Any]]:
        """
        Evaluate every rule of a configuration.

        Returns:
            Payloads of the alerts that fired
        """
        fired: list[dict[str, Any]] = []
        for index, rule in enumerate(configuration.alert_rules):
            try:
                observed = await self._observe(rule, snapshot)
            except Exception as e:
                logger.error(
                    f"Alert rule {index} of {definition.code} failed to evaluate: {e}",
                    extra={"metric": definition.code, "rule_index": index, "rule_kind": rule.kind},
                    exc_info=True,
                )
                continue

            if observed is None:
                continue

            payload = self._payload(definition, rule, snapshot, observed)
            logger.warning(
                f"[ALERT] {payload['message']} [severity: {rule.severity.value}]",
                extra={"metric": definition.code, "rule_kind": rule.kind.value, "value": snapshot.value},
            )
            await self.events.publish(METRIC_ALERT, payload)
            fired.append(payload)
        return fired

    async def _observe(self, rule: AlertRule, snapshot: MetricSnapshot) -> float | None:
        """Return the observed quantity when the rule is satisfied, else None."""
        value = snapshot.value

        if rule.kind == AlertKind.MAX:
            return value if value > rule.threshold else None
        if rule.kind == AlertKind.MIN:
            return value if value < rule.threshold else None
        if rule.kind == AlertKind.EQUALS:
            return value if math.isclose(value, rule.threshold, rel_tol=1e-9, abs_tol=1e-9) else None

        previous = await self.store.list_snapshots(
            snapshot.definition_id,
            dimension_hash=snapshot.dimension_hash,
            period_end_from=snapshot.period_start - self.lookback,
            period_end_to=snapshot.period_start,
            exclude_id=snapshot.id,
            newest_first=True,
            limit=1,
        )
        if not previous or previous[0].value == 0:
            return None

        change = (value - previous[0].value) / previous[0].value * 100
        return change if abs(change) > rule.threshold else None

    @staticmethod
    def _payload(
        definition: MetricDefinition,
        rule: AlertRule,
        snapshot: MetricSnapshot,
        observed: float,
    ) -> dict[str, Any]:
        message = rule.message or (
            f"Alert for metric {definition.code}: value {snapshot.formatted_value} "
            f"{_RULE_WORDING[rule.kind]} {rule.threshold:g}"
            + (f"% ({observed:+.2f}%)" if rule.kind == AlertKind.PERCENT_CHANGE else "")
        )
        return {
            "metric_id": definition.id,
            "metric_code": definition.code,
            "metric_name": definition.name,
            "snapshot_id": snapshot.id,
            "value": snapshot.value,
            "formatted_value": snapshot.formatted_value,
            "observed": observed,
            "threshold": rule.threshold,
            "rule_kind": rule.kind.value,
            "severity": rule.severity.value,
            "message": message,
            "dimensions": snapshot.dimensions,
            "period_start": snapshot.period_start.isoformat(),
            "period_end": snapshot.period_end.isoformat(),
            "timestamp": utc_now().isoformat(),
        }
