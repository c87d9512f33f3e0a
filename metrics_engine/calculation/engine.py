"""
Calculation Engine

Computes a metric's numeric value for a period and dimension set.

Query-backed kinds run the definition's query template through the data
source. Rate-of-change runs it twice (requested period and the preceding
period of equal length). Composite metrics resolve their dependency graph
first, rejecting cycles before any value is computed, then evaluate
dependencies bottom-up and bind each value to its code in the formula.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

from ..collection.periods import previous_period
from ..errors import ComputationError, DependencyCycleError
from ..models import MetricDefinition, MetricKind
from .data_source import DataSource
from .formula import FormulaError, parse_formula

logger = logging.getLogger(__name__)

DEFAULT_PERCENTILE = 90


class DefinitionLookup(Protocol):
    async def get_definition_by_code(self, code: str, active_only: bool = False) -> MetricDefinition | None: ...


def rate_of_change(current: float, previous: float) -> float:
    """
    Percentage change from `previous` to `current`, rounded to 2 decimals.

    A zero previous value yields 100 for a positive current value and 0 otherwise.
    """
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / abs(previous) * 100, 2)


class CalculationEngine:
    """Dispatches metric computation by kind."""

    def __init__(self, data_source: DataSource, definitions: DefinitionLookup):
        self.data_source = data_source
        self.definitions = definitions

    async def compute(
        self,
        definition: MetricDefinition,
        period_start: datetime,
        period_end: datetime,
        dimensions: dict[str, Any] | None = None,
    ) -> float:
        """
        Compute a metric value.

        Raises:
            ComputationError: Query failure, unresolved dependency,
                invalid formula result
            DependencyCycleError: Composite dependency chain includes itself
        """
        dimensions = dimensions or {}

        if definition.kind != MetricKind.COMPOSITE:
            return await self._compute_base(definition, period_start, period_end, dimensions)

        plan = await self.resolve_dependencies(definition)
        values: dict[str, float] = {}
        for node in plan:
            values[node.code] = await self._compute_node(node, period_start, period_end, dimensions, values)

        logger.debug(
            f"Composite metric {definition.code} evaluated",
            extra={"metric": definition.code, "bindings": {k: v for k, v in values.items() if k != definition.code}},
        )
        return values[definition.code]

    async def resolve_dependencies(
        self,
        definition: MetricDefinition,
        overrides: Mapping[str, MetricDefinition] | None = None,
    ) -> list[MetricDefinition]:
        """
        Walk the dependency graph of a metric.

        Args:
            definition: Root metric
            overrides: Definitions to use instead of stored ones, keyed by code
                (lets a not-yet-saved edit be checked)

        Returns:
            Every reachable definition, dependencies before dependents,
            ending with `definition` itself

        Raises:
            DependencyCycleError: A metric depends on itself
            ComputationError: A dependency code is unknown or inactive
        """
        overrides = dict(overrides or {})
        overrides.setdefault(definition.code, definition)

        order: list[MetricDefinition] = []
        done: set[str] = set()
        path: list[str] = []

        async def visit(node: MetricDefinition) -> None:
            path.append(node.code)
            if node.kind == MetricKind.COMPOSITE:
                for code in node.dependent_metrics:
                    if code in path:
                        raise DependencyCycleError(path[path.index(code) :] + [code])
                    if code in done:
                        continue
                    await visit(await self._load(code, overrides))
            path.pop()
            done.add(node.code)
            order.append(node)

        await visit(definition)
        return order

    async def _load(self, code: str, overrides: Mapping[str, MetricDefinition]) -> MetricDefinition:
        if code in overrides:
            return overrides[code]
        dependency = await self.definitions.get_definition_by_code(code, active_only=True)
        if dependency is None:
            raise ComputationError(f"Unresolved dependency: {code}", details={"dependency": code})
        return dependency

    async def _compute_node(
        self,
        node: MetricDefinition,
        period_start: datetime,
        period_end: datetime,
        dimensions: dict[str, Any],
        values: Mapping[str, float],
    ) -> float:
        if node.kind != MetricKind.COMPOSITE:
            return await self._compute_base(node, period_start, period_end, dimensions)

        if not node.formula or not node.dependent_metrics:
            raise ComputationError(
                f"Composite metric {node.code} has no formula or dependencies",
                details={"metric": node.code},
            )
        try:
            return parse_formula(node.formula).evaluate({code: values[code] for code in node.dependent_metrics})
        except FormulaError as e:
            raise ComputationError(
                f"Formula evaluation failed for {node.code}: {e}",
                details={"metric": node.code, "formula": node.formula},
            ) from e

    async def _compute_base(
        self,
        definition: MetricDefinition,
        period_start: datetime,
        period_end: datetime,
        dimensions: dict[str, Any],
    ) -> float:
        if definition.kind == MetricKind.RATE_OF_CHANGE:
            current = await self._query(definition, period_start, period_end, dimensions)
            previous_start, previous_end = previous_period(period_start, period_end)
            previous = await self._query(definition, previous_start, previous_end, dimensions)
            return rate_of_change(current, previous)
        return await self._query(definition, period_start, period_end, dimensions)

    async def _query(
        self,
        definition: MetricDefinition,
        period_start: datetime,
        period_end: datetime,
        dimensions: dict[str, Any],
    ) -> float:
        if not definition.query_template:
            raise ComputationError(
                f"Metric {definition.code} has no query template",
                details={"metric": definition.code},
            )

        percentile = None
        if definition.kind == MetricKind.PERCENTILE:
            percentile = definition.parameters.get("percentile", DEFAULT_PERCENTILE)

        return await self.data_source.fetch_scalar(
            definition.query_template,
            period_start,
            period_end,
            dimensions,
            percentile=percentile,
        )
