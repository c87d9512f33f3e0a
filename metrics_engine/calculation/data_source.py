"""
Query-template data source.

Query templates are SQL with placeholders:

- ``${PERIODO_INICIO}`` / ``${PERIODO_FIM}``: ISO-8601 period bounds
- ``${DIMENSAO.<key>}``: the value of dimension ``<key>``
- ``${PERCENTIL}``: the percentile parameter of percentile metrics

Placeholders are turned into bound parameters, never spliced into the SQL
text, so dimension values cannot alter the statement. Quotes written around a
placeholder (``'${PERIODO_INICIO}'``) are absorbed by the binding.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ..errors import ComputationError

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"'?\$\{\s*([A-Z_]+)(?:\.([A-Za-z_][A-Za-z0-9_]*))?\s*\}'?")


class DataSource(Protocol):
    """Anything that can turn a query template into one scalar."""

    async def fetch_scalar(
        self,
        template: str,
        period_start: datetime,
        period_end: datetime,
        dimensions: dict[str, Any],
        percentile: float | None = None,
    ) -> float: ...


def render_query(
    template: str,
    period_start: datetime,
    period_end: datetime,
    dimensions: dict[str, Any],
    percentile: float | None = None,
) -> tuple[str, dict[str, Any]]:
    """
    Replace placeholders with bind parameters.

    Returns:
        (sql, params) where params only contains names the SQL references

    Raises:
        ComputationError: On an unknown placeholder or a dimension/percentile
            the caller did not supply
    """
    params: dict[str, Any] = {}

    def substitute(match: re.Match[str]) -> str:
        name, key = match.group(1), match.group(2)
        if name == "PERIODO_INICIO" and key is None:
            params["period_start"] = period_start.isoformat()
            return ":period_start"
        if name == "PERIODO_FIM" and key is None:
            params["period_end"] = period_end.isoformat()
            return ":period_end"
        if name == "PERCENTIL" and key is None:
            if percentile is None:
                raise ComputationError("Query references ${PERCENTIL} but no percentile was supplied")
            params["percentile"] = percentile
            return ":percentile"
        if name == "DIMENSAO" and key is not None:
            if key not in dimensions:
                raise ComputationError(
                    f"Query references dimension '{key}' which was not supplied",
                    details={"dimension": key, "supplied": sorted(dimensions)},
                )
            param = f"dim_{key}"
            params[param] = dimensions[key]
            return f":{param}"
        raise ComputationError(f"Unknown query placeholder: {match.group(0)}")

    sql = _PLACEHOLDER.sub(substitute, template)
    return sql, params


def coerce_scalar(raw: Any) -> float:
    """Convert a database scalar to float; NULL counts as zero."""
    if raw is None:
        return 0.0
    if isinstance(raw, bool):
        return float(raw)
    if isinstance(raw, (int, float, Decimal)):
        value = float(raw)
    else:
        try:
            value = float(str(raw))
        except ValueError as e:
            raise ComputationError(f"Query returned a non-numeric value: {raw!r}") from e
    if not math.isfinite(value):
        raise ComputationError(f"Query returned a non-finite value: {raw!r}")
    return value


class SqlDataSource:
    """Runs query templates against a SQLAlchemy async engine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def fetch_scalar(
        self,
        template: str,
        period_start: datetime,
        period_end: datetime,
        dimensions: dict[str, Any],
        percentile: float | None = None,
    ) -> float:
        """First column of the first row; no rows yields 0."""
        sql, params = render_query(template, period_start, period_end, dimensions, percentile)
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(text(sql), params)
                row = result.first()
        except SQLAlchemyError as e:
            logger.warning(
                f"Metric query failed: {e}",
                extra={"error": str(e), "params": list(params)},
            )
            raise ComputationError(
                f"Query execution failed: {e.__class__.__name__}",
                details={"error": str(e)},
            ) from e

        if row is None:
            return 0.0
        return coerce_scalar(row[0])
