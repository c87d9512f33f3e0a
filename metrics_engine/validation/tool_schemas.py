"""
Metrics Engine - Tool Input Validation Schemas

Pydantic models for validating all MCP tool inputs.

- Metric codes follow the definition code pattern
- Period overrides are ISO-8601 timestamps and must be ordered
- Bounded horizons, windows and page sizes
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from ..models import CODE_PATTERN, ConfidenceLevel, ForecastModel, MetricCategory, MetricKind

MAX_DIMENSIONS = 20


def _check_code(v: str | None) -> str | None:
    if v is not None and not CODE_PATTERN.match(v):
        raise ValueError("Metric code must match ^[a-z][a-z0-9_]*$")
    return v


def _check_dimensions(v: dict[str, Any] | None) -> dict[str, Any] | None:
    if v is None:
        return v
    if len(v) > MAX_DIMENSIONS:
        raise ValueError(f"At most {MAX_DIMENSIONS} dimensions are allowed")
    for key in v:
        if not key or not key.replace("_", "a").isalnum():
            raise ValueError(f"Dimension key must be alphanumeric or underscore: {key!r}")
    return v


class MetricCodeInput(BaseModel):
    """Base for tools addressing one metric by code."""

    code: str = Field(..., min_length=1, max_length=100, description="Metric code")

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        return _check_code(v)  # type: ignore[return-value]


class DimensionedInput(MetricCodeInput):
    dimensions: dict[str, Any] | None = Field(default=None, description="Dimension filters")

    @field_validator("dimensions")
    @classmethod
    def validate_dimensions(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        return _check_dimensions(v)


class CollectMetricInput(DimensionedInput):
    """Input validation for collect_metric tool."""

    period_start: datetime | None = Field(default=None, description="Period override start (ISO-8601)")
    period_end: datetime | None = Field(default=None, description="Period override end (ISO-8601)")

    @model_validator(mode="after")
    def validate_period(self) -> CollectMetricInput:
        if (self.period_start is None) != (self.period_end is None):
            raise ValueError("period_start and period_end must be given together")
        if self.period_start is not None and self.period_end is not None and self.period_start >= self.period_end:
            raise ValueError("period_start must be before period_end")
        return self


class GetLatestValueInput(DimensionedInput):
    """Input validation for get_latest_value tool."""


class GetTimeSeriesInput(DimensionedInput):
    """Input validation for get_time_series tool."""

    start: datetime = Field(..., description="Range start (ISO-8601)")
    end: datetime = Field(..., description="Range end (ISO-8601)")

    @model_validator(mode="after")
    def validate_range(self) -> GetTimeSeriesInput:
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self


class DetectAnomalyInput(BaseModel):
    """Input validation for detect_anomaly tool (snapshot id, or code for its latest snapshot)."""

    code: str | None = Field(default=None, max_length=100, description="Metric code")
    snapshot_id: str | None = Field(default=None, min_length=1, max_length=64, description="Snapshot id")
    dimensions: dict[str, Any] | None = Field(default=None, description="Dimension filters")
    confidence: ConfidenceLevel = Field(default=ConfidenceLevel.MEDIUM, description="low | medium | high")

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str | None) -> str | None:
        return _check_code(v)

    @field_validator("dimensions")
    @classmethod
    def validate_dimensions(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        return _check_dimensions(v)

    @model_validator(mode="after")
    def validate_target(self) -> DetectAnomalyInput:
        if self.code is None and self.snapshot_id is None:
            raise ValueError("Either code or snapshot_id is required")
        return self


class ScanAnomaliesInput(MetricCodeInput):
    """Input validation for scan_anomalies tool."""

    start: datetime | None = Field(default=None, description="Range start, defaults to the lookback window")
    end: datetime | None = Field(default=None, description="Range end, defaults to now")
    dimensions: dict[str, Any] | None = Field(default=None, description="Dimension filters; all sets when omitted")
    confidence: ConfidenceLevel = Field(default=ConfidenceLevel.MEDIUM, description="low | medium | high")

    @field_validator("dimensions")
    @classmethod
    def validate_dimensions(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        return _check_dimensions(v)


class DetectAnomaliesBatchInput(BaseModel):
    """Input validation for detect_anomalies_batch tool."""

    confidence: ConfidenceLevel = Field(default=ConfidenceLevel.MEDIUM, description="low | medium | high")
    window_days: int | None = Field(default=None, ge=1, le=365, description="Lookback window in days")


class AnalyzeTrendInput(DimensionedInput):
    """Input validation for analyze_trend tool."""

    start: datetime | None = Field(default=None, description="Range start, defaults to the lookback window")
    end: datetime | None = Field(default=None, description="Range end, defaults to now")


class ForecastInput(DimensionedInput):
    """Input validation for forecast tool."""

    horizon: int | None = Field(default=None, ge=1, le=365, description="Number of future points")
    confidence_level: float = Field(default=0.95, gt=0.5, lt=1.0, description="Interval level (0.90, 0.95, 0.99)")
    model: ForecastModel | None = Field(default=None, description="Pinned model; selected by sample size if None")


class ClearCacheInput(BaseModel):
    """Input validation for clear_cache tool."""

    code: str | None = Field(default=None, max_length=100, description="Only this metric's entries")

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str | None) -> str | None:
        return _check_code(v)


class GetCacheStatsInput(BaseModel):
    """Input validation for get_cache_stats tool (no parameters)."""


class GetStatusInput(BaseModel):
    """Input validation for get_status tool."""

    include_metrics: bool = Field(default=False, description="Include observability counters")


class CreateDefinitionInput(BaseModel):
    """Input validation for create_definition tool; the payload is validated by the definition model."""

    definition: dict[str, Any] = Field(..., description="Metric definition payload")

    @field_validator("definition")
    @classmethod
    def validate_not_empty(cls, v: dict[str, Any]) -> dict[str, Any]:
        if not v:
            raise ValueError("Definition payload cannot be empty")
        return v


class UpdateDefinitionInput(MetricCodeInput):
    """Input validation for update_definition tool."""

    changes: dict[str, Any] = Field(..., description="Fields to change")

    @field_validator("changes")
    @classmethod
    def validate_changes(cls, v: dict[str, Any]) -> dict[str, Any]:
        if not v:
            raise ValueError("At least one field must change")
        if "code" in v:
            raise ValueError("The metric code cannot change")
        return v


class DeactivateDefinitionInput(MetricCodeInput):
    """Input validation for deactivate_definition tool."""


class GetDefinitionInput(MetricCodeInput):
    """Input validation for get_definition tool."""


class ListDefinitionsInput(BaseModel):
    """Input validation for list_definitions tool."""

    search: str | None = Field(default=None, max_length=200, description="Substring of code or name")
    category: MetricCategory | None = None
    kind: MetricKind | None = None
    active: bool | None = None
    tag: str | None = Field(default=None, max_length=100)
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=500)


class ConfigureMetricInput(MetricCodeInput):
    """Input validation for configure_metric tool; settings are validated by the configuration model."""

    settings: dict[str, Any] = Field(..., description="Configuration fields")


class GetConfigurationInput(MetricCodeInput):
    """Input validation for get_configuration tool."""
