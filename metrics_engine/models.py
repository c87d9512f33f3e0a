"""
Metrics Engine — Domain Models

Pydantic models for metric definitions, configurations, snapshots and the
derived analytics results. Validation rules that make a definition or
configuration well formed live here so every entry point (tools, manager,
store round-trips) applies them identically.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CODE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (the SQLite driver drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def new_id() -> str:
    return str(uuid4())


class MetricKind(str, Enum):
    """How a metric value is computed."""

    COUNT = "count"
    SUM = "sum"
    AVERAGE = "average"
    MINIMUM = "minimum"
    MAXIMUM = "maximum"
    PERCENTILE = "percentile"
    CARDINALITY = "cardinality"
    RATE_OF_CHANGE = "rate_of_change"
    COMPOSITE = "composite"


class MetricCategory(str, Enum):
    """Business grouping used for listing and dashboards."""

    OPERATIONAL = "operational"
    FINANCIAL = "financial"
    SOCIAL_IMPACT = "social_impact"
    PERFORMANCE = "performance"
    QUALITY = "quality"
    SYSTEM = "system"


class Granularity(str, Enum):
    """Time bucket a metric is computed over."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class ScheduleKind(str, Enum):
    INTERVAL = "interval"
    CRON = "cron"
    EVENT = "event"
    MANUAL = "manual"


class SamplingStrategy(str, Enum):
    FULL = "full"
    RANDOM = "random"
    SYSTEMATIC = "systematic"
    STRATIFIED = "stratified"


class AlertKind(str, Enum):
    MAX = "max"
    MIN = "min"
    EQUALS = "equals"
    PERCENT_CHANGE = "percent_change"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SnapshotStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class ConfidenceLevel(str, Enum):
    """Anomaly sensitivity; higher confidence means a stricter z-score threshold."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class ForecastModel(str, Enum):
    LINEAR_REGRESSION = "linear_regression"
    MOVING_AVERAGE = "moving_average"
    EXPONENTIAL_SMOOTHING = "exponential_smoothing"


QUERY_KINDS = frozenset(kind for kind in MetricKind if kind is not MetricKind.COMPOSITE)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


class MetricDefinitionFields(BaseModel):
    """Mutable attributes shared by definitions and their create payloads."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    kind: MetricKind
    category: MetricCategory = MetricCategory.OPERATIONAL
    unit: str | None = Field(default=None, max_length=50)
    prefix: str | None = Field(default=None, max_length=20)
    suffix: str | None = Field(default=None, max_length=20)
    decimal_places: int = Field(default=2, ge=0, le=10)
    query_template: str | None = None
    formula: str | None = None
    dependent_metrics: list[str] = Field(default_factory=list)
    granularity: Granularity = Granularity.DAY
    parameters: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)

    @field_validator("dependent_metrics")
    @classmethod
    def validate_dependent_codes(cls, v: list[str]) -> list[str]:
        for code in v:
            if not CODE_PATTERN.match(code):
                raise ValueError(f"dependent metric code is not a valid identifier: {code!r}")
        if len(set(v)) != len(v):
            raise ValueError("dependent metric codes must be unique")
        return v

    @model_validator(mode="after")
    def validate_kind_requirements(self) -> MetricDefinitionFields:
        # Imported here: calculation imports this module.
        from .calculation.formula import FormulaError, validate_formula

        if self.kind == MetricKind.COMPOSITE:
            if not self.dependent_metrics:
                raise ValueError("composite metrics must declare at least one dependent metric")
            if not self.formula:
                raise ValueError("composite metrics must declare a formula")
            try:
                validate_formula(self.formula, self.dependent_metrics)
            except FormulaError as e:
                raise ValueError(str(e)) from e
        elif not self.query_template or not self.query_template.strip():
            raise ValueError(f"{self.kind.value} metrics must declare a query template")

        percentile = self.parameters.get("percentile")
        if percentile is not None:
            if isinstance(percentile, bool) or not isinstance(percentile, (int, float)):
                raise ValueError("percentile parameter must be a number")
            if not 0 <= percentile <= 100:
                raise ValueError("percentile parameter must be between 0 and 100")
        return self


class MetricDefinitionCreate(MetricDefinitionFields):
    """Payload for registering a new metric."""

    code: str = Field(..., min_length=1, max_length=100)
    active: bool = True

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        if not CODE_PATTERN.match(v):
            raise ValueError("code must start with a lowercase letter and contain only lowercase letters, digits and _")
        return v


class MetricDefinitionUpdate(BaseModel):
    """Partial update; the code is immutable and therefore absent."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    kind: MetricKind | None = None
    category: MetricCategory | None = None
    unit: str | None = None
    prefix: str | None = None
    suffix: str | None = None
    decimal_places: int | None = Field(default=None, ge=0, le=10)
    query_template: str | None = None
    formula: str | None = None
    dependent_metrics: list[str] | None = None
    granularity: Granularity | None = None
    parameters: dict[str, Any] | None = None
    tags: list[str] | None = None

    model_config = ConfigDict(extra="forbid")


class MetricDefinition(MetricDefinitionCreate):
    """A stored, versioned metric definition."""

    id: str = Field(default_factory=new_id)
    version: int = Field(default=1, ge=1)
    last_collected_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_composite(self) -> bool:
        return self.kind == MetricKind.COMPOSITE


class DefinitionFilter(BaseModel):
    """List filter with pagination."""

    search: str | None = Field(default=None, description="Substring of code or name")
    category: MetricCategory | None = None
    kind: MetricKind | None = None
    active: bool | None = None
    tag: str | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=500)


# ---------------------------------------------------------------------------
# Configurations
# ---------------------------------------------------------------------------


class AlertRule(BaseModel):
    """One threshold rule evaluated after every successful snapshot."""

    kind: AlertKind
    threshold: float
    message: str | None = None
    severity: Severity = Severity.MEDIUM


class MetricConfigurationFields(BaseModel):
    collection_enabled: bool = True
    schedule_kind: ScheduleKind = ScheduleKind.MANUAL
    interval_seconds: int | None = Field(default=None, gt=0)
    cron_expression: str | None = None
    event_name: str | None = None
    max_snapshots: int = Field(default=0, ge=0, description="0 = unlimited")
    retention_days: int = Field(default=0, ge=0, description="0 = unlimited")
    sampling_strategy: SamplingStrategy = SamplingStrategy.FULL
    sample_size: int | None = Field(default=None, gt=0)
    cache_enabled: bool = True
    cache_ttl_seconds: int | None = Field(default=None, ge=1, description="None = engine default")
    alert_rules: list[AlertRule] = Field(default_factory=list)
    show_on_dashboard: bool = False
    dashboard_priority: int = 0

    @model_validator(mode="after")
    def validate_schedule(self) -> MetricConfigurationFields:
        if self.schedule_kind == ScheduleKind.INTERVAL and not self.interval_seconds:
            raise ValueError("interval schedules require interval_seconds")
        if self.schedule_kind == ScheduleKind.CRON:
            if not self.cron_expression:
                raise ValueError("cron schedules require a cron expression")
            from .collection.triggers import validate_cron_expression

            validate_cron_expression(self.cron_expression)
        if self.schedule_kind == ScheduleKind.EVENT and not (self.event_name and self.event_name.strip()):
            raise ValueError("event schedules require an event name")
        if self.sampling_strategy != SamplingStrategy.FULL and not self.sample_size:
            raise ValueError(f"{self.sampling_strategy.value} sampling requires a sample size")
        return self


class MetricConfigurationCreate(MetricConfigurationFields):
    metric_id: str


class MetricConfigurationUpdate(BaseModel):
    collection_enabled: bool | None = None
    schedule_kind: ScheduleKind | None = None
    interval_seconds: int | None = None
    cron_expression: str | None = None
    event_name: str | None = None
    max_snapshots: int | None = None
    retention_days: int | None = None
    sampling_strategy: SamplingStrategy | None = None
    sample_size: int | None = None
    cache_enabled: bool | None = None
    cache_ttl_seconds: int | None = None
    alert_rules: list[AlertRule] | None = None
    show_on_dashboard: bool | None = None
    dashboard_priority: int | None = None

    model_config = ConfigDict(extra="forbid")


class MetricConfiguration(MetricConfigurationCreate):
    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class MetricSnapshot(BaseModel):
    """One computed value for a metric, period and dimension set. Never mutated."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    definition_version: int
    period_start: datetime
    period_end: datetime
    granularity: Granularity
    value: float
    formatted_value: str
    dimensions: dict[str, Any] = Field(default_factory=dict)
    dimension_hash: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0
    status: SnapshotStatus = SnapshotStatus.SUCCESS
    status_message: str | None = None
    collected_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Analytics results (derived, never persisted)
# ---------------------------------------------------------------------------


class AnomalyResult(BaseModel):
    metric_id: str
    metric_code: str
    metric_name: str
    snapshot_id: str | None = None
    value: float
    is_anomaly: bool
    z_score: float
    mean: float
    std_dev: float
    threshold: float
    confidence: ConfidenceLevel
    sample_size: int
    dimensions: dict[str, Any] = Field(default_factory=dict)
    analyzed_at: datetime = Field(default_factory=utc_now)


class SeriesAnomaly(BaseModel):
    snapshot_id: str
    period_end: datetime
    value: float
    z_score: float
    severity: Severity


class AnomalyScanResult(BaseModel):
    metric_id: str
    metric_code: str
    metric_name: str
    sample_size: int
    mean: float
    std_dev: float
    median: float
    minimum: float
    maximum: float
    anomalies: list[SeriesAnomaly] = Field(default_factory=list)
    message: str | None = None
    analyzed_at: datetime = Field(default_factory=utc_now)


class TrendResult(BaseModel):
    metric_id: str
    metric_code: str
    metric_name: str
    direction: TrendDirection
    slope: float
    intercept: float
    intensity: float
    confidence: float
    next_value: float
    next_value_lower: float
    next_value_upper: float
    sample_size: int
    period_start: datetime
    period_end: datetime
    analyzed_at: datetime = Field(default_factory=utc_now)


class ForecastPoint(BaseModel):
    timestamp: datetime
    value: float
    lower: float
    upper: float


class ForecastResult(BaseModel):
    metric_id: str
    metric_code: str
    metric_name: str
    model: ForecastModel | None
    horizon: int
    confidence_level: float
    goodness_of_fit: float
    mean_absolute_error: float
    sample_size: int
    points: list[ForecastPoint] = Field(default_factory=list)
    message: str | None = None
    generated_at: datetime = Field(default_factory=utc_now)
