"""
Metrics Engine — Database Models

SQLAlchemy models for metric definitions, configurations and snapshots.
Structured attributes (dimensions, alert rules, tags...) are stored as JSON
text so the same schema works on SQLite and server databases.
"""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..models import (
    MetricConfiguration,
    MetricDefinition,
    MetricSnapshot,
    ensure_utc,
    utc_now,
)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: str | None, default: Any) -> Any:
    return json.loads(value) if value else default


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models."""

    pass


class MetricDefinitionRecord(Base):
    """Metric definitions. Rows are soft-deactivated, never deleted."""

    __tablename__ = "metric_definitions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    unit: Mapped[str | None] = mapped_column(String(50))
    prefix: Mapped[str | None] = mapped_column(String(20))
    suffix: Mapped[str | None] = mapped_column(String(20))
    decimal_places: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    query_template: Mapped[str | None] = mapped_column(Text)
    formula: Mapped[str | None] = mapped_column(Text)
    dependent_metrics: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON list
    granularity: Mapped[str] = mapped_column(String(20), nullable=False)
    parameters: Mapped[str] = mapped_column(Text, nullable=False, default="{}")  # JSON object
    tags: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON list
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_collected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    def to_domain(self) -> MetricDefinition:
        return MetricDefinition(
            id=self.id,
            code=self.code,
            name=self.name,
            description=self.description,
            kind=self.kind,
            category=self.category,
            unit=self.unit,
            prefix=self.prefix,
            suffix=self.suffix,
            decimal_places=self.decimal_places,
            query_template=self.query_template,
            formula=self.formula,
            dependent_metrics=_loads(self.dependent_metrics, []),
            granularity=self.granularity,
            parameters=_loads(self.parameters, {}),
            tags=_loads(self.tags, []),
            active=self.active,
            version=self.version,
            last_collected_at=ensure_utc(self.last_collected_at) if self.last_collected_at else None,
            created_at=ensure_utc(self.created_at),
            updated_at=ensure_utc(self.updated_at),
        )

    def apply(self, definition: MetricDefinition) -> None:
        """Copy every attribute of a domain definition onto this row."""
        self.code = definition.code
        self.name = definition.name
        self.description = definition.description
        self.kind = definition.kind.value
        self.category = definition.category.value
        self.unit = definition.unit
        self.prefix = definition.prefix
        self.suffix = definition.suffix
        self.decimal_places = definition.decimal_places
        self.query_template = definition.query_template
        self.formula = definition.formula
        self.dependent_metrics = _dumps(definition.dependent_metrics)
        self.granularity = definition.granularity.value
        self.parameters = _dumps(definition.parameters)
        self.tags = _dumps(definition.tags)
        self.active = definition.active
        self.version = definition.version
        self.last_collected_at = definition.last_collected_at
        self.created_at = definition.created_at
        self.updated_at = definition.updated_at

    @classmethod
    def from_domain(cls, definition: MetricDefinition) -> "MetricDefinitionRecord":
        record = cls(id=definition.id)
        record.apply(definition)
        return record


class MetricConfigurationRecord(Base):
    """Operational policy, one row per definition."""

    __tablename__ = "metric_configurations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    metric_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("metric_definitions.id"), nullable=False, unique=True
    )
    collection_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    schedule_kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    interval_seconds: Mapped[int | None] = mapped_column(Integer)
    cron_expression: Mapped[str | None] = mapped_column(String(100))
    event_name: Mapped[str | None] = mapped_column(String(200), index=True)
    max_snapshots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retention_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sampling_strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    sample_size: Mapped[int | None] = mapped_column(Integer)
    cache_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cache_ttl_seconds: Mapped[int | None] = mapped_column(Integer)
    alert_rules: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON list
    show_on_dashboard: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dashboard_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    def to_domain(self) -> MetricConfiguration:
        return MetricConfiguration(
            id=self.id,
            metric_id=self.metric_id,
            collection_enabled=self.collection_enabled,
            schedule_kind=self.schedule_kind,
            interval_seconds=self.interval_seconds,
            cron_expression=self.cron_expression,
            event_name=self.event_name,
            max_snapshots=self.max_snapshots,
            retention_days=self.retention_days,
            sampling_strategy=self.sampling_strategy,
            sample_size=self.sample_size,
            cache_enabled=self.cache_enabled,
            cache_ttl_seconds=self.cache_ttl_seconds,
            alert_rules=_loads(self.alert_rules, []),
            show_on_dashboard=self.show_on_dashboard,
            dashboard_priority=self.dashboard_priority,
            created_at=ensure_utc(self.created_at),
            updated_at=ensure_utc(self.updated_at),
        )

    def apply(self, configuration: MetricConfiguration) -> None:
        """Copy every attribute of a domain configuration onto this row."""
        self.metric_id = configuration.metric_id
        self.collection_enabled = configuration.collection_enabled
        self.schedule_kind = configuration.schedule_kind.value
        self.interval_seconds = configuration.interval_seconds
        self.cron_expression = configuration.cron_expression
        self.event_name = configuration.event_name
        self.max_snapshots = configuration.max_snapshots
        self.retention_days = configuration.retention_days
        self.sampling_strategy = configuration.sampling_strategy.value
        self.sample_size = configuration.sample_size
        self.cache_enabled = configuration.cache_enabled
        self.cache_ttl_seconds = configuration.cache_ttl_seconds
        self.alert_rules = _dumps([rule.model_dump(mode="json") for rule in configuration.alert_rules])
        self.show_on_dashboard = configuration.show_on_dashboard
        self.dashboard_priority = configuration.dashboard_priority
        self.created_at = configuration.created_at
        self.updated_at = configuration.updated_at

    @classmethod
    def from_domain(cls, configuration: MetricConfiguration) -> "MetricConfigurationRecord":
        record = cls(id=configuration.id)
        record.apply(configuration)
        return record


class MetricSnapshotRecord(Base):
    """
    Computed metric values.

    Schema optimized for:
    - Idempotent writes (unique on definition, period and dimension hash)
    - Time-series reads (indexed by definition + period end)
    - Retention pruning by age and count
    """

    __tablename__ = "metric_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    definition_id: Mapped[str] = mapped_column(String(36), ForeignKey("metric_definitions.id"), nullable=False)
    definition_version: Mapped[int] = mapped_column(Integer, nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    granularity: Mapped[str] = mapped_column(String(20), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    formatted_value: Mapped[str] = mapped_column(String(100), nullable=False)
    dimensions: Mapped[str] = mapped_column(Text, nullable=False, default="{}")  # JSON object
    dimension_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    extra: Mapped[str] = mapped_column("metadata", Text, nullable=False, default="{}")  # JSON object
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    status_message: Mapped[str | None] = mapped_column(Text)
    collected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "definition_id",
            "period_start",
            "period_end",
            "dimension_hash",
            name="uq_snapshot_period_dimensions",
        ),
        Index("idx_snapshot_definition_period_end", "definition_id", "period_end"),
        Index("idx_snapshot_definition_collected", "definition_id", "collected_at"),
    )

    def to_domain(self) -> MetricSnapshot:
        return MetricSnapshot(
            id=self.id,
            definition_id=self.definition_id,
            definition_version=self.definition_version,
            period_start=ensure_utc(self.period_start),
            period_end=ensure_utc(self.period_end),
            granularity=self.granularity,
            value=self.value,
            formatted_value=self.formatted_value,
            dimensions=_loads(self.dimensions, {}),
            dimension_hash=self.dimension_hash,
            metadata=_loads(self.extra, {}),
            duration_ms=self.duration_ms,
            status=self.status,
            status_message=self.status_message,
            collected_at=ensure_utc(self.collected_at),
        )

    @classmethod
    def from_domain(cls, snapshot: MetricSnapshot) -> "MetricSnapshotRecord":
        return cls(
            id=snapshot.id,
            definition_id=snapshot.definition_id,
            definition_version=snapshot.definition_version,
            period_start=snapshot.period_start,
            period_end=snapshot.period_end,
            granularity=snapshot.granularity.value,
            value=snapshot.value,
            formatted_value=snapshot.formatted_value,
            dimensions=_dumps(snapshot.dimensions),
            dimension_hash=snapshot.dimension_hash,
            extra=_dumps(snapshot.metadata),
            duration_ms=snapshot.duration_ms,
            status=snapshot.status.value,
            status_message=snapshot.status_message,
            collected_at=snapshot.collected_at,
        )
