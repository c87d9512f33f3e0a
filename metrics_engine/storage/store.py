"""
Metrics Engine — Metric Store

Repository for metric definitions, configurations and snapshots.

Provides:
- Definition lookup by id/code, filtered listing with pagination, save
- Configuration lookup by id/metric id, save
- Snapshot insert with uniqueness tolerance, lookup by uniqueness key,
  range queries, and retention deletes (by age and by count)

Database failures are raised as PersistenceError. A snapshot insert that
loses a uniqueness race returns the row that won instead of failing.
"""

import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import PersistenceError
from ..models import (
    DefinitionFilter,
    MetricConfiguration,
    MetricDefinition,
    MetricSnapshot,
    ScheduleKind,
    SnapshotStatus,
)
from .database import EngineDatabase
from .db_models import MetricConfigurationRecord, MetricDefinitionRecord, MetricSnapshotRecord

logger = logging.getLogger(__name__)


class MetricStore:
    """Async repository over the engine database."""

    def __init__(self, database: EngineDatabase):
        self.database = database

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.database.get_session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(
                f"Metric store operation failed: {operation}: {e}",
                extra={"operation": operation, "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError(
                f"Metric store operation failed: {operation}",
                details={"operation": operation, "error": str(e)},
            ) from e

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def save_definition(self, definition: MetricDefinition) -> MetricDefinition:
        """Insert or update a definition by id."""
        async with self._session("save_definition") as session:
            record = await session.get(MetricDefinitionRecord, definition.id)
            if record is None:
                session.add(MetricDefinitionRecord.from_domain(definition))
            else:
                record.apply(definition)
            await session.commit()
        return definition

    async def get_definition(self, definition_id: str) -> MetricDefinition | None:
        async with self._session("get_definition") as session:
            record = await session.get(MetricDefinitionRecord, definition_id)
            return record.to_domain() if record else None

    async def get_definition_by_code(self, code: str, active_only: bool = False) -> MetricDefinition | None:
        stmt = select(MetricDefinitionRecord).where(MetricDefinitionRecord.code == code)
        if active_only:
            stmt = stmt.where(MetricDefinitionRecord.active.is_(True))
        async with self._session("get_definition_by_code") as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return record.to_domain() if record else None

    async def get_definitions_by_codes(self, codes: Sequence[str]) -> dict[str, MetricDefinition]:
        if not codes:
            return {}
        stmt = select(MetricDefinitionRecord).where(MetricDefinitionRecord.code.in_(list(codes)))
        async with self._session("get_definitions_by_codes") as session:
            records = (await session.execute(stmt)).scalars().all()
            return {record.code: record.to_domain() for record in records}

    async def list_definitions(self, filters: DefinitionFilter) -> tuple[list[MetricDefinition], int]:
        """Filtered, paginated listing ordered by code. Returns (items, total)."""
        conditions = []
        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(
                or_(MetricDefinitionRecord.code.ilike(pattern), MetricDefinitionRecord.name.ilike(pattern))
            )
        if filters.category is not None:
            conditions.append(MetricDefinitionRecord.category == filters.category.value)
        if filters.kind is not None:
            conditions.append(MetricDefinitionRecord.kind == filters.kind.value)
        if filters.active is not None:
            conditions.append(MetricDefinitionRecord.active.is_(filters.active))
        if filters.tag:
            conditions.append(MetricDefinitionRecord.tags.like(f'%"{filters.tag}"%'))

        count_stmt = select(func.count()).select_from(MetricDefinitionRecord).where(*conditions)
        stmt = (
            select(MetricDefinitionRecord)
            .where(*conditions)
            .order_by(MetricDefinitionRecord.code)
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        )
        async with self._session("list_definitions") as session:
            total = (await session.execute(count_stmt)).scalar_one()
            records = (await session.execute(stmt)).scalars().all()
            return [record.to_domain() for record in records], total

    async def list_active_definitions(self) -> list[MetricDefinition]:
        stmt = (
            select(MetricDefinitionRecord)
            .where(MetricDefinitionRecord.active.is_(True))
            .order_by(MetricDefinitionRecord.code)
        )
        async with self._session("list_active_definitions") as session:
            return [record.to_domain() for record in (await session.execute(stmt)).scalars().all()]

    async def list_dependents(self, code: str) -> list[MetricDefinition]:
        """Active composite definitions that declare `code` as a dependency."""
        stmt = select(MetricDefinitionRecord).where(
            MetricDefinitionRecord.active.is_(True),
            MetricDefinitionRecord.dependent_metrics.like(f'%"{code}"%'),
        )
        async with self._session("list_dependents") as session:
            definitions = [record.to_domain() for record in (await session.execute(stmt)).scalars().all()]
        return [definition for definition in definitions if code in definition.dependent_metrics]

    async def mark_collected(self, definition_id: str, collected_at: datetime) -> None:
        stmt = (
            update(MetricDefinitionRecord)
            .where(MetricDefinitionRecord.id == definition_id)
            .values(last_collected_at=collected_at)
        )
        async with self._session("mark_collected") as session:
            await session.execute(stmt)
            await session.commit()

    # ------------------------------------------------------------------
    # Configurations
    # ------------------------------------------------------------------

    async def save_configuration(self, configuration: MetricConfiguration) -> MetricConfiguration:
        async with self._session("save_configuration") as session:
            record = await session.get(MetricConfigurationRecord, configuration.id)
            if record is None:
                session.add(MetricConfigurationRecord.from_domain(configuration))
            else:
                record.apply(configuration)
            await session.commit()
        return configuration

    async def get_configuration(self, configuration_id: str) -> MetricConfiguration | None:
        async with self._session("get_configuration") as session:
            record = await session.get(MetricConfigurationRecord, configuration_id)
            return record.to_domain() if record else None

    async def get_configuration_for_metric(self, metric_id: str) -> MetricConfiguration | None:
        stmt = select(MetricConfigurationRecord).where(MetricConfigurationRecord.metric_id == metric_id)
        async with self._session("get_configuration_for_metric") as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return record.to_domain() if record else None

    async def list_configurations(
        self,
        collection_enabled: bool | None = None,
        schedule_kind: ScheduleKind | None = None,
        show_on_dashboard: bool | None = None,
    ) -> list[MetricConfiguration]:
        stmt = select(MetricConfigurationRecord)
        if collection_enabled is not None:
            stmt = stmt.where(MetricConfigurationRecord.collection_enabled.is_(collection_enabled))
        if schedule_kind is not None:
            stmt = stmt.where(MetricConfigurationRecord.schedule_kind == ScheduleKind(schedule_kind).value)
        if show_on_dashboard is not None:
            stmt = stmt.where(MetricConfigurationRecord.show_on_dashboard.is_(show_on_dashboard))
        stmt = stmt.order_by(MetricConfigurationRecord.dashboard_priority.desc())
        async with self._session("list_configurations") as session:
            return [record.to_domain() for record in (await session.execute(stmt)).scalars().all()]

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def insert_snapshot(self, snapshot: MetricSnapshot) -> tuple[MetricSnapshot, bool]:
        """
        Insert a snapshot.

        Returns:
            (snapshot, created). When another writer already stored the same
            (definition, period, dimension hash) the stored row is returned
            with created=False.
        """
        try:
            async with self.database.get_session() as session:
                session.add(MetricSnapshotRecord.from_domain(snapshot))
                await session.commit()
            return snapshot, True
        except IntegrityError:
            existing = await self.find_snapshot(
                snapshot.definition_id,
                snapshot.period_start,
                snapshot.period_end,
                snapshot.dimension_hash,
            )
            if existing is None:
                raise PersistenceError(
                    "Snapshot insert violated a constraint without a conflicting row",
                    details={"definition_id": snapshot.definition_id},
                ) from None
            logger.info(
                "Snapshot already stored by a concurrent collection",
                extra={"definition_id": snapshot.definition_id, "snapshot_id": existing.id},
            )
            return existing, False
        except SQLAlchemyError as e:
            raise PersistenceError(
                "Failed to insert snapshot",
                details={"definition_id": snapshot.definition_id, "error": str(e)},
            ) from e

    async def get_snapshot(self, snapshot_id: str) -> MetricSnapshot | None:
        async with self._session("get_snapshot") as session:
            record = await session.get(MetricSnapshotRecord, snapshot_id)
            return record.to_domain() if record else None

    async def find_snapshot(
        self,
        definition_id: str,
        period_start: datetime,
        period_end: datetime,
        dimension_hash: str,
    ) -> MetricSnapshot | None:
        """Lookup by the snapshot uniqueness key."""
        stmt = select(MetricSnapshotRecord).where(
            MetricSnapshotRecord.definition_id == definition_id,
            MetricSnapshotRecord.period_start == period_start,
            MetricSnapshotRecord.period_end == period_end,
            MetricSnapshotRecord.dimension_hash == dimension_hash,
        )
        async with self._session("find_snapshot") as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return record.to_domain() if record else None

    async def latest_snapshot(self, definition_id: str, dimension_hash: str | None = None) -> MetricSnapshot | None:
        """Most recent successful snapshot, optionally for one dimension set."""
        snapshots = await self.list_snapshots(
            definition_id, dimension_hash=dimension_hash, newest_first=True, limit=1
        )
        return snapshots[0] if snapshots else None

    async def list_snapshots(
        self,
        definition_id: str,
        *,
        dimension_hash: str | None = None,
        period_start_from: datetime | None = None,
        period_end_from: datetime | None = None,
        period_end_to: datetime | None = None,
        exclude_id: str | None = None,
        status: SnapshotStatus | None = SnapshotStatus.SUCCESS,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[MetricSnapshot]:
        """Snapshots of one metric, ordered by period end (oldest first unless newest_first)."""
        stmt = select(MetricSnapshotRecord).where(MetricSnapshotRecord.definition_id == definition_id)
        if dimension_hash is not None:
            stmt = stmt.where(MetricSnapshotRecord.dimension_hash == dimension_hash)
        if period_start_from is not None:
            stmt = stmt.where(MetricSnapshotRecord.period_start >= period_start_from)
        if period_end_from is not None:
            stmt = stmt.where(MetricSnapshotRecord.period_end >= period_end_from)
        if period_end_to is not None:
            stmt = stmt.where(MetricSnapshotRecord.period_end <= period_end_to)
        if exclude_id is not None:
            stmt = stmt.where(MetricSnapshotRecord.id != exclude_id)
        if status is not None:
            stmt = stmt.where(MetricSnapshotRecord.status == SnapshotStatus(status).value)

        if newest_first:
            stmt = stmt.order_by(MetricSnapshotRecord.period_end.desc(), MetricSnapshotRecord.collected_at.desc())
        else:
            stmt = stmt.order_by(MetricSnapshotRecord.period_end.asc(), MetricSnapshotRecord.collected_at.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session("list_snapshots") as session:
            return [record.to_domain() for record in (await session.execute(stmt)).scalars().all()]

    async def distinct_dimension_hashes(self, definition_id: str, since: datetime) -> list[str]:
        stmt = (
            select(MetricSnapshotRecord.dimension_hash)
            .where(
                MetricSnapshotRecord.definition_id == definition_id,
                MetricSnapshotRecord.status == SnapshotStatus.SUCCESS.value,
                MetricSnapshotRecord.period_end >= since,
            )
            .distinct()
        )
        async with self._session("distinct_dimension_hashes") as session:
            return list((await session.execute(stmt)).scalars().all())

    async def count_snapshots(self, definition_id: str) -> int:
        stmt = select(func.count()).select_from(MetricSnapshotRecord).where(
            MetricSnapshotRecord.definition_id == definition_id
        )
        async with self._session("count_snapshots") as session:
            return (await session.execute(stmt)).scalar_one()

    async def delete_snapshots_older_than(self, definition_id: str, cutoff: datetime) -> int:
        """Delete a metric's snapshots collected before `cutoff`."""
        stmt = delete(MetricSnapshotRecord).where(
            MetricSnapshotRecord.definition_id == definition_id,
            MetricSnapshotRecord.collected_at < cutoff,
        )
        async with self._session("delete_snapshots_older_than") as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def delete_snapshots_beyond(self, definition_id: str, keep: int) -> int:
        """
        Delete all but the `keep` most recently collected snapshots of a metric.

        Ranked by collection time, not period; error snapshots use the
        failure time as their period.
        """
        excess = (
            select(MetricSnapshotRecord.id)
            .where(MetricSnapshotRecord.definition_id == definition_id)
            .order_by(MetricSnapshotRecord.collected_at.desc(), MetricSnapshotRecord.period_end.desc())
            .offset(keep)
        )
        async with self._session("delete_snapshots_beyond") as session:
            ids = list((await session.execute(excess)).scalars().all())
            if not ids:
                return 0
            await session.execute(delete(MetricSnapshotRecord).where(MetricSnapshotRecord.id.in_(ids)))
            await session.commit()
            return len(ids)
