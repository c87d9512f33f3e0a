"""
Definition management: the only component that creates, edits or deactivates
metric definitions and their configurations.

Definitions are never deleted. Every edit bumps the version so snapshots keep
pointing at the version they were computed with.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..errors import CacheError, NotFoundError, ValidationError
from ..events import (
    METRIC_CONFIGURATION_CHANGED,
    METRIC_CREATED,
    METRIC_DEACTIVATED,
    METRIC_UPDATED,
    EventBus,
)
from ..models import (
    DefinitionFilter,
    MetricConfiguration,
    MetricConfigurationCreate,
    MetricConfigurationUpdate,
    MetricDefinition,
    MetricDefinitionCreate,
    MetricDefinitionUpdate,
    utc_now,
)

if TYPE_CHECKING:
    from ..cache.metric_cache import MetricCache
    from ..calculation.engine import CalculationEngine
    from ..collection.scheduler import CollectionScheduler
    from ..storage.store import MetricStore

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_model(model: type[ModelT], payload: ModelT | dict[str, Any]) -> ModelT:
    """Validate a payload, raising the engine's ValidationError with the field errors."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {model.__name__}",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


class DefinitionManager:
    """Validated lifecycle of metric definitions and configurations."""

    def __init__(
        self,
        store: MetricStore,
        calculator: CalculationEngine,
        cache: MetricCache,
        events: EventBus,
        scheduler: CollectionScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.calculator = calculator
        self.cache = cache
        self.events = events
        self.scheduler = scheduler
        self.clock = clock

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def create_definition(self, payload: MetricDefinitionCreate | dict[str, Any]) -> MetricDefinition:
        """
        Register a new metric at version 1.

        Raises:
            ValidationError: Malformed payload, duplicate code, missing or
                inactive dependency
            DependencyCycleError: The metric would depend on itself
        """
        data = parse_model(MetricDefinitionCreate, payload)
        if await self.store.get_definition_by_code(data.code) is not None:
            raise ValidationError(f"A metric with code '{data.code}' already exists", details={"code": data.code})

        now = self.clock()
        definition = MetricDefinition(**data.model_dump(), version=1, created_at=now, updated_at=now)
        await self._check_dependencies(definition)
        await self.store.save_definition(definition)

        logger.info(
            f"Metric definition created: {definition.code}",
            extra={"metric": definition.code, "metric_id": definition.id, "kind": definition.kind.value},
        )
        await self.events.publish(METRIC_CREATED, self._event_payload(definition))
        return definition

    async def update_definition(
        self, definition_id: str, changes: MetricDefinitionUpdate | dict[str, Any]
    ) -> MetricDefinition:
        """
        Apply a partial update and bump the version.

        Raises:
            NotFoundError: Unknown definition
            ValidationError: Invalid merged definition, or a kind change on a
                metric that already has snapshots
            DependencyCycleError: The edit introduces a dependency cycle
        """
        current = await self.get_definition(definition_id)
        fields = parse_model(MetricDefinitionUpdate, changes).model_dump(exclude_unset=True)
        if not fields:
            return current

        if "kind" in fields and fields["kind"] != current.kind:
            if await self.store.count_snapshots(definition_id) > 0:
                raise ValidationError(
                    "The kind of a metric with collected snapshots cannot change",
                    details={"metric": current.code, "kind": current.kind.value},
                )

        merged = {
            **current.model_dump(),
            **fields,
            "version": current.version + 1,
            "updated_at": self.clock(),
        }
        updated = parse_model(MetricDefinition, merged)
        await self._check_dependencies(updated)
        await self.store.save_definition(updated)
        await self._invalidate(updated.id)

        logger.info(
            f"Metric definition updated: {updated.code} v{updated.version}",
            extra={"metric": updated.code, "version": updated.version, "fields": sorted(fields)},
        )
        await self.events.publish(METRIC_UPDATED, self._event_payload(updated, changed=sorted(fields)))
        return updated

    async def deactivate_definition(self, definition_id: str) -> MetricDefinition:
        """Soft-deactivate a metric: stop its trigger and drop its cache entries."""
        current = await self.get_definition(definition_id)
        if not current.active:
            return current

        dependents = await self.store.list_dependents(current.code)
        if dependents:
            logger.warning(
                f"Deactivating {current.code} leaves active composite metrics without a dependency",
                extra={"metric": current.code, "dependents": [d.code for d in dependents]},
            )

        deactivated = current.model_copy(update={"active": False, "updated_at": self.clock()})
        await self.store.save_definition(deactivated)
        if self.scheduler is not None:
            self.scheduler.unregister(definition_id)
        await self._invalidate(definition_id)

        logger.info(f"Metric definition deactivated: {current.code}", extra={"metric": current.code})
        await self.events.publish(METRIC_DEACTIVATED, self._event_payload(deactivated))
        return deactivated

    async def get_definition(self, definition_id: str) -> MetricDefinition:
        definition = await self.store.get_definition(definition_id)
        if definition is None:
            raise NotFoundError("MetricDefinition", definition_id)
        return definition

    async def get_definition_by_code(self, code: str) -> MetricDefinition:
        definition = await self.store.get_definition_by_code(code)
        if definition is None:
            raise NotFoundError("MetricDefinition", code)
        return definition

    async def list_definitions(
        self, filters: DefinitionFilter | dict[str, Any] | None = None
    ) -> tuple[list[MetricDefinition], int]:
        return await self.store.list_definitions(parse_model(DefinitionFilter, filters or {}))

    async def _check_dependencies(self, definition: MetricDefinition) -> None:
        if not definition.is_composite:
            return

        stored = await self.store.get_definitions_by_codes(
            [code for code in definition.dependent_metrics if code != definition.code]
        )
        missing = [
            code
            for code in definition.dependent_metrics
            if code != definition.code and (code not in stored or not stored[code].active)
        ]
        if missing:
            raise ValidationError(
                "Dependent metrics must exist and be active",
                details={"metric": definition.code, "missing": missing},
            )

        # Raises DependencyCycleError; the candidate stands in for its stored version
        await self.calculator.resolve_dependencies(definition, overrides={definition.code: definition})

    # ------------------------------------------------------------------
    # Configurations
    # ------------------------------------------------------------------

    async def create_configuration(
        self, payload: MetricConfigurationCreate | dict[str, Any]
    ) -> MetricConfiguration:
        """
        Attach the operational configuration of a metric (one per metric).

        Raises:
            NotFoundError: Unknown metric
            ValidationError: Malformed payload or the metric already has one
        """
        data = parse_model(MetricConfigurationCreate, payload)
        definition = await self.get_definition(data.metric_id)
        if await self.store.get_configuration_for_metric(definition.id) is not None:
            raise ValidationError(
                f"Metric '{definition.code}' already has a configuration",
                details={"metric_id": definition.id},
            )

        now = self.clock()
        configuration = MetricConfiguration(**data.model_dump(), created_at=now, updated_at=now)
        await self.store.save_configuration(configuration)
        await self._configuration_changed(definition, configuration)
        return configuration

    async def update_configuration(
        self, configuration_id: str, changes: MetricConfigurationUpdate | dict[str, Any]
    ) -> MetricConfiguration:
        current = await self.store.get_configuration(configuration_id)
        if current is None:
            raise NotFoundError("MetricConfiguration", configuration_id)

        fields = parse_model(MetricConfigurationUpdate, changes).model_dump(exclude_unset=True)
        if not fields:
            return current

        updated = parse_model(
            MetricConfiguration,
            {**current.model_dump(), **fields, "updated_at": self.clock()},
        )
        await self.store.save_configuration(updated)
        await self._configuration_changed(await self.get_definition(updated.metric_id), updated)
        return updated

    async def get_configuration_for_metric(self, metric_id: str) -> MetricConfiguration:
        configuration = await self.store.get_configuration_for_metric(metric_id)
        if configuration is None:
            raise NotFoundError("MetricConfiguration", f"metric {metric_id}")
        return configuration

    async def _configuration_changed(
        self, definition: MetricDefinition, configuration: MetricConfiguration
    ) -> None:
        await self._invalidate(definition.id)
        state = self.scheduler.register(definition, configuration).value if self.scheduler else None

        logger.info(
            f"Configuration of {definition.code} changed",
            extra={
                "metric": definition.code,
                "schedule_kind": configuration.schedule_kind.value,
                "collection_state": state,
            },
        )
        await self.events.publish(
            METRIC_CONFIGURATION_CHANGED,
            {
                "metric_id": definition.id,
                "metric_code": definition.code,
                "configuration_id": configuration.id,
                "schedule_kind": configuration.schedule_kind.value,
                "collection_enabled": configuration.collection_enabled,
                "timestamp": self.clock().isoformat(),
            },
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _invalidate(self, definition_id: str) -> None:
        try:
            await self.cache.invalidate(definition_id)
        except CacheError as e:
            logger.warning(
                f"Cache invalidation failed, entries expire with their TTL: {e}",
                extra={"definition_id": definition_id},
            )

    def _event_payload(self, definition: MetricDefinition, **extra: Any) -> dict[str, Any]:
        return {
            "metric_id": definition.id,
            "metric_code": definition.code,
            "metric_name": definition.name,
            "version": definition.version,
            "active": definition.active,
            "timestamp": self.clock().isoformat(),
            **extra,
        }
