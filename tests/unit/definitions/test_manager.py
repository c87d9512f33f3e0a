"""
Metrics Engine — Definition Manager Tests

Create/update/deactivate lifecycle, dependency checks, configuration
management and the events each change publishes.
"""

from collections import defaultdict

import pytest

from metrics_engine.definitions import DefinitionManager
from metrics_engine.errors import DependencyCycleError, NotFoundError, ValidationError
from metrics_engine.models import MetricKind


@pytest.fixture
def published(events) -> dict[str, list[dict]]:
    """Every lifecycle event the manager publishes, by name."""
    received: dict[str, list[dict]] = defaultdict(list)

    async def record(event_name: str, payload: dict) -> None:
        received[event_name].append(payload)

    for name in ("metric.created", "metric.updated", "metric.deactivated", "metric.configuration.changed"):
        events.subscribe(name, record)
    return received


@pytest.fixture
def manager(store, calculator, metric_cache, events, scheduler, clock) -> DefinitionManager:
    return DefinitionManager(store, calculator, metric_cache, events, scheduler=scheduler, clock=clock)


def count_payload(code: str, **fields) -> dict:
    return {
        "code": code,
        "name": code.replace("_", " ").title(),
        "kind": "count",
        "query_template": f"SELECT COUNT(*) FROM {code}",
        **fields,
    }


class TestCreate:
    async def test_creates_version_one(self, manager, published, clock) -> None:
        definition = await manager.create_definition(count_payload("active_beneficiaries", category="social_impact"))

        assert definition.version == 1
        assert definition.active is True
        assert definition.created_at == clock.now
        assert published["metric.created"][0]["metric_code"] == "active_beneficiaries"

    async def test_duplicate_code_is_rejected(self, manager) -> None:
        await manager.create_definition(count_payload("active_beneficiaries"))

        with pytest.raises(ValidationError, match="already exists"):
            await manager.create_definition(count_payload("active_beneficiaries"))

    async def test_duplicate_of_inactive_code_is_rejected(self, manager) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))
        await manager.deactivate_definition(created.id)

        with pytest.raises(ValidationError):
            await manager.create_definition(count_payload("active_beneficiaries"))

    @pytest.mark.parametrize(
        "payload",
        [
            {"code": "Bad-Code", "name": "x", "kind": "count", "query_template": "SELECT 1"},
            {"code": "no_query", "name": "x", "kind": "sum"},
            {"code": "no_formula", "name": "x", "kind": "composite", "dependent_metrics": ["a"]},
            {"code": "bad_pct", "name": "x", "kind": "percentile", "query_template": "SELECT 1", "parameters": {"percentile": 120}},
        ],
    )
    async def test_malformed_payload(self, manager, payload) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await manager.create_definition(payload)

        assert exc_info.value.details["errors"]

    async def test_composite_requires_existing_active_dependencies(self, manager) -> None:
        await manager.create_definition(count_payload("approved"))

        with pytest.raises(ValidationError) as exc_info:
            await manager.create_definition(
                {
                    "code": "approval_rate",
                    "name": "Approval rate",
                    "kind": "composite",
                    "formula": "approved / total * 100",
                    "dependent_metrics": ["approved", "total"],
                }
            )

        assert exc_info.value.details["missing"] == ["total"]

    async def test_self_reference_is_a_cycle(self, manager) -> None:
        with pytest.raises(DependencyCycleError):
            await manager.create_definition(
                {
                    "code": "looping",
                    "name": "Looping",
                    "kind": "composite",
                    "formula": "looping + 1",
                    "dependent_metrics": ["looping"],
                }
            )


class TestUpdate:
    async def test_update_bumps_version(self, manager, published) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))

        updated = await manager.update_definition(created.id, {"name": "Beneficiaries (active)", "decimal_places": 0})

        assert updated.version == 2
        assert updated.name == "Beneficiaries (active)"
        assert updated.decimal_places == 0
        assert published["metric.updated"][0]["changed"] == ["decimal_places", "name"]

    async def test_empty_update_changes_nothing(self, manager) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))

        assert (await manager.update_definition(created.id, {})).version == 1

    async def test_kind_change_blocked_once_collected(self, manager, scheduler) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))
        await scheduler.collect(created)

        with pytest.raises(ValidationError, match="cannot change"):
            await manager.update_definition(created.id, {"kind": "sum"})

    async def test_kind_change_allowed_before_collection(self, manager) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))

        updated = await manager.update_definition(created.id, {"kind": "sum"})

        assert updated.kind == MetricKind.SUM

    async def test_update_that_breaks_invariants(self, manager) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))

        with pytest.raises(ValidationError):
            await manager.update_definition(created.id, {"kind": "composite"})

    async def test_update_introducing_a_cycle(self, manager) -> None:
        await manager.create_definition(count_payload("base"))
        first = await manager.create_definition(
            {"code": "first", "name": "First", "kind": "composite", "formula": "base + 1", "dependent_metrics": ["base"]}
        )
        await manager.create_definition(
            {"code": "second", "name": "Second", "kind": "composite", "formula": "first * 2", "dependent_metrics": ["first"]}
        )

        with pytest.raises(DependencyCycleError):
            await manager.update_definition(first.id, {"formula": "second + 1", "dependent_metrics": ["second"]})

        assert (await manager.get_definition(first.id)).version == 1

    async def test_update_drops_cached_definition(self, manager, metric_cache) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))
        await metric_cache.get_definition("active_beneficiaries")

        await manager.update_definition(created.id, {"name": "Renamed"})

        assert (await metric_cache.get_definition("active_beneficiaries")).name == "Renamed"

    async def test_unknown_definition(self, manager) -> None:
        with pytest.raises(NotFoundError):
            await manager.update_definition("missing", {"name": "x"})


class TestDeactivate:
    async def test_deactivation_stops_the_trigger(self, manager, scheduler, published) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))
        await manager.create_configuration(
            {"metric_id": created.id, "schedule_kind": "interval", "interval_seconds": 60}
        )
        assert scheduler.status()["jobs"]

        deactivated = await manager.deactivate_definition(created.id)

        assert deactivated.active is False
        assert deactivated.version == 1
        assert scheduler.status()["jobs"] == []
        assert published["metric.deactivated"][0]["active"] is False

    async def test_deactivated_definition_is_kept(self, manager, metric_cache) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))

        await manager.deactivate_definition(created.id)

        assert (await manager.get_definition_by_code("active_beneficiaries")).active is False
        assert await metric_cache.get_definition("active_beneficiaries") is None

    async def test_deactivating_twice_is_a_no_op(self, manager, published) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))

        await manager.deactivate_definition(created.id)
        await manager.deactivate_definition(created.id)

        assert len(published["metric.deactivated"]) == 1


class TestList:
    async def test_filters_and_pagination(self, manager) -> None:
        for index in range(5):
            await manager.create_definition(count_payload(f"metric_{index}", category="financial", tags=["payments"]))
        await manager.create_definition(count_payload("quality_metric", category="quality"))

        page, total = await manager.list_definitions({"category": "financial", "limit": 2, "page": 2})

        assert total == 5
        assert len(page) == 2

    async def test_search_by_code_or_name(self, manager) -> None:
        await manager.create_definition(count_payload("approved_requests"))
        await manager.create_definition(count_payload("denied_requests"))

        found, total = await manager.list_definitions({"search": "approved"})

        assert total == 1
        assert found[0].code == "approved_requests"

    async def test_invalid_filter(self, manager) -> None:
        with pytest.raises(ValidationError):
            await manager.list_definitions({"limit": 0})


class TestConfigurations:
    async def test_create_registers_the_trigger(self, manager, scheduler, published) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))

        configuration = await manager.create_configuration(
            {"metric_id": created.id, "schedule_kind": "cron", "cron_expression": "0 6 * * *"}
        )

        assert scheduler.status()["jobs"][0]["name"] == "active_beneficiaries"
        event = published["metric.configuration.changed"][0]
        assert event["configuration_id"] == configuration.id
        assert event["schedule_kind"] == "cron"

    async def test_one_configuration_per_metric(self, manager) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))
        await manager.create_configuration({"metric_id": created.id})

        with pytest.raises(ValidationError, match="already has a configuration"):
            await manager.create_configuration({"metric_id": created.id})

    async def test_configuration_for_unknown_metric(self, manager) -> None:
        with pytest.raises(NotFoundError):
            await manager.create_configuration({"metric_id": "missing"})

    @pytest.mark.parametrize(
        "settings",
        [
            {"schedule_kind": "interval"},
            {"schedule_kind": "cron", "cron_expression": "every day"},
            {"schedule_kind": "event"},
            {"sampling_strategy": "random"},
            {"max_snapshots": -1},
        ],
    )
    async def test_invalid_configuration(self, manager, settings) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))

        with pytest.raises(ValidationError):
            await manager.create_configuration({"metric_id": created.id, **settings})

    async def test_update_switches_trigger_kind(self, manager, scheduler) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))
        configuration = await manager.create_configuration(
            {"metric_id": created.id, "schedule_kind": "interval", "interval_seconds": 60}
        )

        updated = await manager.update_configuration(
            configuration.id, {"schedule_kind": "event", "event_name": "benefit.approved"}
        )

        assert updated.event_name == "benefit.approved"
        assert scheduler.status()["jobs"] == []
        assert scheduler.status()["event_routes"] == {"benefit.approved": [created.id]}

    async def test_update_is_validated_as_a_whole(self, manager) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))
        configuration = await manager.create_configuration({"metric_id": created.id})

        with pytest.raises(ValidationError):
            await manager.update_configuration(configuration.id, {"schedule_kind": "interval"})

    async def test_missing_configuration(self, manager) -> None:
        created = await manager.create_definition(count_payload("active_beneficiaries"))

        with pytest.raises(NotFoundError):
            await manager.get_configuration_for_metric(created.id)
