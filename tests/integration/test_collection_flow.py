"""
Metrics Engine — Collection Flow Integration Tests

Drives the engine facade end to end: definitions and configurations are
created through the manager, values are collected from the data source,
stored, cached and read back.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from metrics_engine.collection import CollectionState
from metrics_engine.errors import ComputationError, NotFoundError
from metrics_engine.models import SnapshotStatus


def count_metric(code: str, **fields) -> dict:
    return {
        "code": code,
        "name": code.replace("_", " ").title(),
        "kind": "count",
        "query_template": f"SELECT COUNT(*) FROM {code} WHERE created_at >= :period_start",
        **fields,
    }


class TestCollectMetric:
    async def test_collect_store_and_read_back(self, engine, data_source, clock) -> None:
        definition = await engine.create_definition(count_metric("active_beneficiaries", suffix=" people"))
        data_source.values[definition.query_template] = 1250

        snapshot = await engine.collect_metric("active_beneficiaries")

        assert snapshot.value == 1250.0
        assert snapshot.formatted_value == "1250.00 people"
        assert snapshot.definition_version == 1
        assert (snapshot.period_start, snapshot.period_end) == (
            datetime(2024, 3, 14, tzinfo=UTC),
            datetime(2024, 3, 15, tzinfo=UTC),
        )

        latest = await engine.get_latest_value("active_beneficiaries")
        assert latest.id == snapshot.id
        assert (await engine.get_definition("active_beneficiaries")).last_collected_at == clock.now

    async def test_repeated_collection_is_idempotent(self, engine, data_source) -> None:
        definition = await engine.create_definition(count_metric("active_beneficiaries"))
        data_source.values[definition.query_template] = 10

        first = await engine.collect_metric("active_beneficiaries")
        data_source.values[definition.query_template] = 99
        second = await engine.collect_metric("active_beneficiaries")

        assert second.id == first.id
        assert second.value == 10.0
        assert len(data_source.calls) == 1

    async def test_concurrent_collections_store_one_snapshot(self, engine, store, data_source) -> None:
        definition = await engine.create_definition(count_metric("active_beneficiaries"))
        data_source.values[definition.query_template] = 10
        data_source.delay = 0.05

        results = await asyncio.gather(*(engine.collect_metric("active_beneficiaries") for _ in range(5)))

        assert len({snapshot.id for snapshot in results}) == 1
        assert await store.count_snapshots(definition.id) == 1

    async def test_dimension_sets_are_separate_series(self, engine, data_source) -> None:
        definition = await engine.create_definition(count_metric("active_beneficiaries"))
        data_source.values[definition.query_template] = lambda start, end, dims: 7 if dims.get("region") == "north" else 3

        north = await engine.collect_metric("active_beneficiaries", dimensions={"region": "north"})
        south = await engine.collect_metric("active_beneficiaries", dimensions={"region": "south"})

        assert (north.value, south.value) == (7.0, 3.0)
        assert (await engine.get_latest_value("active_beneficiaries", {"region": "north"})).id == north.id

    async def test_failure_stores_error_snapshot_and_raises(self, engine, store, data_source, failing_query) -> None:
        definition = await engine.create_definition(count_metric("active_beneficiaries"))
        data_source.values[definition.query_template] = failing_query

        with pytest.raises(ComputationError, match="no such table"):
            await engine.collect_metric("active_beneficiaries")

        errors = await store.list_snapshots(definition.id, status=SnapshotStatus.ERROR)
        assert len(errors) == 1
        assert "no such table" in errors[0].status_message
        with pytest.raises(NotFoundError):
            await engine.get_latest_value("active_beneficiaries")

    async def test_composite_collects_its_dependencies(self, engine, data_source) -> None:
        approved = await engine.create_definition(count_metric("approved_requests"))
        total = await engine.create_definition(count_metric("total_requests"))
        await engine.create_definition(
            {
                "code": "approval_rate",
                "name": "Approval rate",
                "kind": "composite",
                "formula": "approved_requests / total_requests * 100",
                "dependent_metrics": ["approved_requests", "total_requests"],
                "suffix": "%",
                "decimal_places": 1,
            }
        )
        data_source.values[approved.query_template] = 40
        data_source.values[total.query_template] = 50

        snapshot = await engine.collect_metric("approval_rate")

        assert snapshot.value == pytest.approx(80.0)
        assert snapshot.formatted_value == "80.0%"

    async def test_unknown_and_inactive_metrics(self, engine) -> None:
        await engine.create_definition(count_metric("active_beneficiaries"))
        await engine.deactivate_definition("active_beneficiaries")

        with pytest.raises(NotFoundError):
            await engine.collect_metric("active_beneficiaries")
        with pytest.raises(NotFoundError):
            await engine.collect_metric("missing_metric")


class TestReads:
    async def test_time_series_over_explicit_periods(self, engine, data_source) -> None:
        definition = await engine.create_definition(count_metric("paid_requests"))
        data_source.values[definition.query_template] = lambda start, end, dims: start.day
        for day in range(1, 6):
            await engine.collect_metric(
                "paid_requests",
                period_start=datetime(2024, 3, day, tzinfo=UTC),
                period_end=datetime(2024, 3, day + 1, tzinfo=UTC),
            )

        series = await engine.get_time_series(
            "paid_requests", datetime(2024, 3, 2, tzinfo=UTC), datetime(2024, 3, 5, tzinfo=UTC)
        )

        assert [snapshot.value for snapshot in series] == [2.0, 3.0]

    async def test_series_is_served_from_cache(self, engine, data_source) -> None:
        definition = await engine.create_definition(count_metric("paid_requests"))
        data_source.values[definition.query_template] = 5
        await engine.collect_metric("paid_requests")
        start, end = datetime(2024, 3, 1, tzinfo=UTC), datetime(2024, 3, 16, tzinfo=UTC)

        await engine.get_time_series("paid_requests", start, end)
        await engine.get_time_series("paid_requests", start, end)

        families = (await engine.get_cache_stats())["families"]
        assert families["series"]["hits"] == 1

    async def test_new_snapshot_invalidates_cached_reads(self, engine, data_source, clock) -> None:
        definition = await engine.create_definition(count_metric("paid_requests"))
        data_source.values[definition.query_template] = 5
        await engine.collect_metric("paid_requests")
        assert (await engine.get_latest_value("paid_requests")).value == 5.0

        clock.advance(days=1)
        data_source.values[definition.query_template] = 6
        await engine.collect_metric("paid_requests")

        assert (await engine.get_latest_value("paid_requests")).value == 6.0


class TestCacheMaintenance:
    async def test_clear_one_metric(self, engine, data_source) -> None:
        definition = await engine.create_definition(count_metric("paid_requests"))
        data_source.values[definition.query_template] = 5
        await engine.collect_metric("paid_requests")
        await engine.get_latest_value("paid_requests")

        removed = await engine.clear_cache("paid_requests")

        assert removed >= 1

    async def test_clear_everything(self, engine, data_source) -> None:
        definition = await engine.create_definition(count_metric("paid_requests"))
        data_source.values[definition.query_template] = 5
        await engine.collect_metric("paid_requests")
        await engine.get_latest_value("paid_requests")

        await engine.clear_cache()

        assert (await engine.get_cache_stats())["keys"] == 0

    async def test_clear_unknown_metric(self, engine) -> None:
        with pytest.raises(NotFoundError):
            await engine.clear_cache("missing_metric")

    async def test_disabled_cache_reads_the_store(self, engine, data_source) -> None:
        definition = await engine.create_definition(count_metric("paid_requests"))
        await engine.configure_metric("paid_requests", {"cache_enabled": False})
        data_source.values[definition.query_template] = 5
        await engine.collect_metric("paid_requests")

        await engine.get_latest_value("paid_requests")
        await engine.get_latest_value("paid_requests")

        assert (await engine.get_cache_stats())["families"]["snapshot"]["hits"] == 0


class TestConfigurationAndStatus:
    async def test_configure_creates_then_updates(self, engine) -> None:
        definition = await engine.create_definition(count_metric("paid_requests"))

        created = await engine.configure_metric(
            "paid_requests", {"schedule_kind": "interval", "interval_seconds": 3600}
        )
        updated = await engine.configure_metric("paid_requests", {"interval_seconds": 900})

        assert updated.id == created.id
        assert updated.interval_seconds == 900
        assert engine.get_collection_state(definition.id) == CollectionState.SCHEDULED
        assert (await engine.get_configuration("paid_requests")).interval_seconds == 900

    async def test_event_triggered_collection(self, engine, events, data_source) -> None:
        definition = await engine.create_definition(count_metric("approved_requests"))
        await engine.configure_metric(
            "approved_requests", {"schedule_kind": "event", "event_name": "benefit.approved"}
        )
        data_source.values[definition.query_template] = 3

        await events.publish("benefit.approved", {"request_id": "r-1"})

        snapshot = await engine.get_latest_value("approved_requests")
        assert snapshot.value == 3.0
        assert snapshot.metadata["trigger"] == "event"

    async def test_status(self, engine, data_source) -> None:
        definition = await engine.create_definition(count_metric("paid_requests"))
        data_source.values[definition.query_template] = 5
        await engine.collect_metric("paid_requests")

        status = await engine.get_status()

        assert status["started"] is True
        assert status["environment"] == "test"
        assert status["scheduler"]["running"] is False
        assert status["cache"]["backend"]["backend"] == "memory"
        assert any(key.startswith("collections.") for key in status["observability"]["counters"])

    async def test_analytics_through_the_facade(self, engine, data_source) -> None:
        definition = await engine.create_definition(count_metric("paid_requests"))
        data_source.values[definition.query_template] = lambda start, end, dims: 100 + start.day
        today = datetime(2024, 3, 15, tzinfo=UTC)
        for offset in range(10, 0, -1):
            end = today - timedelta(days=offset - 1)
            await engine.collect_metric("paid_requests", period_start=end - timedelta(days=1), period_end=end)

        trend = await engine.analyze_trend("paid_requests")
        forecast = await engine.forecast("paid_requests", horizon=2)
        anomaly = await engine.detect_anomaly(code="paid_requests")

        assert trend.sample_size == 10
        assert trend.slope == pytest.approx(1.0)
        assert len(forecast.points) == 2
        assert anomaly.is_anomaly is False
