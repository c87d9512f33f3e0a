"""
Tests for Validation Decorators

Coverage for @validate_input and @handle_engine_errors as they wrap the
MCP tools:
- Valid input reaches the tool already coerced
- Invalid input becomes a structured error response
- Engine errors become structured error responses with a retry hint
"""

from datetime import UTC, datetime

import pytest
from pydantic import BaseModel, Field

from metrics_engine.errors import (
    CollectionTimeoutError,
    DependencyCycleError,
    ErrorCode,
    NotFoundError,
)
from metrics_engine.models import ConfidenceLevel
from metrics_engine.validation.decorators import handle_engine_errors, validate_input
from metrics_engine.validation.tool_schemas import (
    CollectMetricInput,
    DetectAnomalyInput,
    ForecastInput,
    GetTimeSeriesInput,
    UpdateDefinitionInput,
)


class SampleInput(BaseModel):
    """Sample validation schema for testing."""

    name: str = Field(..., min_length=1, max_length=100)
    age: int = Field(..., ge=0, le=150)
    email: str | None = Field(default=None)


class TestValidateInputDecorator:
    """Test @validate_input decorator."""

    async def test_valid_async_input(self):
        @validate_input(SampleInput)
        async def sample_func(name: str, age: int, email: str | None = None):
            return {"name": name, "age": age, "email": email}

        result = await sample_func(name="Alice", age=30, email="alice@example.com")

        assert result == {"name": "Alice", "age": 30, "email": "alice@example.com"}

    async def test_invalid_async_input_missing_field(self):
        @validate_input(SampleInput)
        async def sample_func(name: str, age: int, email: str | None = None):
            return {"name": name, "age": age}

        result = await sample_func(name="Alice")

        assert result["success"] is False
        assert result["error_code"] == ErrorCode.INVALID_INPUT
        assert len(result["details"]["validation_errors"]) > 0

    async def test_constraint_violation_names_the_field(self):
        @validate_input(SampleInput)
        async def sample_func(name: str, age: int, email: str | None = None):
            return {"name": name, "age": age}

        result = await sample_func(name="Alice", age=200)

        errors = result["details"]["validation_errors"]
        assert any("age" in err["field"] for err in errors)

    async def test_error_response_structure(self):
        @validate_input(SampleInput)
        async def sample_func(name: str, age: int, email: str | None = None):
            return {"name": name, "age": age}

        result = await sample_func(age="invalid")

        assert set(result) == {"success", "error_code", "message", "details"}
        assert result["details"]["function"] == "sample_func"
        for error in result["details"]["validation_errors"]:
            assert {"field", "message", "type"} <= set(error)

    def test_sync_functions_are_supported(self):
        @validate_input(SampleInput)
        def sample_func(name: str, age: int, email: str | None = None):
            return {"name": name, "age": age}

        assert sample_func(name="Bob", age=25) == {"name": "Bob", "age": 25}
        assert sample_func(name="", age=25)["error_code"] == ErrorCode.INVALID_INPUT

    async def test_decorator_preserves_function_metadata(self):
        @validate_input(SampleInput)
        async def documented_function(name: str, age: int, email: str | None = None):
            """This function has documentation."""
            return {"name": name, "age": age}

        assert documented_function.__name__ == "documented_function"
        assert documented_function.__doc__ == "This function has documentation."

    async def test_validation_failure_is_counted(self, observability, monkeypatch):
        monkeypatch.setattr("metrics_engine.validation.decorators.get_observability", lambda: observability)

        @validate_input(SampleInput)
        async def sample_func(name: str, age: int, email: str | None = None):
            return {}

        await sample_func(name="")

        counters = observability.get_metrics()["counters"]
        assert any(key.startswith("validation.failed") for key in counters)


class TestToolSchemas:
    """The tool schemas coerce and reject arguments before a tool runs."""

    async def test_collect_metric_receives_parsed_period(self):
        @validate_input(CollectMetricInput)
        async def collect_metric(code, dimensions=None, period_start=None, period_end=None):
            return {"start": period_start, "end": period_end}

        result = await collect_metric(
            code="active_beneficiaries",
            period_start="2024-03-01T00:00:00Z",
            period_end="2024-03-02T00:00:00Z",
        )

        assert result["start"] == datetime(2024, 3, 1, tzinfo=UTC)
        assert result["end"] == datetime(2024, 3, 2, tzinfo=UTC)

    @pytest.mark.parametrize(
        "arguments",
        [
            {"code": "Active-Beneficiaries"},
            {"code": "active_beneficiaries", "period_start": "2024-03-01T00:00:00Z"},
            {
                "code": "active_beneficiaries",
                "period_start": "2024-03-02T00:00:00Z",
                "period_end": "2024-03-01T00:00:00Z",
            },
            {"code": "active_beneficiaries", "dimensions": {"region name": "north"}},
        ],
    )
    async def test_collect_metric_rejections(self, arguments):
        @validate_input(CollectMetricInput)
        async def collect_metric(code, dimensions=None, period_start=None, period_end=None):
            return {"success": True}

        result = await collect_metric(**arguments)

        assert result["success"] is False

    def test_time_series_range_must_be_ordered(self):
        with pytest.raises(ValueError):
            GetTimeSeriesInput(code="paid_amount", start="2024-03-02T00:00:00Z", end="2024-03-01T00:00:00Z")

    def test_detect_anomaly_needs_a_target(self):
        with pytest.raises(ValueError):
            DetectAnomalyInput()

        assert DetectAnomalyInput(snapshot_id="abc").confidence == ConfidenceLevel.MEDIUM

    @pytest.mark.parametrize("level", [0.5, 1.0])
    def test_forecast_confidence_bounds(self, level):
        with pytest.raises(ValueError):
            ForecastInput(code="paid_amount", confidence_level=level)

    def test_code_is_immutable(self):
        with pytest.raises(ValueError):
            UpdateDefinitionInput(code="paid_amount", changes={"code": "amount_paid"})


class TestHandleEngineErrors:
    """Test @handle_engine_errors decorator."""

    async def test_result_passes_through(self):
        @handle_engine_errors
        async def tool():
            return {"success": True, "value": 1.0}

        assert await tool() == {"success": True, "value": 1.0}

    async def test_not_found(self):
        @handle_engine_errors
        async def tool():
            raise NotFoundError("MetricDefinition", "approval_rate")

        result = await tool()

        assert result["success"] is False
        assert result["error_code"] == "NOT_FOUND"
        assert result["details"]["id"] == "approval_rate"
        assert result["details"]["retryable"] is False

    async def test_timeout_is_retryable(self):
        @handle_engine_errors
        async def tool():
            raise CollectionTimeoutError("paid_amount", 60.0)

        result = await tool()

        assert result["error_code"] == "COLLECTION_TIMEOUT"
        assert result["details"]["retryable"] is True

    async def test_cycle_reports_the_path(self):
        @handle_engine_errors
        async def tool():
            raise DependencyCycleError(["a", "b", "a"])

        result = await tool()

        assert result["error_code"] == "DEPENDENCY_CYCLE"
        assert result["details"]["cycle"] == ["a", "b", "a"]

    async def test_foreign_errors_propagate(self):
        @handle_engine_errors
        async def tool():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await tool()
