"""
Metrics Engine - Input Validation Module

Pydantic validation for all MCP tool inputs and structured error responses
for engine errors raised by the tools.
"""

from .decorators import handle_engine_errors, validate_input
from .tool_schemas import (
    AnalyzeTrendInput,
    ClearCacheInput,
    CollectMetricInput,
    ConfigureMetricInput,
    CreateDefinitionInput,
    DeactivateDefinitionInput,
    DetectAnomaliesBatchInput,
    DetectAnomalyInput,
    ForecastInput,
    GetCacheStatsInput,
    GetConfigurationInput,
    GetDefinitionInput,
    GetLatestValueInput,
    GetStatusInput,
    GetTimeSeriesInput,
    ListDefinitionsInput,
    ScanAnomaliesInput,
    UpdateDefinitionInput,
)

__all__ = [
    # Decorators
    "validate_input",
    "handle_engine_errors",
    # Tool input schemas
    "CollectMetricInput",
    "GetLatestValueInput",
    "GetTimeSeriesInput",
    "DetectAnomalyInput",
    "ScanAnomaliesInput",
    "DetectAnomaliesBatchInput",
    "AnalyzeTrendInput",
    "ForecastInput",
    "ClearCacheInput",
    "GetCacheStatsInput",
    "GetStatusInput",
    "CreateDefinitionInput",
    "UpdateDefinitionInput",
    "DeactivateDefinitionInput",
    "GetDefinitionInput",
    "ListDefinitionsInput",
    "ConfigureMetricInput",
    "GetConfigurationInput",
]
