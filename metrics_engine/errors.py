"""
Metrics Engine - Core Error Types

Defines the exception hierarchy shared by every engine component.
All exceptions inherit from MetricsEngineError so callers can handle
engine failures in one place.

Taxonomy:
- ValidationError: malformed definition/configuration, rejected synchronously
- NotFoundError: unknown metric, configuration or snapshot
- ComputationError: query failure, non-finite formula result, unresolved
  dependency, dependency cycle, collection timeout
- PersistenceError: store failures, retried at the next scheduled tick
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """
    Standard error codes for tool responses.

    Used for structured error handling and client-side error recovery.
    """

    # Input validation errors
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_PARAMETER = "MISSING_PARAMETER"
    INVALID_PARAMETER_VALUE = "INVALID_PARAMETER_VALUE"

    # Lookup errors
    NOT_FOUND = "NOT_FOUND"

    # Computation errors
    COMPUTATION_FAILED = "COMPUTATION_FAILED"
    DEPENDENCY_CYCLE = "DEPENDENCY_CYCLE"
    COLLECTION_TIMEOUT = "COLLECTION_TIMEOUT"

    # Infrastructure errors
    CACHE_FAILURE = "CACHE_FAILURE"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    # Internal errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class MetricsEngineError(Exception):
    """Base exception for all metrics engine errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(MetricsEngineError):
    """Raised when engine configuration is invalid or missing."""

    code = ErrorCode.CONFIGURATION_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details, status_code=500)


class ValidationError(MetricsEngineError):
    """Raised when a definition, configuration or tool input is malformed."""

    code = ErrorCode.INVALID_INPUT

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details, status_code=400)


class NotFoundError(MetricsEngineError):
    """Raised when a requested resource is not found."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, identifier: str):
        message = f"{resource} not found: {identifier}"
        super().__init__(message, {"resource": resource, "id": identifier}, status_code=404)
        self.resource = resource
        self.identifier = identifier


class ComputationError(MetricsEngineError):
    """Raised when a metric value cannot be computed."""

    code = ErrorCode.COMPUTATION_FAILED

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details, status_code=422)


class DependencyCycleError(ComputationError):
    """Raised when a composite metric depends on itself, directly or transitively."""

    code = ErrorCode.DEPENDENCY_CYCLE

    def __init__(self, cycle: list[str]):
        message = f"Dependency cycle detected: {' -> '.join(cycle)}"
        super().__init__(message, {"cycle": cycle})
        self.cycle = cycle


class CollectionTimeoutError(ComputationError):
    """Raised when a single collection exceeds its execution budget."""

    code = ErrorCode.COLLECTION_TIMEOUT

    def __init__(self, metric_code: str, timeout: float):
        message = f"Collection of {metric_code} timed out after {timeout}s"
        super().__init__(message, {"metric": metric_code, "timeout": timeout})


class CacheError(MetricsEngineError):
    """Base exception for cache-related errors."""

    code = ErrorCode.CACHE_FAILURE

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details, status_code=500)


class CacheConnectionError(CacheError):
    """Raised when cache backend connection fails."""

    def __init__(self, backend: str, details: dict[str, Any] | None = None):
        message = f"Failed to connect to cache backend: {backend}"
        super().__init__(message, details)


class PersistenceError(MetricsEngineError):
    """Raised when the metric store cannot read or write."""

    code = ErrorCode.PERSISTENCE_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details, status_code=503)


def make_error_response(
    error_code: ErrorCode,
    message: str,
    context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Create a standardized error response for tools.

    Args:
        error_code: Standard error code
        message: Human-readable error message
        context: Additional context/details

    Returns:
        Standardized error response dictionary

    Example:
        >>> make_error_response(
        ...     ErrorCode.NOT_FOUND,
        ...     "MetricDefinition not found: approval_rate",
        ...     {"resource": "MetricDefinition", "id": "approval_rate"}
        ... )
        {
            "success": False,
            "error_code": "NOT_FOUND",
            "message": "MetricDefinition not found: approval_rate",
            "details": {"resource": "MetricDefinition", "id": "approval_rate"}
        }
    """
    return {
        "success": False,
        "error_code": error_code.value,
        "message": message,
        "details": context or {},
    }


def is_retryable_error(error: Exception) -> bool:
    """
    Check if an error is transient and worth another attempt.

    Retries are never made inline; scheduled jobs simply run again
    at their next tick.

    Args:
        error: Exception to check

    Returns:
        True if error is retryable (transient)
    """
    if isinstance(error, (PersistenceError, CollectionTimeoutError, CacheConnectionError)):
        return True

    if isinstance(error, ComputationError) and not isinstance(error, DependencyCycleError):
        error_msg = str(error).lower()
        transient_indicators = [
            "timeout",
            "connection",
            "locked",
            "unavailable",
            "temporary",
        ]
        return any(indicator in error_msg for indicator in transient_indicators)

    return False


def extract_error_code(error: Exception) -> ErrorCode:
    """
    Extract appropriate ErrorCode from an exception.

    Args:
        error: Exception to categorize

    Returns:
        Appropriate ErrorCode for the exception
    """
    if isinstance(error, MetricsEngineError):
        return error.code

    return ErrorCode.INTERNAL_ERROR
