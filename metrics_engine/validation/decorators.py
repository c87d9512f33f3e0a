"""
Metrics Engine - Validation Decorators

Decorators applied to MCP tools:

- validate_input: Pydantic validation of tool arguments
- handle_engine_errors: engine errors become structured error responses
"""

import functools
import inspect
import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from ..errors import ErrorCode, MetricsEngineError, is_retryable_error, make_error_response
from ..observability.monitoring import get_observability

logger = logging.getLogger(__name__)


def _validation_errors(error: ValidationError) -> list[dict[str, str]]:
    return [
        {
            "field": " -> ".join(str(loc) for loc in item["loc"]) or "__root__",
            "message": item["msg"],
            "type": item["type"],
        }
        for item in error.errors()
    ]


def _rejection(func_name: str, error: ValidationError, kwargs: dict[str, Any]) -> dict[str, Any]:
    validation_errors = _validation_errors(error)
    logger.warning(
        f"Input validation failed for {func_name}",
        extra={
            "function": func_name,
            "validation_errors": validation_errors,
            "input_keys": sorted(kwargs),
        },
    )
    get_observability().increment(
        "validation.failed",
        tags={"function": func_name, "error_count": str(len(validation_errors))},
    )
    return make_error_response(
        error_code=ErrorCode.INVALID_INPUT,
        message="Input validation failed",
        context={"validation_errors": validation_errors, "function": func_name},
    )


def validate_input(schema: type[BaseModel]) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator to validate tool inputs using a Pydantic schema.

    The wrapped function receives the validated values (timestamps parsed,
    enums coerced, defaults filled in).

    Example:
        >>> @validate_input(CollectMetricInput)
        ... async def collect_metric(code: str, dimensions=None, period_start=None, period_end=None):
        ...     ...

    Error Response:
        {
            "success": False,
            "error_code": "INVALID_INPUT",
            "message": "Input validation failed",
            "details": {
                "validation_errors": [
                    {
                        "field": "code",
                        "message": "Value error, Metric code must match ^[a-z][a-z0-9_]*$",
                        "type": "value_error"
                    }
                ]
            }
        }
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                try:
                    validated = schema(**kwargs)
                except ValidationError as e:
                    return _rejection(func.__name__, e, kwargs)
                return await func(*args, **dict(validated))

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                validated = schema(**kwargs)
            except ValidationError as e:
                return _rejection(func.__name__, e, kwargs)
            return func(*args, **dict(validated))

        return sync_wrapper

    return decorator


def handle_engine_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Turn engine errors raised by a tool into a structured error response.

    Errors outside the engine's taxonomy propagate to the MCP layer.
    """

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except MetricsEngineError as e:
            logger.warning(
                f"{func.__name__} failed: {e.message}",
                extra={"function": func.__name__, "error_code": e.code.value, "details": e.details},
            )
            get_observability().increment(
                "tools.errors",
                tags={"function": func.__name__, "error_code": e.code.value},
            )
            return make_error_response(
                error_code=e.code,
                message=e.message,
                context={**e.details, "retryable": is_retryable_error(e)},
            )

    return wrapper
