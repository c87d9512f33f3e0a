"""
Metrics Engine — Observability Monitoring

In-process counters, gauges and histograms for the engine's own health
(collection outcomes, durations, tool calls), plus structured JSON logging.
"""

import contextvars
import json
import logging
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

# Trace ID context variable, carried across a collection run
_trace_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("trace_id", default=None)

PACKAGE_LOGGER = "metrics_engine"

_RESERVED_RECORD_KEYS = frozenset(
    (
        "args",
        "msg",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "name",
        "message",
        "taskName",
    )
)


@dataclass
class HistogramSummary:
    count: int = 0
    total: float = 0.0
    minimum: float = float("inf")
    maximum: float = float("-inf")

    def record(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)

    def to_dict(self) -> dict[str, float]:
        return {
            "count": self.count,
            "avg": round(self.total / self.count, 3) if self.count else 0.0,
            "min": round(self.minimum, 3) if self.count else 0.0,
            "max": round(self.maximum, 3) if self.count else 0.0,
        }


def _series_key(metric: str, tags: dict[str, str] | None) -> str:
    if not tags:
        return metric
    labels = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{metric}{{{labels}}}"


class ObservabilityAdapter:
    """
    Simple in-process observability adapter.

    Provides:
    - Metrics (counters, gauges, histograms) aggregated in memory
    - Trace IDs propagated through context variables
    - Structured event log lines
    """

    def __init__(self, enable_metrics: bool = True, enable_tracing: bool = False):
        """
        Initialize observability adapter.

        Args:
            enable_metrics: Enable metrics collection
            enable_tracing: Log span start/finish lines
        """
        self.enable_metrics = enable_metrics
        self.enable_tracing = enable_tracing
        self.logger = logging.getLogger(PACKAGE_LOGGER)

        self._lock = threading.Lock()
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, HistogramSummary] = {}

    def increment(
        self,
        metric: str,
        value: float = 1.0,
        tags: dict[str, str] | None = None,
    ) -> None:
        """
        Increment a counter metric.

        Args:
            metric: Metric name (e.g., "collections.success")
            value: Value to increment by
            tags: Optional metric tags/labels
        """
        if not self.enable_metrics:
            return

        key = _series_key(metric, tags)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + value

    def gauge(
        self,
        metric: str,
        value: float,
        tags: dict[str, str] | None = None,
    ) -> None:
        """Set a gauge metric."""
        if not self.enable_metrics:
            return

        with self._lock:
            self._gauges[_series_key(metric, tags)] = value

    def histogram(
        self,
        metric: str,
        value: float,
        tags: dict[str, str] | None = None,
    ) -> None:
        """
        Record a histogram metric (for latencies, sizes, etc.).

        Args:
            metric: Metric name
            value: Value to record
            tags: Optional metric tags
        """
        if not self.enable_metrics:
            return

        key = _series_key(metric, tags)
        with self._lock:
            self._histograms.setdefault(key, HistogramSummary()).record(value)

    def event(self, name: str, payload: dict[str, Any]) -> None:
        """
        Record an event.

        Args:
            name: Event name
            payload: Event data
        """
        self.logger.info(
            f"Event: {name}",
            extra={
                "event_name": name,
                "event_payload": payload,
                "trace_id": self.get_trace_id(),
            },
        )

    @contextmanager
    def trace(self, span_name: str, tags: dict[str, str] | None = None) -> Generator[None, None, None]:
        """
        Context manager for timing a span.

        The duration is always recorded as a histogram; start/finish log
        lines are only written when tracing is enabled.

        Example:
            with observability.trace("collection.compute"):
                value = await engine.compute(...)
        """
        start_time = time.perf_counter()
        trace_id = self.get_trace_id()
        tags = tags or {}

        if self.enable_tracing:
            self.logger.debug(
                f"Span started: {span_name}",
                extra={"span_name": span_name, "trace_id": trace_id, "tags": tags},
            )

        try:
            yield
        except Exception as e:
            if self.enable_tracing:
                self.logger.warning(
                    f"Span error: {span_name}",
                    extra={"span_name": span_name, "trace_id": trace_id, "error": str(e), "tags": tags},
                )
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.histogram("span.duration", duration_ms, tags={"span_name": span_name, **tags})

            if self.enable_tracing:
                self.logger.debug(
                    f"Span completed: {span_name}",
                    extra={
                        "span_name": span_name,
                        "trace_id": trace_id,
                        "duration_ms": round(duration_ms, 2),
                        "tags": tags,
                    },
                )

    def get_trace_id(self) -> str | None:
        """Get current trace ID from context."""
        return _trace_id_ctx.get()

    def set_trace_id(self, trace_id: str) -> None:
        """Set trace ID in context."""
        _trace_id_ctx.set(trace_id)

    def generate_trace_id(self) -> str:
        """Generate a new trace ID and set it in context."""
        trace_id = str(uuid4())
        self.set_trace_id(trace_id)
        return trace_id

    def get_metrics(self, prefix: str | None = None) -> dict[str, Any]:
        """
        Snapshot of all recorded metrics.

        Args:
            prefix: Only include series whose name starts with this prefix

        Returns:
            {"counters": {...}, "gauges": {...}, "histograms": {...}}
        """
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            histograms = {key: summary.to_dict() for key, summary in self._histograms.items()}

        if prefix:
            counters = {k: v for k, v in counters.items() if k.startswith(prefix)}
            gauges = {k: v for k, v in gauges.items() if k.startswith(prefix)}
            histograms = {k: v for k, v in histograms.items() if k.startswith(prefix)}

        return {"counters": counters, "gauges": gauges, "histograms": histograms}

    def clear_metrics(self) -> None:
        """Reset all metrics (testing/reset)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        trace_id = _trace_id_ctx.get()
        if trace_id:
            log_data["trace_id"] = trace_id

        # Structured extras passed via logger.x(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in log_data and not key.startswith("_") and key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Log level name
        json_format: Emit JSON lines instead of plain text

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.handlers.clear()

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False

    return logger


# Global observability adapter instance (singleton)
_observability_adapter: ObservabilityAdapter | None = None


def get_observability() -> ObservabilityAdapter:
    """
    Get the global observability adapter instance.

    All modules use this function rather than creating their own adapters.

    Returns:
        Global ObservabilityAdapter instance
    """
    global _observability_adapter

    if _observability_adapter is None:
        from ..config import get_config

        config = get_config().observability
        _observability_adapter = ObservabilityAdapter(
            enable_metrics=config.enable_metrics,
            enable_tracing=config.enable_tracing,
        )

    return _observability_adapter


def initialize_observability(enable_metrics: bool = True, enable_tracing: bool = False) -> ObservabilityAdapter:
    """
    Initialize the global observability adapter.

    Args:
        enable_metrics: Enable metrics collection
        enable_tracing: Log span start/finish lines

    Returns:
        Initialized ObservabilityAdapter instance
    """
    global _observability_adapter

    _observability_adapter = ObservabilityAdapter(
        enable_metrics=enable_metrics,
        enable_tracing=enable_tracing,
    )

    return _observability_adapter
