"""In-process async event bus for metric alerts, analytics results and domain events."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]

# Events published by the engine
METRIC_ALERT = "metric.alert"
METRIC_ANOMALY_DETECTED = "metric.anomaly.detected"
METRIC_TREND_ANALYZED = "metric.trend.analyzed"
METRIC_CREATED = "metric.created"
METRIC_UPDATED = "metric.updated"
METRIC_DEACTIVATED = "metric.deactivated"
METRIC_CONFIGURATION_CHANGED = "metric.configuration.changed"


class EventBus:
    """
    Named-event publisher with explicit subscriptions.

    Handlers subscribe to exact event names. `publish` awaits every handler
    for the name concurrently; a failing handler is logged and does not
    affect the others or the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers[event_name]
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._subscribers.pop(event_name, None)

    def subscriptions(self) -> dict[str, int]:
        """Handler count per subscribed event name."""
        return {name: len(handlers) for name, handlers in self._subscribers.items()}

    async def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        """
        Deliver an event to its subscribers.

        Returns:
            Number of handlers that completed without raising
        """
        handlers = list(self._subscribers.get(event_name, ()))
        if not handlers:
            logger.debug("No subscribers for event", extra={"event_name": event_name})
            return 0

        results = await asyncio.gather(
            *(handler(event_name, payload) for handler in handlers),
            return_exceptions=True,
        )

        delivered = 0
        for handler, result in zip(handlers, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    f"Event handler failed for {event_name}: {result}",
                    extra={"event_name": event_name, "handler": getattr(handler, "__qualname__", repr(handler))},
                    exc_info=result,
                )
            else:
                delivered += 1
        return delivered
