"""
Signal Bus
==========

Synchronous fan-out of risk signals to monitoring collaborators.

Features:
- Per-type and catch-all subscriptions
- Bounded in-memory history for audit queries
- Handler failures are isolated: a broken subscriber is logged and never
  propagates into the calculation that emitted the signal
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable

from risk_engine.events import EventType, RiskEvent


logger = logging.getLogger(__name__)


SignalHandler = Callable[[RiskEvent], None]


@dataclass
class BusMetrics:
    """Counters for monitoring."""
    total_published: int = 0
    total_delivered: int = 0
    handler_errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_published": self.total_published,
            "total_delivered": self.total_delivered,
            "handler_errors": self.handler_errors,
        }


class SignalBus:
    """
    Routes engine signals to subscribed handlers.

    Publishing happens after a state commit, so handlers always observe
    committed portfolio state.
    """

    def __init__(self, max_history: int = 10_000):
        self._subscribers: dict[EventType, list[SignalHandler]] = defaultdict(list)
        self._catch_all: list[SignalHandler] = []
        self._history: deque[RiskEvent] = deque(maxlen=max_history)
        self._metrics = BusMetrics()
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, handler: SignalHandler) -> None:
        """Subscribe a handler to an event type."""
        with self._lock:
            self._subscribers[event_type].append(handler)
        logger.debug(f"Subscribed handler to {event_type.value}")

    def subscribe_all(self, handler: SignalHandler) -> None:
        """Subscribe a handler to every event type."""
        with self._lock:
            self._catch_all.append(handler)

    def unsubscribe(self, event_type: EventType, handler: SignalHandler) -> None:
        """Unsubscribe a handler from an event type."""
        with self._lock:
            if handler in self._subscribers[event_type]:
                self._subscribers[event_type].remove(handler)

    def publish(self, event: RiskEvent) -> int:
        """
        Deliver an event to all subscribers.

        Returns:
            Number of handlers that processed the event without error
        """
        with self._lock:
            self._history.append(event)
            self._metrics.total_published += 1
            handlers = list(self._subscribers.get(event.event_type, [])) + list(self._catch_all)

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Handler error for {event.event_type.value}: {e}")
                with self._lock:
                    self._metrics.handler_errors += 1

        with self._lock:
            self._metrics.total_delivered += delivered
        return delivered

    def publish_all(self, events: list[RiskEvent]) -> None:
        """Publish a batch of events in order."""
        for event in events:
            self.publish(event)

    def get_event_history(
        self,
        event_type: EventType | None = None,
        limit: int = 100,
    ) -> list[RiskEvent]:
        """Get recent event history for audit."""
        with self._lock:
            history = list(self._history)

        if event_type:
            history = [e for e in history if e.event_type == event_type]

        return history[-limit:]

    @property
    def metrics(self) -> BusMetrics:
        return self._metrics

    def get_status(self) -> dict[str, Any]:
        """Get bus status for monitoring."""
        with self._lock:
            return {
                "history_size": len(self._history),
                "metrics": self._metrics.to_dict(),
                "subscriber_count": {
                    event_type.value: len(handlers)
                    for event_type, handlers in self._subscribers.items()
                },
                "catch_all_subscribers": len(self._catch_all),
            }
