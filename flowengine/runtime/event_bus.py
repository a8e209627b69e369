"""
Event Bus - Pub/sub for run lifecycle events.

The executor publishes one event per state change (run started, node
queued/started/retrying/finished, circuit opened, run completed). The
run's own event log is built from the same events; a status display can
subscribe to a bus to follow runs live.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_REJECTED = "run_rejected"  # structural validation failed

    # Node lifecycle
    NODE_QUEUED = "node_queued"
    NODE_STARTED = "node_started"
    NODE_RETRYING = "node_retrying"
    NODE_SUCCEEDED = "node_succeeded"
    NODE_FAILED = "node_failed"
    NODE_SKIPPED = "node_skipped"
    NODE_FALLBACK_USED = "node_fallback_used"

    # Safety
    CIRCUIT_OPENED = "circuit_opened"


@dataclass
class RunEvent:
    """One entry in a run's event log."""

    type: EventType
    run_id: str
    message: str = ""
    node_id: str | None = None
    spec_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def level(self) -> str:
        if self.type in (EventType.NODE_FAILED, EventType.RUN_REJECTED):
            return "error"
        if self.type in (
            EventType.NODE_RETRYING,
            EventType.NODE_FALLBACK_USED,
            EventType.CIRCUIT_OPENED,
        ):
            return "warn"
        return "info"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "spec_id": self.spec_id,
            "level": self.level,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[RunEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Pub/sub event bus for run events.

    Example:
        bus = EventBus()

        async def on_node_failed(event: RunEvent):
            print(f"{event.node_id} failed: {event.message}")

        bus.subscribe(event_types=[EventType.NODE_FAILED], handler=on_node_failed)
        executor = GraphExecutor(event_bus=bus)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[RunEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug("Subscription %s registered for %s", sub_id, event_types)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        return self._subscriptions.pop(subscription_id, None) is not None

    async def publish(self, event: RunEvent) -> None:
        """Record the event and deliver it to every matching subscriber."""
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if handlers:
            await self._execute_handlers(event, handlers)

    def _matches(self, subscription: Subscription, event: RunEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(self, event: RunEvent, handlers: list[EventHandler]) -> None:
        """Run handlers concurrently; a failing subscriber never breaks the run."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error("Handler error for %s: %s", event.type, e)

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[RunEvent]:
        """Most recent events, newest first, optionally filtered."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        return events[:limit]
