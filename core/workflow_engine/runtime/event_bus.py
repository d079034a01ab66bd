"""
Event Bus - run events for the streaming boundary and observers.

The executor yields ``RunEvent`` objects to its caller and, when an
EventBus is attached, publishes the same events here so other parts of a
host (progress UIs, audit sinks) can subscribe without consuming the
stream themselves.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class RunEventType(StrEnum):
    """Types of events a run emits."""

    RUN_STARTED = "run_started"
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    RUN_PAUSED = "run_paused"
    RUN_COMPLETED = "run_completed"


TERMINAL_EVENT_TYPES = frozenset(
    {RunEventType.NODE_FAILED, RunEventType.RUN_PAUSED, RunEventType.RUN_COMPLETED}
)


@dataclass
class RunEvent:
    """An event in a run's stream."""

    type: RunEventType
    run_id: str
    thread_id: str
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "thread_id": self.thread_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[RunEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[RunEventType]
    handler: EventHandler
    filter_thread: str | None = None  # Only receive events from this thread
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Pub/sub bus for run events.

    Features:
    - Async event handling
    - Type-based subscriptions
    - Thread/node filtering
    - Event history for debugging

    Example:
        bus = EventBus()

        async def on_paused(event: RunEvent):
            print(f"Run {event.run_id} waiting: {event.data['pending_auth']['message']}")

        bus.subscribe(event_types=[RunEventType.RUN_PAUSED], handler=on_paused)
        executor = WorkflowExecutor(registry=registry, event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[RunEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[RunEventType],
        handler: EventHandler,
        filter_thread: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_thread: Only receive events from this thread
            filter_node: Only receive events from this node

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_thread=filter_thread,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: RunEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if handlers:
            await self._execute_handlers(event, handlers)

    def _matches(self, subscription: Subscription, event: RunEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_thread and subscription.filter_thread != event.thread_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(self, event: RunEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers])

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: RunEventType | None = None,
        thread_id: str | None = None,
        limit: int = 100,
    ) -> list[RunEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if thread_id:
            events = [e for e in events if e.thread_id == thread_id]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: RunEventType,
        thread_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> RunEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: RunEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: RunEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_thread=thread_id,
            filter_node=node_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
