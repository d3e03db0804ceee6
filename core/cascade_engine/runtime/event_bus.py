"""
Event Bus - Pub/sub of cascade lifecycle events.

Progress observers subscribe to learn about run and node transitions
without polling the run state store:
- Run lifecycle (started, paused, resumed, cancelling, completed, failed)
- Level and node progress (level started, node started/completed/failed/skipped)

Events are published from the executor's control loop, between nodes, so
a slow handler delays the next node but never an in-flight generation.
"""

import asyncio
import inspect
import itertools
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Kinds of cascade events."""

    # Run lifecycle
    CASCADE_STARTED = "cascade_started"
    CASCADE_PAUSED = "cascade_paused"
    CASCADE_RESUMED = "cascade_resumed"
    CASCADE_CANCELLING = "cascade_cancelling"
    CASCADE_COMPLETED = "cascade_completed"
    CASCADE_FAILED = "cascade_failed"

    # Progress
    LEVEL_STARTED = "level_started"
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_SKIPPED = "node_skipped"


RUN_EVENT_TYPES = [
    EventType.CASCADE_STARTED,
    EventType.CASCADE_PAUSED,
    EventType.CASCADE_RESUMED,
    EventType.CASCADE_CANCELLING,
    EventType.CASCADE_COMPLETED,
    EventType.CASCADE_FAILED,
]


@dataclass
class CascadeEvent:
    """One thing that happened during a cascade run."""

    type: EventType
    run_id: str
    node_id: str | None = None  # node the event is about, if any
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Handlers may be coroutines or plain callables (UI callbacks)
EventHandler = Callable[[CascadeEvent], Awaitable[None] | None]


@dataclass
class Subscription:
    """A registered handler and the events it wants."""

    id: str
    handler: EventHandler
    event_types: frozenset[EventType] | None = None  # None: every event
    filter_run: str | None = None
    filter_node: str | None = None

    def matches(self, event: CascadeEvent) -> bool:
        if self.event_types is not None and event.type not in self.event_types:
            return False
        if self.filter_run is not None and event.run_id != self.filter_run:
            return False
        return self.filter_node is None or event.node_id == self.filter_node


class EventBus:
    """
    Pub/sub bus for cascade progress, with a bounded event history.

    Example:
        bus = EventBus()

        async def on_node_done(event: CascadeEvent):
            print(f"{event.node_id} finished")

        bus.subscribe([EventType.NODE_COMPLETED], on_node_done)
        executor = CascadeExecutor(tree, client, event_bus=bus)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        """
        Args:
            max_history: Number of most recent events kept for get_history()
            max_concurrent_handlers: Handlers of one event run concurrently, at most this many
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[CascadeEvent] = deque(maxlen=max_history)
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)
        self._ids = itertools.count(1)

    def subscribe(
        self,
        event_types: list[EventType] | None,
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Register a handler. ``event_types=None`` subscribes to everything.

        Returns:
            Subscription ID for unsubscribe()
        """
        sub_id = f"sub_{next(self._ids)}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            handler=handler,
            event_types=frozenset(event_types) if event_types is not None else None,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types or 'all events'}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = self._subscriptions.pop(subscription_id, None) is not None
        if removed:
            logger.debug(f"Subscription {subscription_id} removed")
        return removed

    async def publish(self, event: CascadeEvent) -> None:
        """Record the event and run every matching handler before returning."""
        self._history.append(event)
        targets = [s for s in list(self._subscriptions.values()) if s.matches(event)]
        if targets:
            await asyncio.gather(*(self._deliver(s, event) for s in targets))

    async def _deliver(self, subscription: Subscription, event: CascadeEvent) -> None:
        async with self._handler_slots:
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler {subscription.id} failed on {event.type}: {e}")

    # === CONVENIENCE PUBLISHERS ===

    async def emit_cascade_started(
        self,
        run_id: str,
        root_id: str,
        total_levels: int,
        total_nodes: int,
        skipped: int,
    ) -> None:
        await self.publish(
            CascadeEvent(
                type=EventType.CASCADE_STARTED,
                run_id=run_id,
                node_id=root_id,
                data={
                    "root_id": root_id,
                    "total_levels": total_levels,
                    "total_nodes": total_nodes,
                    "skipped": skipped,
                },
            )
        )

    async def emit_run_transition(
        self,
        event_type: EventType,
        run_id: str,
        summary: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        """Emit paused/resumed/cancelling/completed/failed with the run summary."""
        data: dict[str, Any] = dict(summary or {})
        if error is not None:
            data["error"] = error
        await self.publish(CascadeEvent(type=event_type, run_id=run_id, data=data))

    async def emit_level_started(
        self,
        run_id: str,
        level_index: int,
        depth: int,
        node_ids: list[str],
    ) -> None:
        await self.publish(
            CascadeEvent(
                type=EventType.LEVEL_STARTED,
                run_id=run_id,
                data={"level_index": level_index, "depth": depth, "node_ids": list(node_ids)},
            )
        )

    async def emit_node_started(
        self,
        run_id: str,
        node_id: str,
        node_name: str,
        level_index: int,
        node_index: int,
        total_nodes: int,
    ) -> None:
        await self.publish(
            CascadeEvent(
                type=EventType.NODE_STARTED,
                run_id=run_id,
                node_id=node_id,
                data={
                    "node_name": node_name,
                    "level_index": level_index,
                    "node_index": node_index,
                    "total_nodes": total_nodes,
                },
            )
        )

    async def emit_node_completed(
        self,
        run_id: str,
        node_id: str,
        node_name: str,
        latency_ms: int | None = None,
        tokens_used: int | None = None,
    ) -> None:
        await self.publish(
            CascadeEvent(
                type=EventType.NODE_COMPLETED,
                run_id=run_id,
                node_id=node_id,
                data={
                    "node_name": node_name,
                    "latency_ms": latency_ms,
                    "tokens_used": tokens_used,
                },
            )
        )

    async def emit_node_failed(
        self,
        run_id: str,
        node_id: str,
        node_name: str,
        error: str,
    ) -> None:
        await self.publish(
            CascadeEvent(
                type=EventType.NODE_FAILED,
                run_id=run_id,
                node_id=node_id,
                data={"node_name": node_name, "error": error},
            )
        )

    async def emit_node_skipped(
        self,
        run_id: str,
        node_id: str,
        node_name: str,
        reason: str,
    ) -> None:
        await self.publish(
            CascadeEvent(
                type=EventType.NODE_SKIPPED,
                run_id=run_id,
                node_id=node_id,
                data={"node_name": node_name, "reason": reason},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[CascadeEvent]:
        """
        Recorded events, most recent first.

        Args:
            event_type: Only events of this type
            run_id: Only events of this run
            limit: Maximum number of events returned
        """
        selected = []
        for event in reversed(self._history):
            if event_type is not None and event.type != event_type:
                continue
            if run_id is not None and event.run_id != run_id:
                continue
            selected.append(event)
            if len(selected) >= limit:
                break
        return selected

    def get_stats(self) -> dict:
        by_type = Counter(event.type.value for event in self._history)
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(by_type),
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> CascadeEvent | None:
        """
        Wait for the next matching event.

        Returns:
            The event, or None if ``timeout`` seconds passed first
        """
        received: asyncio.Future[CascadeEvent] = asyncio.get_running_loop().create_future()

        def handler(event: CascadeEvent) -> None:
            if not received.done():
                received.set_result(event)

        sub_id = self.subscribe([event_type], handler, filter_run=run_id, filter_node=node_id)
        try:
            return await asyncio.wait_for(received, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
