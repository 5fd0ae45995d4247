"""Async event bus for workflow pub/sub communication.

This module provides an EventBus class that enables publish/subscribe
communication between the workflow engine and observers (WebSocket
clients, tests).

The event bus supports:
- Multiple subscribers per workflow
- Async event consumption via asyncio.Queue
- Buffering of events published before the first subscriber
- Bounded per-workflow history for replay on reconnect
- Workflow stream closing (terminates all subscribers)
"""

import asyncio
import threading
from collections import OrderedDict, defaultdict

import structlog

from events.types import EventType, WorkflowEvent

logger = structlog.get_logger()


class EventBus:
    """Pub/sub event bus for workflow events.

    The EventBus manages subscriptions per workflow, allowing multiple
    WebSocket connections to receive events for the same workflow.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately. This covers a client that subscribes right
        after starting a workflow.

    Ordering:
        Delivery uses ``put_nowait`` on unbounded queues, so it never
        suspends and publication order equals delivery order for every
        subscriber. Each event is stamped with a per-workflow sequence
        number that replaying consumers use to skip duplicates.

    Thread Safety:
        Registry access is guarded by a threading.Lock; queue operations
        must run on the event loop thread.

    Attributes:
        _subscribers: Dict mapping workflow_id to list of subscriber queues
        _event_buffer: Dict mapping workflow_id to list of buffered events
        _event_history: Dict mapping workflow_id to recent events
        _closed: Closed workflow ids, oldest first, for history eviction
        _lock: Threading lock for subscriber management
    """

    # Maximum number of events to retain per workflow for replay on reconnect.
    MAX_HISTORY_PER_WORKFLOW = 5000

    # Maximum number of closed workflows whose history is kept. The oldest
    # closed histories are evicted first.
    MAX_CLOSED_HISTORIES = 200

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[WorkflowEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[WorkflowEvent]] = defaultdict(list)
        self._event_history: dict[str, list[WorkflowEvent]] = defaultdict(list)
        self._sequences: dict[str, int] = defaultdict(int)
        self._closed: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, workflow_id: str) -> asyncio.Queue[WorkflowEvent]:
        """Subscribe to events for a workflow.

        If there are buffered events for this workflow (events that were
        published before any subscriber connected), they are delivered
        immediately to the new subscriber.

        Args:
            workflow_id: The workflow to subscribe to

        Returns:
            An asyncio.Queue that will receive WorkflowEvent objects
        """
        queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue()
        buffered_events: list[WorkflowEvent] = []

        with self._lock:
            self._subscribers[workflow_id].append(queue)
            subscriber_count = len(self._subscribers[workflow_id])

            if workflow_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(workflow_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            workflow_id=workflow_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, workflow_id: str, queue: asyncio.Queue[WorkflowEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        with self._lock:
            if workflow_id not in self._subscribers:
                return
            try:
                self._subscribers[workflow_id].remove(queue)
            except ValueError:
                logger.warning("unsubscribe_queue_not_found", workflow_id=workflow_id)
                return
            subscriber_count = len(self._subscribers[workflow_id])
            if not self._subscribers[workflow_id]:
                del self._subscribers[workflow_id]

        logger.info(
            "subscriber_removed",
            workflow_id=workflow_id,
            subscriber_count=subscriber_count,
        )

    def publish_nowait(self, event: WorkflowEvent) -> None:
        """Publish an event to all subscribers of its workflow.

        Must be called from the event loop thread. If there are no
        subscribers the event is buffered until one connects. Every event
        except the close sentinel is recorded in the workflow's history.

        Args:
            event: The WorkflowEvent to publish
        """
        with self._lock:
            if event.type != EventType.WORKFLOW_CLOSED:
                self._sequences[event.workflow_id] += 1
                event.sequence = self._sequences[event.workflow_id]
                history = self._event_history[event.workflow_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_WORKFLOW:
                    del history[: len(history) - self.MAX_HISTORY_PER_WORKFLOW]

            subscribers = list(self._subscribers.get(event.workflow_id, []))

            if not subscribers:
                if event.type != EventType.WORKFLOW_CLOSED:
                    self._event_buffer[event.workflow_id].append(event)
                logger.debug(
                    "event_buffered",
                    workflow_id=event.workflow_id,
                    event_type=event.type.value,
                )
                return

        for queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "queue_full_event_dropped",
                    workflow_id=event.workflow_id,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.error(
                    "subscriber_delivery_failed",
                    workflow_id=event.workflow_id,
                    event_type=event.type.value,
                    error=str(e),
                )

        if event.type != EventType.STEP_STREAM:
            logger.debug(
                "event_published",
                workflow_id=event.workflow_id,
                event_type=event.type.value,
                subscriber_count=len(subscribers),
            )

    async def publish(self, event: WorkflowEvent) -> None:
        """Async form of :meth:`publish_nowait` for coroutine callers."""
        self.publish_nowait(event)

    def get_event_history(self, workflow_id: str) -> list[WorkflowEvent]:
        """Get all stored events for a workflow, oldest first.

        Used to replay the workflow to a newly connected WebSocket client.
        """
        with self._lock:
            return list(self._event_history.get(workflow_id, []))

    async def close_workflow(self, workflow_id: str) -> None:
        """Close a workflow's stream and notify all subscribers.

        Puts a WORKFLOW_CLOSED sentinel into each subscriber queue so that
        consumers can break out of their read loops, then removes all
        subscribers and clears buffered events. History is preserved for
        late observers, up to MAX_CLOSED_HISTORIES closed workflows.

        Args:
            workflow_id: The workflow to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(workflow_id, [])
            buffered = self._event_buffer.pop(workflow_id, [])
            self._closed.pop(workflow_id, None)
            self._closed[workflow_id] = None
            evicted: list[str] = []
            while len(self._closed) > self.MAX_CLOSED_HISTORIES:
                oldest, _ = self._closed.popitem(last=False)
                self._event_history.pop(oldest, None)
                self._sequences.pop(oldest, None)
                evicted.append(oldest)

        sentinel = WorkflowEvent(
            type=EventType.WORKFLOW_CLOSED,
            workflow_id=workflow_id,
            payload={"reason": "workflow_closed"},
        )
        for queue in queues_to_signal:
            queue.put_nowait(sentinel)

        if queues_to_signal or buffered:
            logger.info(
                "workflow_stream_closed",
                workflow_id=workflow_id,
                subscribers_removed=len(queues_to_signal),
                buffered_events_cleared=len(buffered),
            )
        else:
            logger.debug("close_workflow_not_found", workflow_id=workflow_id)
        if evicted:
            logger.debug("event_histories_evicted", workflow_ids=evicted)

    def get_subscriber_count(self, workflow_id: str) -> int:
        """Get the number of subscribers for a workflow."""
        with self._lock:
            return len(self._subscribers.get(workflow_id, []))

    def clear_event_history(self, workflow_id: str) -> None:
        """Forget the stored history of a workflow."""
        with self._lock:
            self._event_history.pop(workflow_id, None)
            self._sequences.pop(workflow_id, None)
            self._closed.pop(workflow_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
