"""Event system for workflow progress broadcasting.

This package provides the event infrastructure between the workflow engine
and observers. The event system is based on an async pub/sub pattern using
asyncio.Queue.

Key Components:
    - EventType: Enum of all event types, valued by their wire names
    - WorkflowEvent: Pydantic model for events flowing through the system
    - AgentActivity: Tagged activity carried by ``step:activity`` events
    - EventBus: Pub/sub implementation for event distribution

Usage:
    >>> from events import EventType, EventBus, make_event
    >>>
    >>> bus = EventBus()
    >>> queue = bus.subscribe("wf_123")
    >>> bus.publish_nowait(make_event(EventType.WORKFLOW_PAUSED, "wf_123"))
    >>> event = queue.get_nowait()
    >>> event.to_message()
    {'type': 'workflow:paused', 'payload': {'workflowId': 'wf_123'}}
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    AgentActivity,
    EventType,
    WorkflowEvent,
    make_event,
)

__all__ = [
    # Event types
    "AgentActivity",
    "EventType",
    "WorkflowEvent",
    "make_event",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
