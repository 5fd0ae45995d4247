"""Event type definitions for the workflow event stream.

This module defines every event that flows from the workflow engine to
observers. Event names and payload keys are the wire format consumed by
dashboards, so they are kept stable (``workflow:created``, camelCase keys).
"""

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class EventType(StrEnum):
    """All event types in the workflow event stream.

    Events are categorized by:
    - Workflow lifecycle: creation, pause, and the three terminal outcomes
    - Step lifecycle: start, streamed text, activity, retry, and outcome
    - Internal: the stream-closed sentinel, never sent to clients
    """

    # Workflow lifecycle
    WORKFLOW_CREATED = "workflow:created"
    WORKFLOW_COMPLETED = "workflow:completed"
    WORKFLOW_FAILED = "workflow:failed"
    WORKFLOW_PAUSED = "workflow:paused"
    WORKFLOW_CANCELLED = "workflow:cancelled"

    # Step lifecycle
    STEP_STARTED = "step:started"
    STEP_STREAM = "step:stream"
    STEP_COMPLETED = "step:completed"
    STEP_FAILED = "step:failed"
    STEP_ACTIVITY = "step:activity"
    STEP_RETRY = "step:retry"

    # Internal
    WORKFLOW_CLOSED = "workflow:closed"


class AgentActivity(BaseModel):
    """What an agent is doing right now.

    Serialized as ``{"kind": "idle"}`` or ``{"kind": "tool_use",
    "toolName": "Bash"}``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: Literal["idle", "thinking", "tool_use", "text"]
    tool_name: str | None = Field(default=None, alias="toolName")

    @classmethod
    def idle(cls) -> "AgentActivity":
        return cls(kind="idle")

    @classmethod
    def thinking(cls) -> "AgentActivity":
        return cls(kind="thinking")

    @classmethod
    def text(cls) -> "AgentActivity":
        return cls(kind="text")

    @classmethod
    def tool_use(cls, tool_name: str) -> "AgentActivity":
        return cls(kind="tool_use", tool_name=tool_name)

    def to_payload(self) -> dict[str, Any]:
        """Return the wire form of this activity."""
        return self.model_dump(by_alias=True, exclude_none=True)


class WorkflowEvent(BaseModel):
    """An event emitted while a workflow runs.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - workflow_id: Which workflow this event belongs to
    - sequence: Per-workflow publication counter assigned by the EventBus
    - payload: Event-specific data, using camelCase wire keys

    Payload schemas by event type:

    WORKFLOW_CREATED:
        - workflowId, title, executionPlan

    WORKFLOW_COMPLETED / WORKFLOW_PAUSED / WORKFLOW_CANCELLED:
        - workflowId

    WORKFLOW_FAILED:
        - workflowId, error

    STEP_STARTED:
        - workflowId, stepId, role

    STEP_STREAM:
        - workflowId, stepId, role, chunk

    STEP_COMPLETED:
        - workflowId, stepId, role, output, durationMs,
          tokensIn (optional), tokensOut (optional)

    STEP_FAILED:
        - workflowId, stepId, role, error

    STEP_ACTIVITY:
        - workflowId, stepId, role, activity

    STEP_RETRY:
        - workflowId, stepId, role, attempt, maxRetries, reason
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    workflow_id: str
    sequence: int = 0
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "step:started",
                    "timestamp": 1699876543.123,
                    "workflow_id": "7b0f0d5e-4a43-4a55-9c1e-5f1b2f6f8a10",
                    "sequence": 3,
                    "payload": {
                        "workflowId": "7b0f0d5e-4a43-4a55-9c1e-5f1b2f6f8a10",
                        "stepId": "d1c6b7f2-9b8e-4f5b-a0c4-1e2d3c4b5a69",
                        "role": "pm",
                    },
                }
            ]
        }
    }

    def to_message(self) -> dict[str, Any]:
        """Return the wire message ``{"type": ..., "payload": {...}}``."""
        return {"type": self.type.value, "payload": self.payload}


def make_event(
    event_type: EventType,
    workflow_id: str,
    **payload: Any,
) -> WorkflowEvent:
    """Build an event whose payload always carries ``workflowId``.

    Keyword arguments whose value is None are left out of the payload, so
    optional fields such as token counts disappear when unknown.
    """
    body: dict[str, Any] = {"workflowId": workflow_id}
    body.update({key: value for key, value in payload.items() if value is not None})
    return WorkflowEvent(type=event_type, workflow_id=workflow_id, payload=body)
