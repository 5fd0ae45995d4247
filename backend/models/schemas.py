"""Pydantic schemas for API request/response models and status enums.

This module defines the data models used by the HTTP API and WebSocket
handlers. All models use Pydantic v2 with strict type validation.
"""

from enum import StrEnum
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WorkflowStatus(StrEnum):
    """Workflow lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(StrEnum):
    """Per-role step status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_WORKFLOW_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
)

TERMINAL_STEP_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}
)


class StartWorkflowRequest(BaseModel):
    """Request body for starting a new workflow."""

    model_config = ConfigDict(populate_by_name=True)

    task: str = Field(
        min_length=1,
        max_length=50000,
        validation_alias=AliasChoices("task", "prompt"),
        description="The software task the agents should carry out",
        examples=["Add a dark mode toggle to the settings page"],
    )
    project_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("project_path", "projectPath"),
        description="Project directory the agents work in",
        examples=["/home/dev/projects/shop"],
    )
    execution_plan: list[str] | None = Field(
        default=None,
        validation_alias=AliasChoices("execution_plan", "executionPlan"),
        description="Roles to run; unknown roles are ignored, empty means all",
        examples=[["pm", "rd", "test"]],
    )


class WorkflowResponse(BaseModel):
    """Response for workflow creation."""

    workflow_id: str = Field(description="Unique workflow identifier")
    title: str = Field(description="Short title derived from the task")
    status: WorkflowStatus = Field(description="Current workflow status")
    execution_plan: list[str] = Field(description="Roles that will run, in order")
    websocket_url: str = Field(
        description="WebSocket URL for real-time event streaming",
        examples=["/ws/7b0f0d5e-4a43-4a55-9c1e-5f1b2f6f8a10"],
    )


class WorkflowSummary(BaseModel):
    """Persisted workflow record."""

    id: str
    title: str
    user_prompt: str
    status: WorkflowStatus
    current_stage_index: int = 0
    project_path: str
    execution_plan: list[str] = Field(default_factory=list)
    created_at: float
    updated_at: float
    completed_at: float | None = None


class StepResponse(BaseModel):
    """Persisted step record."""

    id: str
    workflow_id: str
    role: str
    status: StepStatus
    prompt: str | None = None
    output: str | None = None
    error: str | None = None
    retry_count: int = 0
    duration_ms: int | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    started_at: float | None = None
    completed_at: float | None = None


class WorkflowDetailResponse(BaseModel):
    """A workflow together with its steps in pipeline order."""

    workflow: WorkflowSummary
    steps: list[StepResponse]


class WorkflowListResponse(BaseModel):
    """One page of workflow history."""

    workflows: list[WorkflowSummary]
    total: int = Field(ge=0)
    limit: int = Field(ge=1)
    offset: int = Field(ge=0)


class CleanupRequest(BaseModel):
    """Retention policy for deleting old terminal workflows."""

    keep_days: int = Field(
        default=30,
        ge=0,
        le=3650,
        validation_alias=AliasChoices("keep_days", "keepDays"),
        description="Keep workflows created within this many days (0 disables)",
    )
    keep_latest: int = Field(
        default=100,
        ge=0,
        le=10000,
        validation_alias=AliasChoices("keep_latest", "keepLatest"),
        description="Always keep this many newest workflows (0 disables)",
    )


class CleanupResponse(BaseModel):
    """Outcome of a cleanup run."""

    deleted_workflows: int = Field(ge=0)
    deleted_steps: int = Field(ge=0)


class ControlResponse(BaseModel):
    """Outcome of a pause/resume/cancel request."""

    workflow_id: str
    action: Literal["pause", "resume", "cancel"]
    accepted: bool = Field(
        description="False when the workflow was not in a state that allows the action",
    )


class RoleMetrics(BaseModel):
    """Aggregate step statistics for one role."""

    runs: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    avg_duration_ms: float | None = None
    tokens_in: int = Field(default=0, ge=0)
    tokens_out: int = Field(default=0, ge=0)


class WorkflowMetricsResponse(BaseModel):
    """Aggregate statistics across persisted workflows."""

    total_workflows: int = Field(default=0, ge=0)
    by_status: dict[str, int] = Field(default_factory=dict)
    success_rate: float | None = Field(
        default=None,
        description="Completed share of terminal workflows",
    )
    roles: dict[str, RoleMetrics] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    active_workflows: int = Field(
        default=0,
        description="Number of workflows currently held by the engine",
    )
