"""Models module for persistence, pipeline state, and Pydantic schemas.

This module exposes the status enums and request/response models used by
the API, the in-memory pipeline state, and the SQLite workflow store.
"""

from models.database import WorkflowStore
from models.pipeline import PipelineState, PipelineStepState, create_pipeline_state
from models.schemas import (
    CleanupRequest,
    CleanupResponse,
    ControlResponse,
    HealthResponse,
    RoleMetrics,
    StartWorkflowRequest,
    StepResponse,
    StepStatus,
    WorkflowDetailResponse,
    WorkflowListResponse,
    WorkflowMetricsResponse,
    WorkflowResponse,
    WorkflowStatus,
    WorkflowSummary,
)

__all__ = [
    "CleanupRequest",
    "CleanupResponse",
    "ControlResponse",
    "HealthResponse",
    "PipelineState",
    "PipelineStepState",
    "RoleMetrics",
    "StartWorkflowRequest",
    "StepResponse",
    "StepStatus",
    "WorkflowDetailResponse",
    "WorkflowListResponse",
    "WorkflowMetricsResponse",
    "WorkflowResponse",
    "WorkflowStatus",
    "WorkflowStore",
    "WorkflowSummary",
    "create_pipeline_state",
]
