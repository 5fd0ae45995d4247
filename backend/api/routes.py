"""HTTP API routes for the agent pipeline backend.

This module defines the endpoints for starting and controlling workflows,
browsing workflow history, retention cleanup, aggregate metrics, and
health checks. Real-time events are handled via WebSocket in websocket.py.
"""

from __future__ import annotations

import os
import time
from typing import TYPE_CHECKING, Annotated, Any, Literal

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status
from pydantic import ValidationError

from agents.roles import normalize_execution_plan
from config import settings
from models.schemas import (
    CleanupRequest,
    CleanupResponse,
    ControlResponse,
    HealthResponse,
    StartWorkflowRequest,
    StepResponse,
    WorkflowDetailResponse,
    WorkflowListResponse,
    WorkflowMetricsResponse,
    WorkflowResponse,
    WorkflowStatus,
    WorkflowSummary,
)
from workflow_engine import make_title

if TYPE_CHECKING:
    from workflow_engine import WorkflowEngine

logger = structlog.get_logger(__name__)

router = APIRouter()

ControlAction = Literal["pause", "resume", "cancel"]

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _to_summary(raw: dict[str, Any]) -> WorkflowSummary | None:
    """Convert a persisted workflow row into the API schema.

    Rows that no longer validate (e.g. an unknown status written by another
    version) are logged and skipped rather than failing the whole response.
    """
    try:
        return WorkflowSummary.model_validate(raw)
    except ValidationError as e:
        logger.warning("invalid_persisted_workflow", workflow_id=raw.get("id"), error=str(e))
        return None


def _to_steps(raw_steps: list[dict[str, Any]]) -> list[StepResponse]:
    steps: list[StepResponse] = []
    for raw in raw_steps:
        try:
            steps.append(StepResponse.model_validate(raw))
        except ValidationError as e:
            logger.warning("invalid_persisted_step", step_id=raw.get("id"), error=str(e))
    return steps


def _resolve_project_path(requested: str | None) -> str:
    if requested and requested.strip():
        return requested.strip()
    return settings.default_project_path or os.getcwd()


# Workflow engine dependency (set during application startup)
_workflow_engine: WorkflowEngine | None = None


def set_workflow_engine(engine: WorkflowEngine) -> None:
    """Set the workflow engine instance for the routes.

    This should be called during application startup to inject the engine
    dependency.

    Args:
        engine: The WorkflowEngine instance to use for all routes.
    """
    global _workflow_engine
    _workflow_engine = engine
    logger.info("workflow_engine_configured")


def get_workflow_engine() -> WorkflowEngine:
    """Get the workflow engine instance.

    Returns:
        The configured WorkflowEngine instance.

    Raises:
        RuntimeError: If the workflow engine has not been configured.
    """
    if _workflow_engine is None:
        logger.error("workflow_engine_not_configured")
        raise RuntimeError(
            "WorkflowEngine not configured. Call set_workflow_engine() during startup."
        )
    return _workflow_engine


# -----------------------------------------------------------------------------
# Workflows
# -----------------------------------------------------------------------------


@router.post(
    "/api/workflows",
    response_model=WorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a workflow",
    description="Create a workflow for the given task and start the agent pipeline.",
)
async def start_workflow(request: StartWorkflowRequest) -> WorkflowResponse:
    """Create a workflow and start its pipeline in the background.

    Args:
        request: Task text, optional project path and optional execution plan.

    Returns:
        WorkflowResponse with workflow_id, the normalized plan and the
        WebSocket URL for progress events.

    Raises:
        HTTPException: 400 for a blank task, 500 if the workflow cannot be created.
    """
    engine = get_workflow_engine()
    project_path = _resolve_project_path(request.project_path)
    plan = normalize_execution_plan(request.execution_plan)

    try:
        workflow_id = await engine.start(request.task, project_path, plan)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    except Exception as e:
        logger.error("workflow_start_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to start workflow: {e}",
        ) from e

    return WorkflowResponse(
        workflow_id=workflow_id,
        title=make_title(request.task, settings.title_max_length),
        status=WorkflowStatus.RUNNING,
        execution_plan=[role.value for role in plan],
        websocket_url=f"/ws/{workflow_id}",
    )


@router.get(
    "/api/workflows",
    response_model=WorkflowListResponse,
    summary="List workflows",
    description="List persisted workflows newest first, with optional filters.",
)
async def list_workflows(
    limit: Annotated[int, Query(description="Maximum workflows to return", ge=1, le=200)] = 50,
    offset: Annotated[int, Query(description="Workflows to skip", ge=0)] = 0,
    status_filter: Annotated[
        WorkflowStatus | None, Query(alias="status", description="Only this status")
    ] = None,
    q: Annotated[
        str | None, Query(description="Substring matched against title and task", max_length=200)
    ] = None,
) -> WorkflowListResponse:
    """List workflow history from the store."""
    store = get_workflow_engine().store
    rows = await store.list_workflows(limit=limit, offset=offset, status=status_filter, q=q)
    total = await store.count_workflows(status=status_filter, q=q)

    workflows = [summary for row in rows if (summary := _to_summary(row)) is not None]
    return WorkflowListResponse(workflows=workflows, total=total, limit=limit, offset=offset)


@router.get(
    "/api/workflows/metrics",
    response_model=WorkflowMetricsResponse,
    summary="Workflow metrics",
    description="Aggregate outcome counts and per-role step statistics.",
)
async def get_metrics() -> WorkflowMetricsResponse:
    """Return aggregate statistics over all persisted workflows."""
    store = get_workflow_engine().store
    try:
        metrics = await store.get_workflow_metrics()
    except Exception as e:
        logger.error("workflow_metrics_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to compute metrics: {e}",
        ) from e
    return WorkflowMetricsResponse.model_validate(metrics)


@router.post(
    "/api/workflows/cleanup",
    response_model=CleanupResponse,
    summary="Delete old workflows",
    description=(
        "Delete finished workflows that are neither among the newest keep_latest "
        "nor younger than keep_days. Unfinished workflows are never deleted."
    ),
)
async def cleanup_workflows(request: CleanupRequest | None = None) -> CleanupResponse:
    """Apply the retention policy to persisted workflows."""
    policy = request or CleanupRequest()
    engine = get_workflow_engine()
    store = engine.store

    try:
        result = await store.cleanup_workflows(policy.keep_days, policy.keep_latest)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    except Exception as e:
        logger.error("workflow_cleanup_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to clean up workflows: {e}",
        ) from e

    # Replay history of deleted workflows is no longer reachable
    for workflow_id in result.get("deleted_ids", []):
        engine.event_bus.clear_event_history(workflow_id)

    return CleanupResponse(
        deleted_workflows=result["deleted_workflows"],
        deleted_steps=result["deleted_steps"],
    )


@router.get(
    "/api/workflows/{workflow_id}",
    response_model=WorkflowDetailResponse,
    summary="Get workflow details",
    description="Get a persisted workflow together with its steps in pipeline order.",
)
async def get_workflow(
    workflow_id: Annotated[str, Path(description="The workflow ID")],
) -> WorkflowDetailResponse:
    """Get a workflow and its steps.

    Raises:
        HTTPException: If the workflow is not found.
    """
    store = get_workflow_engine().store
    raw = await store.get_workflow(workflow_id)
    summary = _to_summary(raw) if raw is not None else None

    if summary is None:
        logger.warning("workflow_not_found", workflow_id=workflow_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Workflow {workflow_id} not found",
        )

    steps = _to_steps(await store.get_steps_for_workflow(workflow_id))
    logger.debug("workflow_retrieved", workflow_id=workflow_id, step_count=len(steps))
    return WorkflowDetailResponse(workflow=summary, steps=steps)


async def _control(workflow_id: str, action: ControlAction) -> ControlResponse:
    engine = get_workflow_engine()

    if engine.get_pipeline_state(workflow_id) is None:
        persisted = await engine.store.get_workflow(workflow_id)
        if persisted is None:
            logger.warning("control_workflow_not_found", workflow_id=workflow_id, action=action)
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Workflow {workflow_id} not found",
            )

    handler = {"pause": engine.pause, "resume": engine.resume, "cancel": engine.cancel}[action]
    accepted = await handler(workflow_id)
    logger.info("workflow_control", workflow_id=workflow_id, action=action, accepted=accepted)
    return ControlResponse(workflow_id=workflow_id, action=action, accepted=accepted)


@router.post(
    "/api/workflows/{workflow_id}/pause",
    response_model=ControlResponse,
    summary="Pause a workflow",
    description="Pause before the next stage. Running agents are not interrupted.",
)
async def pause_workflow(
    workflow_id: Annotated[str, Path(description="The workflow ID")],
) -> ControlResponse:
    return await _control(workflow_id, "pause")


@router.post(
    "/api/workflows/{workflow_id}/resume",
    response_model=ControlResponse,
    summary="Resume a workflow",
    description="Resume a paused workflow.",
)
async def resume_workflow(
    workflow_id: Annotated[str, Path(description="The workflow ID")],
) -> ControlResponse:
    return await _control(workflow_id, "resume")


@router.post(
    "/api/workflows/{workflow_id}/cancel",
    response_model=ControlResponse,
    summary="Cancel a workflow",
    description="Cancel a workflow and kill its running agents.",
)
async def cancel_workflow(
    workflow_id: Annotated[str, Path(description="The workflow ID")],
) -> ControlResponse:
    """Cancel a workflow.

    Returns accepted=False for a workflow that already finished.
    """
    return await _control(workflow_id, "cancel")


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with engine status.",
)
async def health_check() -> HealthResponse:
    """Report whether the engine is configured and how many workflows it holds."""
    try:
        engine = get_workflow_engine()
    except RuntimeError:
        # Engine not configured yet (e.g., during startup)
        return HealthResponse(status="unhealthy", timestamp=time.time())

    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        active_workflows=len(engine.active_workflow_ids()),
    )
