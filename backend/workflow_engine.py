"""Workflow engine for driving tasks through the staged agent pipeline.

This module provides the WorkflowEngine class, which owns every running
workflow: it persists the workflow, schedules its stages, runs the agents
of each stage concurrently with retries, forwards their progress to the
event bus, and honours pause, resume and cancel requests.

The WorkflowEngine coordinates between:
- WorkflowStore: Durable record of workflows and steps
- EventBus: Real-time progress events for observers
- AgentRunner: One agent process per step attempt

Usage:
    >>> from events import get_event_bus
    >>> from models.database import WorkflowStore
    >>> from workflow_engine import WorkflowEngine
    >>>
    >>> store = WorkflowStore("./data/dashboard.db")
    >>> await store.init()
    >>> engine = WorkflowEngine(store, get_event_bus())
    >>>
    >>> workflow_id = await engine.start("Add a dark mode toggle", "/srv/app")
    >>> await engine.pause(workflow_id)
    >>> await engine.resume(workflow_id)
    >>>
    >>> # On shutdown
    >>> await engine.shutdown()
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from agents.context import AgentContext, build_agent_prompt
from agents.prompts import get_system_prompt
from agents.roles import (
    AGENT_ORDER,
    PIPELINE_STAGES,
    AgentRole,
    get_label,
    get_stage_for_role,
    normalize_execution_plan,
)
from agents.runner import (
    ActivityChange,
    AgentRunner,
    RunnerError,
    RunnerEvent,
    RunnerListener,
    RunnerResult,
    StreamChunk,
)
from config import settings
from events import EventBus
from events.types import EventType, make_event
from models.database import WorkflowStore
from models.pipeline import PipelineState, create_pipeline_state
from models.schemas import StepStatus, WorkflowStatus
from output_buffer import OutputBuffer

logger = structlog.get_logger(__name__)

CANCELLED_STEP_ERROR = "Workflow cancelled"


class Runner(Protocol):
    """What the engine needs from an agent runner."""

    async def run(self, prompt: str, system_prompt: str | None, project_path: str) -> str: ...

    def kill(self) -> None: ...


RunnerFactory = Callable[[AgentRole, RunnerListener], Runner]


def _default_runner_factory(role: AgentRole, listener: RunnerListener) -> Runner:
    return AgentRunner(role, listener)


def make_title(task: str, max_length: int) -> str:
    """Truncate a task into a workflow title, marking truncation with '...'."""
    if len(task) > max_length:
        return task[:max_length] + "..."
    return task


@dataclass
class WorkflowRun:
    """Everything the engine holds in memory for one running workflow."""

    pipeline: PipelineState
    task: str
    project_path: str
    step_ids: dict[AgentRole, str]
    outputs: dict[AgentRole, str] = field(default_factory=dict)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def workflow_id(self) -> str:
        return self.pipeline.workflow_id


@dataclass
class StepContext:
    """Per-step wiring between a runner's events and the event bus."""

    run: WorkflowRun
    role: AgentRole
    step_id: str
    buffer: OutputBuffer | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None


class WorkflowEngine:
    """Runs workflows through the fixed pipeline stages.

    Stages run strictly one after another; the roles inside a stage run
    concurrently and the stage ends only when all of them are done. A
    failed role fails the workflow after its siblings finish. Every status
    change is persisted before the matching event is published.

    Attributes:
        store: Durable workflow/step storage
        event_bus: Event bus for progress events
        max_retries: Retries per step after the first attempt
        retry_delays: Backoff before each retry, in seconds
        pause_poll_interval: Longest uninterrupted pause wait, in seconds
        flush_interval: Stream batching window, in seconds
    """

    def __init__(
        self,
        store: WorkflowStore,
        event_bus: EventBus,
        *,
        runner_factory: RunnerFactory | None = None,
        max_retries: int | None = None,
        retry_delays: Sequence[float] | None = None,
        pause_poll_interval: float | None = None,
        flush_interval: float | None = None,
        prompts_dir: str | None = None,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self._runner_factory = runner_factory or _default_runner_factory
        self.max_retries = max_retries if max_retries is not None else settings.max_step_retries
        self.retry_delays = list(
            retry_delays if retry_delays is not None else settings.retry_delays_seconds
        )
        self.pause_poll_interval = (
            pause_poll_interval
            if pause_poll_interval is not None
            else settings.pause_poll_interval_seconds
        )
        self.flush_interval = (
            flush_interval
            if flush_interval is not None
            else settings.output_flush_interval_ms / 1000
        )
        self._prompts_dir = prompts_dir
        self._runs: dict[str, WorkflowRun] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._runners: dict[tuple[str, AgentRole], Runner] = {}
        self._buffers: dict[tuple[str, AgentRole], OutputBuffer] = {}
        logger.info("workflow_engine_initialized", max_retries=self.max_retries)

    # -----------------------------------------------------------------
    # Persistence helpers
    # -----------------------------------------------------------------

    async def _persist_workflow_status(
        self,
        workflow_id: str,
        status: WorkflowStatus,
        current_stage_index: int | None = None,
    ) -> None:
        """Persist a workflow status change. Failures are logged, never raised."""
        try:
            await self.store.update_workflow_status(workflow_id, status, current_stage_index)
        except Exception as e:
            logger.error(
                "persist_workflow_status_failed",
                workflow_id=workflow_id,
                status=status.value,
                error=str(e),
            )

    async def _persist_step(self, step_id: str, updates: Mapping[str, Any]) -> None:
        """Persist a step update. Failures are logged, never raised."""
        try:
            await self.store.update_step_status(step_id, updates)
        except Exception as e:
            logger.error("persist_step_failed", step_id=step_id, error=str(e))

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(
        self,
        task: str,
        project_path: str,
        execution_plan: Sequence[str] | None = None,
    ) -> str:
        """Create a workflow and schedule its pipeline.

        Stage execution begins on a later event loop iteration, so a caller
        can subscribe to the workflow's events before the first
        ``step:started``.

        Args:
            task: The user's task text.
            project_path: Directory the agents work in.
            execution_plan: Roles to run; normalized, empty means all.

        Returns:
            The new workflow's id.

        Raises:
            ValueError: If the task or project path is blank.
        """
        if not task or not task.strip():
            raise ValueError("Task is required")
        if not project_path or not project_path.strip():
            raise ValueError("Project path is required")

        plan = normalize_execution_plan(execution_plan)
        workflow_id = str(uuid.uuid4())
        title = make_title(task, settings.title_max_length)

        await self.store.create_workflow(workflow_id, title, task, project_path, plan)

        pipeline = create_pipeline_state(workflow_id, plan)
        pipeline.status = WorkflowStatus.RUNNING

        steps = await self.store.get_steps_for_workflow(workflow_id)
        step_ids = {AgentRole(step["role"]): step["id"] for step in steps}
        missing = [role.value for role in AGENT_ORDER if role not in step_ids]
        if missing:
            raise RuntimeError(f"Steps missing for workflow {workflow_id}: {', '.join(missing)}")

        run = WorkflowRun(
            pipeline=pipeline,
            task=task,
            project_path=project_path,
            step_ids=step_ids,
        )
        self._runs[workflow_id] = run

        await self._persist_workflow_status(workflow_id, WorkflowStatus.RUNNING)
        await self.event_bus.publish(
            make_event(
                EventType.WORKFLOW_CREATED,
                workflow_id,
                title=title,
                executionPlan=[role.value for role in plan],
            )
        )

        logger.info(
            "workflow_created",
            workflow_id=workflow_id,
            plan=[role.value for role in plan],
            task_length=len(task),
        )

        asyncio.get_running_loop().call_soon(self._launch, workflow_id)
        return workflow_id

    def _launch(self, workflow_id: str) -> None:
        """Create and register the background task for a workflow run."""
        run = self._runs.get(workflow_id)
        if run is None or run.pipeline.is_terminal:
            return

        task = asyncio.create_task(self._run_pipeline(run), name=f"workflow_{workflow_id}")
        self._tasks[workflow_id] = task

        def _remove_task(t: asyncio.Task[None], wid: str = workflow_id) -> None:
            if self._tasks.get(wid) is t:
                del self._tasks[wid]

        task.add_done_callback(_remove_task)

    async def _run_pipeline(self, run: WorkflowRun) -> None:
        pipeline = run.pipeline
        workflow_id = run.workflow_id
        log = logger.bind(workflow_id=workflow_id)

        try:
            for stage in PIPELINE_STAGES:
                roles = pipeline.runnable_roles(stage)
                if not roles:
                    log.debug("stage_skipped", stage_index=stage.index)
                    continue

                if pipeline.is_cancelled:
                    return
                await self._wait_while_paused(run)
                if pipeline.is_cancelled:
                    return

                pipeline.current_stage_index = stage.index
                await self._persist_workflow_status(workflow_id, pipeline.status, stage.index)
                log.info(
                    "stage_started",
                    stage_index=stage.index,
                    roles=[role.value for role in roles],
                )

                outcomes = await asyncio.gather(
                    *(self._execute_step(run, role) for role in roles),
                    return_exceptions=True,
                )

                if pipeline.is_cancelled:
                    log.info("stage_interrupted_by_cancel", stage_index=stage.index)
                    return

                failed: list[AgentRole] = []
                for role, outcome in zip(roles, outcomes, strict=True):
                    if isinstance(outcome, BaseException):
                        log.error("step_crashed", role=role.value, error=str(outcome))
                        failed.append(role)
                    elif not outcome:
                        failed.append(role)

                if failed:
                    labels = ", ".join(get_label(role) for role in failed)
                    await self._fail_workflow(run, f"Agent(s) {labels} failed")
                    return

            await self._wait_while_paused(run)
            if pipeline.is_cancelled:
                return

            pipeline.status = WorkflowStatus.COMPLETED
            await self._persist_workflow_status(workflow_id, WorkflowStatus.COMPLETED)
            await self.event_bus.publish(make_event(EventType.WORKFLOW_COMPLETED, workflow_id))
            log.info("workflow_completed")

        except asyncio.CancelledError:
            log.info("workflow_task_cancelled")
            self._kill_runners(workflow_id)
            raise
        except Exception as e:
            log.exception("workflow_pipeline_error", error=str(e))
            if not pipeline.is_terminal:
                await self._fail_workflow(run, f"Workflow engine error: {e}")
        finally:
            # A cancelled run is closed by cancel() once workflow:cancelled is out
            await self._release(workflow_id, close_stream=not pipeline.is_cancelled)

    async def _fail_workflow(self, run: WorkflowRun, error: str) -> None:
        run.pipeline.status = WorkflowStatus.FAILED
        await self._persist_workflow_status(run.workflow_id, WorkflowStatus.FAILED)
        await self.event_bus.publish(
            make_event(EventType.WORKFLOW_FAILED, run.workflow_id, error=error)
        )
        logger.warning("workflow_failed", workflow_id=run.workflow_id, error=error)

    # -----------------------------------------------------------------
    # Step execution
    # -----------------------------------------------------------------

    def _previous_outputs(self, run: WorkflowRun, role: AgentRole) -> list[AgentContext]:
        own_index = get_stage_for_role(role).index
        return [
            AgentContext(prior, run.outputs[prior])
            for prior in AGENT_ORDER
            if prior in run.outputs and get_stage_for_role(prior).index < own_index
        ]

    def _retry_delay(self, attempt: int) -> float:
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]

    async def _execute_step(self, run: WorkflowRun, role: AgentRole) -> bool:
        """Run one role with retries.

        Returns:
            True if the step completed, False if it failed or the workflow
            was cancelled. Invocation errors never propagate.
        """
        pipeline = run.pipeline
        workflow_id = run.workflow_id
        step_id = run.step_ids[role]
        step_state = pipeline.get_step(role)
        key = (workflow_id, role)

        prompt = build_agent_prompt(
            role,
            run.task,
            self._previous_outputs(run, role),
            run.project_path,
            pipeline.execution_plan,
        )
        system_prompt = get_system_prompt(
            role, run.project_path, pipeline.execution_plan, self._prompts_dir
        )

        ctx = StepContext(run=run, role=role, step_id=step_id)
        buffer = OutputBuffer(lambda chunks: self._publish_stream(ctx, chunks), self.flush_interval)
        ctx.buffer = buffer
        stale = self._buffers.pop(key, None)
        if stale is not None:
            stale.destroy()
        self._buffers[key] = buffer

        try:
            for attempt in range(self.max_retries + 1):
                if pipeline.is_cancelled:
                    return False

                step_state.status = StepStatus.RUNNING
                step_state.retry_count = attempt
                await self._persist_step(
                    step_id,
                    {
                        "status": StepStatus.RUNNING,
                        "prompt": prompt,
                        "retry_count": attempt,
                        "started_at": time.time(),
                    },
                )
                if pipeline.is_cancelled:
                    return False

                await self.event_bus.publish(
                    make_event(
                        EventType.STEP_STARTED, workflow_id, stepId=step_id, role=role.value
                    )
                )
                logger.info(
                    "step_started",
                    workflow_id=workflow_id,
                    role=role.value,
                    attempt=attempt,
                )

                ctx.tokens_in = ctx.tokens_out = None
                runner = self._runner_factory(role, lambda event: self._on_runner_event(ctx, event))
                self._runners[key] = runner
                started = time.monotonic()
                try:
                    output = await runner.run(prompt, system_prompt, run.project_path)
                except Exception as e:
                    buffer.flush()
                    error = str(e) or type(e).__name__
                    if pipeline.is_cancelled:
                        return False

                    if attempt < self.max_retries:
                        step_state.retry_count = attempt + 1
                        delay = self._retry_delay(attempt)
                        logger.warning(
                            "step_retry_scheduled",
                            workflow_id=workflow_id,
                            role=role.value,
                            attempt=attempt + 1,
                            delay=delay,
                            error=error,
                        )
                        await self.event_bus.publish(
                            make_event(
                                EventType.STEP_RETRY,
                                workflow_id,
                                stepId=step_id,
                                role=role.value,
                                attempt=attempt + 1,
                                maxRetries=self.max_retries,
                                reason=error,
                            )
                        )
                        await self._sleep_unless_cancelled(run, delay)
                        continue

                    step_state.status = StepStatus.FAILED
                    await self._persist_step(
                        step_id,
                        {
                            "status": StepStatus.FAILED,
                            "error": error,
                            "retry_count": attempt,
                            "completed_at": time.time(),
                        },
                    )
                    await self.event_bus.publish(
                        make_event(
                            EventType.STEP_FAILED,
                            workflow_id,
                            stepId=step_id,
                            role=role.value,
                            error=error,
                        )
                    )
                    logger.error(
                        "step_failed",
                        workflow_id=workflow_id,
                        role=role.value,
                        attempts=attempt + 1,
                        error=error,
                    )
                    return False
                finally:
                    if self._runners.get(key) is runner:
                        del self._runners[key]

                duration_ms = int((time.monotonic() - started) * 1000)
                buffer.flush()
                run.outputs[role] = output
                step_state.status = StepStatus.COMPLETED
                await self._persist_step(
                    step_id,
                    {
                        "status": StepStatus.COMPLETED,
                        "output": output,
                        "duration_ms": duration_ms,
                        "tokens_in": ctx.tokens_in,
                        "tokens_out": ctx.tokens_out,
                        "completed_at": time.time(),
                    },
                )
                await self.event_bus.publish(
                    make_event(
                        EventType.STEP_COMPLETED,
                        workflow_id,
                        stepId=step_id,
                        role=role.value,
                        output=output,
                        durationMs=duration_ms,
                        tokensIn=ctx.tokens_in,
                        tokensOut=ctx.tokens_out,
                    )
                )
                logger.info(
                    "step_completed",
                    workflow_id=workflow_id,
                    role=role.value,
                    duration_ms=duration_ms,
                    output_length=len(output),
                )
                return True
            return False
        finally:
            buffer.destroy()
            if self._buffers.get(key) is buffer:
                del self._buffers[key]

    def _on_runner_event(self, ctx: StepContext, event: RunnerEvent) -> None:
        if isinstance(event, StreamChunk):
            if ctx.buffer is not None:
                ctx.buffer.push(event.text)
        elif isinstance(event, ActivityChange):
            if ctx.run.pipeline.is_cancelled:
                return
            # Text streamed before the activity change is delivered first
            if ctx.buffer is not None:
                ctx.buffer.flush()
            self.event_bus.publish_nowait(
                make_event(
                    EventType.STEP_ACTIVITY,
                    ctx.run.workflow_id,
                    stepId=ctx.step_id,
                    role=ctx.role.value,
                    activity=event.activity.to_payload(),
                )
            )
        elif isinstance(event, RunnerResult):
            ctx.tokens_in = event.tokens_in
            ctx.tokens_out = event.tokens_out
        elif isinstance(event, RunnerError):
            logger.warning(
                "agent_reported_error",
                workflow_id=ctx.run.workflow_id,
                role=ctx.role.value,
                error=event.message,
            )

    def _publish_stream(self, ctx: StepContext, chunks: list[str]) -> None:
        if ctx.run.pipeline.is_cancelled:
            return
        self.event_bus.publish_nowait(
            make_event(
                EventType.STEP_STREAM,
                ctx.run.workflow_id,
                stepId=ctx.step_id,
                role=ctx.role.value,
                chunk="".join(chunks),
            )
        )

    # -----------------------------------------------------------------
    # Waiting
    # -----------------------------------------------------------------

    async def _wait_while_paused(self, run: WorkflowRun) -> None:
        """Block while the workflow is paused.

        Each wait is bounded by the poll interval and ends early when the
        workflow is resumed or cancelled.
        """
        while run.pipeline.status == WorkflowStatus.PAUSED:
            run.wakeup.clear()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(run.wakeup.wait(), timeout=self.pause_poll_interval)

    async def _sleep_unless_cancelled(self, run: WorkflowRun, delay: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while not run.pipeline.is_cancelled:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            run.wakeup.clear()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(run.wakeup.wait(), timeout=remaining)

    # -----------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------

    async def pause(self, workflow_id: str) -> bool:
        """Pause a running workflow before its next stage.

        Steps already running continue to completion.

        Returns:
            True if the workflow was paused, False if the request was ignored.
        """
        run = self._runs.get(workflow_id)
        if run is None or run.pipeline.status != WorkflowStatus.RUNNING:
            logger.info("pause_ignored", workflow_id=workflow_id)
            return False

        run.pipeline.status = WorkflowStatus.PAUSED
        await self._persist_workflow_status(workflow_id, WorkflowStatus.PAUSED)
        await self.event_bus.publish(make_event(EventType.WORKFLOW_PAUSED, workflow_id))
        logger.info("workflow_paused", workflow_id=workflow_id)
        return True

    async def resume(self, workflow_id: str) -> bool:
        """Resume a paused workflow.

        Returns:
            True if the workflow was resumed, False if the request was ignored.
        """
        run = self._runs.get(workflow_id)
        if run is None or run.pipeline.status != WorkflowStatus.PAUSED:
            logger.info("resume_ignored", workflow_id=workflow_id)
            return False

        run.pipeline.status = WorkflowStatus.RUNNING
        await self._persist_workflow_status(workflow_id, WorkflowStatus.RUNNING)
        run.wakeup.set()
        logger.info("workflow_resumed", workflow_id=workflow_id)
        return True

    async def cancel(self, workflow_id: str) -> bool:
        """Cancel a workflow and kill its running agents.

        Steps that were running are recorded as failed; no further
        ``workflow:completed`` or ``workflow:failed`` event is published.

        Returns:
            True if the workflow was cancelled, False if the request was ignored.
        """
        run = self._runs.get(workflow_id)
        if run is None or run.pipeline.is_terminal:
            logger.info("cancel_ignored", workflow_id=workflow_id)
            return False

        logger.info(
            "cancel_workflow_start",
            workflow_id=workflow_id,
            current_status=run.pipeline.status.value,
        )
        run.pipeline.status = WorkflowStatus.CANCELLED
        self._kill_runners(workflow_id)
        self._discard_buffers(workflow_id)
        run.wakeup.set()

        interrupted = [
            step for step in run.pipeline.steps if step.status == StepStatus.RUNNING
        ]
        for step in interrupted:
            step.status = StepStatus.FAILED

        await self._persist_workflow_status(workflow_id, WorkflowStatus.CANCELLED)
        now = time.time()
        for step in interrupted:
            await self._persist_step(
                run.step_ids[step.role],
                {"status": StepStatus.FAILED, "error": CANCELLED_STEP_ERROR, "completed_at": now},
            )
        await self.event_bus.publish(make_event(EventType.WORKFLOW_CANCELLED, workflow_id))

        await self._release(workflow_id, close_stream=False)
        await self.event_bus.close_workflow(workflow_id)
        logger.info("cancel_workflow_complete", workflow_id=workflow_id)
        return True

    def _kill_runners(self, workflow_id: str) -> None:
        for (owner, role), runner in list(self._runners.items()):
            if owner != workflow_id:
                continue
            try:
                runner.kill()
            except Exception as e:
                logger.error(
                    "runner_kill_failed",
                    workflow_id=workflow_id,
                    role=role.value,
                    error=str(e),
                )

    def _discard_buffers(self, workflow_id: str) -> None:
        for key in [key for key in self._buffers if key[0] == workflow_id]:
            self._buffers.pop(key).destroy()

    async def _release(self, workflow_id: str, *, close_stream: bool = True) -> None:
        """Drop in-memory state for a finished workflow. Idempotent.

        The event stream is closed only by the call that actually drops the
        run, and only when ``close_stream`` is set.
        """
        run = self._runs.pop(workflow_id, None)
        self._discard_buffers(workflow_id)
        if run is None:
            return
        if close_stream:
            await self.event_bus.close_workflow(workflow_id)
        logger.debug("workflow_released", workflow_id=workflow_id)

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def get_pipeline_state(self, workflow_id: str) -> PipelineState | None:
        """Return the live scheduling state, or None once the run is over."""
        run = self._runs.get(workflow_id)
        return run.pipeline if run is not None else None

    def active_workflow_ids(self) -> list[str]:
        return list(self._runs.keys())

    async def shutdown(self) -> None:
        """Kill every agent and stop every workflow task.

        Workflows interrupted here stay non-terminal in the store; the
        startup recovery sweep marks them failed.
        """
        logger.info("engine_shutdown_start", workflow_count=len(self._runs))

        for workflow_id in list(self._runs):
            self._kill_runners(workflow_id)

        tasks = list(self._tasks.items())
        self._tasks.clear()
        for workflow_id, task in tasks:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("shutdown_task_failed", workflow_id=workflow_id, error=str(e))

        for workflow_id in list(self._runs):
            await self._release(workflow_id)

        logger.info("engine_shutdown_complete")
