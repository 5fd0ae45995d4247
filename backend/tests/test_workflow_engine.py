"""Tests for workflow_engine.py -- staged pipeline execution.

Covers the stage barrier, context passing between stages, execution plans,
stream/activity forwarding, retries, failure aggregation, pause/resume,
cancellation, deferred start and persistence-before-broadcast ordering.
Agents are replaced by scripted fake runners.
"""

import asyncio
from pathlib import Path
from typing import Any

import pytest

from agents.roles import AgentRole
from events.bus import EventBus
from events.types import AgentActivity, EventType, WorkflowEvent
from models.database import WorkflowStore
from workflow_engine import CANCELLED_STEP_ERROR, WorkflowEngine, make_title
from tests.conftest import (
    FakeRunnerFactory,
    ScriptedRun,
    drain_until_closed,
    event_types,
    wait_for_event,
)

PROJECT = "/srv/shop"
TASK = "Add a dark mode toggle to the settings page"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _run_to_end(
    engine: WorkflowEngine,
    event_bus: EventBus,
    plan: list[str] | None = None,
    task: str = TASK,
) -> tuple[str, list[WorkflowEvent]]:
    workflow_id = await engine.start(task, PROJECT, plan)
    queue = event_bus.subscribe(workflow_id)
    events = await drain_until_closed(queue)
    return workflow_id, events


def _for_role(events: list[WorkflowEvent], role: AgentRole) -> list[WorkflowEvent]:
    return [e for e in events if e.payload.get("role") == role.value]


def _index(events: list[WorkflowEvent], event_type: EventType, role: AgentRole) -> int:
    for i, event in enumerate(events):
        if event.type == event_type and event.payload.get("role") == role.value:
            return i
    raise AssertionError(f"No {event_type} for {role}")


async def _steps_by_role(store: WorkflowStore, workflow_id: str) -> dict[str, dict[str, Any]]:
    return {step["role"]: step for step in await store.get_steps_for_workflow(workflow_id)}


# =========================================================================
# Happy path
# =========================================================================


class TestFullPipeline:
    """A workflow with every role succeeding."""

    async def test_completes_and_persists(
        self, engine: WorkflowEngine, event_bus: EventBus, store: WorkflowStore
    ) -> None:
        workflow_id, events = await _run_to_end(engine, event_bus)

        assert events[0].type == EventType.WORKFLOW_CREATED
        assert events[-1].type == EventType.WORKFLOW_COMPLETED
        assert event_types(events).count("step:completed") == 5

        workflow = await store.get_workflow(workflow_id)
        assert workflow is not None
        assert workflow["status"] == "completed"
        assert workflow["current_stage_index"] == 2
        assert workflow["completed_at"] is not None

        steps = await _steps_by_role(store, workflow_id)
        for role in AgentRole:
            assert steps[role.value]["status"] == "completed"
            assert steps[role.value]["output"] == f"{role.value} output"
            assert steps[role.value]["duration_ms"] is not None

    async def test_created_event_payload(
        self, engine: WorkflowEngine, event_bus: EventBus
    ) -> None:
        workflow_id, events = await _run_to_end(engine, event_bus)
        created = events[0]
        assert created.payload == {
            "workflowId": workflow_id,
            "title": TASK,
            "executionPlan": ["pm", "rd", "ui", "test", "sec"],
        }

    async def test_stage_barrier(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        await _run_to_end(engine, event_bus)
        timeline = runner_factory.timeline

        def position(kind: str, role: AgentRole) -> int:
            return timeline.index((kind, role))

        for later in (AgentRole.RD, AgentRole.UI):
            assert position("end", AgentRole.PM) < position("start", later)
        for earlier in (AgentRole.RD, AgentRole.UI):
            for later in (AgentRole.TEST, AgentRole.SEC):
                assert position("end", earlier) < position("start", later)

    async def test_step_events_bracket_each_role(
        self, engine: WorkflowEngine, event_bus: EventBus
    ) -> None:
        _, events = await _run_to_end(engine, event_bus)
        for role in AgentRole:
            started = _index(events, EventType.STEP_STARTED, role)
            completed = _index(events, EventType.STEP_COMPLETED, role)
            assert started < completed

    async def test_multiple_workflows_run_independently(
        self, engine: WorkflowEngine, event_bus: EventBus, store: WorkflowStore
    ) -> None:
        first = await engine.start("First task", PROJECT)
        second = await engine.start("Second task", PROJECT)
        q1 = event_bus.subscribe(first)
        q2 = event_bus.subscribe(second)

        events1, events2 = await asyncio.gather(drain_until_closed(q1), drain_until_closed(q2))

        assert events1[-1].type == EventType.WORKFLOW_COMPLETED
        assert events2[-1].type == EventType.WORKFLOW_COMPLETED
        assert all(e.workflow_id == first for e in events1)
        assert all(e.workflow_id == second for e in events2)
        assert engine.active_workflow_ids() == []


# =========================================================================
# Context passing
# =========================================================================


class TestContextPassing:
    """Later stages see the outputs of earlier ones."""

    async def test_first_stage_has_no_previous_outputs(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        await _run_to_end(engine, event_bus)
        pm_prompt = runner_factory.prompts[AgentRole.PM][0]
        assert "# Previous Agent Outputs" not in pm_prompt
        assert f"# User Request\n{TASK}\n" in pm_prompt
        assert f"# Project Path\n{PROJECT}\n" in pm_prompt

    async def test_later_stages_receive_earlier_outputs(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        runner_factory.script(AgentRole.PM, ScriptedRun(output="Spec: dark mode"))
        await _run_to_end(engine, event_bus)

        rd_prompt = runner_factory.prompts[AgentRole.RD][0]
        assert "## PM Agent Output\nSpec: dark mode\n" in rd_prompt
        assert "## UI Agent Output" not in rd_prompt

        test_prompt = runner_factory.prompts[AgentRole.TEST][0]
        assert "## PM Agent Output\nSpec: dark mode\n" in test_prompt
        assert "## RD Agent Output\nrd output\n" in test_prompt
        assert "## UI Agent Output\nui output\n" in test_prompt
        assert "## SEC Agent Output" not in test_prompt

    async def test_system_prompt_describes_position(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        await _run_to_end(engine, event_bus)
        system_prompt = runner_factory.system_prompts[AgentRole.SEC][0]
        assert "# Operational Context" in system_prompt
        assert "You are in the FINAL stage of the pipeline." in system_prompt


# =========================================================================
# Execution plans
# =========================================================================


class TestExecutionPlan:
    """Only planned roles run; empty stages are skipped."""

    async def test_subset_plan(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        store: WorkflowStore,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        workflow_id, events = await _run_to_end(engine, event_bus, plan=["test", "pm"])

        assert events[0].payload["executionPlan"] == ["pm", "test"]
        assert events[-1].type == EventType.WORKFLOW_COMPLETED
        started_roles = [e.payload["role"] for e in events if e.type == EventType.STEP_STARTED]
        assert started_roles == ["pm", "test"]
        assert runner_factory.calls_for(AgentRole.RD) == 0

        steps = await _steps_by_role(store, workflow_id)
        assert steps["rd"]["status"] == "skipped"
        assert steps["ui"]["status"] == "skipped"
        assert steps["sec"]["status"] == "skipped"
        assert steps["test"]["status"] == "completed"

    async def test_invalid_plan_falls_back_to_all_roles(
        self, engine: WorkflowEngine, event_bus: EventBus
    ) -> None:
        _, events = await _run_to_end(engine, event_bus, plan=["designer", "ops"])
        assert events[0].payload["executionPlan"] == ["pm", "rd", "ui", "test", "sec"]

    async def test_prompt_omits_unplanned_downstream_roles(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        await _run_to_end(engine, event_bus, plan=["pm", "rd"])
        pm_prompt = runner_factory.prompts[AgentRole.PM][0]
        assert "the following agents will run: RD" in pm_prompt
        assert "UI" not in pm_prompt.split("# Your Role")[1].split("# Output Language")[0]


# =========================================================================
# Streaming, activity and tokens
# =========================================================================


class TestStepEvents:
    """Runner events are forwarded as step events."""

    async def test_stream_chunks_arrive_before_completion(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        runner_factory.script(AgentRole.PM, ScriptedRun(output="Hello", chunks=("Hel", "lo")))
        _, events = await _run_to_end(engine, event_bus, plan=["pm"])

        streams = [e for e in _for_role(events, AgentRole.PM) if e.type == EventType.STEP_STREAM]
        assert "".join(e.payload["chunk"] for e in streams) == "Hello"
        last_stream = max(events.index(e) for e in streams)
        assert last_stream < _index(events, EventType.STEP_COMPLETED, AgentRole.PM)

    async def test_activity_flushes_pending_stream_first(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        runner_factory.script(
            AgentRole.PM,
            ScriptedRun(chunks=("abc",), activities=(AgentActivity.tool_use("Read"),)),
        )
        _, events = await _run_to_end(engine, event_bus, plan=["pm"])

        stream = _index(events, EventType.STEP_STREAM, AgentRole.PM)
        activity = _index(events, EventType.STEP_ACTIVITY, AgentRole.PM)
        assert stream < activity
        assert events[stream].payload["chunk"] == "abc"
        assert events[activity].payload["activity"] == {"kind": "tool_use", "toolName": "Read"}

    async def test_tokens_reported_and_persisted(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        store: WorkflowStore,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        runner_factory.script(AgentRole.PM, ScriptedRun(output="ok", tokens=(120, 45)))
        workflow_id, events = await _run_to_end(engine, event_bus, plan=["pm"])

        completed = events[_index(events, EventType.STEP_COMPLETED, AgentRole.PM)]
        assert completed.payload["tokensIn"] == 120
        assert completed.payload["tokensOut"] == 45
        assert completed.payload["output"] == "ok"

        steps = await _steps_by_role(store, workflow_id)
        assert steps["pm"]["tokens_in"] == 120
        assert steps["pm"]["tokens_out"] == 45

    async def test_unknown_tokens_are_omitted(
        self, engine: WorkflowEngine, event_bus: EventBus
    ) -> None:
        _, events = await _run_to_end(engine, event_bus, plan=["pm"])
        completed = events[_index(events, EventType.STEP_COMPLETED, AgentRole.PM)]
        assert "tokensIn" not in completed.payload
        assert "tokensOut" not in completed.payload
        assert "durationMs" in completed.payload


# =========================================================================
# Retries and failures
# =========================================================================


class TestRetries:
    """Failed attempts are retried with backoff up to the limit."""

    async def test_retry_then_success(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        store: WorkflowStore,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        runner_factory.script(AgentRole.PM, ScriptedRun(error="boom"), ScriptedRun(output="ok"))
        workflow_id, events = await _run_to_end(engine, event_bus, plan=["pm"])

        pm_events = _for_role(events, AgentRole.PM)
        assert event_types(pm_events) == ["step:started", "step:retry", "step:started", "step:completed"]
        retry = pm_events[1]
        assert retry.payload["attempt"] == 1
        assert retry.payload["maxRetries"] == 2
        assert retry.payload["reason"] == "boom"
        assert events[-1].type == EventType.WORKFLOW_COMPLETED

        steps = await _steps_by_role(store, workflow_id)
        assert steps["pm"]["status"] == "completed"
        assert steps["pm"]["retry_count"] == 1

    async def test_retries_exhausted_fails_workflow(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        store: WorkflowStore,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        runner_factory.script(AgentRole.PM, *(ScriptedRun(error="boom") for _ in range(3)))
        workflow_id, events = await _run_to_end(engine, event_bus)

        assert runner_factory.calls_for(AgentRole.PM) == 3
        assert runner_factory.calls_for(AgentRole.RD) == 0
        assert event_types(events).count("step:retry") == 2

        failed_step = events[_index(events, EventType.STEP_FAILED, AgentRole.PM)]
        assert failed_step.payload["error"] == "boom"
        assert events[-1].type == EventType.WORKFLOW_FAILED
        assert events[-1].payload["error"] == "Agent(s) PM failed"

        workflow = await store.get_workflow(workflow_id)
        assert workflow is not None
        assert workflow["status"] == "failed"
        steps = await _steps_by_role(store, workflow_id)
        assert steps["pm"]["status"] == "failed"
        assert steps["pm"]["error"] == "boom"
        assert steps["rd"]["status"] == "pending"

    async def test_parallel_failure_waits_for_sibling(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        runner_factory.script(AgentRole.RD, *(ScriptedRun(error="compile error") for _ in range(3)))
        _, events = await _run_to_end(engine, event_bus)

        ui_completed = _index(events, EventType.STEP_COMPLETED, AgentRole.UI)
        assert ui_completed < len(events) - 1
        assert events[-1].type == EventType.WORKFLOW_FAILED
        assert events[-1].payload["error"] == "Agent(s) RD failed"
        assert runner_factory.calls_for(AgentRole.TEST) == 0
        assert runner_factory.calls_for(AgentRole.SEC) == 0

    async def test_failure_message_lists_every_failed_role(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        for role in (AgentRole.RD, AgentRole.UI):
            runner_factory.script(role, *(ScriptedRun(error="nope") for _ in range(3)))
        _, events = await _run_to_end(engine, event_bus)
        assert events[-1].payload["error"] == "Agent(s) RD, UI failed"
        assert event_types(events).count("workflow:failed") == 1

    async def test_zero_retries_fails_on_first_error(
        self,
        store: WorkflowStore,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        engine = WorkflowEngine(
            store, event_bus, runner_factory=runner_factory, max_retries=0, flush_interval=0.01
        )
        runner_factory.script(AgentRole.PM, ScriptedRun(error="boom"))
        _, events = await _run_to_end(engine, event_bus, plan=["pm"])
        assert "step:retry" not in event_types(events)
        assert events[-1].type == EventType.WORKFLOW_FAILED
        await engine.shutdown()


# =========================================================================
# Cancellation
# =========================================================================


class TestCancel:
    """Cancel kills running agents and ends the workflow quietly."""

    async def test_cancel_running_step(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        store: WorkflowStore,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        runner_factory.script(AgentRole.PM, ScriptedRun(hang=True))
        workflow_id = await engine.start(TASK, PROJECT)
        queue = event_bus.subscribe(workflow_id)
        seen: list[WorkflowEvent] = []
        await wait_for_event(queue, EventType.STEP_STARTED, seen)

        assert await engine.cancel(workflow_id) is True
        seen.extend(await drain_until_closed(queue))

        types = event_types(seen)
        assert types[-1] == "workflow:cancelled"
        assert "workflow:completed" not in types
        assert "workflow:failed" not in types
        assert "step:failed" not in types
        assert runner_factory.runners[0].killed is True
        assert runner_factory.calls_for(AgentRole.RD) == 0

        workflow = await store.get_workflow(workflow_id)
        assert workflow is not None
        assert workflow["status"] == "cancelled"
        steps = await _steps_by_role(store, workflow_id)
        assert steps["pm"]["status"] == "failed"
        assert steps["pm"]["error"] == CANCELLED_STEP_ERROR

    async def test_cancelled_event_reaches_subscribers_before_close(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        runner_factory.script(AgentRole.RD, ScriptedRun(hang=True))
        runner_factory.script(AgentRole.UI, ScriptedRun(hang=True))
        workflow_id = await engine.start(TASK, PROJECT, ["rd", "ui"])
        first = event_bus.subscribe(workflow_id)
        await wait_for_event(first, EventType.STEP_STARTED)
        second = event_bus.subscribe(workflow_id)

        assert await engine.cancel(workflow_id) is True

        for queue in (first, second):
            types = event_types(await drain_until_closed(queue))
            assert types.count("workflow:cancelled") == 1
            assert types[-1] == "workflow:cancelled"
        # Nothing is left buffered for a subscriber that will never come
        assert workflow_id not in event_bus._event_buffer
        assert event_types(event_bus.get_event_history(workflow_id))[-1] == "workflow:cancelled"

    async def test_cancel_is_idempotent(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        runner_factory.script(AgentRole.PM, ScriptedRun(hang=True))
        workflow_id = await engine.start(TASK, PROJECT)
        assert await engine.cancel(workflow_id) is True
        assert await engine.cancel(workflow_id) is False
        assert engine.get_pipeline_state(workflow_id) is None

    async def test_cancel_before_first_stage(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        workflow_id = await engine.start(TASK, PROJECT)
        assert await engine.cancel(workflow_id) is True
        await asyncio.sleep(0.05)
        assert runner_factory.runners == []

    async def test_cancel_during_retry_backoff(
        self,
        store: WorkflowStore,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        engine = WorkflowEngine(
            store,
            event_bus,
            runner_factory=runner_factory,
            max_retries=2,
            retry_delays=[30.0],
            pause_poll_interval=0.05,
            flush_interval=0.01,
        )
        runner_factory.script(AgentRole.PM, ScriptedRun(error="flaky"))
        workflow_id = await engine.start(TASK, PROJECT)
        queue = event_bus.subscribe(workflow_id)
        await wait_for_event(queue, EventType.STEP_RETRY)

        assert await engine.cancel(workflow_id) is True
        await asyncio.wait_for(drain_until_closed(queue), timeout=2.0)
        await asyncio.sleep(0.05)
        assert runner_factory.calls_for(AgentRole.PM) == 1
        await engine.shutdown()

    async def test_cancel_finished_workflow_is_ignored(
        self, engine: WorkflowEngine, event_bus: EventBus
    ) -> None:
        workflow_id, _ = await _run_to_end(engine, event_bus, plan=["pm"])
        assert await engine.cancel(workflow_id) is False

    async def test_unknown_workflow_controls_are_ignored(self, engine: WorkflowEngine) -> None:
        assert await engine.pause("missing") is False
        assert await engine.resume("missing") is False
        assert await engine.cancel("missing") is False


# =========================================================================
# Pause / resume
# =========================================================================


class TestPauseResume:
    """Pause holds the next stage; running steps finish."""

    async def test_pause_holds_next_stage_until_resume(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        store: WorkflowStore,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        gate = asyncio.Event()
        runner_factory.script(AgentRole.PM, ScriptedRun(output="spec", gate=gate))
        workflow_id = await engine.start(TASK, PROJECT)
        queue = event_bus.subscribe(workflow_id)
        seen: list[WorkflowEvent] = []
        await wait_for_event(queue, EventType.STEP_STARTED, seen)

        assert await engine.pause(workflow_id) is True
        assert await engine.pause(workflow_id) is False
        gate.set()
        await wait_for_event(queue, EventType.STEP_COMPLETED, seen)
        await asyncio.sleep(0.2)

        assert runner_factory.calls_for(AgentRole.RD) == 0
        state = engine.get_pipeline_state(workflow_id)
        assert state is not None
        assert state.status == "paused"
        workflow = await store.get_workflow(workflow_id)
        assert workflow is not None
        assert workflow["status"] == "paused"

        assert await engine.resume(workflow_id) is True
        assert await engine.resume(workflow_id) is False
        seen.extend(await drain_until_closed(queue))

        types = event_types(seen)
        assert "workflow:paused" in types
        assert types[-1] == "workflow:completed"
        assert runner_factory.calls_for(AgentRole.RD) == 1

    async def test_completion_waits_for_resume(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        gate = asyncio.Event()
        runner_factory.script(AgentRole.PM, ScriptedRun(gate=gate))
        workflow_id = await engine.start(TASK, PROJECT, ["pm"])
        queue = event_bus.subscribe(workflow_id)
        seen: list[WorkflowEvent] = []
        await wait_for_event(queue, EventType.STEP_STARTED, seen)

        await engine.pause(workflow_id)
        gate.set()
        await wait_for_event(queue, EventType.STEP_COMPLETED, seen)
        await asyncio.sleep(0.15)
        assert "workflow:completed" not in event_types(seen)

        await engine.resume(workflow_id)
        seen.extend(await drain_until_closed(queue))
        assert event_types(seen)[-1] == "workflow:completed"

    async def test_cancel_while_paused(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        gate = asyncio.Event()
        runner_factory.script(AgentRole.PM, ScriptedRun(gate=gate))
        workflow_id = await engine.start(TASK, PROJECT)
        queue = event_bus.subscribe(workflow_id)
        seen: list[WorkflowEvent] = []
        await wait_for_event(queue, EventType.STEP_STARTED, seen)

        await engine.pause(workflow_id)
        gate.set()
        await wait_for_event(queue, EventType.STEP_COMPLETED, seen)
        assert await engine.cancel(workflow_id) is True
        seen.extend(await drain_until_closed(queue))

        assert event_types(seen)[-1] == "workflow:cancelled"
        await asyncio.sleep(0.1)
        assert runner_factory.calls_for(AgentRole.RD) == 0


# =========================================================================
# Start and ordering
# =========================================================================


class TestStart:
    """Workflow creation and the deferred first stage."""

    async def test_stage_execution_is_deferred(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
    ) -> None:
        workflow_id = await engine.start(TASK, PROJECT)
        assert runner_factory.runners == []
        assert event_types(event_bus.get_event_history(workflow_id)) == ["workflow:created"]
        await drain_until_closed(event_bus.subscribe(workflow_id))

    @pytest.mark.parametrize("task", ["", "   ", "\n\t"])
    async def test_blank_task_rejected(self, engine: WorkflowEngine, task: str) -> None:
        with pytest.raises(ValueError):
            await engine.start(task, PROJECT)

    async def test_long_task_title_truncated(
        self, engine: WorkflowEngine, event_bus: EventBus, store: WorkflowStore
    ) -> None:
        task = "x" * 200
        workflow_id, events = await _run_to_end(engine, event_bus, plan=["pm"], task=task)
        assert events[0].payload["title"] == "x" * 80 + "..."
        workflow = await store.get_workflow(workflow_id)
        assert workflow is not None
        assert workflow["user_prompt"] == task

    def test_make_title(self) -> None:
        assert make_title("short", 80) == "short"
        assert make_title("a" * 80, 80) == "a" * 80
        assert make_title("a" * 81, 80) == "a" * 80 + "..."

    async def test_persistence_precedes_events(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        store: WorkflowStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        order: list[str] = []
        original_update = store.update_workflow_status
        original_publish = event_bus.publish_nowait

        async def tracking_update(workflow_id: str, status: Any, stage: int | None = None) -> None:
            await original_update(workflow_id, status, stage)
            order.append(f"persist:{status}")

        def tracking_publish(event: WorkflowEvent) -> None:
            order.append(f"event:{event.type.value}")
            original_publish(event)

        monkeypatch.setattr(store, "update_workflow_status", tracking_update)
        monkeypatch.setattr(event_bus, "publish_nowait", tracking_publish)

        await _run_to_end(engine, event_bus, plan=["pm"])

        assert order.index("persist:running") < order.index("event:workflow:created")
        assert order.index("persist:completed") < order.index("event:workflow:completed")

    async def test_persistence_errors_do_not_stop_the_run(
        self,
        engine: WorkflowEngine,
        event_bus: EventBus,
        store: WorkflowStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken_update(step_id: str, updates: Any) -> None:
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "update_step_status", broken_update)
        _, events = await _run_to_end(engine, event_bus, plan=["pm"])
        assert events[-1].type == EventType.WORKFLOW_COMPLETED


# =========================================================================
# Shutdown
# =========================================================================


class TestShutdown:
    """Engine shutdown stops every workflow."""

    async def test_shutdown_kills_running_agents(
        self,
        store: WorkflowStore,
        event_bus: EventBus,
        runner_factory: FakeRunnerFactory,
        tmp_path: Path,
    ) -> None:
        engine = WorkflowEngine(store, event_bus, runner_factory=runner_factory)
        runner_factory.script(AgentRole.PM, ScriptedRun(hang=True))
        workflow_id = await engine.start(TASK, PROJECT)
        queue = event_bus.subscribe(workflow_id)
        await wait_for_event(queue, EventType.STEP_STARTED)

        await engine.shutdown()

        assert runner_factory.runners[0].killed is True
        assert engine.active_workflow_ids() == []
        workflow = await store.get_workflow(workflow_id)
        assert workflow is not None
        assert workflow["status"] == "running"
