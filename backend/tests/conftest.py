"""Shared test fixtures for backend tests.

Provides a fresh EventBus, a temporary WorkflowStore, and a scripted fake
agent runner so engine tests never spawn real agent processes.
"""

import asyncio
import sys
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from events.bus import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.roles import AgentRole  # noqa: E402
from agents.runner import (  # noqa: E402
    ActivityChange,
    AgentExitError,
    AgentKilledError,
    RunnerError,
    RunnerListener,
    RunnerResult,
    StreamChunk,
)
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import AgentActivity, EventType, WorkflowEvent  # noqa: E402
from models.database import WorkflowStore  # noqa: E402
from workflow_engine import WorkflowEngine  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Workflow Store
# ---------------------------------------------------------------------------


@pytest.fixture()
async def store(tmp_path: Path) -> WorkflowStore:
    """Return an initialized store backed by a temporary database file."""
    workflow_store = WorkflowStore(str(tmp_path / "workflows.db"))
    await workflow_store.init()
    return workflow_store


# ---------------------------------------------------------------------------
# Fake agent runner
# ---------------------------------------------------------------------------


@dataclass
class ScriptedRun:
    """What one fake agent invocation does.

    Attributes:
        output: Final output returned on success.
        chunks: Stream chunks emitted before finishing.
        activities: Activity changes emitted after the chunks.
        error: If set, the invocation fails with this message.
        tokens: (tokens_in, tokens_out) reported with the result.
        gate: If set, the invocation blocks until the event is set or the
            runner is killed.
        hang: Block until killed.
    """

    output: str = "done"
    chunks: tuple[str, ...] = ()
    activities: tuple[AgentActivity, ...] = ()
    error: str | None = None
    tokens: tuple[int, int] | None = None
    gate: asyncio.Event | None = None
    hang: bool = False


class FakeRunner:
    """Runner double driven by a ScriptedRun."""

    def __init__(
        self,
        role: AgentRole,
        listener: RunnerListener,
        script: ScriptedRun,
        factory: "FakeRunnerFactory",
    ) -> None:
        self.role = role
        self.listener = listener
        self.script = script
        self.factory = factory
        self.killed = False
        self._killed_event = asyncio.Event()

    async def run(self, prompt: str, system_prompt: str | None, project_path: str) -> str:
        self.factory.prompts[self.role].append(prompt)
        self.factory.system_prompts[self.role].append(system_prompt or "")
        self.factory.timeline.append(("start", self.role))
        try:
            for text in self.script.chunks:
                self.listener(StreamChunk(text))
            for activity in self.script.activities:
                self.listener(ActivityChange(activity))

            if self.script.hang or self.script.gate is not None:
                waiters = [asyncio.ensure_future(self._killed_event.wait())]
                if self.script.gate is not None:
                    waiters.append(asyncio.ensure_future(self.script.gate.wait()))
                try:
                    await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    for waiter in waiters:
                        waiter.cancel()

            if self.killed:
                raise AgentKilledError("Agent was killed")
            if self.script.error is not None:
                self.listener(RunnerError(self.script.error))
                raise AgentExitError(self.script.error, 1)
            if self.script.tokens is not None:
                self.listener(RunnerResult(self.script.output, *self.script.tokens))
            return self.script.output
        finally:
            self.factory.timeline.append(("end", self.role))

    def kill(self) -> None:
        self.killed = True
        self._killed_event.set()


class FakeRunnerFactory:
    """Runner factory handing out FakeRunners from per-role scripts.

    Roles without a remaining script succeed with ``"<role> output"``.
    """

    def __init__(self) -> None:
        self.scripts: dict[AgentRole, list[ScriptedRun]] = defaultdict(list)
        self.runners: list[FakeRunner] = []
        self.prompts: dict[AgentRole, list[str]] = defaultdict(list)
        self.system_prompts: dict[AgentRole, list[str]] = defaultdict(list)
        self.timeline: list[tuple[str, AgentRole]] = []

    def script(self, role: AgentRole, *runs: ScriptedRun) -> None:
        self.scripts[role].extend(runs)

    def __call__(self, role: AgentRole, listener: RunnerListener) -> FakeRunner:
        queue = self.scripts.get(role)
        script = queue.pop(0) if queue else ScriptedRun(output=f"{role.value} output")
        runner = FakeRunner(role, listener, script, self)
        self.runners.append(runner)
        return runner

    def calls_for(self, role: AgentRole) -> int:
        return sum(1 for runner in self.runners if runner.role == role)


@pytest.fixture()
def runner_factory() -> FakeRunnerFactory:
    return FakeRunnerFactory()


@pytest.fixture()
async def engine(
    store: WorkflowStore,
    event_bus: EventBus,
    runner_factory: FakeRunnerFactory,
    tmp_path: Path,
) -> AsyncIterator[WorkflowEngine]:
    """WorkflowEngine wired to the fake runner with short delays."""
    workflow_engine = WorkflowEngine(
        store,
        event_bus,
        runner_factory=runner_factory,
        max_retries=2,
        retry_delays=[0.01, 0.02, 0.04],
        pause_poll_interval=0.05,
        flush_interval=0.01,
        prompts_dir=str(tmp_path / "no-prompts"),
    )
    yield workflow_engine
    await workflow_engine.shutdown()


# ---------------------------------------------------------------------------
# Event Collection Helpers
# ---------------------------------------------------------------------------


async def drain_until_closed(
    queue: asyncio.Queue[WorkflowEvent],
    timeout: float = 5.0,
) -> list[WorkflowEvent]:
    """Read events until the workflow's stream is closed."""
    events: list[WorkflowEvent] = []

    async def _drain() -> None:
        while True:
            event = await queue.get()
            if event.type == EventType.WORKFLOW_CLOSED:
                return
            events.append(event)

    await asyncio.wait_for(_drain(), timeout=timeout)
    return events


async def wait_for_event(
    queue: asyncio.Queue[WorkflowEvent],
    event_type: EventType,
    seen: list[WorkflowEvent] | None = None,
    timeout: float = 5.0,
) -> WorkflowEvent:
    """Read events until one of ``event_type`` arrives, recording the rest in ``seen``."""

    async def _wait() -> WorkflowEvent:
        while True:
            event = await queue.get()
            if seen is not None:
                seen.append(event)
            if event.type == event_type:
                return event

    return await asyncio.wait_for(_wait(), timeout=timeout)


def event_types(events: list[WorkflowEvent]) -> list[str]:
    return [event.type.value for event in events]
