"""Runs a single agent CLI invocation and normalizes its output stream.

The agent process prints newline-delimited JSON records (``stream-json``).
AgentRunner turns those records into a small set of typed events for one
listener callback and resolves with the agent's final text output.

Usage:
    >>> runner = AgentRunner(AgentRole.PM, listener=print)
    >>> output = await runner.run(prompt, system_prompt, "/srv/project")
"""

import asyncio
import codecs
import contextlib
import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Literal

import structlog

from agents.roles import AGENT_CONFIG, AgentRole, get_label, resolve_inactivity_timeout
from config import settings
from events.types import AgentActivity

logger = structlog.get_logger(__name__)

# Leading characters of a full assistant message compared against what was
# already streamed to decide whether the message is new text.
PREFIX_MATCH_LENGTH = 100

READ_CHUNK_SIZE = 64 * 1024


class AgentRunError(Exception):
    """An agent invocation did not produce a result. Always retryable."""


class AgentSpawnError(AgentRunError):
    """The agent process could not be started."""


class AgentExitError(AgentRunError):
    """The agent process exited with a non-zero code."""

    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class AgentTimeoutError(AgentRunError):
    """The agent went quiet for too long or exceeded its hard ceiling."""

    def __init__(self, message: str, kind: Literal["inactivity", "hard"]) -> None:
        super().__init__(message)
        self.kind = kind


class AgentKilledError(AgentRunError):
    """The agent process was killed on request."""


@dataclass(frozen=True)
class StreamChunk:
    text: str


@dataclass(frozen=True)
class ActivityChange:
    activity: AgentActivity


@dataclass(frozen=True)
class RunnerResult:
    output: str
    tokens_in: int | None = None
    tokens_out: int | None = None


@dataclass(frozen=True)
class RunnerError:
    message: str


RunnerEvent = StreamChunk | ActivityChange | RunnerResult | RunnerError
RunnerListener = Callable[[RunnerEvent], None]


def _as_token_count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)


class AgentRunner:
    """Drives one agent process from spawn to exit.

    A runner is single-use: create a new one for every attempt.

    Every parsed record or raw line resets the inactivity timer. A hard
    timer of twice the inactivity timeout starts with the process and is
    never reset. Whichever terminal outcome happens first wins; later ones
    are ignored.

    Attributes:
        role: Role this invocation runs as.
        label: Role label used in messages.
        inactivity_timeout: Seconds without output before the agent is stopped.
        hard_timeout: Absolute ceiling in seconds.
    """

    def __init__(
        self,
        role: AgentRole,
        listener: RunnerListener | None = None,
        *,
        command: Sequence[str] | None = None,
        inactivity_timeout: float | None = None,
        kill_grace: float | None = None,
        max_turns: int | None = None,
    ) -> None:
        self.role = role
        self.label = get_label(role)
        self._listener = listener
        self._command = list(command) if command is not None else [settings.agent_command]
        self.inactivity_timeout = (
            inactivity_timeout
            if inactivity_timeout is not None
            else resolve_inactivity_timeout(role)
        )
        self.hard_timeout = self.inactivity_timeout * 2
        self.kill_grace = (
            kill_grace if kill_grace is not None else settings.agent_kill_grace_seconds
        )
        self.max_turns = max_turns if max_turns is not None else settings.agent_max_turns

        self.tokens_in: int | None = None
        self.tokens_out: int | None = None
        self._output = ""
        self._result_emitted = False
        self._killed = False
        self._settled = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._future: asyncio.Future[str] | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._inactivity_handle: asyncio.TimerHandle | None = None
        self._hard_handle: asyncio.TimerHandle | None = None
        self._force_kill_handle: asyncio.TimerHandle | None = None
        self._io_tasks: list[asyncio.Task[None]] = []

    @property
    def output(self) -> str:
        """Text accumulated so far."""
        return self._output

    @property
    def killed(self) -> bool:
        return self._killed

    def build_args(self, prompt: str, system_prompt: str | None = None) -> list[str]:
        """Build the CLI arguments that follow the executable."""
        args = [
            "-p",
            prompt,
            "--verbose",
            "--output-format",
            "stream-json",
            "--max-turns",
            str(self.max_turns),
            "--dangerously-skip-permissions",
            "--include-partial-messages",
        ]
        if system_prompt:
            args.extend(["--system-prompt", system_prompt])
        tools = AGENT_CONFIG[self.role].tools
        if tools:
            args.extend(["--allowedTools", ",".join(tools)])
        return args

    async def run(self, prompt: str, system_prompt: str | None, project_path: str) -> str:
        """Run the agent to completion.

        Args:
            prompt: Task prompt for the agent.
            system_prompt: Optional system prompt.
            project_path: Working directory of the agent process.

        Returns:
            The agent's accumulated text output.

        Raises:
            AgentRunError: Any subclass, when the invocation fails.
        """
        if self._future is not None:
            raise RuntimeError("AgentRunner instances are single-use")

        self._loop = asyncio.get_running_loop()
        self._future = self._loop.create_future()
        argv = [*self._command, *self.build_args(prompt, system_prompt)]

        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=project_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            message = f"Failed to start agent {self.label}: {e}"
            logger.error("agent_spawn_failed", role=self.role.value, error=str(e))
            self._emit(RunnerError(message))
            self._settle(error=AgentSpawnError(message))
            return await self._future

        logger.info(
            "agent_spawned",
            role=self.role.value,
            pid=self._process.pid,
            cwd=project_path,
            inactivity_timeout=self.inactivity_timeout,
        )

        if self._killed:
            # kill() arrived while the process was being spawned
            self._terminate()
        else:
            self._hard_handle = self._loop.call_later(self.hard_timeout, self._on_hard_timeout)
            self._reset_inactivity_timer()

        stdout_task = asyncio.create_task(self._read_stdout(), name=f"agent_{self.role}_stdout")
        stderr_task = asyncio.create_task(self._drain_stderr(), name=f"agent_{self.role}_stderr")
        self._io_tasks = [
            stdout_task,
            stderr_task,
            asyncio.create_task(self._wait_for_exit(stdout_task), name=f"agent_{self.role}_exit"),
        ]

        try:
            return await self._future
        except asyncio.CancelledError:
            self.kill()
            raise

    def kill(self) -> None:
        """Stop the agent: SIGTERM now, SIGKILL after the grace period."""
        if self._killed:
            return
        self._killed = True
        self._cancel_timers()
        logger.info("agent_kill_requested", role=self.role.value)
        self._terminate()

    # -----------------------------------------------------------------
    # Process I/O
    # -----------------------------------------------------------------

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stream = self._process.stdout
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                break
            buffer += decoder.decode(data)
            *lines, buffer = buffer.split("\n")
            for line in lines:
                self._handle_line(line)
        buffer += decoder.decode(b"", final=True)
        if buffer:
            self._handle_line(buffer)

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stream = self._process.stderr
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                break
            text = data.decode("utf-8", errors="replace").strip()
            if text:
                logger.debug("agent_stderr", role=self.role.value, label=self.label, text=text)

    async def _wait_for_exit(self, stdout_task: asyncio.Task[None]) -> None:
        assert self._process is not None
        try:
            await stdout_task
        except Exception as e:
            logger.error("agent_stdout_read_failed", role=self.role.value, error=str(e))
        returncode = await self._process.wait()
        if self._force_kill_handle is not None:
            self._force_kill_handle.cancel()
            self._force_kill_handle = None
        self._on_exit(returncode)

    def _on_exit(self, returncode: int) -> None:
        logger.info(
            "agent_exited",
            role=self.role.value,
            returncode=returncode,
            killed=self._killed,
            output_length=len(self._output),
        )
        if self._settled:
            return
        if self._killed:
            self._settle(error=AgentKilledError("Agent was killed"))
            return
        if returncode == 0:
            if not self._result_emitted:
                self._result_emitted = True
                self._emit(RunnerResult(self._output, self.tokens_in, self.tokens_out))
            self._settle(result=self._output)
            return
        message = f"Agent {self.label} exited with code {returncode}"
        self._emit(RunnerError(message))
        self._settle(error=AgentExitError(message, returncode))

    # -----------------------------------------------------------------
    # Stream parsing
    # -----------------------------------------------------------------

    def _handle_line(self, line: str) -> None:
        if self._settled or not line.strip():
            return
        line = line.rstrip("\r")
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            record = None

        self._reset_inactivity_timer()
        if not isinstance(record, dict):
            self._append(line + "\n")
            return

        record_type = record.get("type")
        if record_type == "stream_event":
            self._handle_stream_event(record.get("event"))
        elif record_type == "assistant":
            self._handle_assistant(record.get("message"))
        elif record_type == "result":
            self._handle_result(record)

    def _handle_stream_event(self, event: Any) -> None:
        if not isinstance(event, dict):
            return
        event_type = event.get("type")

        if event_type == "content_block_start":
            block = event.get("content_block")
            if not isinstance(block, dict):
                return
            block_type = block.get("type")
            if block_type == "thinking":
                self._emit(ActivityChange(AgentActivity.thinking()))
            elif block_type == "tool_use":
                self._emit(ActivityChange(AgentActivity.tool_use(block.get("name") or "unknown")))
            elif block_type == "text":
                self._emit(ActivityChange(AgentActivity.text()))

        elif event_type == "content_block_delta":
            delta = event.get("delta")
            if isinstance(delta, dict) and delta.get("type") == "text_delta":
                text = delta.get("text")
                if isinstance(text, str) and text:
                    self._append(text)

        elif event_type == "content_block_stop":
            self._emit(ActivityChange(AgentActivity.idle()))

    def _handle_assistant(self, message: Any) -> None:
        if not isinstance(message, dict):
            return
        content = message.get("content")
        if not isinstance(content, list):
            return

        full_text = "".join(
            block["text"]
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        )
        if full_text and full_text[:PREFIX_MATCH_LENGTH] not in self._output:
            separator = "\n\n" if self._output else ""
            self._append(separator + full_text)
        elif self._output:
            self._append("\n\n")

    def _handle_result(self, record: dict[str, Any]) -> None:
        result = record.get("result")
        if not result or self._result_emitted:
            return
        self._result_emitted = True

        usage = record.get("usage")
        if isinstance(usage, dict):
            self.tokens_in = _as_token_count(usage.get("input_tokens"))
            self.tokens_out = _as_token_count(usage.get("output_tokens"))

        if not self._output:
            self._output = result if isinstance(result, str) else json.dumps(result)

        self._emit(RunnerResult(self._output, self.tokens_in, self.tokens_out))

    def _append(self, text: str) -> None:
        self._output += text
        self._emit(StreamChunk(text))

    def _emit(self, event: RunnerEvent) -> None:
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception as e:
            logger.error(
                "agent_listener_failed",
                role=self.role.value,
                event_type=type(event).__name__,
                error=str(e),
            )

    # -----------------------------------------------------------------
    # Timers and settlement
    # -----------------------------------------------------------------

    def _reset_inactivity_timer(self) -> None:
        if self._settled or self._killed or self._loop is None:
            return
        if self._inactivity_handle is not None:
            self._inactivity_handle.cancel()
        self._inactivity_handle = self._loop.call_later(
            self.inactivity_timeout, self._on_inactivity_timeout
        )

    def _on_inactivity_timeout(self) -> None:
        self._timeout(
            f"Agent {self.label} timed out after {self.inactivity_timeout:g}s of inactivity",
            "inactivity",
        )

    def _on_hard_timeout(self) -> None:
        self._timeout(f"Agent {self.label} hard timeout after {self.hard_timeout:g}s", "hard")

    def _timeout(self, message: str, kind: Literal["inactivity", "hard"]) -> None:
        if self._settled:
            return
        logger.warning("agent_timed_out", role=self.role.value, kind=kind)
        self.kill()
        self._emit(RunnerError(message))
        self._settle(error=AgentTimeoutError(message, kind))

    def _cancel_timers(self) -> None:
        if self._inactivity_handle is not None:
            self._inactivity_handle.cancel()
            self._inactivity_handle = None
        if self._hard_handle is not None:
            self._hard_handle.cancel()
            self._hard_handle = None

    def _settle(self, *, result: str | None = None, error: AgentRunError | None = None) -> None:
        if self._settled:
            return
        self._settled = True
        self._cancel_timers()
        if self._future is None or self._future.done():
            return
        if error is not None:
            self._future.set_exception(error)
        else:
            self._future.set_result(result if result is not None else self._output)

    def _terminate(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        if self._loop is not None and self._force_kill_handle is None:
            self._force_kill_handle = self._loop.call_later(self.kill_grace, self._force_kill)

    def _force_kill(self) -> None:
        self._force_kill_handle = None
        process = self._process
        if process is not None and process.returncode is None:
            logger.warning("agent_force_killed", role=self.role.value, pid=process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
