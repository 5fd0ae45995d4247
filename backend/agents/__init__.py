"""Agent roles, prompts, and the agent process runner.

This module exports the key components needed for agent execution:
- Role configuration and the fixed pipeline stage topology
- Task prompt and system prompt construction
- AgentRunner, which drives one agent CLI invocation
"""

from agents.context import AgentContext, build_agent_prompt
from agents.prompts import get_system_prompt, load_prompt_template
from agents.roles import (
    AGENT_CONFIG,
    AGENT_ORDER,
    PIPELINE_STAGES,
    AgentConfig,
    AgentRole,
    PipelineStage,
    active_stages,
    get_stage_for_role,
    normalize_execution_plan,
)
from agents.runner import (
    ActivityChange,
    AgentExitError,
    AgentKilledError,
    AgentRunError,
    AgentRunner,
    AgentSpawnError,
    AgentTimeoutError,
    RunnerError,
    RunnerEvent,
    RunnerResult,
    StreamChunk,
)

__all__ = [
    # Roles
    "AGENT_CONFIG",
    "AGENT_ORDER",
    "PIPELINE_STAGES",
    "AgentConfig",
    "AgentRole",
    "PipelineStage",
    "active_stages",
    "get_stage_for_role",
    "normalize_execution_plan",
    # Prompts
    "AgentContext",
    "build_agent_prompt",
    "get_system_prompt",
    "load_prompt_template",
    # Runner
    "ActivityChange",
    "AgentExitError",
    "AgentKilledError",
    "AgentRunError",
    "AgentRunner",
    "AgentSpawnError",
    "AgentTimeoutError",
    "RunnerError",
    "RunnerEvent",
    "RunnerResult",
    "StreamChunk",
]
