"""Builds the task prompt handed to each agent.

The prompt carries the project location, the user's request, everything
earlier stages produced, and where the agent sits in the pipeline.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from agents.roles import AGENT_ORDER, AgentRole, active_stages, get_label, get_stage_for_role

OUTPUT_LANGUAGE_RULE = (
    "Respond in the same language as the text under \"# User Request\". "
    "The surrounding template is always in English; ignore its language. "
    "Keep technical terms and code identifiers in their original form."
)


@dataclass(frozen=True)
class AgentContext:
    """Output of an agent that already finished."""

    role: AgentRole
    output: str


def _group_by_role(previous_outputs: Sequence[AgentContext]) -> list[AgentContext]:
    order = {role: index for index, role in enumerate(AGENT_ORDER)}
    # sorted() is stable, so several outputs of one role keep their order
    return sorted(previous_outputs, key=lambda ctx: order[ctx.role])


def build_agent_prompt(
    role: AgentRole,
    user_prompt: str,
    previous_outputs: Sequence[AgentContext],
    project_path: str,
    execution_plan: Sequence[AgentRole] | None = None,
) -> str:
    """Compose the task prompt for one agent invocation.

    Deterministic: the same inputs always produce the same text.

    Args:
        role: Role the prompt is for.
        user_prompt: The user's task text, included verbatim.
        previous_outputs: Outputs of agents in earlier stages.
        project_path: Working directory of the agent.
        execution_plan: Roles that run in this workflow; None means all.

    Returns:
        The prompt, sections separated by blank lines.
    """
    parts: list[str] = [
        f"# Project Path\n{project_path}\n",
        f"# User Request\n{user_prompt}\n",
    ]

    if previous_outputs:
        parts.append("# Previous Agent Outputs\n")
        for ctx in _group_by_role(previous_outputs):
            parts.append(f"## {get_label(ctx.role)} Agent Output\n{ctx.output}\n")

    stages = active_stages(execution_plan)
    own_index = get_stage_for_role(role).index

    peers = [
        get_label(peer)
        for stage in stages
        if stage.index == own_index
        for peer in stage.roles
        if peer != role
    ]
    role_line = f"# Your Role: {get_label(role)} Agent"
    if peers:
        role_line += f"\nRunning IN PARALLEL with: {', '.join(peers)}"
    parts.append(role_line)

    downstream = [
        ", ".join(get_label(r) for r in stage.roles) for stage in stages if stage.index > own_index
    ]
    if downstream:
        parts.append(
            "After you complete your work, the following agents will run: "
            + " → ".join(downstream)
        )
    else:
        parts.append("You are the final agent in the pipeline.")

    parts.append(f"# Output Language\n{OUTPUT_LANGUAGE_RULE}")

    return "\n\n".join(parts)
