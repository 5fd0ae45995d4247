"""Agent roles, their static configuration, and the pipeline stage topology.

The role set and stage layout are fixed configuration. Stages run strictly
in index order and every role inside a stage runs concurrently.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from config import settings


class AgentRole(StrEnum):
    """Roles taking part in a workflow, in pipeline order."""

    PM = "pm"
    RD = "rd"
    UI = "ui"
    TEST = "test"
    SEC = "sec"


AGENT_ORDER: tuple[AgentRole, ...] = (
    AgentRole.PM,
    AgentRole.RD,
    AgentRole.UI,
    AgentRole.TEST,
    AgentRole.SEC,
)


@dataclass(frozen=True)
class AgentConfig:
    """Static configuration for a single role.

    Attributes:
        label: Short uppercase label used in prompts and error messages.
        color: Display color for dashboards.
        timeout_seconds: Default inactivity timeout for one invocation.
        tools: Tools the agent process is allowed to use.
    """

    label: str
    color: str
    timeout_seconds: float
    tools: tuple[str, ...]


AGENT_CONFIG: dict[AgentRole, AgentConfig] = {
    AgentRole.PM: AgentConfig("PM", "#A855F7", 180.0, ("Read",)),
    AgentRole.RD: AgentConfig("RD", "#3B82F6", 600.0, ("Read", "Edit", "Bash")),
    AgentRole.UI: AgentConfig("UI", "#22C55E", 600.0, ("Read", "Edit", "Bash")),
    AgentRole.TEST: AgentConfig("TEST", "#F97316", 600.0, ("Read", "Edit", "Bash")),
    AgentRole.SEC: AgentConfig("SEC", "#EF4444", 300.0, ("Read", "Bash")),
}


@dataclass(frozen=True)
class PipelineStage:
    """A set of roles that execute concurrently."""

    index: int
    roles: tuple[AgentRole, ...]


PIPELINE_STAGES: tuple[PipelineStage, ...] = (
    PipelineStage(0, (AgentRole.PM,)),
    PipelineStage(1, (AgentRole.RD, AgentRole.UI)),
    PipelineStage(2, (AgentRole.TEST, AgentRole.SEC)),
)


def get_stage_for_role(role: AgentRole) -> PipelineStage:
    """Return the stage a role belongs to.

    Raises:
        KeyError: If the role is not part of any stage.
    """
    for stage in PIPELINE_STAGES:
        if role in stage.roles:
            return stage
    raise KeyError(f"Role '{role}' is not assigned to a pipeline stage")


def get_label(role: AgentRole) -> str:
    return AGENT_CONFIG[role].label


def resolve_inactivity_timeout(role: AgentRole) -> float:
    """Return the inactivity timeout for a role, honouring overrides."""
    override = settings.agent_timeout_overrides.get(role.value)
    if override is not None and override > 0:
        return float(override)
    return AGENT_CONFIG[role].timeout_seconds


def normalize_execution_plan(plan: Iterable[str] | None) -> list[AgentRole]:
    """Normalize a requested execution plan into an ordered role list.

    Unknown entries are dropped, duplicates removed and the result ordered
    by ``AGENT_ORDER``. An empty result falls back to every role.

    Args:
        plan: Requested roles (role values or AgentRole members), or None.

    Returns:
        The roles that will actually run, in pipeline order.
    """
    if plan is None:
        return list(AGENT_ORDER)

    requested: set[AgentRole] = set()
    for entry in plan:
        if not isinstance(entry, str):
            continue
        try:
            requested.add(AgentRole(entry))
        except ValueError:
            continue

    normalized = [role for role in AGENT_ORDER if role in requested]
    return normalized or list(AGENT_ORDER)


def planned_roles_for_stage(
    stage: PipelineStage,
    execution_plan: Iterable[AgentRole],
) -> list[AgentRole]:
    """Return the roles of a stage that are part of the execution plan."""
    planned = set(execution_plan)
    return [role for role in stage.roles if role in planned]


def active_stages(execution_plan: Iterable[AgentRole] | None = None) -> list[PipelineStage]:
    """Return the stages that have at least one planned role.

    Each returned stage only lists its planned roles but keeps its original
    index. A None plan means every role runs.
    """
    plan = list(AGENT_ORDER) if execution_plan is None else list(execution_plan)
    stages: list[PipelineStage] = []
    for stage in PIPELINE_STAGES:
        roles = planned_roles_for_stage(stage, plan)
        if roles:
            stages.append(PipelineStage(stage.index, tuple(roles)))
    return stages
