"""In-memory scheduling state for a running workflow.

The persistence store holds the durable copy; this state only lives while
the workflow engine is driving the workflow.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field

from agents.roles import AGENT_ORDER, AgentRole, PipelineStage, planned_roles_for_stage
from models.schemas import TERMINAL_WORKFLOW_STATUSES, StepStatus, WorkflowStatus


@dataclass
class PipelineStepState:
    """Scheduling state of one role's step."""

    role: AgentRole
    status: StepStatus = StepStatus.PENDING
    retry_count: int = 0


@dataclass
class PipelineState:
    """Scheduling state of one workflow.

    Attributes:
        workflow_id: Workflow this state belongs to.
        status: Overall workflow status.
        current_stage_index: Index of the stage currently executing.
        execution_plan: Roles that run, in pipeline order.
        steps: One entry per role in ``AGENT_ORDER``.
    """

    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_stage_index: int = 0
    execution_plan: list[AgentRole] = field(default_factory=lambda: list(AGENT_ORDER))
    steps: list[PipelineStepState] = field(default_factory=list)

    def get_step(self, role: AgentRole) -> PipelineStepState:
        for step in self.steps:
            if step.role == role:
                return step
        raise KeyError(f"No step for role '{role}' in workflow {self.workflow_id}")

    def runnable_roles(self, stage: PipelineStage) -> list[AgentRole]:
        """Roles of ``stage`` that are planned and not skipped."""
        return [
            role
            for role in planned_roles_for_stage(stage, self.execution_plan)
            if self.get_step(role).status != StepStatus.SKIPPED
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self.status == WorkflowStatus.CANCELLED


def create_pipeline_state(
    workflow_id: str,
    execution_plan: Iterable[AgentRole],
) -> PipelineState:
    """Build the initial state: planned roles pending, the rest skipped."""
    planned = set(execution_plan)
    plan = [role for role in AGENT_ORDER if role in planned]
    steps = [
        PipelineStepState(
            role=role,
            status=StepStatus.PENDING if role in plan else StepStatus.SKIPPED,
        )
        for role in AGENT_ORDER
    ]
    return PipelineState(workflow_id=workflow_id, execution_plan=plan, steps=steps)
