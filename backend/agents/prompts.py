"""System prompts for the pipeline agent roles.

This module contains the per-role system prompt templates and composes
them with operational context (pipeline position, tool permissions,
expected output structure) into the prompt passed to each agent process.

Templates can be overridden per role by placing ``<role>-system.md`` in
the configured prompts directory; the built-in defaults below are used
otherwise.
"""

from collections.abc import Sequence
from pathlib import Path

import structlog

from agents.context import OUTPUT_LANGUAGE_RULE
from agents.roles import (
    AGENT_CONFIG,
    AgentRole,
    active_stages,
    get_label,
    get_stage_for_role,
    resolve_inactivity_timeout,
)
from config import settings

logger = structlog.get_logger(__name__)

PM_SYSTEM_PROMPT = """\
# PM Agent

You are the PM (Product Manager) Agent. Your job is to analyze requirements \
and produce a structured specification.

## Access: Read-only

## Output the following sections:
- Summary
- User Stories (with acceptance criteria for each)
- Acceptance Criteria (consolidated)
- Technical Requirements
- Out of Scope"""

RD_SYSTEM_PROMPT = """\
# RD Agent

You are the RD (Backend Development) Agent. Your job is to design the backend \
architecture and implement server-side code.

## Access: Full (Read, Edit, Bash)

## Output the following sections, then implement:
- Architecture Overview
- API Endpoints
- Database Schema
- Implementation Plan

Then create/modify the actual code files."""

UI_SYSTEM_PROMPT = """\
# UI Agent

You are the UI (Frontend) Agent. Your job is to design and implement pure \
frontend components, pages, and styling.

## Access: Frontend files ONLY (Read all, Edit/Create frontend only, Bash)

## Scope
Only modify components, pages, layouts, stylesheets, hooks, UI stores, and \
static assets. Do NOT modify backend code or API routes. If there is no \
frontend work, state "No frontend changes required." and finish.

## Output the following sections, then implement (if applicable):
- Component Structure
- UI/UX Plan"""

TEST_SYSTEM_PROMPT = """\
# TEST Agent

You are the TEST (Quality Assurance) Agent. Your job is to write and execute tests.

## Access: Full (Read, Edit, Bash)

## Output the following sections:
- Test Plan
- Test Files Created
- Test Results
- Coverage Notes
- Bugs Found

Write test files and run them."""

SEC_SYSTEM_PROMPT = """\
# SEC Agent

You are the SEC (Security) Agent. Your job is to perform a security assessment.

## Access: Read + Bash

## Output the following sections:
- Security Assessment
- Vulnerabilities Found
- OWASP Top 10 Assessment
- Dependency Audit
- Recommendations
- Risk Rating

You must NOT modify any source code."""

DEFAULT_SYSTEM_PROMPTS: dict[AgentRole, str] = {
    AgentRole.PM: PM_SYSTEM_PROMPT,
    AgentRole.RD: RD_SYSTEM_PROMPT,
    AgentRole.UI: UI_SYSTEM_PROMPT,
    AgentRole.TEST: TEST_SYSTEM_PROMPT,
    AgentRole.SEC: SEC_SYSTEM_PROMPT,
}

TOOL_DESCRIPTIONS: dict[AgentRole, str] = {
    AgentRole.PM: """\
You have READ-ONLY access to the project.
You may read any file to understand the codebase.
You must NOT create, modify, or delete any files.
You must NOT execute any shell commands.""",
    AgentRole.RD: """\
You have FULL access to the project.
You may read, create, and modify files.
You may execute bash commands to install dependencies, compile, and validate your work.
Do NOT implement frontend code (that is the UI agent's job).
Do NOT write tests (that is the TEST agent's job).""",
    AgentRole.UI: """\
You may read any file, but create or modify frontend/UI files ONLY.
You may execute bash commands to install frontend dependencies and validate your work.
You must NOT create or modify API routes, server modules, database schemas, \
migrations, queries, or backend configuration.
If the task has no frontend work, document your design and state \
"No frontend changes required." Do not force unnecessary modifications.""",
    AgentRole.TEST: """\
You have FULL access to the project.
You may read, create, and modify files.
You may execute bash commands to run tests and install test dependencies.
Focus on testing new/modified code from the RD and UI agents.""",
    AgentRole.SEC: """\
You have READ + BASH access.
You may read all files and execute bash commands for security analysis.
You must NOT modify any source code.
You may run security scanning tools (npm audit, pip-audit, etc.).""",
}

OUTPUT_STRUCTURE: dict[AgentRole, str] = {
    AgentRole.PM: """\
Structure your output with these exact markdown sections:

## Summary
A concise 2-3 sentence overview of the request.

## User Stories
Numbered user stories in the format: As a [role], I want [feature] so that [benefit].
Each with specific acceptance criteria.

## Acceptance Criteria
A consolidated, numbered list of all criteria that define "done".

## Technical Requirements
Tech stack, dependencies, constraints, and file structure expectations.

## Out of Scope
Items explicitly not included in this work.""",
    AgentRole.RD: """\
Structure your output in two parts:

### Part 1: Design Documentation

## Architecture Overview
Architectural approach, patterns, and how it fits the existing codebase.

## API Endpoints
Table with Method, Path, Description, Request Body, Response.

## Database Schema
Table definitions with columns, types, and indexes.

## Implementation Plan
Ordered list of files to create/modify with rationale.

### Part 2: Implementation
After documenting the design, create and modify the actual code files.""",
    AgentRole.UI: """\
Structure your output in two parts:

### Part 1: Design

## Component Structure
Component hierarchy showing parent-child relationships.

## UI/UX Plan
Layout, state management, data flow, interactions, and styling approach.

### Part 2: Implementation
After documenting the design, create and modify the actual frontend files.""",
    AgentRole.TEST: """\
Structure your output with these sections:

## Test Plan
Overview of testing strategy: unit tests, integration tests, edge cases.

## Test Files Created
List of test files written and what each tests.

## Test Results
Execution summary: total, passed, failed, skipped.

## Coverage Notes
Areas well-covered and areas with gaps.

## Bugs Found
Any bugs discovered during testing with description, location, and severity.""",
    AgentRole.SEC: """\
Structure your output with these sections:

## Security Assessment
Overview of what was reviewed and the overall security posture.

## Vulnerabilities Found
Each vulnerability with: Severity, OWASP Category, Location, Description, \
Impact, Recommendation.

## OWASP Top 10 Assessment
Table assessing each OWASP Top 10 (2021) category: PASS/WARN/FAIL with notes.

## Dependency Audit
Results of npm audit or equivalent.

## Recommendations
Prioritized list of security improvements.

## Risk Rating
Overall risk rating (LOW/MEDIUM/HIGH/CRITICAL) with justification.""",
}


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic system prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def load_prompt_template(role: AgentRole, prompts_dir: str | Path | None = None) -> str:
    """Load ``<role>-system.md`` from the prompts directory.

    Falls back to the built-in default when no directory is configured or
    the file cannot be read.
    """
    directory = prompts_dir if prompts_dir is not None else settings.prompts_dir
    if directory:
        path = Path(directory) / f"{role.value}-system.md"
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            logger.debug("prompt_template_fallback", role=role.value, path=str(path), error=str(e))
    return DEFAULT_SYSTEM_PROMPTS[role]


def build_pipeline_position(
    role: AgentRole,
    execution_plan: Sequence[AgentRole] | None = None,
) -> str:
    """Describe where ``role`` sits among the stages that will run."""
    stages = active_stages(execution_plan)
    own_index = get_stage_for_role(role).index
    positions = [stage.index for stage in stages]
    if own_index not in positions:
        positions = sorted({*positions, own_index})
    ordinal = positions.index(own_index) + 1

    if ordinal == 1:
        lines = [
            f"You are in Stage 1 of {len(positions)} (first stage). There is no prior context."
        ]
    else:
        lines = [f"You are in Stage {ordinal} of {len(positions)}."]

    peers = [
        get_label(peer)
        for stage in stages
        if stage.index == own_index
        for peer in stage.roles
        if peer != role
    ]
    upstream = [get_label(r) for stage in stages if stage.index < own_index for r in stage.roles]
    downstream = [get_label(r) for stage in stages if stage.index > own_index for r in stage.roles]

    if peers:
        lines.append(f"Running IN PARALLEL with: {', '.join(peers)}")
    if upstream:
        lines.append(f"Agents that ran before you (prior stages): {', '.join(upstream)}")
    if downstream:
        lines.append(f"Agents that will run after this stage: {', '.join(downstream)}")
    else:
        lines.append("You are in the FINAL stage of the pipeline.")
    return "\n".join(lines)


def get_system_prompt(
    role: AgentRole,
    project_path: str,
    execution_plan: Sequence[AgentRole] | None = None,
    prompts_dir: str | Path | None = None,
) -> str:
    """Get the full system prompt for an agent role.

    Args:
        role: The agent role.
        project_path: Directory the agent works in.
        execution_plan: Roles that run in this workflow; None means all.
        prompts_dir: Template directory overriding the configured one.

    Returns:
        The role template followed by an operational context block.
    """
    timeout_seconds = resolve_inactivity_timeout(role)
    operational_context = f"""\
---

# Operational Context

## Project Path
{project_path}

## Pipeline Position
{build_pipeline_position(role, execution_plan)}

## Tool Permissions
{TOOL_DESCRIPTIONS[role]}

## Available Tools
You have access to: {", ".join(AGENT_CONFIG[role].tools)}

## Timeout
You have {timeout_seconds:g} seconds of inactivity before you are stopped.

## Expected Output Structure
{OUTPUT_STRUCTURE[role]}

## Output Language
IMPORTANT: {OUTPUT_LANGUAGE_RULE}"""

    return compose_prompt_sections(load_prompt_template(role, prompts_dir), operational_context)
