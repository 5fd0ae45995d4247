"""Tests for agents/context.py and agents/prompts.py -- prompt construction."""

from pathlib import Path

from agents.context import OUTPUT_LANGUAGE_RULE, AgentContext, build_agent_prompt
from agents.prompts import (
    DEFAULT_SYSTEM_PROMPTS,
    build_pipeline_position,
    compose_prompt_sections,
    get_system_prompt,
    load_prompt_template,
)
from agents.roles import AgentRole

PROJECT = "/srv/shop"
REQUEST = "Add a dark mode toggle"

# =========================================================================
# Task prompt
# =========================================================================


class TestBuildAgentPrompt:
    """Task prompt layout."""

    def test_first_stage_prompt(self) -> None:
        prompt = build_agent_prompt(AgentRole.PM, REQUEST, [], PROJECT)
        assert prompt == "\n\n".join(
            [
                f"# Project Path\n{PROJECT}\n",
                f"# User Request\n{REQUEST}\n",
                "# Your Role: PM Agent",
                "After you complete your work, the following agents will run: "
                "RD, UI → TEST, SEC",
                f"# Output Language\n{OUTPUT_LANGUAGE_RULE}",
            ]
        )

    def test_parallel_peers_listed(self) -> None:
        prompt = build_agent_prompt(AgentRole.UI, REQUEST, [], PROJECT)
        assert "# Your Role: UI Agent\nRunning IN PARALLEL with: RD" in prompt
        assert "the following agents will run: TEST, SEC" in prompt

    def test_final_stage(self) -> None:
        prompt = build_agent_prompt(AgentRole.SEC, REQUEST, [], PROJECT)
        assert "Running IN PARALLEL with: TEST" in prompt
        assert "You are the final agent in the pipeline." in prompt

    def test_previous_outputs_grouped_in_role_order(self) -> None:
        previous = [
            AgentContext(AgentRole.UI, "ui notes"),
            AgentContext(AgentRole.PM, "spec"),
            AgentContext(AgentRole.RD, "api design"),
        ]
        prompt = build_agent_prompt(AgentRole.TEST, REQUEST, previous, PROJECT)
        section = prompt.split("# Previous Agent Outputs\n")[1]
        assert section.index("## PM Agent Output\nspec\n") < section.index("## RD Agent Output")
        assert section.index("## RD Agent Output\napi design\n") < section.index(
            "## UI Agent Output\nui notes\n"
        )

    def test_user_request_is_verbatim(self) -> None:
        request = "Handle `code`, {braces} and\nnew lines"
        prompt = build_agent_prompt(AgentRole.PM, request, [], PROJECT)
        assert f"# User Request\n{request}\n" in prompt

    def test_deterministic(self) -> None:
        previous = [AgentContext(AgentRole.PM, "spec")]
        first = build_agent_prompt(AgentRole.RD, REQUEST, previous, PROJECT)
        second = build_agent_prompt(AgentRole.RD, REQUEST, previous, PROJECT)
        assert first == second

    def test_execution_plan_limits_peers_and_downstream(self) -> None:
        plan = [AgentRole.PM, AgentRole.RD, AgentRole.SEC]
        prompt = build_agent_prompt(AgentRole.RD, REQUEST, [], PROJECT, plan)
        assert "Running IN PARALLEL" not in prompt
        assert "the following agents will run: SEC" in prompt


# =========================================================================
# System prompt
# =========================================================================


class TestSystemPrompt:
    """Role template plus operational context."""

    def test_contains_template_and_context(self, tmp_path: Path) -> None:
        prompt = get_system_prompt(AgentRole.RD, PROJECT, prompts_dir=tmp_path)
        assert prompt.startswith(DEFAULT_SYSTEM_PROMPTS[AgentRole.RD])
        assert "# Operational Context" in prompt
        assert f"## Project Path\n{PROJECT}" in prompt
        assert "You have access to: Read, Edit, Bash" in prompt
        assert "You have 600 seconds of inactivity" in prompt
        assert f"IMPORTANT: {OUTPUT_LANGUAGE_RULE}" in prompt

    def test_template_override_from_directory(self, tmp_path: Path) -> None:
        (tmp_path / "pm-system.md").write_text("# Custom PM\nBe brief.", encoding="utf-8")
        assert load_prompt_template(AgentRole.PM, tmp_path) == "# Custom PM\nBe brief."
        prompt = get_system_prompt(AgentRole.PM, PROJECT, prompts_dir=tmp_path)
        assert prompt.startswith("# Custom PM\nBe brief.")

    def test_missing_template_falls_back(self, tmp_path: Path) -> None:
        assert load_prompt_template(AgentRole.SEC, tmp_path) == DEFAULT_SYSTEM_PROMPTS[AgentRole.SEC]

    def test_pipeline_position_first_stage(self) -> None:
        position = build_pipeline_position(AgentRole.PM)
        assert position.startswith("You are in Stage 1 of 3 (first stage).")
        assert "Agents that will run after this stage: RD, UI, TEST, SEC" in position

    def test_pipeline_position_middle_stage(self) -> None:
        position = build_pipeline_position(AgentRole.RD)
        assert position.startswith("You are in Stage 2 of 3.")
        assert "Running IN PARALLEL with: UI" in position
        assert "Agents that ran before you (prior stages): PM" in position

    def test_pipeline_position_respects_plan(self) -> None:
        position = build_pipeline_position(AgentRole.TEST, [AgentRole.PM, AgentRole.TEST])
        assert position.startswith("You are in Stage 2 of 2.")
        assert "You are in the FINAL stage of the pipeline." in position
        assert "PARALLEL" not in position

    def test_compose_prompt_sections_skips_blank(self) -> None:
        assert compose_prompt_sections(" a ", "", "  ", "b") == "a\n\nb"
