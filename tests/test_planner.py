from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from deepresearch.agents import planner
from deepresearch.llm_client import StructuredOutputError
from deepresearch.models.research import Effort, PlannerOutput, ResearchPlan, get_budget


def test_fallback_plan_has_bounded_sub_questions():
    plan = planner.fallback_plan("heat pumps in Norway", Effort.QUICK, get_budget(Effort.QUICK))
    assert 3 <= len(plan.sub_questions) <= 8
    assert plan.objective.startswith("Research heat pumps in Norway")
    assert "quick effort" in plan.effort_rationale


def test_fallback_sub_questions_truncate_long_queries():
    query = "x" * 300
    questions = planner.fallback_sub_questions(query)
    assert all(f"{'x' * 120}..." in q for q in questions)


def test_normalize_plan_caps_and_trims():
    plan = ResearchPlan(
        objective="  Objective  ",
        sub_questions=[f" Q{i} " for i in range(12)] + ["   "],
        assumptions=[" a ", ""],
        output_format="report",
    )
    normalized = planner.normalize_plan(plan, "query")
    assert normalized.objective == "Objective"
    assert normalized.sub_questions == [f"Q{i}" for i in range(8)]
    assert normalized.assumptions == ["a"]


def test_normalize_plan_drops_duplicate_sub_questions():
    plan = ResearchPlan(
        objective="Objective",
        sub_questions=["Cost of install", " cost of INSTALL ", "Efficiency in winter", "Rebates", "Rebates"],
        output_format="report",
    )
    normalized = planner.normalize_plan(plan, "heat pumps")
    assert normalized.sub_questions == ["Cost of install", "Efficiency in winter", "Rebates"]


def test_normalize_plan_replaces_too_few_sub_questions():
    plan = ResearchPlan(objective="", sub_questions=["Only one"], output_format="report")
    normalized = planner.normalize_plan(plan, "solar panels")
    assert normalized.objective == "Research solar panels"
    assert normalized.sub_questions == planner.fallback_sub_questions("solar panels")


@pytest.mark.asyncio
async def test_generate_plan_without_key_uses_fallback():
    result = await planner.generate_plan("solar panels", Effort.STANDARD)
    assert result.used_fallback is True
    assert result.status == "fallback"
    assert result.failure_reason == "No planner model/API key is configured on the server."
    assert len(result.plan.sub_questions) == 4


@pytest.mark.asyncio
async def test_generate_plan_uses_model_output():
    output = PlannerOutput(
        objective="Assess residential solar payback",
        sub_questions=["What do panels cost?", "What are typical yields?", "How do incentives work?"],
        output_format="Brief",
    )
    with patch("deepresearch.agents.planner.llm_client.is_configured", return_value=True), patch(
        "deepresearch.agents.planner.llm_client.generate_structured", new=AsyncMock(return_value=output)
    ) as generate:
        result = await planner.generate_plan("solar payback", Effort.DEEP, recency_days=30)

    assert result.used_fallback is False
    assert result.plan.sub_questions == output.sub_questions
    prompt = generate.await_args.args[1]
    assert "solar payback" in prompt
    assert "30 days" in prompt


@pytest.mark.asyncio
async def test_generate_plan_model_failure_falls_back():
    with patch("deepresearch.agents.planner.llm_client.is_configured", return_value=True), patch(
        "deepresearch.agents.planner.llm_client.generate_structured",
        new=AsyncMock(side_effect=StructuredOutputError("PlannerOutput validation failed")),
    ):
        result = await planner.generate_plan("solar payback", Effort.QUICK)

    assert result.used_fallback is True
    assert result.failure_reason == "PlannerOutput validation failed"
    assert 3 <= len(result.plan.sub_questions) <= 8
