"""Research plan generation with a deterministic fallback."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from deepresearch import llm_client
from deepresearch.models.research import (
    Effort,
    PlannerOutput,
    ResearchBudget,
    ResearchPlan,
    StopCriteria,
    get_budget,
)
from deepresearch.services.prompt_store import render_prompt

MAX_SUB_QUESTIONS = 8
MIN_SUB_QUESTIONS = 3
QUERY_PREFIX_CHARS = 120

PLAN_CONTRACT = {
    "objective": "string",
    "sub_questions": ["string"],
    "assumptions": ["string"],
    "output_format": "string",
    "effort_rationale": "string",
    "stop_criteria": {
        "confidence_target": "number between 0 and 1",
        "diminishing_returns_delta": "number between 0 and 1",
        "diminishing_returns_window": "integer between 1 and 5",
    },
}


@dataclass
class PlanGenerationResult:
    plan: ResearchPlan
    used_fallback: bool
    failure_reason: Optional[str] = None

    @property
    def status(self) -> str:
        return "fallback" if self.used_fallback else "generated"


def fallback_sub_questions(query: str) -> list[str]:
    trimmed = query.strip()
    prefix = f"{trimmed[:QUERY_PREFIX_CHARS]}..." if len(trimmed) > QUERY_PREFIX_CHARS else trimmed
    return [
        f"What is the current state of {prefix}?",
        f"What are the most credible recent sources about {prefix}?",
        f"What evidence supports or contradicts key claims about {prefix}?",
        f"What open questions still remain for {prefix}?",
    ]


def fallback_plan(query: str, effort: Effort, budget: ResearchBudget) -> ResearchPlan:
    return ResearchPlan(
        objective=f"Research {query.strip()} and produce evidence-backed conclusions.",
        sub_questions=fallback_sub_questions(query),
        assumptions=[
            "Publicly available web sources are representative of current information.",
            "Recent reporting may be incomplete for rapidly changing topics.",
        ],
        output_format="Executive summary, findings with citations, unknowns, suggested actions, and source list.",
        effort_rationale=(
            f"Using {effort.value} effort with budget {budget.max_steps} steps / "
            f"{budget.max_runtime_seconds}s."
        ),
        stop_criteria=StopCriteria(),
    )


def normalize_plan(plan: ResearchPlan, query: str) -> ResearchPlan:
    """Trim and dedupe the plan; guarantee 3..8 sub-questions and a non-empty objective."""
    unique: dict[str, str] = {}
    for question in plan.sub_questions:
        cleaned = (question or "").strip()
        if cleaned:
            unique.setdefault(cleaned.casefold(), cleaned)
    sub_questions = list(unique.values())[:MAX_SUB_QUESTIONS]
    if len(sub_questions) < MIN_SUB_QUESTIONS:
        sub_questions = fallback_sub_questions(query)
    return plan.model_copy(
        update={
            "objective": plan.objective.strip() or f"Research {query}",
            "sub_questions": sub_questions,
            "assumptions": [a.strip() for a in plan.assumptions if a and a.strip()],
        }
    )


def build_plan_prompt(query: str, effort: Effort, recency_days: Optional[int], budget: ResearchBudget) -> str:
    return render_prompt(
        "planner.plan",
        query=query,
        effort=effort.value,
        recency=f"{recency_days} days" if recency_days else "none",
        max_steps=budget.max_steps,
        max_runtime_seconds=budget.max_runtime_seconds,
        min_sources=budget.min_sources,
        max_requeries=budget.max_requeries_per_sub_question,
        contract=json.dumps(PLAN_CONTRACT, indent=2),
    )


async def generate_plan(
    query: str,
    effort: Effort,
    recency_days: Optional[int] = None,
) -> PlanGenerationResult:
    """Ask the planner model for a plan; any failure yields the template plan."""
    budget = get_budget(effort)
    if not llm_client.is_configured():
        return PlanGenerationResult(
            plan=normalize_plan(fallback_plan(query, effort, budget), query),
            used_fallback=True,
            failure_reason="No planner model/API key is configured on the server.",
        )

    try:
        output = await llm_client.generate_structured(
            PlannerOutput,
            build_plan_prompt(query, effort, recency_days, budget),
            caller="planner",
            model=llm_client.get_model("planner"),
        )
    except Exception as exc:
        logger.warning(f"Plan generation failed, falling back: {exc}")
        return PlanGenerationResult(
            plan=normalize_plan(fallback_plan(query, effort, budget), query),
            used_fallback=True,
            failure_reason=str(exc) or exc.__class__.__name__,
        )

    plan = ResearchPlan.model_validate(output.model_dump())
    return PlanGenerationResult(plan=normalize_plan(plan, query), used_fallback=False)
