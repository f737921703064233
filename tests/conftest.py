from __future__ import annotations

import pytest

from deepresearch.models.research import (
    Effort,
    FindingEvidence,
    FindingStatus,
    ResearchFinding,
    ResearchPlan,
    ResearchRun,
    ResearchSource,
    RunStatus,
    SearchResult,
)
from deepresearch.services.store import InMemoryResearchStore, new_id

HOUSEHOLD_ID = "household-1"
USER_ID = "user-1"


@pytest.fixture
def store() -> InMemoryResearchStore:
    return InMemoryResearchStore()


@pytest.fixture
def conversation_id(store: InMemoryResearchStore) -> str:
    return store.add_conversation(HOUSEHOLD_ID, title="Test conversation")


@pytest.fixture(autouse=True)
def no_llm(monkeypatch):
    """Model features take their fallbacks unless a test opts in."""
    from deepresearch import llm_client

    monkeypatch.setattr(llm_client.settings, "openrouter_api_key", "")


def make_plan(query: str = "How do heat pumps perform in cold climates?", count: int = 3) -> ResearchPlan:
    return ResearchPlan(
        objective=query,
        sub_questions=[f"Sub-question {i} about heat pump performance" for i in range(1, count + 1)],
        assumptions=[],
        output_format="Summary with citations",
    )


def make_run(
    conversation_id: str,
    *,
    query: str = "How do heat pumps perform in cold climates?",
    effort: Effort = Effort.QUICK,
    status: RunStatus = RunStatus.PLANNING,
    plan: ResearchPlan | None = None,
) -> ResearchRun:
    return ResearchRun(
        id=new_id(),
        conversation_id=conversation_id,
        household_id=HOUSEHOLD_ID,
        created_by_id=USER_ID,
        query=query,
        effort=effort,
        plan=plan or make_plan(query),
        status=status,
    )


def make_result(url: str, title: str = "Result", snippet: str | None = None, **kwargs) -> SearchResult:
    from deepresearch.tools.web_utils import safe_domain

    kwargs.setdefault("domain", safe_domain(url))
    return SearchResult(url=url, title=title, snippet=snippet, **kwargs)


def make_source(run_id: str, url: str, title: str = "Source") -> ResearchSource:
    from deepresearch.tools.web_utils import safe_domain

    return ResearchSource(id=new_id(), run_id=run_id, url=url, title=title, domain=safe_domain(url))


def make_finding(
    run_id: str,
    *,
    sub_question: str = "Sub-question 1 about heat pump performance",
    claim: str = "Heat pumps keep working below freezing.",
    confidence: float = 0.8,
    status: FindingStatus = FindingStatus.SUFFICIENT,
    source_ids: list[str] | None = None,
    notes: str | None = None,
) -> ResearchFinding:
    source_ids = source_ids if source_ids is not None else ["src-1"]
    return ResearchFinding(
        id=new_id(),
        run_id=run_id,
        sub_question=sub_question,
        claim=claim,
        confidence=confidence,
        status=status,
        supporting_source_ids=source_ids,
        evidence=[
            FindingEvidence(
                source_id=sid,
                excerpt="Cold climate heat pumps retain capacity at -15C.",
                relevance_score=0.6,
                url=f"https://example.com/{sid}",
                title="Example",
            )
            for sid in source_ids
        ],
        notes=notes,
    )
