from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from deepresearch.models.research import (
    Effort,
    ResearchBudget,
    ResearchFinding,
    ResearchPlan,
    ResearchPresentation,
    ResearchReport,
    ResearchRun,
    ResearchRunEvent,
    ResearchSource,
)


# --- Requests ---


class PlanRequest(BaseModel):
    query: str = Field(min_length=1, max_length=2000)
    effort: Effort = Effort.STANDARD
    recency_days: Optional[int] = Field(default=None, ge=1, le=3650)


class StartRequest(BaseModel):
    plan: ResearchPlan


class ActionItemRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=5000)
    due_date: Optional[str] = None
    assigned_to_id: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=0, le=3)


class TasksRequest(BaseModel):
    finding_ids: list[str] = []
    action_items: list[ActionItemRequest] = []


# --- Responses ---


class BudgetResponse(BaseModel):
    max_steps: int
    max_runtime_seconds: int
    min_sources: int
    max_requeries_per_sub_question: int

    @classmethod
    def from_budget(cls, budget: ResearchBudget) -> "BudgetResponse":
        return cls(**budget.to_dict())


class PlannerInfo(BaseModel):
    status: str
    reason: Optional[str] = None


class PlanResponse(BaseModel):
    run_id: str
    plan: ResearchPlan
    budget: BudgetResponse
    planner: PlannerInfo


class StartResponse(BaseModel):
    run_id: str
    status: str


class RunResponse(BaseModel):
    id: str
    conversation_id: str
    query: str
    effort: Effort
    recency_days: Optional[int]
    status: str
    plan: ResearchPlan
    quality_score: Optional[float]
    metrics: dict[str, Any]
    error: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    updated_at: datetime
    completed_at: Optional[datetime]

    @classmethod
    def from_run(cls, run: ResearchRun) -> "RunResponse":
        return cls(
            id=run.id,
            conversation_id=run.conversation_id,
            query=run.query,
            effort=run.effort,
            recency_days=run.recency_days,
            status=run.status.value,
            plan=run.plan,
            quality_score=run.quality_score,
            metrics=run.metrics,
            error=run.error,
            created_at=run.created_at,
            started_at=run.started_at,
            updated_at=run.updated_at,
            completed_at=run.completed_at,
        )


class SourceResponse(BaseModel):
    id: str
    url: str
    title: str
    domain: Optional[str]
    snippet: Optional[str]
    published_at: Optional[str]
    retrieved_at: datetime
    score: Optional[float]
    metadata: dict[str, Any]

    @classmethod
    def from_source(cls, source: ResearchSource) -> "SourceResponse":
        return cls(
            id=source.id,
            url=source.url,
            title=source.title,
            domain=source.domain,
            snippet=source.snippet,
            published_at=source.published_at,
            retrieved_at=source.retrieved_at,
            score=source.score,
            metadata=source.metadata,
        )


class EvidenceResponse(BaseModel):
    source_id: str
    excerpt: Optional[str]
    relevance_score: float
    url: str
    title: Optional[str]


class FindingResponse(BaseModel):
    id: str
    sub_question: str
    claim: str
    confidence: float
    status: str
    supporting_source_ids: list[str]
    evidence: list[EvidenceResponse]
    notes: Optional[str]
    created_at: datetime

    @classmethod
    def from_finding(cls, finding: ResearchFinding) -> "FindingResponse":
        return cls(
            id=finding.id,
            sub_question=finding.sub_question,
            claim=finding.claim,
            confidence=finding.confidence,
            status=finding.status.value,
            supporting_source_ids=finding.supporting_source_ids,
            evidence=[
                EvidenceResponse(
                    source_id=item.source_id,
                    excerpt=item.excerpt,
                    relevance_score=item.relevance_score,
                    url=item.url,
                    title=item.title,
                )
                for item in finding.evidence
            ],
            notes=finding.notes,
            created_at=finding.created_at,
        )


class ActionResponse(BaseModel):
    title: str
    description: str
    related_finding_ids: list[str]
    created_task_id: Optional[str]


class ReportResponse(BaseModel):
    summary: str
    report_markdown: str
    actions: list[ActionResponse]
    presentation: Optional[ResearchPresentation]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_report(cls, report: ResearchReport) -> "ReportResponse":
        return cls(
            summary=report.summary,
            report_markdown=report.report_markdown,
            actions=[
                ActionResponse(
                    title=a.title,
                    description=a.description,
                    related_finding_ids=a.related_finding_ids,
                    created_task_id=a.created_task_id,
                )
                for a in report.actions
            ],
            presentation=report.presentation,
            created_at=report.created_at,
            updated_at=report.updated_at,
        )


class EventResponse(BaseModel):
    id: str
    stage: str
    status: str
    message: str
    sub_question: Optional[str]
    payload: Optional[dict[str, Any]]
    created_at: datetime

    @classmethod
    def from_event(cls, event: ResearchRunEvent) -> "EventResponse":
        return cls(
            id=event.id,
            stage=event.stage,
            status=event.status.value,
            message=event.message,
            sub_question=event.sub_question,
            payload=event.payload,
            created_at=event.created_at,
        )


class RunStatusResponse(BaseModel):
    run: RunResponse
    budget: BudgetResponse
    sources: list[SourceResponse]
    findings: list[FindingResponse]
    report: Optional[ReportResponse]
    events: list[EventResponse]


class RunListResponse(BaseModel):
    runs: list[RunResponse]


class TasksResponse(BaseModel):
    created_task_ids: list[str]
