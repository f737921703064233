from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Effort(StrEnum):
    QUICK = "quick"
    STANDARD = "standard"
    DEEP = "deep"


class RunStatus(StrEnum):
    PLANNING = "planning"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RunStatus.COMPLETED,
            RunStatus.COMPLETED_WITH_WARNINGS,
            RunStatus.FAILED,
            RunStatus.CANCELED,
        )


class EventStatus(StrEnum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    INFO = "info"


class FindingStatus(StrEnum):
    PARTIAL = "partial"
    SUFFICIENT = "sufficient"
    CONFLICTED = "conflicted"
    UNKNOWN = "unknown"


class RunPhase(StrEnum):
    PLANNING = "planning"
    RESEARCHING = "researching"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    FAILED = "failed"


# --- Plan ---


class StopCriteria(BaseModel):
    confidence_target: float = Field(default=0.75, ge=0, le=1)
    diminishing_returns_delta: float = Field(default=0.05, ge=0, le=1)
    diminishing_returns_window: int = Field(default=2, ge=1, le=5)


class ResearchPlan(BaseModel):
    """Approved decomposition of a research query.

    Sub-question bounds are enforced by planner normalization rather than by
    the model, so a client-submitted plan can be repaired instead of rejected.
    """
    objective: str
    sub_questions: list[str]
    assumptions: list[str] = []
    output_format: str = ""
    effort_rationale: Optional[str] = None
    stop_criteria: StopCriteria = StopCriteria()


class PlannerOutput(BaseModel):
    """Schema the planner model must satisfy."""
    objective: str = Field(min_length=1, max_length=500)
    sub_questions: list[Annotated[str, Field(min_length=1, max_length=500)]] = Field(
        min_length=3, max_length=8
    )
    assumptions: list[Annotated[str, Field(max_length=500)]] = Field(default_factory=list, max_length=20)
    output_format: str = Field(min_length=1, max_length=500)
    effort_rationale: Optional[str] = Field(default=None, max_length=1500)
    stop_criteria: StopCriteria = StopCriteria()


@dataclass(frozen=True)
class ResearchBudget:
    max_steps: int
    max_runtime_seconds: int
    min_sources: int
    max_requeries_per_sub_question: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


EFFORT_BUDGETS: dict[Effort, ResearchBudget] = {
    Effort.QUICK: ResearchBudget(
        max_steps=4, max_runtime_seconds=30, min_sources=2, max_requeries_per_sub_question=1
    ),
    Effort.STANDARD: ResearchBudget(
        max_steps=8, max_runtime_seconds=90, min_sources=4, max_requeries_per_sub_question=2
    ),
    Effort.DEEP: ResearchBudget(
        max_steps=12, max_runtime_seconds=180, min_sources=6, max_requeries_per_sub_question=3
    ),
}


def parse_effort(value: Any) -> Effort:
    try:
        return Effort(str(value).strip().lower())
    except ValueError:
        return Effort.STANDARD


def get_budget(effort: Any) -> ResearchBudget:
    return EFFORT_BUDGETS[parse_effort(effort)]


# --- Model-facing synthesis schemas ---


class SynthesizedFinding(BaseModel):
    claim: str = Field(min_length=1)
    confidence: float = Field(ge=0, le=1)
    source_ids: list[str] = Field(min_length=1)
    status: FindingStatus
    notes: str = ""


class SynthesizedAction(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    related_finding_source_ids: list[str] = []


class SynthesisOutput(BaseModel):
    findings: list[SynthesizedFinding] = []
    unknowns: list[str] = []
    actions: list[SynthesizedAction] = []


class FinalReportSynthesis(BaseModel):
    executive_summary: str = Field(min_length=1)
    plain_text_report: str = Field(min_length=1)


# --- Presentation blocks ---


class ProseBlock(BaseModel):
    type: Literal["prose"] = "prose"
    markdown: str


class ComparisonRow(BaseModel):
    label: str
    values: list[str]


class ComparisonTableBlock(BaseModel):
    type: Literal["comparison_table"] = "comparison_table"
    caption: Optional[str] = None
    columns: list[str] = Field(min_length=2)
    rows: list[ComparisonRow] = Field(min_length=1)


class RankedItem(BaseModel):
    title: str
    subtitle: Optional[str] = None
    detail: Optional[str] = None
    url: Optional[str] = None


class RankedListBlock(BaseModel):
    type: Literal["ranked_list"] = "ranked_list"
    title: Optional[str] = None
    items: list[RankedItem] = Field(min_length=1)


class SourceLink(BaseModel):
    label: str
    url: str


class SourcesBlock(BaseModel):
    type: Literal["sources"] = "sources"
    items: list[SourceLink]


class CalloutBlock(BaseModel):
    type: Literal["callout"] = "callout"
    variant: Literal["info", "warning", "tip"] = "info"
    content: str


class ActionItem(BaseModel):
    text: str
    detail: Optional[str] = None


class ActionItemsBlock(BaseModel):
    type: Literal["action_items"] = "action_items"
    title: Optional[str] = None
    items: list[ActionItem] = Field(min_length=1)


PresentationBlock = Annotated[
    Union[
        ProseBlock,
        ComparisonTableBlock,
        RankedListBlock,
        SourcesBlock,
        CalloutBlock,
        ActionItemsBlock,
    ],
    Field(discriminator="type"),
]


class ResearchPresentation(BaseModel):
    markdown: str = Field(min_length=1)
    blocks: list[PresentationBlock] = []


# --- Pipeline values ---


@dataclass
class SearchResult:
    url: str
    title: str
    domain: Optional[str] = None
    snippet: Optional[str] = None
    published_at: Optional[str] = None
    score: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class EvidenceBlock:
    source_id: str
    url: str
    title: Optional[str]
    snippet: Optional[str]
    extracted_text: Optional[str]
    relevance_score: float
    notes: str = ""

    def to_prompt_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "title": self.title,
            "url": self.url,
            "snippet": self.snippet,
            "extracted_text": self.extracted_text,
        }


@dataclass
class FindingEvidence:
    source_id: str
    excerpt: Optional[str]
    relevance_score: float
    url: str
    title: Optional[str]


@dataclass
class ReportAction:
    title: str
    description: str = ""
    related_finding_ids: list[str] = field(default_factory=list)
    created_task_id: Optional[str] = None


# --- Persisted entities ---


@dataclass
class ResearchRun:
    id: str
    conversation_id: str
    household_id: str
    created_by_id: str
    query: str
    effort: Effort
    plan: ResearchPlan
    recency_days: Optional[int] = None
    status: RunStatus = RunStatus.PLANNING
    quality_score: Optional[float] = None
    metrics: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def budget(self) -> ResearchBudget:
        return get_budget(self.effort)


@dataclass
class ResearchSource:
    id: str
    run_id: str
    url: str
    title: str
    domain: Optional[str] = None
    snippet: Optional[str] = None
    published_at: Optional[str] = None
    retrieved_at: datetime = field(default_factory=utcnow)
    score: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ResearchFinding:
    id: str
    run_id: str
    sub_question: str
    claim: str
    confidence: float
    status: FindingStatus
    supporting_source_ids: list[str] = field(default_factory=list)
    evidence: list[FindingEvidence] = field(default_factory=list)
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ResearchReport:
    run_id: str
    summary: str
    report_markdown: str
    actions: list[ReportAction] = field(default_factory=list)
    presentation: Optional[ResearchPresentation] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ResearchRunEvent:
    id: str
    run_id: str
    stage: str
    status: EventStatus
    message: str
    sub_question: Optional[str] = None
    payload: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)


def build_run_metrics(
    *,
    phase: RunPhase,
    budget: ResearchBudget,
    step_count: int = 0,
    source_count: int = 0,
    finding_count: int = 0,
    duration_ms: int = 0,
    completed_sub_questions: int = 0,
    total_sub_questions: int = 0,
    failure_reason: Optional[str] = None,
    quality_score: Optional[float] = None,
) -> dict[str, Any]:
    metrics: dict[str, Any] = {
        "phase": phase.value,
        "step_count": step_count,
        "source_count": source_count,
        "finding_count": finding_count,
        "duration_ms": duration_ms,
        "completed_sub_questions": completed_sub_questions,
        "total_sub_questions": total_sub_questions,
        **budget.to_dict(),
    }
    if failure_reason:
        metrics["failure_reason"] = failure_reason
    if quality_score is not None:
        metrics["quality_score"] = quality_score
    return metrics


@dataclass
class FollowUpTask:
    title: str
    description: Optional[str] = None
    priority: int = 0
    due_date: Optional[str] = None
    assigned_to_id: Optional[str] = None
