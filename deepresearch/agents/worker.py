"""Per-sub-question search, evidence and synthesis loop."""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional, Protocol

from loguru import logger

from deepresearch import llm_client
from deepresearch.agents import source_selector
from deepresearch.models.research import (
    EventStatus,
    EvidenceBlock,
    FindingEvidence,
    FindingStatus,
    ReportAction,
    ResearchBudget,
    ResearchFinding,
    ResearchPlan,
    ResearchSource,
    SynthesisOutput,
    SynthesizedAction,
    SynthesizedFinding,
)
from deepresearch.services.logger import run_context
from deepresearch.services.prompt_store import render_prompt
from deepresearch.services.store import ResearchStore, new_id
from deepresearch.tools import content_extractor, search_provider
from deepresearch.tools.evidence import MIN_RELEVANCE, extract_evidence

MAX_CONFIDENCE = 0.95
SELECT_LIMIT = 5
FETCH_PER_ATTEMPT = 3
SYNTHESIS_ATTEMPTS = 2
SOURCE_TARGET_CAP = 4

SYNTHESIS_CONTRACT = {
    "findings": [
        {
            "claim": "string",
            "confidence": "number between 0 and 1",
            "source_ids": ["source-id"],
            "status": "partial | sufficient | conflicted | unknown",
            "notes": "string",
        }
    ],
    "unknowns": ["string"],
    "actions": [
        {
            "title": "string",
            "description": "string",
            "related_finding_source_ids": ["source-id"],
        }
    ],
}


class EventEmitter(Protocol):
    def __call__(
        self,
        stage: str,
        status: EventStatus,
        message: str,
        *,
        sub_question: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Awaitable[None]: ...


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class SharedSeenUrls:
    """Run-wide set of URLs already claimed by some worker."""

    def __init__(self) -> None:
        self._urls: set[str] = set()
        self._lock = asyncio.Lock()

    def snapshot(self) -> set[str]:
        return set(self._urls)

    async def claim(self, urls: list[str]) -> set[str]:
        """Atomically claim ``urls``; returns the subset no other worker held."""
        async with self._lock:
            fresh = {url for url in urls if url not in self._urls}
            self._urls.update(fresh)
        return fresh

    def __contains__(self, url: str) -> bool:
        return url in self._urls

    def __len__(self) -> int:
        return len(self._urls)


@dataclass
class SynthesisResult:
    findings: list[SynthesizedFinding]
    unknowns: list[str] = field(default_factory=list)
    actions: list[SynthesizedAction] = field(default_factory=list)
    fallback_used: bool = False
    fallback_reason: Optional[str] = None


@dataclass
class SubQuestionResult:
    sub_question: str
    step_count: int
    source_count: int
    confidence: float
    findings: list[ResearchFinding]
    unknowns: list[str] = field(default_factory=list)
    actions: list[ReportAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def finding_count(self) -> int:
        return len(self.findings)


# --- Synthesis ---


def insufficient_evidence_synthesis(sub_question: str) -> SynthesisResult:
    return SynthesisResult(
        findings=[
            SynthesizedFinding.model_construct(
                claim="Insufficient evidence collected to confidently answer this sub-question.",
                confidence=0.2,
                source_ids=[],
                status=FindingStatus.UNKNOWN,
                notes="No relevant evidence extracted from available sources.",
            )
        ],
        unknowns=["Additional targeted sources are required for this sub-question."],
        actions=[
            SynthesizedAction(
                title=f"Gather additional sources for: {sub_question}",
                description="Target domain-specific sources and expert analyses.",
            )
        ],
    )


def top_evidence(blocks: list[EvidenceBlock]) -> EvidenceBlock:
    # max() keeps the earliest block on ties
    return max(blocks, key=lambda block: block.relevance_score)


def fallback_synthesis(
    sub_question: str,
    blocks: list[EvidenceBlock],
    *,
    reason: str,
    model_failed: bool,
) -> SynthesisResult:
    """Single finding built from the most relevant block."""
    top = top_evidence(blocks)
    if model_failed:
        confidence = clamp(0.4 + top.relevance_score * 0.4, 0.1, 0.8)
        notes = "Fallback synthesis due to model error."
        actions: list[SynthesizedAction] = []
    else:
        confidence = clamp(0.45 + top.relevance_score * 0.45, 0.1, 0.9)
        notes = "Fallback synthesis from lexical evidence extraction; no synthesis model is configured."
        actions = [
            SynthesizedAction(
                title=f"Validate evidence for: {sub_question}",
                description="Cross-check with an additional independent source.",
                related_finding_source_ids=[top.source_id],
            )
        ]
    claim = (
        top.extracted_text
        or top.snippet
        or "Evidence indicates partial support, but more corroboration is needed."
    )
    return SynthesisResult(
        findings=[
            SynthesizedFinding(
                claim=claim,
                confidence=confidence,
                source_ids=[top.source_id],
                status=FindingStatus.SUFFICIENT if confidence >= 0.75 else FindingStatus.PARTIAL,
                notes=notes,
            )
        ],
        actions=actions,
        fallback_used=True,
        fallback_reason=reason,
    )


def build_synthesis_prompt(objective: str, sub_question: str, blocks: list[EvidenceBlock], attempt: int) -> str:
    return render_prompt(
        "worker.synthesis",
        objective=objective,
        sub_question=sub_question,
        evidence=json.dumps([block.to_prompt_dict() for block in blocks], indent=2),
        contract=json.dumps(SYNTHESIS_CONTRACT, indent=2),
        attempt=attempt,
        max_attempts=SYNTHESIS_ATTEMPTS,
    )


def _restrict_to_evidence(output: SynthesisOutput, known_ids: set[str]) -> SynthesisOutput:
    """Drop citations of sources that were not part of the evidence."""
    findings: list[SynthesizedFinding] = []
    for finding in output.findings:
        source_ids = [sid for sid in dict.fromkeys(finding.source_ids) if sid in known_ids]
        update: dict[str, Any] = {"source_ids": source_ids}
        if not source_ids:
            update["status"] = FindingStatus.UNKNOWN
        findings.append(finding.model_copy(update=update))
    actions = [
        action.model_copy(
            update={
                "related_finding_source_ids": [
                    sid for sid in action.related_finding_source_ids if sid in known_ids
                ]
            }
        )
        for action in output.actions
    ]
    return output.model_copy(update={"findings": findings, "actions": actions})


async def synthesize_sub_question(
    objective: str,
    sub_question: str,
    blocks: list[EvidenceBlock],
) -> SynthesisResult:
    if not blocks:
        return insufficient_evidence_synthesis(sub_question)

    if not llm_client.is_configured():
        return fallback_synthesis(
            sub_question,
            blocks,
            reason="No synthesis model is configured.",
            model_failed=False,
        )

    known_ids = {block.source_id for block in blocks}
    last_error = "Unknown synthesis failure"
    for attempt in range(1, SYNTHESIS_ATTEMPTS + 1):
        try:
            output = await llm_client.generate_structured(
                SynthesisOutput,
                build_synthesis_prompt(objective, sub_question, blocks, attempt),
                caller="sub_question_synthesis",
            )
        except Exception as exc:
            last_error = str(exc) or exc.__class__.__name__
            logger.warning(f"Synthesis attempt {attempt}/{SYNTHESIS_ATTEMPTS} failed for '{sub_question}': {exc}")
            continue
        restricted = _restrict_to_evidence(output, known_ids)
        return SynthesisResult(
            findings=list(restricted.findings),
            unknowns=[u.strip() for u in restricted.unknowns if u and u.strip()],
            actions=list(restricted.actions),
        )

    return fallback_synthesis(sub_question, blocks, reason=last_error, model_failed=True)


# --- Stopping rules ---


def reached_confidence_target(
    confidence: float,
    source_count: int,
    *,
    target: float,
    budget: ResearchBudget,
) -> bool:
    return confidence >= target and source_count >= min(budget.min_sources, SOURCE_TARGET_CAP)


def has_diminishing_returns(history: list[float], *, delta: float, window: int) -> bool:
    """True when the spread of the last ``max(2, window)`` samples is below ``delta``."""
    size = max(2, window)
    if len(history) < size:
        return False
    recent = history[-size:]
    return max(recent) - min(recent) < delta


# --- Worker ---


class SubQuestionWorker:
    """Runs the bounded search loop for one sub-question of a run."""

    def __init__(
        self,
        *,
        store: ResearchStore,
        run_id: str,
        query: str,
        recency_days: Optional[int],
        plan: ResearchPlan,
        budget: ResearchBudget,
        seen_urls: SharedSeenUrls,
        emit: EventEmitter,
        deadline: Optional[float] = None,
    ):
        self.store = store
        self.run_id = run_id
        self.query = query
        self.recency_days = recency_days
        self.plan = plan
        self.budget = budget
        self.seen_urls = seen_urls
        self.emit = emit
        self.deadline = deadline

    async def _collect_evidence(self, sources: list[ResearchSource], sub_question: str) -> list[EvidenceBlock]:
        fetched = await asyncio.gather(
            *(content_extractor.fetch_source(source.url) for source in sources)
        )
        blocks: list[EvidenceBlock] = []
        for source, page in zip(sources, fetched):
            extracted = extract_evidence(page.text or source.snippet or "", sub_question)
            if extracted.relevance_score < MIN_RELEVANCE:
                continue
            blocks.append(
                EvidenceBlock(
                    source_id=source.id,
                    url=source.url,
                    title=source.title,
                    snippet=source.snippet,
                    extracted_text=extracted.excerpt,
                    relevance_score=extracted.relevance_score,
                    notes=extracted.notes,
                )
            )
        return blocks

    async def run(self, sub_question: str, index: int) -> SubQuestionResult:
        with run_context(self.run_id, sub_question_index=index):
            return await self._research(sub_question, index)

    async def _research(self, sub_question: str, index: int) -> SubQuestionResult:
        stop = self.plan.stop_criteria
        local_seen: set[str] = set()
        blocks: list[EvidenceBlock] = []
        history: list[float] = []
        warnings: list[str] = []
        confidence = 0.0
        step_count = 0
        source_count = 0

        await self.emit("subquestion", EventStatus.STARTED, "Sub-question research started.", sub_question=sub_question)

        for retry in range(self.budget.max_requeries_per_sub_question + 1):
            if retry and self.deadline is not None and time.monotonic() >= self.deadline:
                await self.emit(
                    "search",
                    EventStatus.COMPLETED,
                    "Stopped after exhausting the run time budget.",
                    sub_question=sub_question,
                    payload={"confidence": confidence, "source_count": source_count, "step_count": step_count},
                )
                break

            search_query =source_selector.build_search_query(self.query, sub_question, retry)
            await self.emit(
                "search",
                EventStatus.STARTED,
                f"Searching sources (attempt {retry + 1}).",
                sub_question=sub_question,
                payload={"search_query": search_query, "retry": retry},
            )

            results = await search_provider.search_balanced(
                search_query,
                recency_days=self.recency_days,
                limit=max(8, self.budget.min_sources + 2),
                sub_question_index=index,
                retry=retry,
            )
            selected = source_selector.select_search_results(
                results,
                query=self.query,
                sub_question=sub_question,
                seen_urls=local_seen | self.seen_urls.snapshot(),
                limit=SELECT_LIMIT,
            )
            claimed = await self.seen_urls.claim([r.url for r in selected])
            fresh = [r for r in selected if r.url in claimed]

            await self.emit(
                "search",
                EventStatus.PROGRESS,
                f"Search produced {len(fresh)} fresh candidates.",
                sub_question=sub_question,
                payload={
                    "retry": retry,
                    "candidate_count": len(fresh),
                    "top_urls": [r.url for r in fresh[:3]],
                },
            )

            if not fresh:
                history.append(confidence)
                step_count += 1
                continue

            local_seen.update(r.url for r in fresh)
            inserted = await self.store.insert_sources(
                [
                    ResearchSource(
                        id=new_id(),
                        run_id=self.run_id,
                        url=r.url,
                        title=r.title,
                        domain=r.domain,
                        snippet=r.snippet,
                        published_at=r.published_at,
                        score=r.score,
                        metadata={
                            **r.metadata,
                            "search_query": search_query,
                            "retry": retry,
                            "quality_score": source_selector.score_search_result(r, self.query, sub_question),
                        },
                    )
                    for r in fresh
                ]
            )
            source_count += len(inserted)

            await self.emit(
                "source-selection",
                EventStatus.PROGRESS,
                f"Persisted {len(inserted)} new sources.",
                sub_question=sub_question,
                payload={"retry": retry, "source_ids": [s.id for s in inserted]},
            )

            blocks.extend(await self._collect_evidence(inserted[:FETCH_PER_ATTEMPT], sub_question))

            await self.emit(
                "evidence",
                EventStatus.PROGRESS,
                f"Evidence blocks captured: {len(blocks)}",
                sub_question=sub_question,
                payload={"retry": retry, "evidence_count": len(blocks)},
            )

            avg_relevance = sum(b.relevance_score for b in blocks) / len(blocks) if blocks else 0.0
            distinct_domains = len({s.domain for s in inserted if s.domain})
            confidence = clamp(
                max(confidence, avg_relevance * 0.75 + min(0.2, distinct_domains * 0.05)),
                0.0,
                MAX_CONFIDENCE,
            )
            history.append(confidence)
            step_count += 1

            confident = reached_confidence_target(
                confidence, source_count, target=stop.confidence_target, budget=self.budget
            )
            if confident or has_diminishing_returns(
                history,
                delta=stop.diminishing_returns_delta,
                window=stop.diminishing_returns_window,
            ):
                await self.emit(
                    "search",
                    EventStatus.COMPLETED,
                    "Stopped after reaching confidence target."
                    if confident
                    else "Stopped due to diminishing returns.",
                    sub_question=sub_question,
                    payload={
                        "confidence": confidence,
                        "source_count": source_count,
                        "step_count": step_count,
                    },
                )
                break

        await self.emit(
            "synthesis",
            EventStatus.STARTED,
            "Synthesizing findings for sub-question.",
            sub_question=sub_question,
            payload={"evidence_count": len(blocks)},
        )

        synthesis = await synthesize_sub_question(self.plan.objective, sub_question, blocks)
        if synthesis.fallback_used:
            reason = f": {synthesis.fallback_reason}" if synthesis.fallback_reason else "."
            warnings.append(f'Synthesis fallback triggered for "{sub_question}"{reason}')

        drafts = synthesis.findings or [
            SynthesizedFinding.model_construct(
                claim="No clear conclusion could be supported for this sub-question.",
                confidence=confidence or 0.2,
                source_ids=[b.source_id for b in blocks[:2]],
                status=FindingStatus.UNKNOWN,
                notes="Evidence remained insufficient after allotted budget.",
            )
        ]

        block_by_source = {block.source_id: block for block in blocks}
        findings = [
            ResearchFinding(
                id=new_id(),
                run_id=self.run_id,
                sub_question=sub_question,
                claim=draft.claim,
                confidence=clamp(draft.confidence, 0.0, 1.0),
                status=FindingStatus(draft.status),
                supporting_source_ids=list(draft.source_ids),
                evidence=[
                    FindingEvidence(
                        source_id=sid,
                        excerpt=block_by_source[sid].extracted_text,
                        relevance_score=clamp(block_by_source[sid].relevance_score, 0.0, 1.0),
                        url=block_by_source[sid].url,
                        title=block_by_source[sid].title,
                    )
                    for sid in draft.source_ids
                    if sid in block_by_source
                ],
                notes=draft.notes or None,
            )
            for draft in drafts
        ]
        findings = await self.store.insert_findings(findings)

        await self.emit(
            "synthesis",
            EventStatus.COMPLETED,
            f"Generated {len(findings)} findings.",
            sub_question=sub_question,
            payload={"finding_count": len(findings), "warning_count": len(warnings)},
        )

        actions = [
            ReportAction(
                title=action.title,
                description=action.description,
                related_finding_ids=[
                    f.id
                    for f in findings
                    if set(action.related_finding_source_ids) & set(f.supporting_source_ids)
                ],
            )
            for action in synthesis.actions
        ]

        return SubQuestionResult(
            sub_question=sub_question,
            step_count=step_count,
            source_count=source_count,
            confidence=confidence,
            findings=findings,
            unknowns=synthesis.unknowns,
            actions=actions,
            warnings=warnings,
        )
