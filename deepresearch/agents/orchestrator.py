"""Run orchestration: fan-out over sub-questions, aggregation and final report."""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from loguru import logger

from deepresearch import llm_client
from deepresearch.agents.source_selector import is_recommendation_query
from deepresearch.agents.worker import SharedSeenUrls, SubQuestionResult, SubQuestionWorker
from deepresearch.config import settings
from deepresearch.models.research import (
    EventStatus,
    FinalReportSynthesis,
    ReportAction,
    ResearchFinding,
    ResearchPresentation,
    ResearchReport,
    ResearchRun,
    ResearchSource,
    RunPhase,
    RunStatus,
    build_run_metrics,
    utcnow,
)
from deepresearch.services import report as report_builder
from deepresearch.services.logger import log_run_outcome, run_context
from deepresearch.services.prompt_store import render_prompt
from deepresearch.services.quality import assess_run_quality
from deepresearch.services.run_events import RunEventLog
from deepresearch.services.store import REPORT_MESSAGE_TYPE, ResearchStore

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")

FINAL_REPORT_CONTRACT = {
    "executive_summary": "string",
    "plain_text_report": "string markdown narrative with headings chosen based on what best answers the user query",
}


async def map_with_concurrency(
    items: Sequence[ItemT],
    limit: int,
    worker: Callable[[ItemT, int], Awaitable[ResultT]],
    on_result: Optional[Callable[[ResultT, int], Awaitable[None]]] = None,
) -> list[ResultT]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Idle runners pull the next index from a shared cursor, so a slow item
    never holds up the rest. Results keep input order. The first failure
    cancels the remaining runners and propagates.
    """
    results: list[Any] = [None] * len(items)
    cursor = 0

    async def runner() -> None:
        nonlocal cursor
        while cursor < len(items):
            index = cursor
            cursor += 1
            result = await worker(items[index], index)
            results[index] = result
            if on_result is not None:
                await on_result(result, index)

    tasks = [asyncio.create_task(runner()) for _ in range(max(1, min(limit, len(items))))]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return results


def _source_ref(source: ResearchSource) -> dict[str, Any]:
    return {"id": source.id, "title": source.title, "url": source.url, "domain": source.domain}


def compact_findings(findings: list[ResearchFinding], sources: list[ResearchSource]) -> list[dict[str, Any]]:
    by_id = {source.id: source for source in sources}
    return [
        {
            "sub_question": f.sub_question,
            "claim": f.claim,
            "confidence": round(f.confidence, 4),
            "status": f.status.value,
            "sources": [_source_ref(by_id[sid]) for sid in f.supporting_source_ids if sid in by_id],
            "notes": f.notes,
        }
        for f in findings
    ]


def _numbered(title: str, lines: list[str]) -> str:
    if not lines:
        return ""
    body = "\n".join(f"{i}. {line}" for i, line in enumerate(lines, start=1))
    return f"{title}\n{body}\n"


async def synthesize_final_report(
    *,
    query: str,
    objective: str,
    findings: list[ResearchFinding],
    sources: list[ResearchSource],
    quality_warnings: list[str],
) -> Optional[FinalReportSynthesis]:
    if not llm_client.is_configured():
        return None
    recommendation_rules = (
        render_prompt("orchestrator.recommendation_rules") if is_recommendation_query(query) else ""
    )
    prompt = render_prompt(
        "orchestrator.final_report",
        query=query,
        objective=objective,
        warnings=json.dumps(quality_warnings, indent=2),
        findings=json.dumps(compact_findings(findings, sources), indent=2),
        contract=json.dumps(FINAL_REPORT_CONTRACT, indent=2),
        recommendation_rules=recommendation_rules,
    )
    try:
        return await llm_client.generate_structured(FinalReportSynthesis, prompt, caller="final_report")
    except Exception as exc:
        logger.warning(f"Final report synthesis failed; using default summary: {exc}")
        return None


async def generate_presentation(
    *,
    query: str,
    objective: str,
    executive_summary: str,
    analyst_narrative: Optional[str],
    findings: list[ResearchFinding],
    unknowns: list[str],
    actions: list[ReportAction],
    sources: list[ResearchSource],
    quality_warnings: list[str],
) -> Optional[ResearchPresentation]:
    if not llm_client.is_configured():
        return None
    prompt = render_prompt(
        "orchestrator.presentation",
        query=query,
        objective=objective,
        executive_summary=executive_summary,
        analyst_section=f"Analyst narrative:\n{analyst_narrative}\n" if analyst_narrative else "",
        findings=json.dumps(compact_findings(findings, sources), indent=2),
        unknowns_section=_numbered("Unknowns / evidence gaps:", unknowns),
        actions_section=_numbered(
            "Suggested actions:",
            [f"{a.title} - {a.description}" if a.description else a.title for a in actions],
        ),
        warnings_section=_numbered("Quality warnings (reflect these honestly):", quality_warnings),
        sources="\n".join(
            f"- [{s.id}] {s.title or s.domain or s.url} ({s.url})" for s in sources
        ),
    )
    try:
        return await llm_client.generate_structured(ResearchPresentation, prompt, caller="presentation")
    except Exception as exc:
        logger.warning(f"Presentation generation failed: {exc}")
        return None


class RunOrchestrator:
    """Executes one approved research run end to end.

    ``execute`` never raises: any unexpected error marks the run failed.
    """

    def __init__(self, store: ResearchStore, *, max_parallel: Optional[int] = None):
        self.store = store
        self.max_parallel = max_parallel or settings.research_max_parallel_subquestions

    async def _update_metrics(
        self,
        run: ResearchRun,
        *,
        phase: RunPhase,
        step_count: int,
        completed: int,
        started: float,
        **changes: Any,
    ) -> None:
        source_count = await self.store.count_sources(run.id)
        finding_count = await self.store.count_findings(run.id)
        metrics = build_run_metrics(
            phase=phase,
            budget=run.budget,
            step_count=step_count,
            source_count=source_count,
            finding_count=finding_count,
            duration_ms=int((time.monotonic() - started) * 1000),
            completed_sub_questions=completed,
            total_sub_questions=len(run.plan.sub_questions),
            failure_reason=changes.get("error"),
            quality_score=changes.get("quality_score"),
        )
        await self.store.update_run(run.id, metrics=metrics, **changes)

    async def execute(self, run: ResearchRun) -> RunStatus:
        with run_context(run.id, effort=run.effort.value):
            return await self._execute(run)

    async def _execute(self, run: ResearchRun) -> RunStatus:
        events = RunEventLog(self.store, run.id)
        started = time.monotonic()
        step_count = 0
        completed = 0
        unknowns: dict[str, None] = {}
        actions: list[ReportAction] = []
        warnings: dict[str, None] = {}
        total = len(run.plan.sub_questions)

        try:
            # Each execution starts with no findings or sources stored for the run.
            discarded_findings = await self.store.delete_findings(run.id)
            discarded_sources = await self.store.delete_sources(run.id)
            if discarded_findings or discarded_sources:
                logger.info(
                    f"Discarded {discarded_findings} findings and {discarded_sources} sources "
                    f"from an earlier execution of run {run.id}"
                )

            await self._update_metrics(
                run, phase=RunPhase.RESEARCHING, step_count=0, completed=0, started=started
            )
            await events(
                "research",
                EventStatus.STARTED,
                "Parallel sub-question research has started.",
                payload={
                    "total_sub_questions": total,
                    "effort": run.effort.value,
                    "recency_days": run.recency_days,
                },
            )

            worker = SubQuestionWorker(
                store=self.store,
                run_id=run.id,
                query=run.query,
                recency_days=run.recency_days,
                plan=run.plan,
                budget=run.budget,
                seen_urls=SharedSeenUrls(),
                emit=events,
                deadline=started + run.budget.max_runtime_seconds,
            )

            async def on_result(result: SubQuestionResult, _index: int) -> None:
                nonlocal step_count, completed
                step_count += result.step_count
                completed += 1
                unknowns.update(dict.fromkeys(result.unknowns))
                actions.extend(result.actions)
                warnings.update(dict.fromkeys(result.warnings))
                await self._update_metrics(
                    run,
                    phase=RunPhase.RESEARCHING,
                    step_count=step_count,
                    completed=completed,
                    started=started,
                )
                await events(
                    "subquestion",
                    EventStatus.COMPLETED,
                    "Sub-question completed.",
                    sub_question=result.sub_question,
                    payload={
                        "step_count": result.step_count,
                        "source_count": result.source_count,
                        "finding_count": result.finding_count,
                        "warning_count": len(result.warnings),
                    },
                )

            await map_with_concurrency(run.plan.sub_questions, self.max_parallel, worker.run, on_result)

            await self._update_metrics(
                run, phase=RunPhase.SYNTHESIZING, step_count=step_count, completed=completed, started=started
            )
            await events("synthesis", EventStatus.STARTED, "Composing final report from all findings.")

            sources = await self.store.list_sources(run.id)
            findings = await self.store.list_findings(run.id)

            quality = assess_run_quality(
                findings,
                source_count=len(sources),
                total_sub_questions=total,
                budget=run.budget,
            )
            warnings.update(dict.fromkeys(quality.warnings))
            warning_list = list(warnings)
            status = RunStatus.COMPLETED_WITH_WARNINGS if warning_list else RunStatus.COMPLETED

            await events(
                "quality-check",
                EventStatus.COMPLETED,
                "Quality checks passed." if status == RunStatus.COMPLETED else "Quality checks passed with warnings.",
                payload={
                    "quality_score": quality.score,
                    "warning_count": len(warning_list),
                    "warnings": warning_list,
                },
            )

            default_summary = (
                report_builder.summarize_findings(findings)
                if status == RunStatus.COMPLETED
                else report_builder.caveated_summary(len(warning_list))
            )
            synthesized = await synthesize_final_report(
                query=run.query,
                objective=run.plan.objective,
                findings=findings,
                sources=sources,
                quality_warnings=warning_list,
            )
            summary = synthesized.executive_summary if synthesized else default_summary
            narrative = synthesized.plain_text_report if synthesized else None
            deduped_actions = report_builder.dedupe_actions(actions)
            unknown_list = list(unknowns)

            report_markdown = report_builder.build_report_markdown(
                summary=summary,
                findings=findings,
                unknowns=unknown_list + warning_list,
                actions=deduped_actions,
                sources=sources,
                quality_warnings=warning_list,
                analyst_narrative=narrative,
            )

            presentation = await generate_presentation(
                query=run.query,
                objective=run.plan.objective,
                executive_summary=summary,
                analyst_narrative=narrative,
                findings=findings,
                unknowns=unknown_list,
                actions=deduped_actions,
                sources=sources,
                quality_warnings=warning_list,
            )
            await events(
                "presentation",
                EventStatus.COMPLETED if presentation else EventStatus.INFO,
                f"Presentation generated with {len(presentation.blocks)} display block(s)."
                if presentation
                else "Presentation generation skipped; using fallback markdown.",
            )

            await self.store.upsert_report(
                ResearchReport(
                    run_id=run.id,
                    summary=summary,
                    report_markdown=report_markdown,
                    actions=deduped_actions,
                    presentation=presentation,
                )
            )

            chat_message = (
                presentation.markdown
                if presentation
                else report_builder.build_chat_report_message(
                    query=run.query,
                    summary=summary,
                    findings=findings,
                    unknowns=unknown_list,
                    actions=deduped_actions,
                    sources=sources,
                    quality_warnings=warning_list,
                    analyst_narrative=narrative,
                )
            )
            if not await self.store.has_run_message(run.conversation_id, REPORT_MESSAGE_TYPE, run.id):
                await self.store.append_message(
                    run.conversation_id,
                    role="assistant",
                    content=chat_message,
                    raw={"type": REPORT_MESSAGE_TYPE, "researchRunId": run.id},
                )

            await self._update_metrics(
                run,
                phase=RunPhase.COMPLETE,
                step_count=step_count,
                completed=completed,
                started=started,
                status=status,
                quality_score=quality.score,
                error=None,
                completed_at=utcnow(),
            )
            await events(
                "run",
                EventStatus.COMPLETED,
                "Research run completed successfully."
                if status == RunStatus.COMPLETED
                else "Research run completed with quality warnings.",
                payload={
                    "status": status.value,
                    "quality_score": quality.score,
                    "warning_count": len(warning_list),
                    "source_count": len(sources),
                    "finding_count": len(findings),
                },
            )
            log_run_outcome(
                run.id,
                status.value,
                source_count=len(sources),
                finding_count=len(findings),
                step_count=step_count,
                quality_score=round(quality.score, 3),
                warning_count=len(warning_list),
            )
            return status
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.exception(f"Research run {run.id} failed: {message}")
            try:
                await self._update_metrics(
                    run,
                    phase=RunPhase.FAILED,
                    step_count=step_count,
                    completed=completed,
                    started=started,
                    status=RunStatus.FAILED,
                    error=message,
                    quality_score=None,
                    completed_at=utcnow(),
                )
            except Exception as update_exc:
                logger.error(f"Could not mark research run {run.id} failed: {update_exc}")
            await events("run", EventStatus.FAILED, message)
            log_run_outcome(run.id, RunStatus.FAILED.value, step_count=step_count, error=message)
            return RunStatus.FAILED
