"""Service facade for planning, starting and inspecting research runs."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Optional

from loguru import logger

from deepresearch.agents import planner
from deepresearch.agents.orchestrator import RunOrchestrator
from deepresearch.config import settings
from deepresearch.models.research import (
    Effort,
    EventStatus,
    FollowUpTask,
    ResearchBudget,
    ResearchFinding,
    ResearchPlan,
    ResearchReport,
    ResearchRun,
    ResearchRunEvent,
    ResearchSource,
    RunPhase,
    RunStatus,
    build_run_metrics,
    get_budget,
    parse_effort,
    utcnow,
)
from deepresearch.services.durable import DurableTaskRunner, get_task_runner, is_stale
from deepresearch.services.run_events import RunEventLog
from deepresearch.services.store import REQUEST_MESSAGE_TYPE, ResearchStore, get_store, new_id

STALE_RUN_MESSAGE = "Previous research execution appeared stalled and was marked failed."
TASK_TITLE_MAX_CHARS = 500


class ResearchNotFoundError(LookupError):
    """Raised when a conversation or run does not exist for the caller's household."""


class StartOutcome(StrEnum):
    ACCEPTED = "accepted"
    NOOP = "noop"
    STALE_RESET = "stale_reset"


@dataclass
class PlanResult:
    run_id: str
    plan: ResearchPlan
    budget: ResearchBudget
    planner_status: str
    planner_reason: Optional[str] = None


@dataclass
class RunSnapshot:
    run: ResearchRun
    sources: list[ResearchSource]
    findings: list[ResearchFinding]
    report: Optional[ResearchReport]
    events: list[ResearchRunEvent]

    @property
    def budget(self) -> ResearchBudget:
        return self.run.budget


@dataclass
class ActionItemInput:
    title: str
    description: Optional[str] = None
    due_date: Optional[str] = None
    assigned_to_id: Optional[str] = None
    priority: Optional[int] = None


@dataclass
class CreateTasksResult:
    created_task_ids: list[str] = field(default_factory=list)


class ResearchService:
    def __init__(
        self,
        store: Optional[ResearchStore] = None,
        runner: Optional[DurableTaskRunner] = None,
        orchestrator: Optional[RunOrchestrator] = None,
    ):
        self.store = store or get_store()
        self.runner = runner or get_task_runner()
        self.orchestrator = orchestrator or RunOrchestrator(self.store)

    async def _get_owned_run(self, conversation_id: str, run_id: str, household_id: str) -> ResearchRun:
        run = await self.store.get_run(run_id)
        if run is None or run.conversation_id != conversation_id or run.household_id != household_id:
            raise ResearchNotFoundError("Research run not found")
        return run

    # --- Plan ---

    async def create_plan(
        self,
        *,
        conversation_id: str,
        household_id: str,
        user_id: str,
        query: str,
        effort: Effort | str = Effort.STANDARD,
        recency_days: Optional[int] = None,
    ) -> PlanResult:
        conversation = await self.store.get_conversation(conversation_id, household_id)
        if conversation is None:
            raise ResearchNotFoundError("Conversation not found")

        effort = parse_effort(effort)
        budget = get_budget(effort)
        generated = await planner.generate_plan(query, effort, recency_days)
        reason = None
        if generated.used_fallback:
            reason = generated.failure_reason or "Planner generation failed; using fallback template plan."

        run = await self.store.create_run(
            ResearchRun(
                id=new_id(),
                conversation_id=conversation_id,
                household_id=household_id,
                created_by_id=user_id,
                query=query,
                effort=effort,
                recency_days=recency_days,
                plan=generated.plan,
                status=RunStatus.PLANNING,
                metrics=build_run_metrics(
                    phase=RunPhase.PLANNING,
                    budget=budget,
                    total_sub_questions=len(generated.plan.sub_questions),
                    failure_reason=reason,
                ),
            )
        )

        await self.store.append_message(
            conversation_id,
            role="user",
            content=query,
            raw={
                "type": REQUEST_MESSAGE_TYPE,
                "researchRunId": run.id,
                "effort": effort.value,
                "recencyDays": recency_days,
            },
            created_by_id=user_id,
        )

        await RunEventLog(self.store, run.id).safe_append(
            "planning",
            EventStatus.COMPLETED,
            "Research plan generated and awaiting approval.",
            payload={
                "sub_question_count": len(generated.plan.sub_questions),
                "effort": effort.value,
                "planner_status": generated.status,
                "planner_reason": reason,
            },
        )

        return PlanResult(
            run_id=run.id,
            plan=generated.plan,
            budget=budget,
            planner_status=generated.status,
            planner_reason=reason,
        )

    # --- Start ---

    def _submit(self, run: ResearchRun) -> None:
        self.runner.submit(run.id, lambda: self.orchestrator.execute(run))

    async def _mark_stale_failed(self, run: ResearchRun) -> bool:
        """Fail a stalled run; False when another writer touched it first."""
        metrics = dict(run.metrics)
        metrics.update(
            build_run_metrics(
                phase=RunPhase.FAILED,
                budget=run.budget,
                step_count=int(metrics.get("step_count") or 0),
                source_count=int(metrics.get("source_count") or 0),
                finding_count=int(metrics.get("finding_count") or 0),
                duration_ms=int(metrics.get("duration_ms") or 0),
                completed_sub_questions=int(metrics.get("completed_sub_questions") or 0),
                total_sub_questions=len(run.plan.sub_questions),
                failure_reason=STALE_RUN_MESSAGE,
            )
        )
        failed = await self.store.claim_run(
            run.id,
            from_statuses=[run.status],
            if_updated_at=run.updated_at,
            status=RunStatus.FAILED,
            error=STALE_RUN_MESSAGE,
            completed_at=utcnow(),
            metrics=metrics,
        )
        if failed is None:
            return False
        await RunEventLog(self.store, run.id).safe_append("run", EventStatus.FAILED, STALE_RUN_MESSAGE)
        logger.warning(f"Research run {run.id} was stale and has been marked failed")
        return True

    async def start_run(
        self,
        *,
        conversation_id: str,
        run_id: str,
        household_id: str,
        user_id: str,
        plan: ResearchPlan,
    ) -> StartOutcome:
        """Approve ``plan`` and launch execution under the run id.

        Only a ``planning`` run is started. A live, non-stale execution or a
        finished run makes this a no-op; a stale execution is force-failed
        first and then replaced. The status change is a conditional claim, so
        concurrent starts from several processes launch one execution.
        """
        async with self.runner.guard(run_id):
            run = await self._get_owned_run(conversation_id, run_id, household_id)
            if run.status.is_terminal:
                return StartOutcome.NOOP

            outcome = StartOutcome.ACCEPTED
            claim_from = [RunStatus.PLANNING]
            if run.status == RunStatus.RUNNING or self.runner.is_active(run_id):
                if not is_stale(run.updated_at, run.budget):
                    return StartOutcome.NOOP
                await self.runner.cancel(run_id)
                if not await self._mark_stale_failed(run):
                    return StartOutcome.NOOP
                outcome = StartOutcome.STALE_RESET
                claim_from = [RunStatus.FAILED]

            normalized = planner.normalize_plan(plan, run.query)
            claimed = await self.store.claim_run(
                run_id,
                from_statuses=claim_from,
                status=RunStatus.RUNNING,
                plan=normalized,
                error=None,
                started_at=utcnow(),
                completed_at=None,
            )
            if claimed is None:
                logger.info(f"Research run {run_id} was started by another worker")
                return StartOutcome.NOOP

            await RunEventLog(self.store, run_id).safe_append(
                "run",
                EventStatus.STARTED,
                "Research execution started.",
                payload={
                    "effort": run.effort.value,
                    "recency_days": run.recency_days,
                    "sub_question_count": len(normalized.sub_questions),
                    "started_by": user_id,
                },
            )
            self._submit(claimed)
            return outcome

    async def recover_running_runs(self) -> list[str]:
        """Resubmit runs left ``running`` by a previous process, from the beginning.

        Each run is claimed against the ``updated_at`` it was listed with, so
        processes booting together resume it once.
        """
        resumed: list[str] = []
        for run in await self.store.list_runs_by_status(RunStatus.RUNNING):
            if self.runner.is_active(run.id):
                continue
            claimed = await self.store.claim_run(
                run.id,
                from_statuses=[RunStatus.RUNNING],
                if_updated_at=run.updated_at,
            )
            if claimed is None:
                continue
            await RunEventLog(self.store, run.id).safe_append(
                "run",
                EventStatus.INFO,
                "Resuming research execution after restart.",
            )
            self._submit(claimed)
            resumed.append(run.id)
        if resumed:
            logger.info(f"Resumed {len(resumed)} research run(s) after restart")
        return resumed

    # --- Read ---

    async def get_run_status(
        self,
        *,
        conversation_id: str,
        run_id: str,
        household_id: str,
    ) -> RunSnapshot:
        run = await self._get_owned_run(conversation_id, run_id, household_id)
        return RunSnapshot(
            run=run,
            sources=await self.store.list_sources(run_id),
            findings=await self.store.list_findings(run_id),
            report=await self.store.get_report(run_id),
            events=await self.store.list_events(run_id, settings.research_event_limit),
        )

    async def list_runs_for_conversation(self, *, conversation_id: str, household_id: str) -> list[ResearchRun]:
        return await self.store.list_runs_for_conversation(conversation_id, household_id)

    # --- Follow-up tasks ---

    async def create_tasks_from_run(
        self,
        *,
        conversation_id: str,
        run_id: str,
        household_id: str,
        user_id: str,
        finding_ids: list[str],
        action_items: list[ActionItemInput],
    ) -> CreateTasksResult:
        await self._get_owned_run(conversation_id, run_id, household_id)

        wanted = set(finding_ids)
        findings = [f for f in await self.store.list_findings(run_id) if f.id in wanted] if wanted else []

        finding_tasks = [
            FollowUpTask(
                title=f"Follow up: {f.sub_question}"[:TASK_TITLE_MAX_CHARS],
                description=f"{f.claim}\n\nConfidence: {max(0.0, min(1.0, f.confidence)):.2f}",
                priority=1,
            )
            for f in findings
        ]
        action_tasks = [
            FollowUpTask(
                title=item.title,
                description=item.description,
                priority=item.priority if item.priority is not None else 0,
                due_date=item.due_date,
                assigned_to_id=item.assigned_to_id,
            )
            for item in action_items
        ]
        drafts = finding_tasks + action_tasks
        if not drafts:
            return CreateTasksResult()

        created = await self.store.create_tasks(household_id, user_id, conversation_id, drafts)

        action_task_ids = created[len(finding_tasks):]
        task_by_title: dict[str, str] = {}
        for item, task_id in zip(action_items, action_task_ids):
            if item.title:
                task_by_title[item.title.strip().lower()] = task_id

        report = await self.store.get_report(run_id)
        if report is not None and task_by_title:
            updated_actions = [
                action
                if action.created_task_id
                else replace(action, created_task_id=task_by_title.get(action.title.strip().lower()))
                for action in report.actions
            ]
            if updated_actions != report.actions:
                await self.store.upsert_report(replace(report, actions=updated_actions))

        return CreateTasksResult(created_task_ids=created)


_service: ResearchService | None = None


def get_research_service() -> ResearchService:
    global _service
    if _service is None:
        _service = ResearchService()
    return _service


def reset_research_service(service: ResearchService | None = None) -> None:
    global _service
    _service = service
