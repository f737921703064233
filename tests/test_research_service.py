"""Plan, start, status and follow-up task flows of the research service."""
from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import HOUSEHOLD_ID, USER_ID, make_finding, make_plan, make_run

from deepresearch.models.research import (
    Effort,
    ReportAction,
    ResearchReport,
    RunStatus,
    utcnow,
)
from deepresearch.services.durable import DurableTaskRunner
from deepresearch.services.research_service import (
    STALE_RUN_MESSAGE,
    ActionItemInput,
    ResearchNotFoundError,
    ResearchService,
    StartOutcome,
)
from deepresearch.services.store import REQUEST_MESSAGE_TYPE


def _service(store):
    orchestrator = MagicMock()
    orchestrator.execute = AsyncMock(return_value=RunStatus.COMPLETED)
    runner = DurableTaskRunner()
    return ResearchService(store=store, runner=runner, orchestrator=orchestrator), runner, orchestrator


@pytest.mark.asyncio
async def test_create_plan_persists_planning_run(store, conversation_id):
    service, _, _ = _service(store)

    result = await service.create_plan(
        conversation_id=conversation_id,
        household_id=HOUSEHOLD_ID,
        user_id=USER_ID,
        query="Are induction stoves worth it?",
        effort="deep",
        recency_days=90,
    )

    assert result.planner_status == "fallback"
    assert result.planner_reason == "No planner model/API key is configured on the server."
    assert result.budget.max_steps == 12
    run = await store.get_run(result.run_id)
    assert run.status == RunStatus.PLANNING
    assert run.effort == Effort.DEEP
    assert run.metrics["phase"] == "planning"
    assert run.metrics["total_sub_questions"] == len(result.plan.sub_questions)

    [message] = store.messages_for(conversation_id)
    assert message.role == "user"
    assert message.content == "Are induction stoves worth it?"
    assert message.raw == {
        "type": REQUEST_MESSAGE_TYPE,
        "researchRunId": run.id,
        "effort": "deep",
        "recencyDays": 90,
    }
    [event] = await store.list_events(run.id, 10)
    assert event.stage == "planning" and event.status == "completed"


@pytest.mark.asyncio
async def test_create_plan_unknown_conversation(store):
    service, _, _ = _service(store)
    store.add_conversation("other-household", conversation_id="theirs")
    with pytest.raises(ResearchNotFoundError):
        await service.create_plan(
            conversation_id="theirs", household_id=HOUSEHOLD_ID, user_id=USER_ID, query="q"
        )


@pytest.mark.asyncio
async def test_start_run_accepts_and_normalizes_plan(store, conversation_id):
    service, runner, orchestrator = _service(store)
    run = await store.create_run(make_run(conversation_id))
    plan = make_plan(count=10)

    outcome = await service.start_run(
        conversation_id=conversation_id,
        run_id=run.id,
        household_id=HOUSEHOLD_ID,
        user_id=USER_ID,
        plan=plan,
    )
    await runner.wait(run.id)

    assert outcome == StartOutcome.ACCEPTED
    stored = await store.get_run(run.id)
    assert stored.status == RunStatus.RUNNING
    assert stored.started_at is not None
    assert len(stored.plan.sub_questions) == 8
    orchestrator.execute.assert_awaited_once()
    executed_run = orchestrator.execute.await_args.args[0]
    assert executed_run.id == run.id and len(executed_run.plan.sub_questions) == 8


@pytest.mark.asyncio
async def test_start_run_is_noop_while_fresh_run_is_running(store, conversation_id):
    service, _, orchestrator = _service(store)
    run = await store.create_run(make_run(conversation_id, status=RunStatus.RUNNING))

    outcome = await service.start_run(
        conversation_id=conversation_id,
        run_id=run.id,
        household_id=HOUSEHOLD_ID,
        user_id=USER_ID,
        plan=run.plan,
    )

    assert outcome == StartOutcome.NOOP
    orchestrator.execute.assert_not_awaited()
    assert await store.list_events(run.id, 10) == []


@pytest.mark.asyncio
async def test_stale_running_run_is_failed_then_restarted(store, conversation_id):
    service, runner, orchestrator = _service(store)
    stuck = replace(
        make_run(conversation_id, effort=Effort.QUICK, status=RunStatus.RUNNING),
        updated_at=utcnow() - timedelta(minutes=21),
    )
    await store.create_run(stuck)

    outcome = await service.start_run(
        conversation_id=conversation_id,
        run_id=stuck.id,
        household_id=HOUSEHOLD_ID,
        user_id=USER_ID,
        plan=stuck.plan,
    )
    await runner.wait(stuck.id)

    assert outcome == StartOutcome.STALE_RESET
    events = await store.list_events(stuck.id, 10)
    assert [(e.stage, str(e.status), e.message) for e in reversed(events)] == [
        ("run", "failed", STALE_RUN_MESSAGE),
        ("run", "started", "Research execution started."),
    ]
    orchestrator.execute.assert_awaited_once()
    stored = await store.get_run(stuck.id)
    assert stored.status == RunStatus.RUNNING
    assert stored.error is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status",
    [RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_WARNINGS, RunStatus.FAILED, RunStatus.CANCELED],
)
async def test_finished_run_is_not_restarted(store, conversation_id, status):
    service, runner, orchestrator = _service(store)
    run = await store.create_run(make_run(conversation_id, status=status))

    outcome = await service.start_run(
        conversation_id=conversation_id,
        run_id=run.id,
        household_id=HOUSEHOLD_ID,
        user_id=USER_ID,
        plan=run.plan,
    )

    assert outcome == StartOutcome.NOOP
    assert not runner.is_active(run.id)
    orchestrator.execute.assert_not_awaited()
    assert (await store.get_run(run.id)).status == status
    assert await store.list_events(run.id, 10) == []


@pytest.mark.asyncio
async def test_start_run_loses_claim_to_another_process(store, conversation_id):
    service, runner, orchestrator = _service(store)
    run = await store.create_run(make_run(conversation_id))
    real_get_run = store.get_run

    async def get_run_then_race(run_id):
        snapshot = await real_get_run(run_id)
        # another process claims the run between our read and our claim
        await store.update_run(run_id, status=RunStatus.RUNNING)
        return snapshot

    with patch.object(store, "get_run", side_effect=get_run_then_race):
        outcome = await service.start_run(
            conversation_id=conversation_id,
            run_id=run.id,
            household_id=HOUSEHOLD_ID,
            user_id=USER_ID,
            plan=run.plan,
        )

    assert outcome == StartOutcome.NOOP
    assert not runner.is_active(run.id)
    orchestrator.execute.assert_not_awaited()
    assert await store.list_events(run.id, 10) == []


@pytest.mark.asyncio
async def test_start_run_checks_ownership(store, conversation_id):
    service, _, _ = _service(store)
    run = await store.create_run(make_run(conversation_id))
    with pytest.raises(ResearchNotFoundError):
        await service.start_run(
            conversation_id="another-conversation",
            run_id=run.id,
            household_id=HOUSEHOLD_ID,
            user_id=USER_ID,
            plan=run.plan,
        )


@pytest.mark.asyncio
async def test_get_run_status_snapshot(store, conversation_id):
    service, _, _ = _service(store)
    run = await store.create_run(make_run(conversation_id))
    await store.insert_findings([make_finding(run.id)])

    snapshot = await service.get_run_status(
        conversation_id=conversation_id, run_id=run.id, household_id=HOUSEHOLD_ID
    )

    assert snapshot.run.id == run.id
    assert snapshot.budget.max_steps == 4
    assert len(snapshot.findings) == 1
    assert snapshot.report is None
    with pytest.raises(ResearchNotFoundError):
        await service.get_run_status(conversation_id=conversation_id, run_id="missing", household_id=HOUSEHOLD_ID)


@pytest.mark.asyncio
async def test_list_runs_newest_first(store, conversation_id):
    service, _, _ = _service(store)
    older = replace(make_run(conversation_id), created_at=utcnow() - timedelta(hours=1))
    newer = make_run(conversation_id)
    await store.create_run(older)
    await store.create_run(newer)

    runs = await service.list_runs_for_conversation(conversation_id=conversation_id, household_id=HOUSEHOLD_ID)
    assert [r.id for r in runs] == [newer.id, older.id]
    assert await service.list_runs_for_conversation(conversation_id=conversation_id, household_id="x") == []


@pytest.mark.asyncio
async def test_create_tasks_from_findings_and_actions(store, conversation_id):
    service, _, _ = _service(store)
    run = await store.create_run(make_run(conversation_id))
    [finding] = await store.insert_findings([make_finding(run.id, confidence=0.812)])
    await store.upsert_report(
        ResearchReport(
            run_id=run.id,
            summary="s",
            report_markdown="m",
            actions=[ReportAction(title="Get Quotes"), ReportAction(title="Already done", created_task_id="t-0")],
        )
    )

    result = await service.create_tasks_from_run(
        conversation_id=conversation_id,
        run_id=run.id,
        household_id=HOUSEHOLD_ID,
        user_id=USER_ID,
        finding_ids=[finding.id, "not-in-run"],
        action_items=[
            ActionItemInput(title="get quotes", description="Ask three installers", priority=2),
            ActionItemInput(title="Already done"),
        ],
    )

    assert len(result.created_task_ids) == 3
    finding_task, quotes_task, _ = (store.tasks[task_id] for task_id in result.created_task_ids)
    assert finding_task["title"] == f"Follow up: {finding.sub_question}"
    assert finding_task["description"] == f"{finding.claim}\n\nConfidence: 0.81"
    assert finding_task["priority"] == 1
    assert quotes_task["priority"] == 2
    assert all(link == (conversation_id, task_id) for link, task_id in zip(store.task_links, result.created_task_ids))

    report = await store.get_report(run.id)
    assert report.actions[0].created_task_id == result.created_task_ids[1]
    assert report.actions[1].created_task_id == "t-0"


@pytest.mark.asyncio
async def test_create_tasks_with_nothing_selected(store, conversation_id):
    service, _, _ = _service(store)
    run = await store.create_run(make_run(conversation_id))
    result = await service.create_tasks_from_run(
        conversation_id=conversation_id,
        run_id=run.id,
        household_id=HOUSEHOLD_ID,
        user_id=USER_ID,
        finding_ids=[],
        action_items=[],
    )
    assert result.created_task_ids == []
    assert store.tasks == {}


@pytest.mark.asyncio
async def test_recover_running_runs_resubmits(store, conversation_id):
    service, runner, orchestrator = _service(store)
    running = await store.create_run(make_run(conversation_id, status=RunStatus.RUNNING))
    await store.create_run(make_run(conversation_id, status=RunStatus.COMPLETED))

    resumed = await service.recover_running_runs()
    await runner.wait(running.id)

    assert resumed == [running.id]
    orchestrator.execute.assert_awaited_once()
    [event] = await store.list_events(running.id, 10)
    assert event.message == "Resuming research execution after restart."


@pytest.mark.asyncio
async def test_recovery_resumes_each_run_once_across_processes(store, conversation_id):
    running = await store.create_run(make_run(conversation_id, status=RunStatus.RUNNING))
    listed = await store.list_runs_by_status(RunStatus.RUNNING)
    first, first_runner, first_orchestrator = _service(store)
    second, _, second_orchestrator = _service(store)

    # both processes list the run before either one claims it
    with patch.object(store, "list_runs_by_status", AsyncMock(return_value=listed)):
        resumed_first = await first.recover_running_runs()
        resumed_second = await second.recover_running_runs()
    await first_runner.wait(running.id)

    assert resumed_first == [running.id]
    assert resumed_second == []
    first_orchestrator.execute.assert_awaited_once()
    second_orchestrator.execute.assert_not_awaited()
