from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import HOUSEHOLD_ID, make_finding, make_run, make_source

from deepresearch.models.research import (
    EventStatus,
    FollowUpTask,
    ReportAction,
    ResearchReport,
    ResearchRunEvent,
    RunStatus,
    utcnow,
)
from deepresearch.services import store as store_module
from deepresearch.services.store import InMemoryResearchStore, get_store, new_id, set_store


@pytest.mark.asyncio
async def test_conversation_is_scoped_to_household(store, conversation_id):
    assert (await store.get_conversation(conversation_id, HOUSEHOLD_ID))["id"] == conversation_id
    assert await store.get_conversation(conversation_id, "someone-else") is None
    assert await store.get_conversation("missing", HOUSEHOLD_ID) is None


@pytest.mark.asyncio
async def test_duplicate_source_url_is_ignored_per_run(store, conversation_id):
    run = await store.create_run(make_run(conversation_id))
    other = await store.create_run(make_run(conversation_id))
    url = "https://www.energy.gov/heat-pumps"

    first = await store.insert_sources([make_source(run.id, url), make_source(run.id, url)])
    again = await store.insert_sources([make_source(run.id, url)])
    elsewhere = await store.insert_sources([make_source(other.id, url)])

    assert len(first) == 1
    assert again == []
    assert len(elsewhere) == 1
    assert await store.count_sources(run.id) == 1


@pytest.mark.asyncio
async def test_update_run_touches_updated_at(store, conversation_id):
    run = await store.create_run(
        replace(make_run(conversation_id), updated_at=utcnow() - timedelta(minutes=5))
    )

    updated = await store.update_run(run.id, status=RunStatus.RUNNING, error=None)

    assert updated.status == RunStatus.RUNNING
    assert updated.updated_at > run.updated_at
    assert await store.update_run("missing", status=RunStatus.FAILED) is None


@pytest.mark.asyncio
async def test_returned_runs_are_copies(store, conversation_id):
    run = await store.create_run(make_run(conversation_id))
    fetched = await store.get_run(run.id)
    fetched.metrics["phase"] = "tampered"
    assert (await store.get_run(run.id)).metrics == {}


@pytest.mark.asyncio
async def test_list_runs_by_status(store, conversation_id):
    running = await store.create_run(make_run(conversation_id, status=RunStatus.RUNNING))
    await store.create_run(make_run(conversation_id, status=RunStatus.FAILED))
    assert [r.id for r in await store.list_runs_by_status(RunStatus.RUNNING)] == [running.id]


@pytest.mark.asyncio
async def test_delete_findings(store, conversation_id):
    run = await store.create_run(make_run(conversation_id))
    await store.insert_findings([make_finding(run.id), make_finding(run.id)])

    assert await store.count_findings(run.id) == 2
    assert await store.delete_findings(run.id) == 2
    assert await store.list_findings(run.id) == []
    assert await store.delete_findings(run.id) == 0


@pytest.mark.asyncio
async def test_report_upsert_keeps_created_at(store, conversation_id):
    run = await store.create_run(make_run(conversation_id))
    first = await store.upsert_report(ResearchReport(run_id=run.id, summary="v1", report_markdown="m1"))
    second = await store.upsert_report(
        ResearchReport(run_id=run.id, summary="v2", report_markdown="m2", actions=[ReportAction(title="Act")])
    )

    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at
    stored = await store.get_report(run.id)
    assert stored.summary == "v2"
    assert [a.title for a in stored.actions] == ["Act"]


@pytest.mark.asyncio
async def test_events_come_back_most_recent_first(store, conversation_id):
    run = await store.create_run(make_run(conversation_id))
    base = utcnow()
    for offset, message in enumerate(["first", "second", "third"]):
        await store.append_event(
            ResearchRunEvent(
                id=new_id(),
                run_id=run.id,
                stage="worker",
                status=EventStatus.PROGRESS,
                message=message,
                created_at=base + timedelta(seconds=offset),
            )
        )

    events = await store.list_events(run.id, 2)
    assert [e.message for e in events] == ["third", "second"]


@pytest.mark.asyncio
async def test_events_with_equal_timestamps_keep_append_order(store, conversation_id):
    run = await store.create_run(make_run(conversation_id))
    stamp = utcnow()
    for message in ["a", "b"]:
        await store.append_event(
            ResearchRunEvent(
                id=new_id(), run_id=run.id, stage="run", status=EventStatus.INFO, message=message, created_at=stamp
            )
        )
    assert [e.message for e in await store.list_events(run.id, 10)] == ["b", "a"]


@pytest.mark.asyncio
async def test_has_run_message_matches_assistant_messages_only(store, conversation_id):
    raw = {"type": store_module.REPORT_MESSAGE_TYPE, "researchRunId": "run-1"}
    await store.append_message(conversation_id, role="user", content="q", raw=raw)
    assert not await store.has_run_message(conversation_id, store_module.REPORT_MESSAGE_TYPE, "run-1")

    await store.append_message(conversation_id, role="assistant", content="report", raw=raw)
    assert await store.has_run_message(conversation_id, store_module.REPORT_MESSAGE_TYPE, "run-1")
    assert not await store.has_run_message(conversation_id, store_module.REPORT_MESSAGE_TYPE, "run-2")


@pytest.mark.asyncio
async def test_create_tasks_links_to_conversation(store, conversation_id):
    ids = await store.create_tasks(
        HOUSEHOLD_ID,
        "user-1",
        conversation_id,
        [FollowUpTask(title="Call installer", priority=2, due_date="2026-11-01")],
    )

    [task_id] = ids
    assert store.tasks[task_id]["title"] == "Call installer"
    assert store.tasks[task_id]["due_date"] == "2026-11-01"
    assert store.task_links == [(conversation_id, task_id)]


def test_get_store_defaults_to_memory(monkeypatch):
    monkeypatch.setattr(store_module.settings, "database_url", "")
    set_store(None)
    try:
        assert isinstance(get_store(), InMemoryResearchStore)
        assert get_store() is get_store()
    finally:
        set_store(None)


@pytest.mark.asyncio
async def test_claim_run_only_moves_expected_statuses(store, conversation_id):
    run = await store.create_run(make_run(conversation_id))

    claimed = await store.claim_run(run.id, from_statuses=[RunStatus.PLANNING], status=RunStatus.RUNNING)
    again = await store.claim_run(run.id, from_statuses=[RunStatus.PLANNING], status=RunStatus.RUNNING)

    assert claimed.status == RunStatus.RUNNING
    assert again is None
    assert await store.claim_run("missing", from_statuses=[RunStatus.PLANNING]) is None


@pytest.mark.asyncio
async def test_claim_run_checks_observed_updated_at(store, conversation_id):
    run = await store.create_run(make_run(conversation_id, status=RunStatus.RUNNING))

    stale_view = run.updated_at - timedelta(seconds=1)
    assert await store.claim_run(run.id, from_statuses=[RunStatus.RUNNING], if_updated_at=stale_view) is None

    touched = await store.claim_run(run.id, from_statuses=[RunStatus.RUNNING], if_updated_at=run.updated_at)
    assert touched.updated_at > run.updated_at
    assert touched.status == RunStatus.RUNNING


@pytest.mark.asyncio
async def test_delete_sources(store, conversation_id):
    run = await store.create_run(make_run(conversation_id))
    url = "https://www.energy.gov/heat-pumps"
    await store.insert_sources([make_source(run.id, url)])

    assert await store.delete_sources(run.id) == 1
    assert await store.count_sources(run.id) == 0
    assert len(await store.insert_sources([make_source(run.id, url)])) == 1
