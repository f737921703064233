"""Persistence port for research runs plus the in-memory implementation."""
from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from loguru import logger

from deepresearch.config import settings
from deepresearch.models.research import (
    FollowUpTask,
    ResearchFinding,
    ResearchReport,
    ResearchRun,
    ResearchRunEvent,
    ResearchSource,
    RunStatus,
    utcnow,
)

REPORT_MESSAGE_TYPE = "deep-research-report"
REQUEST_MESSAGE_TYPE = "deep-research-request"


class ResearchStore(Protocol):
    async def get_conversation(self, conversation_id: str, household_id: str) -> Optional[dict[str, Any]]: ...

    async def create_run(self, run: ResearchRun) -> ResearchRun: ...
    async def get_run(self, run_id: str) -> Optional[ResearchRun]: ...
    async def update_run(self, run_id: str, **changes: Any) -> Optional[ResearchRun]: ...
    async def list_runs_for_conversation(self, conversation_id: str, household_id: str) -> list[ResearchRun]: ...
    async def list_runs_by_status(self, status: RunStatus) -> list[ResearchRun]: ...
    async def claim_run(
        self,
        run_id: str,
        *,
        from_statuses: Iterable[RunStatus],
        if_updated_at: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[ResearchRun]: ...

    async def insert_sources(self, sources: list[ResearchSource]) -> list[ResearchSource]: ...
    async def list_sources(self, run_id: str) -> list[ResearchSource]: ...
    async def count_sources(self, run_id: str) -> int: ...
    async def delete_sources(self, run_id: str) -> int: ...

    async def insert_findings(self, findings: list[ResearchFinding]) -> list[ResearchFinding]: ...
    async def list_findings(self, run_id: str) -> list[ResearchFinding]: ...
    async def count_findings(self, run_id: str) -> int: ...
    async def delete_findings(self, run_id: str) -> int: ...

    async def upsert_report(self, report: ResearchReport) -> ResearchReport: ...
    async def get_report(self, run_id: str) -> Optional[ResearchReport]: ...

    async def append_event(self, event: ResearchRunEvent) -> None: ...
    async def list_events(self, run_id: str, limit: int) -> list[ResearchRunEvent]: ...

    async def append_message(
        self,
        conversation_id: str,
        *,
        role: str,
        content: str,
        raw: dict[str, Any],
        created_by_id: Optional[str] = None,
    ) -> str: ...
    async def has_run_message(self, conversation_id: str, message_type: str, run_id: str) -> bool: ...

    async def create_tasks(
        self,
        household_id: str,
        created_by_id: str,
        conversation_id: str,
        tasks: list[FollowUpTask],
    ) -> list[str]: ...


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class _StoredMessage:
    id: str
    conversation_id: str
    role: str
    content: str
    raw: dict[str, Any]
    created_by_id: Optional[str]
    created_at: datetime = field(default_factory=utcnow)


class InMemoryResearchStore:
    """Process-local store used by the CLI, tests and deployments without a database.

    Mirrors the relational constraints: one source per (run, url) and one
    report per run.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.conversations: dict[str, dict[str, Any]] = {}
        self.runs: dict[str, ResearchRun] = {}
        self.sources: dict[str, list[ResearchSource]] = {}
        self.findings: dict[str, list[ResearchFinding]] = {}
        self.reports: dict[str, ResearchReport] = {}
        self.events: dict[str, list[ResearchRunEvent]] = {}
        self.messages: list[_StoredMessage] = []
        self.tasks: dict[str, dict[str, Any]] = {}
        self.task_links: list[tuple[str, str]] = []

    # --- Conversations ---

    def add_conversation(self, household_id: str, conversation_id: str | None = None, title: str = "") -> str:
        conversation_id = conversation_id or new_id()
        self.conversations[conversation_id] = {
            "id": conversation_id,
            "household_id": household_id,
            "title": title,
        }
        return conversation_id

    async def get_conversation(self, conversation_id: str, household_id: str) -> Optional[dict[str, Any]]:
        conversation = self.conversations.get(conversation_id)
        if conversation is None or conversation["household_id"] != household_id:
            return None
        return dict(conversation)

    # --- Runs ---

    async def create_run(self, run: ResearchRun) -> ResearchRun:
        async with self._lock:
            self.runs[run.id] = copy.deepcopy(run)
        return copy.deepcopy(run)

    async def get_run(self, run_id: str) -> Optional[ResearchRun]:
        run = self.runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def update_run(self, run_id: str, **changes: Any) -> Optional[ResearchRun]:
        async with self._lock:
            run = self.runs.get(run_id)
            if run is None:
                return None
            changes.setdefault("updated_at", utcnow())
            updated = replace(run, **changes)
            self.runs[run_id] = updated
        return copy.deepcopy(updated)

    async def list_runs_for_conversation(self, conversation_id: str, household_id: str) -> list[ResearchRun]:
        runs = [
            copy.deepcopy(run)
            for run in self.runs.values()
            if run.conversation_id == conversation_id and run.household_id == household_id
        ]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    async def list_runs_by_status(self, status: RunStatus) -> list[ResearchRun]:
        return [copy.deepcopy(run) for run in self.runs.values() if run.status == status]

    async def claim_run(
        self,
        run_id: str,
        *,
        from_statuses: Iterable[RunStatus],
        if_updated_at: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[ResearchRun]:
        allowed = set(from_statuses)
        async with self._lock:
            run = self.runs.get(run_id)
            if run is None or run.status not in allowed:
                return None
            if if_updated_at is not None and run.updated_at != if_updated_at:
                return None
            changes.setdefault("updated_at", utcnow())
            updated = replace(run, **changes)
            self.runs[run_id] = updated
        return copy.deepcopy(updated)

    # --- Sources ---

    async def insert_sources(self, sources: list[ResearchSource]) -> list[ResearchSource]:
        inserted: list[ResearchSource] = []
        async with self._lock:
            for source in sources:
                bucket = self.sources.setdefault(source.run_id, [])
                if any(existing.url == source.url for existing in bucket):
                    continue
                bucket.append(copy.deepcopy(source))
                inserted.append(copy.deepcopy(source))
        return inserted

    async def list_sources(self, run_id: str) -> list[ResearchSource]:
        return copy.deepcopy(self.sources.get(run_id, []))

    async def count_sources(self, run_id: str) -> int:
        return len(self.sources.get(run_id, []))

    async def delete_sources(self, run_id: str) -> int:
        async with self._lock:
            removed = self.sources.pop(run_id, [])
        return len(removed)

    # --- Findings ---

    async def insert_findings(self, findings: list[ResearchFinding]) -> list[ResearchFinding]:
        async with self._lock:
            for finding in findings:
                self.findings.setdefault(finding.run_id, []).append(copy.deepcopy(finding))
        return copy.deepcopy(findings)

    async def list_findings(self, run_id: str) -> list[ResearchFinding]:
        return copy.deepcopy(self.findings.get(run_id, []))

    async def count_findings(self, run_id: str) -> int:
        return len(self.findings.get(run_id, []))

    async def delete_findings(self, run_id: str) -> int:
        async with self._lock:
            removed = self.findings.pop(run_id, [])
        return len(removed)

    # --- Reports ---

    async def upsert_report(self, report: ResearchReport) -> ResearchReport:
        async with self._lock:
            existing = self.reports.get(report.run_id)
            stored = copy.deepcopy(report)
            if existing is not None:
                stored.created_at = existing.created_at
                stored.updated_at = utcnow()
            self.reports[report.run_id] = stored
        return copy.deepcopy(stored)

    async def get_report(self, run_id: str) -> Optional[ResearchReport]:
        report = self.reports.get(run_id)
        return copy.deepcopy(report) if report else None

    # --- Events ---

    async def append_event(self, event: ResearchRunEvent) -> None:
        self.events.setdefault(event.run_id, []).append(copy.deepcopy(event))

    async def list_events(self, run_id: str, limit: int) -> list[ResearchRunEvent]:
        events = self.events.get(run_id, [])
        # Stable on equal timestamps: later appends come first.
        ordered = [event for _, event in sorted(enumerate(events), key=lambda p: (p[1].created_at, p[0]), reverse=True)]
        return copy.deepcopy(ordered[:limit])

    # --- Conversation messages ---

    async def append_message(
        self,
        conversation_id: str,
        *,
        role: str,
        content: str,
        raw: dict[str, Any],
        created_by_id: Optional[str] = None,
    ) -> str:
        message = _StoredMessage(
            id=new_id(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            raw=dict(raw),
            created_by_id=created_by_id,
        )
        self.messages.append(message)
        return message.id

    async def has_run_message(self, conversation_id: str, message_type: str, run_id: str) -> bool:
        return any(
            m.conversation_id == conversation_id
            and m.role == "assistant"
            and m.raw.get("type") == message_type
            and m.raw.get("researchRunId") == run_id
            for m in self.messages
        )

    def messages_for(self, conversation_id: str) -> list[_StoredMessage]:
        return [m for m in self.messages if m.conversation_id == conversation_id]

    # --- Tasks ---

    async def create_tasks(
        self,
        household_id: str,
        created_by_id: str,
        conversation_id: str,
        tasks: list[FollowUpTask],
    ) -> list[str]:
        created: list[str] = []
        async with self._lock:
            for task in tasks:
                task_id = new_id()
                self.tasks[task_id] = {
                    "id": task_id,
                    "household_id": household_id,
                    "created_by_id": created_by_id,
                    "title": task.title,
                    "description": task.description,
                    "priority": task.priority,
                    "due_date": task.due_date,
                    "assigned_to_id": task.assigned_to_id,
                }
                self.task_links.append((conversation_id, task_id))
                created.append(task_id)
        return created


_store: ResearchStore | None = None


def get_store() -> ResearchStore:
    global _store
    if _store is None:
        if settings.database_url:
            from deepresearch.services.database import PostgresResearchStore

            _store = PostgresResearchStore()
        else:
            logger.warning("DATABASE_URL is not set; research runs are kept in memory only")
            _store = InMemoryResearchStore()
    return _store


def set_store(store: ResearchStore | None) -> None:
    global _store
    _store = store
