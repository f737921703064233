"""PostgreSQL research store using asyncpg."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

import asyncpg

from deepresearch.config import settings
from deepresearch.models.research import (
    EventStatus,
    FindingEvidence,
    FindingStatus,
    FollowUpTask,
    ResearchFinding,
    ResearchPlan,
    ResearchPresentation,
    ResearchReport,
    ResearchRun,
    ResearchRunEvent,
    ResearchSource,
    ReportAction,
    RunStatus,
    parse_effort,
    utcnow,
)
from deepresearch.services.logger import log_db_operation

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"

# Connection pool
_pool: asyncpg.Pool | None = None


def _db_available() -> bool:
    """Check if database is configured and available."""
    return bool(settings.database_url)


async def _get_pool() -> asyncpg.Pool:
    """Get or create the database connection pool."""
    global _pool
    if not _db_available():
        raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=10,
        )
    return _pool


async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def ensure_schema() -> None:
    """Apply the bundled SQL migrations (idempotent)."""
    pool = await _get_pool()
    async with pool.acquire() as conn:
        for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
            await conn.execute(path.read_text(encoding="utf-8"))
            log_db_operation("migrate", path.name)


def _coerce_json(value: Any, default: Any) -> Any:
    """Normalize JSON columns that come back as strings without a codec."""
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    return value


def _coerce_json_object(value: Any) -> dict[str, Any]:
    parsed = _coerce_json(value, {})
    return parsed if isinstance(parsed, dict) else {}


def _coerce_json_list(value: Any) -> list[Any]:
    parsed = _coerce_json(value, [])
    return parsed if isinstance(parsed, list) else []


def _float_or_none(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _parse_due_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# --- Row mapping ---


def _row_to_run(row: Any) -> ResearchRun:
    return ResearchRun(
        id=str(row["id"]),
        conversation_id=str(row["conversation_id"]),
        household_id=row["household_id"],
        created_by_id=row["created_by_id"],
        query=row["query"],
        effort=parse_effort(row["effort"]),
        plan=ResearchPlan.model_validate(_coerce_json_object(row["plan_json"])),
        recency_days=row["recency_days"],
        status=RunStatus(row["status"]),
        quality_score=_float_or_none(row["quality_score"]),
        metrics=_coerce_json_object(row["metrics"]),
        error=row["error"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


def _row_to_source(row: Any) -> ResearchSource:
    return ResearchSource(
        id=str(row["id"]),
        run_id=str(row["research_run_id"]),
        url=row["url"],
        title=row["title"],
        domain=row["domain"],
        snippet=row["snippet"],
        published_at=row["published_at"],
        retrieved_at=row["retrieved_at"],
        score=_float_or_none(row["score"]),
        metadata=_coerce_json_object(row["metadata"]),
    )


def _row_to_finding(row: Any) -> ResearchFinding:
    evidence = [
        FindingEvidence(
            source_id=item.get("source_id", ""),
            excerpt=item.get("excerpt"),
            relevance_score=float(item.get("relevance_score") or 0.0),
            url=item.get("url", ""),
            title=item.get("title"),
        )
        for item in _coerce_json_list(row["evidence_json"])
        if isinstance(item, dict)
    ]
    return ResearchFinding(
        id=str(row["id"]),
        run_id=str(row["research_run_id"]),
        sub_question=row["sub_question"],
        claim=row["claim"],
        confidence=float(row["confidence"]),
        status=FindingStatus(row["status"]),
        supporting_source_ids=[str(i) for i in _coerce_json_list(row["supporting_source_ids"])],
        evidence=evidence,
        notes=row["notes"],
        created_at=row["created_at"],
    )


def _row_to_report(row: Any) -> ResearchReport:
    presentation_raw = _coerce_json(row["presentation"], None)
    actions = [
        ReportAction(
            title=item.get("title", ""),
            description=item.get("description", "") or "",
            related_finding_ids=list(item.get("related_finding_ids") or []),
            created_task_id=item.get("created_task_id"),
        )
        for item in _coerce_json_list(row["actions"])
        if isinstance(item, dict)
    ]
    return ResearchReport(
        run_id=str(row["research_run_id"]),
        summary=row["summary"],
        report_markdown=row["report_markdown"],
        actions=actions,
        presentation=ResearchPresentation.model_validate(presentation_raw) if presentation_raw else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_event(row: Any) -> ResearchRunEvent:
    payload = _coerce_json(row["payload"], None)
    return ResearchRunEvent(
        id=str(row["id"]),
        run_id=str(row["research_run_id"]),
        stage=row["stage"],
        status=EventStatus(row["status"]),
        message=row["message"],
        sub_question=row["sub_question"],
        payload=payload if isinstance(payload, dict) else None,
        created_at=row["created_at"],
    )


# Columns update_run may touch, with their encoders.
_RUN_UPDATE_COLUMNS: dict[str, tuple[str, Any]] = {
    "status": ("status", lambda v: RunStatus(v).value),
    "quality_score": ("quality_score", lambda v: v),
    "metrics": ("metrics", json.dumps),
    "error": ("error", lambda v: v),
    "plan": ("plan_json", lambda v: json.dumps(v.model_dump())),
    "started_at": ("started_at", lambda v: v),
    "completed_at": ("completed_at", lambda v: v),
    "updated_at": ("updated_at", lambda v: v),
}


class PostgresResearchStore:
    """ResearchStore backed by the research_* tables."""

    # --- Conversations ---

    async def get_conversation(self, conversation_id: str, household_id: str) -> Optional[dict[str, Any]]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, household_id, title FROM conversations WHERE id = $1 AND household_id = $2",
                conversation_id,
                household_id,
            )
        if row is None:
            return None
        return {"id": str(row["id"]), "household_id": row["household_id"], "title": row["title"]}

    # --- Runs ---

    async def create_run(self, run: ResearchRun) -> ResearchRun:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO research_runs (
                    id, conversation_id, household_id, created_by_id, query, effort,
                    recency_days, plan_json, status, metrics, error
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10::jsonb, $11)
                RETURNING *
                """,
                run.id,
                run.conversation_id,
                run.household_id,
                run.created_by_id,
                run.query,
                run.effort.value,
                run.recency_days,
                json.dumps(run.plan.model_dump()),
                run.status.value,
                json.dumps(run.metrics),
                run.error,
            )
        log_db_operation("insert", "research_runs", run_id=run.id, rows=1)
        return _row_to_run(row)

    async def get_run(self, run_id: str) -> Optional[ResearchRun]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM research_runs WHERE id = $1", run_id)
        return _row_to_run(row) if row else None

    @staticmethod
    def _run_assignments(changes: dict[str, Any]) -> tuple[list[str], list[Any]]:
        changes.setdefault("updated_at", utcnow())
        assignments: list[str] = []
        values: list[Any] = []
        for key, value in changes.items():
            if key not in _RUN_UPDATE_COLUMNS:
                raise ValueError(f"Unsupported research_runs column: {key}")
            column, encode = _RUN_UPDATE_COLUMNS[key]
            values.append(encode(value) if value is not None else None)
            cast = "::jsonb" if column in ("metrics", "plan_json") else ""
            assignments.append(f"{column} = ${len(values)}{cast}")
        return assignments, values

    async def update_run(self, run_id: str, **changes: Any) -> Optional[ResearchRun]:
        assignments, values = self._run_assignments(changes)
        values.append(run_id)

        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE research_runs SET {', '.join(assignments)} WHERE id = ${len(values)} RETURNING *",
                *values,
            )
        log_db_operation(
            "update", "research_runs", run_id=run_id, rows=1 if row else 0, details=",".join(sorted(changes))
        )
        return _row_to_run(row) if row else None

    async def claim_run(
        self,
        run_id: str,
        *,
        from_statuses: Iterable[RunStatus],
        if_updated_at: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[ResearchRun]:
        """Apply ``changes`` only while the row is still in one of ``from_statuses``.

        Returns None when another writer moved the run first, so exactly one
        caller wins each transition.
        """
        assignments, values = self._run_assignments(changes)
        values.append(run_id)
        conditions = [f"id = ${len(values)}"]
        values.append([RunStatus(s).value for s in from_statuses])
        conditions.append(f"status = ANY(${len(values)}::text[])")
        if if_updated_at is not None:
            values.append(if_updated_at)
            conditions.append(f"updated_at = ${len(values)}")

        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE research_runs SET {', '.join(assignments)} WHERE {' AND '.join(conditions)} RETURNING *",
                *values,
            )
        outcome = "success" if row else "skipped"
        log_db_operation("claim", "research_runs", outcome, run_id=run_id, details=",".join(sorted(changes)))
        return _row_to_run(row) if row else None

    async def list_runs_for_conversation(self, conversation_id: str, household_id: str) -> list[ResearchRun]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM research_runs
                WHERE conversation_id = $1 AND household_id = $2
                ORDER BY created_at DESC
                """,
                conversation_id,
                household_id,
            )
        return [_row_to_run(row) for row in rows]

    async def list_runs_by_status(self, status: RunStatus) -> list[ResearchRun]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM research_runs WHERE status = $1 ORDER BY updated_at",
                RunStatus(status).value,
            )
        return [_row_to_run(row) for row in rows]

    # --- Sources ---

    async def insert_sources(self, sources: list[ResearchSource]) -> list[ResearchSource]:
        if not sources:
            return []
        inserted: list[ResearchSource] = []
        pool = await _get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for source in sources:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO research_sources (
                            id, research_run_id, url, title, domain, snippet,
                            published_at, retrieved_at, score, metadata
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
                        ON CONFLICT (research_run_id, url) DO NOTHING
                        RETURNING *
                        """,
                        source.id,
                        source.run_id,
                        source.url,
                        source.title,
                        source.domain,
                        source.snippet,
                        source.published_at,
                        source.retrieved_at,
                        source.score,
                        json.dumps(source.metadata),
                    )
                    if row is not None:
                        inserted.append(_row_to_source(row))
        log_db_operation(
            "insert",
            "research_sources",
            run_id=sources[0].run_id,
            rows=len(inserted),
            details=f"{len(sources) - len(inserted)} duplicate urls ignored",
        )
        return inserted

    async def list_sources(self, run_id: str) -> list[ResearchSource]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM research_sources WHERE research_run_id = $1 ORDER BY retrieved_at, url",
                run_id,
            )
        return [_row_to_source(row) for row in rows]

    async def count_sources(self, run_id: str) -> int:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            return int(
                await conn.fetchval("SELECT count(*) FROM research_sources WHERE research_run_id = $1", run_id)
            )

    async def delete_sources(self, run_id: str) -> int:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute("DELETE FROM research_sources WHERE research_run_id = $1", run_id)
        deleted = int(status.split()[-1]) if status else 0
        log_db_operation("delete", "research_sources", run_id=run_id, rows=deleted)
        return deleted

    # --- Findings ---

    async def insert_findings(self, findings: list[ResearchFinding]) -> list[ResearchFinding]:
        if not findings:
            return []
        stored: list[ResearchFinding] = []
        pool = await _get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for finding in findings:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO research_findings (
                            id, research_run_id, sub_question, claim, confidence, status,
                            supporting_source_ids, evidence_json, notes
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9)
                        RETURNING *
                        """,
                        finding.id,
                        finding.run_id,
                        finding.sub_question,
                        finding.claim,
                        finding.confidence,
                        finding.status.value,
                        json.dumps(finding.supporting_source_ids),
                        json.dumps([asdict(item) for item in finding.evidence]),
                        finding.notes,
                    )
                    stored.append(_row_to_finding(row))
        log_db_operation("insert", "research_findings", run_id=findings[0].run_id, rows=len(stored))
        return stored

    async def list_findings(self, run_id: str) -> list[ResearchFinding]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM research_findings WHERE research_run_id = $1 ORDER BY created_at, id",
                run_id,
            )
        return [_row_to_finding(row) for row in rows]

    async def count_findings(self, run_id: str) -> int:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            return int(
                await conn.fetchval("SELECT count(*) FROM research_findings WHERE research_run_id = $1", run_id)
            )

    async def delete_findings(self, run_id: str) -> int:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute("DELETE FROM research_findings WHERE research_run_id = $1", run_id)
        # asyncpg returns the command tag, e.g. "DELETE 3"
        deleted = int(status.split()[-1]) if status else 0
        log_db_operation("delete", "research_findings", run_id=run_id, rows=deleted)
        return deleted

    # --- Reports ---

    async def upsert_report(self, report: ResearchReport) -> ResearchReport:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO research_reports (research_run_id, summary, report_markdown, actions, presentation)
                VALUES ($1, $2, $3, $4::jsonb, $5::jsonb)
                ON CONFLICT (research_run_id) DO UPDATE SET
                    summary = EXCLUDED.summary,
                    report_markdown = EXCLUDED.report_markdown,
                    actions = EXCLUDED.actions,
                    presentation = EXCLUDED.presentation,
                    updated_at = now()
                RETURNING *
                """,
                report.run_id,
                report.summary,
                report.report_markdown,
                json.dumps([asdict(action) for action in report.actions]),
                json.dumps(report.presentation.model_dump()) if report.presentation else None,
            )
        log_db_operation("upsert", "research_reports", run_id=report.run_id, rows=1)
        return _row_to_report(row)

    async def get_report(self, run_id: str) -> Optional[ResearchReport]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM research_reports WHERE research_run_id = $1", run_id)
        return _row_to_report(row) if row else None

    # --- Events ---

    async def append_event(self, event: ResearchRunEvent) -> None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO research_run_events (id, research_run_id, stage, status, sub_question, message, payload, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
                """,
                event.id,
                event.run_id,
                event.stage,
                event.status.value,
                event.sub_question,
                event.message,
                json.dumps(event.payload) if event.payload is not None else None,
                event.created_at,
            )

    async def list_events(self, run_id: str, limit: int) -> list[ResearchRunEvent]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM research_run_events
                WHERE research_run_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                run_id,
                limit,
            )
        return [_row_to_event(row) for row in rows]

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
        pool = await _get_pool()
        async with pool.acquire() as conn:
            message_id = await conn.fetchval(
                """
                INSERT INTO conversation_messages (conversation_id, role, content, raw, created_by_id)
                VALUES ($1, $2, $3, $4::jsonb, $5)
                RETURNING id
                """,
                conversation_id,
                role,
                content,
                json.dumps(raw),
                created_by_id,
            )
            await conn.execute("UPDATE conversations SET updated_at = now() WHERE id = $1", conversation_id)
        log_db_operation(
            "insert", "conversation_messages", run_id=raw.get("researchRunId"), rows=1, details=str(raw.get("type"))
        )
        return str(message_id)

    async def has_run_message(self, conversation_id: str, message_type: str, run_id: str) -> bool:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            found = await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM conversation_messages
                    WHERE conversation_id = $1
                      AND role = 'assistant'
                      AND raw->>'type' = $2
                      AND raw->>'researchRunId' = $3
                )
                """,
                conversation_id,
                message_type,
                run_id,
            )
        return bool(found)

    # --- Tasks ---

    async def create_tasks(
        self,
        household_id: str,
        created_by_id: str,
        conversation_id: str,
        tasks: list[FollowUpTask],
    ) -> list[str]:
        created: list[str] = []
        pool = await _get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for task in tasks:
                    task_id = await conn.fetchval(
                        """
                        INSERT INTO tasks (household_id, created_by_id, title, description, priority, due_date, assigned_to_id)
                        VALUES ($1, $2, $3, $4, $5, $6, $7)
                        RETURNING id
                        """,
                        household_id,
                        created_by_id,
                        task.title,
                        task.description,
                        task.priority,
                        _parse_due_date(task.due_date),
                        task.assigned_to_id,
                    )
                    await conn.execute(
                        """
                        INSERT INTO conversation_tasks (conversation_id, task_id)
                        VALUES ($1, $2)
                        ON CONFLICT DO NOTHING
                        """,
                        conversation_id,
                        task_id,
                    )
                    created.append(str(task_id))
        log_db_operation("insert", "tasks", rows=len(created), details="follow-up tasks")
        return created
