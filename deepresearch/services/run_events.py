"""Append-only run event log."""
from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from deepresearch.models.research import EventStatus, ResearchRunEvent
from deepresearch.services.logger import log_run_step
from deepresearch.services.store import ResearchStore, new_id


class RunEventLog:
    def __init__(self, store: ResearchStore, run_id: str):
        self.store = store
        self.run_id = run_id

    async def append(
        self,
        stage: str,
        status: EventStatus,
        message: str,
        *,
        sub_question: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> ResearchRunEvent:
        event = ResearchRunEvent(
            id=new_id(),
            run_id=self.run_id,
            stage=stage,
            status=EventStatus(status),
            message=message,
            sub_question=sub_question,
            payload=payload,
        )
        await self.store.append_event(event)
        log_run_step(self.run_id, stage, event.status.value, message, sub_question=sub_question)
        return event

    async def safe_append(
        self,
        stage: str,
        status: EventStatus,
        message: str,
        *,
        sub_question: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append an event; failures are logged and never reach the caller."""
        try:
            await self.append(stage, status, message, sub_question=sub_question, payload=payload)
        except Exception as exc:
            logger.warning(f"Failed to append research event {stage}/{status} for run {self.run_id}: {exc}")

    __call__ = safe_append
