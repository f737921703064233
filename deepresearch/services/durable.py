"""In-process durable execution: one live task per run id plus staleness rules."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional

from loguru import logger

from deepresearch.config import settings
from deepresearch.models.research import ResearchBudget, utcnow


def stale_threshold_seconds(budget: ResearchBudget) -> int:
    return max(
        budget.max_runtime_seconds * settings.research_stale_multiplier,
        settings.research_stale_floor_seconds,
    )


def is_stale(updated_at: datetime, budget: ResearchBudget, *, now: Optional[datetime] = None) -> bool:
    elapsed = ((now or utcnow()) - updated_at).total_seconds()
    return elapsed > stale_threshold_seconds(budget)


class DurableTaskRunner:
    """Keyed registry of running asyncio tasks.

    ``submit`` is idempotent per task id: while a task for the id is alive a
    second submission is ignored. Cross-process safety comes from the conditional
    status claims in the store, not from this registry.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        # task id -> (lock, number of holders and waiters)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def guard(self, task_id: str) -> AsyncIterator[None]:
        """Serialize state changes for one task id; the lock is dropped once unused."""
        lock, users = self._locks.get(task_id, (asyncio.Lock(), 0))
        self._locks[task_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[task_id]
            if users <= 1:
                del self._locks[task_id]
            else:
                self._locks[task_id] = (lock, users - 1)

    def guarded_ids(self) -> set[str]:
        return set(self._locks)

    def is_active(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and not task.done()

    def submit(self, task_id: str, factory: Callable[[], Awaitable[object]]) -> bool:
        """Start ``factory()`` under ``task_id``; returns False if one is already live."""
        if self.is_active(task_id):
            return False
        task = asyncio.create_task(factory(), name=f"research-run-{task_id}")
        self._tasks[task_id] = task
        task.add_done_callback(lambda done, key=task_id: self._on_done(key, done))
        return True

    def _on_done(self, task_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(task_id) is task:
            self._tasks.pop(task_id, None)
        if task.cancelled():
            logger.info(f"Durable task {task_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Durable task {task_id} crashed")

    async def cancel(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    async def wait(self, task_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        for task_id in list(self._tasks):
            await self.cancel(task_id)


_runner: DurableTaskRunner | None = None


def get_task_runner() -> DurableTaskRunner:
    global _runner
    if _runner is None:
        _runner = DurableTaskRunner()
    return _runner
