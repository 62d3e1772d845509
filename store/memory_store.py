"""InMemoryStatePersistence — process-local backend for tests and dry runs."""

from __future__ import annotations

import asyncio
import itertools
from datetime import timedelta

from core.errors import ExecutionFinalizedError, ExecutionNotFoundError, TaskNotFoundError
from scheduler.models import ExecutionOutcome, ExecutionRecord, TaskFilter, TaskState, utcnow
from store.base import StatePersistence


class InMemoryStatePersistence(StatePersistence):
    """Keeps copies of every model so callers never share mutable state with the store."""

    def __init__(self) -> None:
        self._states: dict[str, TaskState] = {}
        self._executions: dict[int, ExecutionRecord] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    # ── Task state ───────────────────────────────────────────────────────────

    async def load_task_state(self, task_id: str) -> TaskState | None:
        async with self._lock:
            state = self._states.get(task_id)
            return state.model_copy(deep=True) if state else None

    async def save_task_state(self, state: TaskState, *, update_pause: bool = True) -> None:
        async with self._lock:
            existing = self._states.get(state.task_id)
            update = {"updated_at": utcnow()}
            if existing is not None:
                update["created_at"] = existing.created_at
                if not update_pause:
                    update["is_paused"] = existing.is_paused
            self._states[state.task_id] = state.model_copy(deep=True, update=update)

    async def delete_task_state(self, task_id: str) -> None:
        async with self._lock:
            if self._states.pop(task_id, None) is None:
                raise TaskNotFoundError(task_id)

    async def list_tasks(self, task_filter: TaskFilter | None = None) -> list[TaskState]:
        task_filter = task_filter or TaskFilter.all()
        async with self._lock:
            return [
                self._states[tid].model_copy(deep=True)
                for tid in sorted(self._states)
                if task_filter.matches(self._states[tid])
            ]

    async def pause_task(self, task_id: str) -> TaskState:
        return await self._set_paused(task_id, True)

    async def resume_task(self, task_id: str) -> TaskState:
        return await self._set_paused(task_id, False)

    async def _set_paused(self, task_id: str, paused: bool) -> TaskState:
        async with self._lock:
            state = self._states.get(task_id)
            if state is None:
                raise TaskNotFoundError(task_id)
            state.is_paused = paused
            state.updated_at = utcnow()
            return state.model_copy(deep=True)

    # ── Execution history ────────────────────────────────────────────────────

    async def append_execution(self, record: ExecutionRecord) -> int:
        async with self._lock:
            execution_id = next(self._ids)
            self._executions[execution_id] = record.model_copy(deep=True, update={"id": execution_id})
            return execution_id

    async def finalize_execution(self, execution_id: int, outcome: ExecutionOutcome) -> ExecutionRecord:
        async with self._lock:
            record = self._executions.get(execution_id)
            if record is None:
                raise ExecutionNotFoundError(execution_id)
            if record.completed_at is not None:
                raise ExecutionFinalizedError(execution_id)
            record = record.finalized(outcome)
            self._executions[execution_id] = record
            return record.model_copy(deep=True)

    def _newest_first(self, records: list[ExecutionRecord]) -> list[ExecutionRecord]:
        return sorted(records, key=lambda r: (r.started_at, r.id), reverse=True)

    async def get_execution_history(self, task_id: str, limit: int = 50) -> list[ExecutionRecord]:
        async with self._lock:
            matching = [r for r in self._executions.values() if r.task_id == task_id]
            return [r.model_copy(deep=True) for r in self._newest_first(matching)[:limit]]

    async def get_failed_executions(self, task_id: str, limit: int = 50) -> list[ExecutionRecord]:
        async with self._lock:
            matching = [
                r for r in self._executions.values()
                if r.task_id == task_id and r.success is False
            ]
            return [r.model_copy(deep=True) for r in self._newest_first(matching)[:limit]]

    async def get_incomplete_executions(self) -> list[ExecutionRecord]:
        async with self._lock:
            running = [r for r in self._executions.values() if r.completed_at is None]
            return [r.model_copy(deep=True) for r in sorted(running, key=lambda r: (r.started_at, r.id))]

    async def prune_executions(self, older_than: timedelta) -> int:
        cutoff = utcnow() - older_than
        async with self._lock:
            stale = [
                eid for eid, r in self._executions.items()
                if r.completed_at is not None and r.started_at < cutoff
            ]
            for eid in stale:
                del self._executions[eid]
            return len(stale)
