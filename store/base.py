"""StatePersistence — the storage boundary of the scheduler.

Task state is an upsert keyed by ``task_id``; execution records are
append-only and finalized exactly once. Concrete backends live next to this
module (SQLAlchemy in ``state_store``, in-process in ``memory_store``).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta

from scheduler.models import ExecutionOutcome, ExecutionRecord, TaskFilter, TaskState


class StatePersistence(ABC):
    async def init(self) -> None:
        """Prepare the backend (create tables, ...). Call once at startup."""

    async def close(self) -> None:
        """Release backend resources."""

    # ── Task state ───────────────────────────────────────────────────────────

    @abstractmethod
    async def load_task_state(self, task_id: str) -> TaskState | None:
        """Return the stored state, or None if the task has never been saved."""

    @abstractmethod
    async def save_task_state(self, state: TaskState, *, update_pause: bool = True) -> None:
        """Insert or replace the state for ``state.task_id``; never duplicates.

        With ``update_pause=False`` an existing row keeps its stored pause flag,
        so a pause or resume issued concurrently is not overwritten.
        """

    @abstractmethod
    async def delete_task_state(self, task_id: str) -> None:
        """Remove a task's state. Raises TaskNotFoundError if missing."""

    @abstractmethod
    async def list_tasks(self, task_filter: TaskFilter | None = None) -> list[TaskState]:
        """Return task states matching *task_filter*, ordered by task_id."""

    @abstractmethod
    async def pause_task(self, task_id: str) -> TaskState:
        """Set is_paused. Raises TaskNotFoundError if missing."""

    @abstractmethod
    async def resume_task(self, task_id: str) -> TaskState:
        """Clear is_paused, keeping the failure count. Raises TaskNotFoundError."""

    # ── Execution history ────────────────────────────────────────────────────

    @abstractmethod
    async def append_execution(self, record: ExecutionRecord) -> int:
        """Persist a new (running) execution record and return its id."""

    @abstractmethod
    async def finalize_execution(self, execution_id: int, outcome: ExecutionOutcome) -> ExecutionRecord:
        """Write the outcome of a running record.

        Raises ExecutionNotFoundError for unknown ids and
        ExecutionFinalizedError if the record was already finalized.
        """

    @abstractmethod
    async def get_execution_history(self, task_id: str, limit: int = 50) -> list[ExecutionRecord]:
        """Most recent first."""

    @abstractmethod
    async def get_failed_executions(self, task_id: str, limit: int = 50) -> list[ExecutionRecord]:
        """Most recent failed records first."""

    @abstractmethod
    async def get_incomplete_executions(self) -> list[ExecutionRecord]:
        """Records that were started but never finalized, oldest first."""

    @abstractmethod
    async def prune_executions(self, older_than: timedelta) -> int:
        """Delete finalized records that started before now - *older_than*."""
