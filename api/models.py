"""API response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from scheduler.models import ExecutionRecord, RunOutcome, TaskState


class TaskResponse(BaseModel):
    task_id: str
    actor_name: str
    registered: bool
    running: bool
    breaker_state: str
    is_paused: bool
    consecutive_failures: int
    last_run: datetime | None = None
    next_run: datetime | None = None
    metadata: dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_state(cls, state: TaskState, registered: bool, running: bool) -> "TaskResponse":
        return cls(
            **state.model_dump(),
            registered=registered,
            running=running,
            breaker_state=state.breaker_state.value,
        )


class ExecutionResponse(BaseModel):
    id: int | None
    task_id: str
    actor_name: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    success: bool | None = None
    error_message: str | None = None
    sub_steps_succeeded: int = 0
    sub_steps_failed: int = 0
    sub_steps_skipped: int = 0
    metadata: dict[str, Any] = {}

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "ExecutionResponse":
        return cls(
            **record.model_dump(),
            status=record.status.value,
            duration_seconds=record.duration_seconds,
        )


class RunResponse(BaseModel):
    task_id: str
    status: str
    executed: bool
    execution_id: int | None = None
    error: str | None = None
    tripped: bool = False

    @classmethod
    def from_outcome(cls, outcome: RunOutcome) -> "RunResponse":
        return cls(
            task_id=outcome.task_id,
            status=outcome.status.value,
            executed=outcome.executed,
            execution_id=outcome.execution_id,
            error=outcome.error,
            tripped=outcome.tripped,
        )
