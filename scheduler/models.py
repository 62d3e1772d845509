"""Scheduler data models: task state, execution records and run outcomes."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from scheduler.schedule import to_utc


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BreakerState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class TaskState(BaseModel):
    """Persisted, per-task scheduling state keyed by ``task_id``."""

    task_id: str
    actor_name: str
    last_run: datetime | None = None
    next_run: datetime | None = None
    consecutive_failures: int = Field(default=0, ge=0)
    is_paused: bool = False
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("last_run", "next_run", "created_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return to_utc(value) if value is not None else None

    @property
    def breaker_state(self) -> BreakerState:
        return BreakerState.PAUSED if self.is_paused else BreakerState.ACTIVE

    def pause(self) -> None:
        self.is_paused = True

    def resume(self) -> None:
        # Failures already counted stay counted.
        self.is_paused = False


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExecutionResult(BaseModel):
    """What an actor reports back after a successful run."""

    sub_steps_succeeded: int = Field(default=0, ge=0)
    sub_steps_failed: int = Field(default=0, ge=0)
    sub_steps_skipped: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = {}


class ExecutionOutcome(BaseModel):
    """Final data written onto an ExecutionRecord."""

    success: bool
    completed_at: datetime = Field(default_factory=utcnow)
    error_message: str | None = None
    result: ExecutionResult = Field(default_factory=ExecutionResult)

    @classmethod
    def succeeded(cls, result: ExecutionResult, completed_at: datetime) -> "ExecutionOutcome":
        return cls(success=True, result=result, completed_at=completed_at)

    @classmethod
    def failed(cls, error: str, completed_at: datetime) -> "ExecutionOutcome":
        return cls(success=False, error_message=error, completed_at=completed_at)


class ExecutionRecord(BaseModel):
    """One execution attempt. ``completed_at is None`` while it is running."""

    id: int | None = None
    task_id: str
    actor_name: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    success: bool | None = None
    error_message: str | None = None
    sub_steps_succeeded: int = 0
    sub_steps_failed: int = 0
    sub_steps_skipped: int = 0
    metadata: dict[str, Any] = {}

    @field_validator("started_at", "completed_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return to_utc(value) if value is not None else None

    @property
    def status(self) -> ExecutionStatus:
        if self.completed_at is None:
            return ExecutionStatus.RUNNING
        return ExecutionStatus.SUCCEEDED if self.success else ExecutionStatus.FAILED

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def finalized(self, outcome: ExecutionOutcome) -> "ExecutionRecord":
        """Return a copy of this record carrying *outcome*."""
        metadata = {**self.metadata, **outcome.result.metadata}
        return self.model_copy(update={
            "completed_at": outcome.completed_at,
            "success": outcome.success,
            "error_message": outcome.error_message,
            "sub_steps_succeeded": outcome.result.sub_steps_succeeded,
            "sub_steps_failed": outcome.result.sub_steps_failed,
            "sub_steps_skipped": outcome.result.sub_steps_skipped,
            "metadata": metadata,
        })


class TaskFilterKind(str, Enum):
    ALL = "all"
    BY_ACTOR = "by_actor"
    ACTIVE = "active"
    PAUSED = "paused"


class TaskFilter(BaseModel):
    kind: TaskFilterKind = TaskFilterKind.ALL
    actor_name: str | None = None

    @classmethod
    def all(cls) -> "TaskFilter":
        return cls()

    @classmethod
    def by_actor(cls, actor_name: str) -> "TaskFilter":
        return cls(kind=TaskFilterKind.BY_ACTOR, actor_name=actor_name)

    @classmethod
    def active(cls) -> "TaskFilter":
        return cls(kind=TaskFilterKind.ACTIVE)

    @classmethod
    def paused(cls) -> "TaskFilter":
        return cls(kind=TaskFilterKind.PAUSED)

    def matches(self, state: TaskState) -> bool:
        if self.kind == TaskFilterKind.BY_ACTOR:
            return state.actor_name == self.actor_name
        if self.kind == TaskFilterKind.ACTIVE:
            return not state.is_paused
        if self.kind == TaskFilterKind.PAUSED:
            return state.is_paused
        return True


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_DUE = "not_due"
    PAUSED = "paused"
    ALREADY_RUNNING = "already_running"
    PERSISTENCE_ERROR = "persistence_error"
    NOT_REGISTERED = "not_registered"


class RunOutcome(BaseModel):
    """What happened to one task in one tick (or one manual trigger)."""

    task_id: str
    status: RunStatus
    execution_id: int | None = None
    error: str | None = None
    tripped: bool = False

    @property
    def executed(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED)
