"""ExecutionTracker — sequences "start → finish" for the runs of one task.

A run is recorded as a ``running`` ExecutionRecord before the actor is
invoked, and finalized exactly once afterwards. The record is written through
to persistence immediately, so a crash between start and finish leaves a
record with no ``completed_at`` that is visible on the next start.

Typical use::

    tracker = ExecutionTracker(persistence, breaker, "daily-post", "poster")
    if not tracker.should_execute(state, schedule, now):
        return
    exec_id = await tracker.start_execution()
    try:
        result = await actor.execute()
    except Exception as e:
        tripped = await tracker.record_failure(exec_id, str(e), state)
    else:
        await tracker.record_success(exec_id, result, state)
    await persistence.save_task_state(state)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from core.logging_config import set_execution_id
from scheduler.circuit_breaker import CircuitBreaker
from scheduler.models import (
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionResult,
    TaskState,
    utcnow,
)
from scheduler.schedule import SchedulePolicy
from store.base import StatePersistence

logger = logging.getLogger(__name__)


class ExecutionTracker:
    def __init__(
        self,
        persistence: StatePersistence,
        breaker: CircuitBreaker,
        task_id: str,
        actor_name: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.persistence = persistence
        self.breaker = breaker
        self.task_id = task_id
        self.actor_name = actor_name
        self._clock = clock

    def should_execute(self, state: TaskState, schedule: SchedulePolicy, now: datetime) -> bool:
        return self.breaker.should_execute(state, schedule, now)

    async def start_execution(self, metadata: dict | None = None) -> int:
        """Persist a running record and return its id."""
        record = ExecutionRecord(
            task_id=self.task_id,
            actor_name=self.actor_name,
            started_at=self._clock(),
            metadata=metadata or {},
        )
        execution_id = await self.persistence.append_execution(record)
        set_execution_id(execution_id)
        logger.debug("Execution started", extra={"actor": self.actor_name})
        return execution_id

    async def record_success(
        self,
        execution_id: int,
        result: ExecutionResult,
        state: TaskState,
        scheduled_at: datetime | None = None,
    ) -> ExecutionRecord:
        """Finalize as succeeded, reset the failure count and stamp last_run.

        last_run is *scheduled_at* (the time the run was found due) when given,
        so the run's own duration does not push back the next interval.
        """
        now = self._clock()
        self.breaker.record_success(state)
        state.last_run = scheduled_at or now
        record = await self.persistence.finalize_execution(
            execution_id, ExecutionOutcome.succeeded(result, completed_at=now)
        )
        logger.info(
            "Execution succeeded",
            extra={
                "sub_steps_succeeded": result.sub_steps_succeeded,
                "sub_steps_failed": result.sub_steps_failed,
                "sub_steps_skipped": result.sub_steps_skipped,
                "duration_s": record.duration_seconds,
            },
        )
        return record

    async def record_failure(
        self,
        execution_id: int,
        error: str,
        state: TaskState,
        scheduled_at: datetime | None = None,
    ) -> bool:
        """Finalize as failed and count the failure.

        last_run is still stamped so the failed attempt counts for this cycle.
        Returns True when the failure tripped the circuit breaker.
        """
        now = self._clock()
        tripped = self.breaker.record_failure(state)
        state.last_run = scheduled_at or now
        await self.persistence.finalize_execution(
            execution_id, ExecutionOutcome.failed(error, completed_at=now)
        )
        logger.warning(
            "Execution failed",
            extra={
                "error": error,
                "error_kind": "execution",
                "consecutive_failures": state.consecutive_failures,
                "tripped": tripped,
            },
        )
        return tripped

    async def get_history(self, limit: int = 50) -> list[ExecutionRecord]:
        return await self.persistence.get_execution_history(self.task_id, limit)
