"""Circuit breaker — auto-pause tasks that keep failing.

Two states per task: active and paused. A task moves to paused when its
consecutive failure count reaches the threshold, or when an operator pauses
it. Only an explicit resume moves it back; a later success resets the count
but leaves the pause in place.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel, Field

from scheduler.models import TaskState
from scheduler.schedule import SchedulePolicy

logger = logging.getLogger(__name__)

# Per-task threshold override stored in TaskState.metadata
MAX_FAILURES_KEY = "max_failures"


class CircuitBreakerConfig(BaseModel):
    max_consecutive_failures: int = Field(default=5, ge=1)


class CircuitBreaker:
    def __init__(self, config: CircuitBreakerConfig | None = None):
        self.config = config or CircuitBreakerConfig()

    def threshold_for(self, state: TaskState) -> int:
        override = state.metadata.get(MAX_FAILURES_KEY)
        if isinstance(override, int) and not isinstance(override, bool) and override >= 1:
            return override
        return self.config.max_consecutive_failures

    def record_success(self, state: TaskState) -> None:
        state.consecutive_failures = 0

    def record_failure(self, state: TaskState) -> bool:
        """Count a failure. Returns True when this failure tripped the breaker."""
        state.consecutive_failures += 1
        threshold = self.threshold_for(state)
        if state.consecutive_failures < threshold or state.is_paused:
            return False
        state.pause()
        logger.warning(
            "Circuit breaker tripped, task paused",
            extra={
                "task_id": state.task_id,
                "consecutive_failures": state.consecutive_failures,
                "threshold": threshold,
            },
        )
        return True

    def should_execute(self, state: TaskState, schedule: SchedulePolicy, now: datetime) -> bool:
        if state.is_paused:
            return False
        # A never-run task is due once its planned first run arrives; this is
        # what lets a cron task fire relative to its registration time.
        if state.last_run is None and state.next_run is not None and state.next_run <= now:
            return True
        return schedule.check(state.last_run, now).should_run

    def pause(self, state: TaskState) -> None:
        state.pause()

    def resume(self, state: TaskState) -> None:
        state.resume()
