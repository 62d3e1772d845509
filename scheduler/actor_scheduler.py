"""ActorScheduler — runs registered actor tasks on their schedules.

One APScheduler interval job drives the loop: every tick evaluates every
registered task, and due, healthy tasks run concurrently. Manual "run now"
requests go through exactly the same gate and the same per-task guard, so a
task never has two executions in flight at once.

Per run:

    load state → breaker / schedule gate → start record → actor.execute()
    → reload state → finalize record + breaker → save state
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError

from actors.base import BaseActor
from actors.registry import ActorRegistry
from core.config import SchedulerSettings, TaskConfig, parse_task_configs
from core.errors import ConfigError, PersistenceError, SchedulerError, TaskNotFoundError
from core.logging_config import set_execution_id, task_context
from scheduler.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from scheduler.execution_tracker import ExecutionTracker
from scheduler.models import (
    ExecutionRecord,
    ExecutionResult,
    RunOutcome,
    RunStatus,
    TaskFilter,
    TaskState,
    utcnow,
)
from scheduler.schedule import SchedulePolicy
from store.base import StatePersistence

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TICK_JOB_ID = "actor-scheduler-tick"


def planned_next_run(schedule: SchedulePolicy, last_run: datetime | None, now: datetime) -> datetime | None:
    """The next_run to persist for a task.

    A task that has never run and is due now is planned for *now*; that is
    also how a not-yet-fired immediate task gets a non-empty next_run.
    """
    check = schedule.check(last_run, now)
    if last_run is None and check.should_run:
        return min(now, check.next_run) if check.next_run else now
    return check.next_run


@dataclass
class _TaskEntry:
    config: TaskConfig
    actor: BaseActor
    # At-most-one guard; only touched synchronously on the event loop.
    running: bool = False

    @property
    def task_id(self) -> str:
        return self.config.task_id


class ActorScheduler:
    """Owns the task registry and drives ticks, manual triggers and shutdown."""

    def __init__(
        self,
        persistence: StatePersistence,
        settings: SchedulerSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._persistence = persistence
        self.settings = settings or SchedulerSettings()
        self.breaker = CircuitBreaker(
            CircuitBreakerConfig(max_consecutive_failures=self.settings.max_consecutive_failures)
        )
        self._clock = clock
        self._tasks: dict[str, _TaskEntry] = {}
        self._in_flight: set[asyncio.Task] = set()
        # Execution ids started by this process and not yet finalized
        self._open_executions: set[int] = set()
        self._aps = AsyncIOScheduler(timezone="UTC")
        self._stopping = False

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Report orphaned runs, prune old history, then start ticking."""
        self._stopping = False
        await self.recover()
        if self.settings.history_retention_days:
            try:
                await self._persist(
                    "prune_executions",
                    self._persistence.prune_executions(
                        timedelta(days=self.settings.history_retention_days)
                    ),
                )
            except PersistenceError as e:
                logger.error("History pruning failed", extra={"error_kind": "persistence", "error": str(e)})

        self._aps.add_job(
            self._tick_job,
            trigger=IntervalTrigger(seconds=self.settings.tick_interval_seconds),
            id=_TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._aps.start()
        logger.info(
            "ActorScheduler started",
            extra={
                "tasks": len(self._tasks),
                "tick_interval_s": self.settings.tick_interval_seconds,
            },
        )

    async def shutdown(self, grace: float | None = None) -> None:
        """Stop ticking and wait (bounded) for in-flight executions."""
        self._stopping = True
        if self._aps.running:
            self._aps.shutdown(wait=False)

        grace = self.settings.shutdown_grace_seconds if grace is None else grace
        pending = set(self._in_flight)
        if pending:
            logger.info(
                "Waiting for in-flight executions",
                extra={"count": len(pending), "grace_s": grace},
            )
            _, still_running = await asyncio.wait(pending, timeout=grace)
            if still_running:
                logger.warning(
                    "Cancelling executions still running after grace period",
                    extra={"count": len(still_running)},
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
        logger.info("ActorScheduler stopped")

    async def recover(self) -> list[ExecutionRecord]:
        """Surface records left "running" by a previous process."""
        try:
            orphans = await self._persist(
                "get_incomplete_executions", self._persistence.get_incomplete_executions()
            )
        except PersistenceError as e:
            logger.error("Could not check for orphaned executions", extra={"error_kind": "persistence", "error": str(e)})
            return []
        for record in orphans:
            logger.warning(
                "Execution never completed; previous process terminated abnormally",
                extra={
                    "task_id": record.task_id,
                    "execution_id": record.id,
                    "started_at": record.started_at,
                },
            )
        return orphans

    # ── Registration ─────────────────────────────────────────────────────────

    async def register(self, task: TaskConfig, actor: BaseActor) -> TaskState | None:
        """Add a task, creating its persisted state or recovering the existing one.

        Disabled tasks are skipped. Returns the state, or None when it could
        not be stored (the task is still registered; its state is created on
        the first tick that can reach persistence).
        """
        if not task.enabled:
            logger.info("Task disabled, not registered", extra={"task_id": task.task_id})
            return None
        if task.task_id in self._tasks:
            raise ConfigError("already registered", task_id=task.task_id)

        self._tasks[task.task_id] = _TaskEntry(config=task, actor=actor)
        now = self._clock()
        try:
            state = await self._persist("load_task_state", self._persistence.load_task_state(task.task_id))
            if state is None:
                state = self._new_state(task, now)
                logger.info("Task registered", extra={"task_id": task.task_id, "actor": task.actor_name})
            else:
                state.actor_name = task.actor_name
                state.metadata = {**state.metadata, **task.metadata}
                state.next_run = planned_next_run(task.schedule, state.last_run, now)
                logger.info(
                    "Task recovered",
                    extra={
                        "task_id": task.task_id,
                        "last_run": state.last_run,
                        "consecutive_failures": state.consecutive_failures,
                        "is_paused": state.is_paused,
                    },
                )
            await self._persist("save_task_state", self._persistence.save_task_state(state))
        except PersistenceError as e:
            logger.error(
                "Could not persist state at registration",
                extra={"task_id": task.task_id, "error_kind": "persistence", "error": str(e)},
            )
            return None
        return state

    async def register_all(self, raw_tasks: list[dict[str, Any]], registry: ActorRegistry) -> list[ConfigError]:
        """Validate and register every task; bad tasks are rejected individually."""
        tasks, errors = parse_task_configs(raw_tasks)
        for task in tasks:
            try:
                actor = registry.create(task.actor_name, task.options)
                await self.register(task, actor)
            except ConfigError as e:
                errors.append(e if e.task_id else ConfigError(str(e), task_id=task.task_id))

        for error in errors:
            logger.error(
                "Task rejected",
                extra={"task_id": error.task_id, "error_kind": "config", "error": str(error)},
            )
        return errors

    def unregister(self, task_id: str) -> None:
        """Stop scheduling a task. Its persisted state and history are kept."""
        if self._tasks.pop(task_id, None) is None:
            raise TaskNotFoundError(task_id)
        logger.info("Task unregistered", extra={"task_id": task_id})

    def registered_tasks(self) -> list[str]:
        return sorted(self._tasks)

    def is_registered(self, task_id: str) -> bool:
        return task_id in self._tasks

    def is_running(self, task_id: str) -> bool:
        entry = self._tasks.get(task_id)
        return bool(entry and entry.running)

    # ── Running ──────────────────────────────────────────────────────────────

    async def tick(self, now: datetime | None = None, wait: bool = True) -> list[RunOutcome]:
        """Evaluate every registered task once.

        With ``wait=False`` the runs are dispatched in the background and an
        empty list is returned.
        """
        if self._stopping:
            return []
        now = now or self._clock()
        entries = list(self._tasks.values())
        runs = [self._spawn(self._run(entry, now, "tick")) for entry in entries]
        if not wait or not runs:
            return []

        outcomes: list[RunOutcome] = []
        results = await asyncio.gather(*runs, return_exceptions=True)
        for entry_id, result in zip((e.task_id for e in entries), results):
            if isinstance(result, BaseException):
                outcomes.append(RunOutcome(task_id=entry_id, status=RunStatus.FAILED, error=repr(result)))
            else:
                outcomes.append(result)
        return outcomes

    async def trigger(self, task_id: str, now: datetime | None = None) -> RunOutcome:
        """Manual "run now"; passes through the same gate and guard as a tick."""
        entry = self._tasks.get(task_id)
        if entry is None:
            return RunOutcome(task_id=task_id, status=RunStatus.NOT_REGISTERED)
        run = self._spawn(self._run(entry, now or self._clock(), "manual"))
        # The run outlives a cancelled caller so its record is always finalized.
        return await asyncio.shield(run)

    async def _tick_job(self) -> None:
        try:
            await self.tick(wait=False)
        except Exception:
            logger.exception("Tick failed")

    def _spawn(self, coro: Coroutine[Any, Any, T]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _run(self, entry: _TaskEntry, now: datetime, trigger: str) -> RunOutcome:
        with task_context(entry.task_id):
            if entry.running:
                logger.info("Task already running, skipped", extra={"trigger": trigger})
                return RunOutcome(task_id=entry.task_id, status=RunStatus.ALREADY_RUNNING)
            entry.running = True
            try:
                return await self._run_guarded(entry, now, trigger)
            except Exception as e:
                logger.exception("Unexpected error while running task", extra={"trigger": trigger})
                return RunOutcome(task_id=entry.task_id, status=RunStatus.FAILED, error=str(e))
            finally:
                entry.running = False

    async def _run_guarded(self, entry: _TaskEntry, now: datetime, trigger: str) -> RunOutcome:
        task_id = entry.task_id
        schedule = entry.config.schedule

        try:
            state = await self._load_or_create(entry, now)
        except PersistenceError as e:
            logger.error(
                "Could not load task state; will retry next tick",
                extra={"error_kind": "persistence", "error": str(e)},
            )
            return RunOutcome(task_id=task_id, status=RunStatus.PERSISTENCE_ERROR, error=str(e))

        if state.is_paused:
            logger.debug("Task paused, skipped", extra={"trigger": trigger})
            return RunOutcome(task_id=task_id, status=RunStatus.PAUSED)

        tracker = ExecutionTracker(
            self._persistence, self.breaker, task_id, entry.config.actor_name, clock=self._clock
        )
        if not tracker.should_execute(state, schedule, now):
            return RunOutcome(task_id=task_id, status=RunStatus.NOT_DUE)

        try:
            execution_id = await self._persist(
                "append_execution", tracker.start_execution(metadata={"trigger": trigger})
            )
        except PersistenceError as e:
            logger.error(
                "Could not record execution start; task not run",
                extra={"error_kind": "persistence", "error": str(e)},
            )
            return RunOutcome(task_id=task_id, status=RunStatus.PERSISTENCE_ERROR, error=str(e))

        self._open_executions.add(execution_id)
        try:
            return await self._complete(entry, tracker, state, execution_id, now, trigger)
        finally:
            self._open_executions.discard(execution_id)

    async def _complete(
        self,
        entry: _TaskEntry,
        tracker: ExecutionTracker,
        state: TaskState,
        execution_id: int,
        now: datetime,
        trigger: str,
    ) -> RunOutcome:
        task_id = entry.task_id
        schedule = entry.config.schedule
        set_execution_id(execution_id)
        logger.info("Execution started", extra={"trigger": trigger, "actor": entry.config.actor_name})
        result, error = await self._invoke(entry)

        # Apply the outcome to a fresh copy so an operator pause issued while
        # the actor was running is not overwritten.
        try:
            latest = await self._persist("load_task_state", self._persistence.load_task_state(task_id))
        except PersistenceError as e:
            logger.warning(
                "Could not reload task state after execution",
                extra={"error_kind": "persistence", "error": str(e)},
            )
            latest = None
        # Deleted while running: finalize the record but do not recreate the state.
        deleted = latest is None and self._tasks.get(task_id) is not entry
        state = latest or state

        was_paused = state.is_paused
        tripped = False
        try:
            if error is None:
                await self._persist(
                    "finalize_execution",
                    tracker.record_success(execution_id, result, state, scheduled_at=now),
                )
            else:
                tripped = await self._persist(
                    "finalize_execution",
                    tracker.record_failure(execution_id, error, state, scheduled_at=now),
                )
        except SchedulerError as e:
            tripped = state.is_paused and not was_paused
            logger.error(
                "Could not finalize execution record",
                extra={"error_kind": "persistence", "error": str(e)},
            )

        state.next_run = planned_next_run(schedule, state.last_run, state.last_run or now)
        if deleted:
            logger.info("Task deleted during execution; state not saved")
        else:
            try:
                # Only a trip writes the pause flag; an operator pause or resume
                # that lands after the reload is left in place.
                await self._persist(
                    "save_task_state",
                    self._persistence.save_task_state(state, update_pause=tripped),
                )
            except PersistenceError as e:
                logger.error(
                    "Could not save task state after execution",
                    extra={"error_kind": "persistence", "error": str(e)},
                )

        return RunOutcome(
            task_id=task_id,
            status=RunStatus.SUCCEEDED if error is None else RunStatus.FAILED,
            execution_id=execution_id,
            error=error,
            tripped=tripped,
        )

    async def _invoke(self, entry: _TaskEntry) -> tuple[ExecutionResult | None, str | None]:
        """Call the actor under the execution timeout; returns (result, error)."""
        timeout = self.settings.execution_timeout_seconds
        try:
            result = await asyncio.wait_for(entry.actor.execute(), timeout)
        except asyncio.TimeoutError:
            return None, f"execution timed out after {timeout}s"
        except Exception as e:
            return None, f"{type(e).__name__}: {e}"

        if isinstance(result, ExecutionResult):
            return result, None
        try:
            return ExecutionResult.model_validate(result or {}), None
        except ValidationError as e:
            return None, f"actor returned an invalid result: {e}"

    async def _load_or_create(self, entry: _TaskEntry, now: datetime) -> TaskState:
        state = await self._persist("load_task_state", self._persistence.load_task_state(entry.task_id))
        if state is None:
            state = self._new_state(entry.config, now)
            await self._persist("save_task_state", self._persistence.save_task_state(state))
        return state

    def _new_state(self, task: TaskConfig, now: datetime) -> TaskState:
        return TaskState(
            task_id=task.task_id,
            actor_name=task.actor_name,
            next_run=planned_next_run(task.schedule, None, now),
            metadata=dict(task.metadata),
        )

    async def _persist(self, operation: str, call: Awaitable[T]) -> T:
        """Await a persistence call under the persistence timeout.

        Anything the backend raises other than the scheduler's own errors is
        reported as a PersistenceError.
        """
        timeout = self.settings.persistence_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            raise PersistenceError(operation, f"timed out after {timeout}s") from e
        except SchedulerError:
            raise
        except Exception as e:
            raise PersistenceError(operation, str(e)) from e

    # ── Operator actions ─────────────────────────────────────────────────────

    async def get_task(self, task_id: str) -> TaskState:
        state = await self._persist("load_task_state", self._persistence.load_task_state(task_id))
        if state is None:
            raise TaskNotFoundError(task_id)
        return state

    async def list_tasks(self, task_filter: TaskFilter | None = None) -> list[TaskState]:
        return await self._persist("list_tasks", self._persistence.list_tasks(task_filter))

    async def pause(self, task_id: str) -> TaskState:
        """Stop future runs; an execution already in flight is not cancelled."""
        state = await self._persist("pause_task", self._persistence.pause_task(task_id))
        logger.info("Task paused by operator", extra={"task_id": task_id})
        return state

    async def resume(self, task_id: str) -> TaskState:
        """Clear the pause; the consecutive failure count is kept."""
        state = await self._persist("resume_task", self._persistence.resume_task(task_id))
        logger.info(
            "Task resumed by operator",
            extra={"task_id": task_id, "consecutive_failures": state.consecutive_failures},
        )
        return state

    async def delete(self, task_id: str) -> None:
        """Unregister a task and delete its persisted state (history is kept)."""
        registered = self._tasks.pop(task_id, None) is not None
        try:
            await self._persist("delete_task_state", self._persistence.delete_task_state(task_id))
        except TaskNotFoundError:
            if not registered:
                raise
        logger.info("Task deleted", extra={"task_id": task_id})

    async def get_history(self, task_id: str, limit: int = 50, failed_only: bool = False) -> list[ExecutionRecord]:
        if failed_only:
            call = self._persistence.get_failed_executions(task_id, limit)
        else:
            call = self._persistence.get_execution_history(task_id, limit)
        return await self._persist("get_execution_history", call)

    async def incomplete_executions(self) -> list[ExecutionRecord]:
        """Records with no completion, excluding runs in flight in this process."""
        records = await self._persist(
            "get_incomplete_executions", self._persistence.get_incomplete_executions()
        )
        return [r for r in records if r.id not in self._open_executions]
