"""FastAPI operator surface for the actor scheduler."""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query

from actors.registry import default_registry
from api.models import ExecutionResponse, RunResponse, TaskResponse
from core.config import DEFAULT_CONFIG_PATH, ServerConfig, SchedulerSettings, load_config
from core.errors import PersistenceError, TaskNotFoundError
from scheduler.actor_scheduler import ActorScheduler
from scheduler.models import RunStatus, TaskFilter, TaskFilterKind, TaskState
from store.state_store import SqlStatePersistence

logger = logging.getLogger(__name__)

# ── Singletons ────────────────────────────────────────────────────────────────
# Built at import time so routes work under ASGITransport (which does not run
# the lifespan); the lifespan rebuilds them from the config file.

_settings = SchedulerSettings()
_registry = default_registry()
_persistence = SqlStatePersistence(_settings.database_url, pool_size=_settings.pool_size)
_scheduler = ActorScheduler(_persistence, _settings)


def _read_config() -> ServerConfig:
    path = os.getenv("SCHEDULER_CONFIG", DEFAULT_CONFIG_PATH)
    if not Path(path).exists():
        logger.warning("Config file not found, starting with no tasks", extra={"path": path})
        return ServerConfig()
    return load_config(path)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _settings, _persistence, _scheduler
    config = _read_config()
    _settings = config.server
    _persistence = SqlStatePersistence(_settings.database_url, pool_size=_settings.pool_size)
    await _persistence.init()
    _scheduler = ActorScheduler(_persistence, _settings)
    errors = await _scheduler.register_all(config.tasks, _registry)
    if errors:
        logger.warning("Some tasks were rejected", extra={"rejected": len(errors)})
    await _scheduler.start()
    yield
    await _scheduler.shutdown()
    await _persistence.close()


app = FastAPI(
    title="Actor Scheduler API",
    description="Inspect and operate scheduled actor tasks.",
    version="0.1.0",
    lifespan=lifespan,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _task_response(state: TaskState) -> TaskResponse:
    return TaskResponse.from_state(
        state,
        registered=_scheduler.is_registered(state.task_id),
        running=_scheduler.is_running(state.task_id),
    )


def _not_found(task_id: str) -> HTTPException:
    return HTTPException(404, detail=f"Task '{task_id}' not found")


def _unavailable(e: PersistenceError) -> HTTPException:
    return HTTPException(503, detail=str(e))


# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "registered_tasks": len(_scheduler.registered_tasks())}


@app.get("/tasks", response_model=list[TaskResponse])
async def list_tasks(filter: TaskFilterKind = TaskFilterKind.ALL, actor: str | None = None):
    """List task states. ``actor`` implies filter=by_actor."""
    if actor is not None:
        task_filter = TaskFilter.by_actor(actor)
    elif filter == TaskFilterKind.BY_ACTOR:
        raise HTTPException(422, detail="filter=by_actor requires the actor parameter")
    else:
        task_filter = TaskFilter(kind=filter)
    try:
        states = await _scheduler.list_tasks(task_filter)
    except PersistenceError as e:
        raise _unavailable(e)
    return [_task_response(s) for s in states]


@app.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str):
    try:
        state = await _scheduler.get_task(task_id)
    except TaskNotFoundError:
        raise _not_found(task_id)
    except PersistenceError as e:
        raise _unavailable(e)
    return _task_response(state)


@app.post("/tasks/{task_id}/run", response_model=RunResponse)
async def run_task(task_id: str):
    """Run a task now, subject to the same breaker and schedule gate as a tick.

    Responds 409 when the task is already running.
    """
    outcome = await _scheduler.trigger(task_id)
    if outcome.status == RunStatus.NOT_REGISTERED:
        raise _not_found(task_id)
    if outcome.status == RunStatus.ALREADY_RUNNING:
        raise HTTPException(409, detail=f"Task '{task_id}' is already running")
    return RunResponse.from_outcome(outcome)


@app.post("/tasks/{task_id}/pause", response_model=TaskResponse)
async def pause_task(task_id: str):
    """Pause a task. An execution already in flight is not cancelled."""
    try:
        state = await _scheduler.pause(task_id)
    except TaskNotFoundError:
        raise _not_found(task_id)
    except PersistenceError as e:
        raise _unavailable(e)
    return _task_response(state)


@app.post("/tasks/{task_id}/resume", response_model=TaskResponse)
async def resume_task(task_id: str):
    try:
        state = await _scheduler.resume(task_id)
    except TaskNotFoundError:
        raise _not_found(task_id)
    except PersistenceError as e:
        raise _unavailable(e)
    return _task_response(state)


@app.delete("/tasks/{task_id}", status_code=204)
async def delete_task(task_id: str):
    """Unregister a task and delete its state; execution history is kept."""
    try:
        await _scheduler.delete(task_id)
    except TaskNotFoundError:
        raise _not_found(task_id)
    except PersistenceError as e:
        raise _unavailable(e)


@app.get("/tasks/{task_id}/executions", response_model=list[ExecutionResponse])
async def task_executions(
    task_id: str,
    limit: int = Query(default=50, ge=1, le=1000),
    failed_only: bool = False,
):
    """Execution history for a task, newest first."""
    try:
        records = await _scheduler.get_history(task_id, limit=limit, failed_only=failed_only)
    except PersistenceError as e:
        raise _unavailable(e)
    return [ExecutionResponse.from_record(r) for r in records]


@app.get("/executions/incomplete", response_model=list[ExecutionResponse])
async def incomplete_executions():
    """Executions that never completed (left behind by a terminated process)."""
    try:
        records = await _scheduler.incomplete_executions()
    except PersistenceError as e:
        raise _unavailable(e)
    return [ExecutionResponse.from_record(r) for r in records]
