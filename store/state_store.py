"""SqlStatePersistence — SQLAlchemy-backed task state and execution history."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from core.config import DEFAULT_DB_URL
from core.errors import (
    ExecutionFinalizedError,
    ExecutionNotFoundError,
    PersistenceError,
    TaskNotFoundError,
)
from scheduler.models import (
    ExecutionOutcome,
    ExecutionRecord,
    TaskFilter,
    TaskFilterKind,
    TaskState,
    utcnow,
)
from store.base import StatePersistence

logger = logging.getLogger(__name__)

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_task_states = sa.Table(
    "task_states",
    _metadata,
    sa.Column("task_id",              sa.String,  primary_key=True),
    sa.Column("actor_name",           sa.String,  nullable=False, index=True),
    sa.Column("last_run",             sa.String,  nullable=True),
    sa.Column("next_run",             sa.String,  nullable=True),
    sa.Column("consecutive_failures", sa.Integer, nullable=False, default=0),
    sa.Column("is_paused",            sa.Boolean, nullable=False, default=False),
    sa.Column("metadata_json",        sa.Text,    nullable=False),
    sa.Column("created_at",           sa.String,  nullable=False),
    sa.Column("updated_at",           sa.String,  nullable=False),
)

_executions = sa.Table(
    "task_executions",
    _metadata,
    sa.Column("id",                  sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("task_id",             sa.String,  nullable=False, index=True),
    sa.Column("actor_name",          sa.String,  nullable=False),
    sa.Column("started_at",          sa.String,  nullable=False, index=True),
    sa.Column("completed_at",        sa.String,  nullable=True),
    sa.Column("success",             sa.Boolean, nullable=True),
    sa.Column("error_message",       sa.Text,    nullable=True),
    sa.Column("sub_steps_succeeded", sa.Integer, nullable=False, default=0),
    sa.Column("sub_steps_failed",    sa.Integer, nullable=False, default=0),
    sa.Column("sub_steps_skipped",   sa.Integer, nullable=False, default=0),
    sa.Column("metadata_json",       sa.Text,    nullable=False),
)


# ── Row conversion ───────────────────────────────────────────────────────────
# Timestamps are stored as ISO-8601 UTC strings, which sort chronologically.

def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _state_row(state: TaskState) -> dict[str, Any]:
    return {
        "task_id":              state.task_id,
        "actor_name":           state.actor_name,
        "last_run":             _ts(state.last_run),
        "next_run":             _ts(state.next_run),
        "consecutive_failures": state.consecutive_failures,
        "is_paused":            state.is_paused,
        "metadata_json":        json.dumps(state.metadata, default=str),
        "created_at":           _ts(state.created_at),
        "updated_at":           _ts(utcnow()),
    }


def _state_from_row(row: sa.Row) -> TaskState:
    return TaskState(
        task_id=row.task_id,
        actor_name=row.actor_name,
        last_run=_parse_ts(row.last_run),
        next_run=_parse_ts(row.next_run),
        consecutive_failures=row.consecutive_failures,
        is_paused=bool(row.is_paused),
        metadata=json.loads(row.metadata_json),
        created_at=_parse_ts(row.created_at),
        updated_at=_parse_ts(row.updated_at),
    )


def _execution_from_row(row: sa.Row) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        task_id=row.task_id,
        actor_name=row.actor_name,
        started_at=_parse_ts(row.started_at),
        completed_at=_parse_ts(row.completed_at),
        success=row.success,
        error_message=row.error_message,
        sub_steps_succeeded=row.sub_steps_succeeded,
        sub_steps_failed=row.sub_steps_failed,
        sub_steps_skipped=row.sub_steps_skipped,
        metadata=json.loads(row.metadata_json),
    )


# ── Store ────────────────────────────────────────────────────────────────────

class SqlStatePersistence(StatePersistence):
    """Persist task state and execution history through an async SQLAlchemy engine.

    Connections come from a bounded pool and are held only for the duration
    of a single call.
    """

    def __init__(self, db_url: str = DEFAULT_DB_URL, pool_size: int = 5):
        engine_kwargs: dict[str, Any] = {"echo": False}
        if ":memory:" not in db_url:
            engine_kwargs.update(
                poolclass=AsyncAdaptedQueuePool,
                pool_size=pool_size,
                max_overflow=0,
            )
        self._engine = create_async_engine(db_url, **engine_kwargs)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._begin("init") as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _begin(self, operation: str) -> AsyncIterator[AsyncConnection]:
        """Transactional connection; backend errors surface as PersistenceError."""
        try:
            async with self._engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            logger.error(
                "Persistence operation failed",
                extra={"operation": operation, "error_kind": "persistence", "error": str(e)},
            )
            raise PersistenceError(operation, str(e)) from e

    # ── Task state ───────────────────────────────────────────────────────────

    async def load_task_state(self, task_id: str) -> TaskState | None:
        async with self._begin("load_task_state") as conn:
            row = (await conn.execute(
                sa.select(_task_states).where(_task_states.c.task_id == task_id)
            )).fetchone()
        return _state_from_row(row) if row is not None else None

    async def save_task_state(self, state: TaskState, *, update_pause: bool = True) -> None:
        """Insert or update a task state (upsert on task_id)."""
        row = _state_row(state)
        kept = ("task_id", "created_at") if update_pause else ("task_id", "created_at", "is_paused")
        async with self._begin("save_task_state") as conn:
            await conn.execute(
                sqlite_insert(_task_states)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["task_id"],
                    set_={k: v for k, v in row.items() if k not in kept},
                )
            )

    async def delete_task_state(self, task_id: str) -> None:
        async with self._begin("delete_task_state") as conn:
            result = await conn.execute(
                sa.delete(_task_states).where(_task_states.c.task_id == task_id)
            )
        if result.rowcount == 0:
            raise TaskNotFoundError(task_id)

    async def list_tasks(self, task_filter: TaskFilter | None = None) -> list[TaskState]:
        task_filter = task_filter or TaskFilter.all()
        query = sa.select(_task_states)
        if task_filter.kind == TaskFilterKind.BY_ACTOR:
            query = query.where(_task_states.c.actor_name == task_filter.actor_name)
        elif task_filter.kind == TaskFilterKind.ACTIVE:
            query = query.where(sa.not_(_task_states.c.is_paused))
        elif task_filter.kind == TaskFilterKind.PAUSED:
            query = query.where(_task_states.c.is_paused)
        query = query.order_by(_task_states.c.task_id)

        async with self._begin("list_tasks") as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_state_from_row(r) for r in rows]

    async def pause_task(self, task_id: str) -> TaskState:
        return await self._set_paused(task_id, True)

    async def resume_task(self, task_id: str) -> TaskState:
        return await self._set_paused(task_id, False)

    async def _set_paused(self, task_id: str, paused: bool) -> TaskState:
        operation = "pause_task" if paused else "resume_task"
        async with self._begin(operation) as conn:
            result = await conn.execute(
                sa.update(_task_states)
                .where(_task_states.c.task_id == task_id)
                .values(is_paused=paused, updated_at=_ts(utcnow()))
            )
            if result.rowcount == 0:
                raise TaskNotFoundError(task_id)
            row = (await conn.execute(
                sa.select(_task_states).where(_task_states.c.task_id == task_id)
            )).fetchone()
        return _state_from_row(row)

    # ── Execution history ────────────────────────────────────────────────────

    async def append_execution(self, record: ExecutionRecord) -> int:
        row = {
            "task_id":             record.task_id,
            "actor_name":          record.actor_name,
            "started_at":          _ts(record.started_at),
            "completed_at":        _ts(record.completed_at),
            "success":             record.success,
            "error_message":       record.error_message,
            "sub_steps_succeeded": record.sub_steps_succeeded,
            "sub_steps_failed":    record.sub_steps_failed,
            "sub_steps_skipped":   record.sub_steps_skipped,
            "metadata_json":       json.dumps(record.metadata, default=str),
        }
        async with self._begin("append_execution") as conn:
            result = await conn.execute(sa.insert(_executions).values(**row))
        return result.inserted_primary_key[0]

    async def finalize_execution(self, execution_id: int, outcome: ExecutionOutcome) -> ExecutionRecord:
        async with self._begin("finalize_execution") as conn:
            row = (await conn.execute(
                sa.select(_executions).where(_executions.c.id == execution_id)
            )).fetchone()
            if row is None:
                raise ExecutionNotFoundError(execution_id)
            if row.completed_at is not None:
                raise ExecutionFinalizedError(execution_id)

            record = _execution_from_row(row).finalized(outcome)
            await conn.execute(
                sa.update(_executions)
                .where(_executions.c.id == execution_id)
                .where(_executions.c.completed_at.is_(None))
                .values(
                    completed_at=_ts(record.completed_at),
                    success=record.success,
                    error_message=record.error_message,
                    sub_steps_succeeded=record.sub_steps_succeeded,
                    sub_steps_failed=record.sub_steps_failed,
                    sub_steps_skipped=record.sub_steps_skipped,
                    metadata_json=json.dumps(record.metadata, default=str),
                )
            )
        return record

    async def get_execution_history(self, task_id: str, limit: int = 50) -> list[ExecutionRecord]:
        return await self._query_executions(
            "get_execution_history",
            sa.select(_executions)
            .where(_executions.c.task_id == task_id)
            .order_by(_executions.c.started_at.desc(), _executions.c.id.desc())
            .limit(limit),
        )

    async def get_failed_executions(self, task_id: str, limit: int = 50) -> list[ExecutionRecord]:
        return await self._query_executions(
            "get_failed_executions",
            sa.select(_executions)
            .where(_executions.c.task_id == task_id)
            .where(sa.not_(_executions.c.success))
            .order_by(_executions.c.started_at.desc(), _executions.c.id.desc())
            .limit(limit),
        )

    async def get_incomplete_executions(self) -> list[ExecutionRecord]:
        return await self._query_executions(
            "get_incomplete_executions",
            sa.select(_executions)
            .where(_executions.c.completed_at.is_(None))
            .order_by(_executions.c.started_at, _executions.c.id),
        )

    async def _query_executions(self, operation: str, query) -> list[ExecutionRecord]:
        async with self._begin(operation) as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_execution_from_row(r) for r in rows]

    async def prune_executions(self, older_than: timedelta) -> int:
        cutoff = _ts(utcnow() - older_than)
        async with self._begin("prune_executions") as conn:
            result = await conn.execute(
                sa.delete(_executions)
                .where(_executions.c.started_at < cutoff)
                .where(_executions.c.completed_at.is_not(None))
            )
        logger.info("Pruned old executions", extra={"deleted": result.rowcount})
        return result.rowcount
