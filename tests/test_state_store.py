"""Persistence contract tests, run against both the SQL and in-memory backends."""

from datetime import timedelta

import pytest

from conftest import T0
from core.errors import ExecutionFinalizedError, ExecutionNotFoundError, TaskNotFoundError
from scheduler.models import (
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionResult,
    ExecutionStatus,
    TaskFilter,
    TaskState,
    utcnow,
)
from store.state_store import SqlStatePersistence


def make_state(task_id: str = "t1", actor: str = "noop", **kwargs) -> TaskState:
    return TaskState(task_id=task_id, actor_name=actor, **kwargs)


def make_record(task_id: str = "t1", started_at=T0) -> ExecutionRecord:
    return ExecutionRecord(task_id=task_id, actor_name="noop", started_at=started_at)


# ── Task state ───────────────────────────────────────────────────────────────

async def test_load_missing_returns_none(store):
    assert await store.load_task_state("nope") is None


async def test_save_and_load_round_trip(store):
    state = make_state(
        last_run=T0,
        next_run=T0 + timedelta(minutes=1),
        consecutive_failures=2,
        metadata={"max_failures": 3, "owner": "ops"},
    )
    await store.save_task_state(state)
    loaded = await store.load_task_state("t1")
    assert loaded.task_id == "t1"
    assert loaded.last_run == T0
    assert loaded.next_run == T0 + timedelta(minutes=1)
    assert loaded.consecutive_failures == 2
    assert loaded.metadata == {"max_failures": 3, "owner": "ops"}
    assert loaded.last_run.tzinfo is not None


async def test_save_is_idempotent(store):
    state = make_state(consecutive_failures=1)
    await store.save_task_state(state)
    await store.save_task_state(state)
    assert len(await store.list_tasks()) == 1
    assert (await store.load_task_state("t1")).consecutive_failures == 1


async def test_save_updates_existing(store):
    await store.save_task_state(make_state())
    await store.save_task_state(make_state(consecutive_failures=4, is_paused=True))
    loaded = await store.load_task_state("t1")
    assert loaded.consecutive_failures == 4
    assert loaded.is_paused


async def test_save_without_pause_update_keeps_stored_flag(store):
    await store.save_task_state(make_state())
    await store.pause_task("t1")
    await store.save_task_state(make_state(consecutive_failures=2), update_pause=False)
    loaded = await store.load_task_state("t1")
    assert loaded.is_paused
    assert loaded.consecutive_failures == 2

    await store.resume_task("t1")
    await store.save_task_state(make_state(is_paused=True), update_pause=False)
    assert not (await store.load_task_state("t1")).is_paused


async def test_save_without_pause_update_inserts_new_row(store):
    await store.save_task_state(make_state(is_paused=True), update_pause=False)
    assert (await store.load_task_state("t1")).is_paused


async def test_delete_task_state(store):
    await store.save_task_state(make_state())
    await store.delete_task_state("t1")
    assert await store.load_task_state("t1") is None
    with pytest.raises(TaskNotFoundError):
        await store.delete_task_state("t1")


async def test_pause_and_resume(store):
    await store.save_task_state(make_state(consecutive_failures=3))
    paused = await store.pause_task("t1")
    assert paused.is_paused
    resumed = await store.resume_task("t1")
    assert not resumed.is_paused
    assert resumed.consecutive_failures == 3


async def test_pause_unknown_task(store):
    with pytest.raises(TaskNotFoundError):
        await store.pause_task("ghost")
    with pytest.raises(KeyError):
        await store.resume_task("ghost")


async def test_list_tasks_filters(store):
    await store.save_task_state(make_state("a", actor="http_request"))
    await store.save_task_state(make_state("b", actor="command", is_paused=True))
    await store.save_task_state(make_state("c", actor="http_request", is_paused=True))

    assert [s.task_id for s in await store.list_tasks()] == ["a", "b", "c"]
    assert [s.task_id for s in await store.list_tasks(TaskFilter.all())] == ["a", "b", "c"]
    assert [s.task_id for s in await store.list_tasks(TaskFilter.by_actor("http_request"))] == ["a", "c"]
    assert [s.task_id for s in await store.list_tasks(TaskFilter.active())] == ["a"]
    assert [s.task_id for s in await store.list_tasks(TaskFilter.paused())] == ["b", "c"]


async def test_loaded_state_is_a_copy(store):
    await store.save_task_state(make_state())
    loaded = await store.load_task_state("t1")
    loaded.consecutive_failures = 9
    assert (await store.load_task_state("t1")).consecutive_failures == 0


# ── Execution history ────────────────────────────────────────────────────────

async def test_append_returns_increasing_ids(store):
    first = await store.append_execution(make_record())
    second = await store.append_execution(make_record())
    assert second > first


async def test_running_record_until_finalized(store):
    eid = await store.append_execution(make_record())
    [record] = await store.get_execution_history("t1")
    assert record.id == eid
    assert record.status == ExecutionStatus.RUNNING
    assert record.completed_at is None
    assert [r.id for r in await store.get_incomplete_executions()] == [eid]


async def test_finalize_success(store):
    eid = await store.append_execution(make_record())
    result = ExecutionResult(sub_steps_succeeded=3, sub_steps_failed=1, metadata={"k": "v"})
    record = await store.finalize_execution(
        eid, ExecutionOutcome.succeeded(result, completed_at=T0 + timedelta(seconds=2))
    )
    assert record.success is True
    assert record.duration_seconds == 2.0

    [stored] = await store.get_execution_history("t1")
    assert stored.status == ExecutionStatus.SUCCEEDED
    assert stored.sub_steps_succeeded == 3
    assert stored.sub_steps_failed == 1
    assert stored.metadata["k"] == "v"
    assert await store.get_incomplete_executions() == []


async def test_finalize_failure(store):
    eid = await store.append_execution(make_record())
    await store.finalize_execution(eid, ExecutionOutcome.failed("boom", completed_at=T0))
    [stored] = await store.get_execution_history("t1")
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error_message == "boom"


async def test_finalize_twice_rejected(store):
    eid = await store.append_execution(make_record())
    await store.finalize_execution(eid, ExecutionOutcome.failed("first", completed_at=T0))
    with pytest.raises(ExecutionFinalizedError):
        await store.finalize_execution(eid, ExecutionOutcome.failed("second", completed_at=T0))
    [stored] = await store.get_execution_history("t1")
    assert stored.error_message == "first"


async def test_finalize_unknown_execution(store):
    with pytest.raises(ExecutionNotFoundError):
        await store.finalize_execution(999, ExecutionOutcome.failed("x", completed_at=T0))


async def test_history_newest_first_with_limit(store):
    for i in range(5):
        await store.append_execution(make_record(started_at=T0 + timedelta(minutes=i)))
    history = await store.get_execution_history("t1", limit=3)
    assert [r.started_at for r in history] == [
        T0 + timedelta(minutes=4),
        T0 + timedelta(minutes=3),
        T0 + timedelta(minutes=2),
    ]


async def test_history_is_per_task(store):
    await store.append_execution(make_record("a"))
    await store.append_execution(make_record("b"))
    assert [r.task_id for r in await store.get_execution_history("a")] == ["a"]


async def test_failed_executions_only(store):
    ok = await store.append_execution(make_record(started_at=T0))
    bad = await store.append_execution(make_record(started_at=T0 + timedelta(minutes=1)))
    await store.append_execution(make_record(started_at=T0 + timedelta(minutes=2)))
    await store.finalize_execution(ok, ExecutionOutcome.succeeded(ExecutionResult(), completed_at=T0))
    await store.finalize_execution(bad, ExecutionOutcome.failed("nope", completed_at=T0))
    assert [r.id for r in await store.get_failed_executions("t1")] == [bad]


async def test_prune_only_removes_old_finalized_records(store):
    now = utcnow()
    old_done = await store.append_execution(make_record(started_at=now - timedelta(days=40)))
    old_running = await store.append_execution(make_record(started_at=now - timedelta(days=40)))
    recent = await store.append_execution(make_record(started_at=now - timedelta(days=1)))
    for eid in (old_done, recent):
        await store.finalize_execution(eid, ExecutionOutcome.succeeded(ExecutionResult(), completed_at=now))

    assert await store.prune_executions(timedelta(days=30)) == 1
    remaining = {r.id for r in await store.get_execution_history("t1")}
    assert remaining == {old_running, recent}


# ── SQL specifics ────────────────────────────────────────────────────────────

async def test_sql_state_survives_reopen(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path}/reopen.db"
    first = SqlStatePersistence(url)
    await first.init()
    await first.save_task_state(make_state(consecutive_failures=2, is_paused=True))
    eid = await first.append_execution(make_record())
    await first.close()

    second = SqlStatePersistence(url)
    await second.init()
    state = await second.load_task_state("t1")
    assert state.consecutive_failures == 2
    assert state.is_paused
    assert [r.id for r in await second.get_incomplete_executions()] == [eid]
    await second.close()


async def test_sql_save_keeps_created_at(sql_store):
    state = make_state()
    await sql_store.save_task_state(state)
    created = (await sql_store.load_task_state("t1")).created_at
    await sql_store.save_task_state(make_state(consecutive_failures=1))
    assert (await sql_store.load_task_state("t1")).created_at == created
