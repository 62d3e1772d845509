"""Tests for ExecutionTracker: start/finish sequencing and breaker updates."""

import json
import logging
from datetime import timedelta

import pytest

from conftest import T0, FakeClock
from core.errors import ExecutionFinalizedError
from core.logging_config import JsonFormatter, task_context
from scheduler.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from scheduler.execution_tracker import ExecutionTracker
from scheduler.models import ExecutionResult, ExecutionStatus, TaskState
from scheduler.schedule import IntervalSchedule


@pytest.fixture
def tracker(memory_store, clock):
    breaker = CircuitBreaker(CircuitBreakerConfig(max_consecutive_failures=2))
    return ExecutionTracker(memory_store, breaker, "t1", "noop", clock=clock)


def make_state(**kwargs) -> TaskState:
    return TaskState(task_id="t1", actor_name="noop", **kwargs)


async def test_start_execution_records_running(tracker, memory_store):
    eid = await tracker.start_execution(metadata={"trigger": "manual"})
    [record] = await memory_store.get_execution_history("t1")
    assert record.id == eid
    assert record.status == ExecutionStatus.RUNNING
    assert record.started_at == T0
    assert record.metadata == {"trigger": "manual"}


async def test_start_execution_binds_execution_id(tracker):
    with task_context("t1"):
        eid = await tracker.start_execution()
        record = logging.LogRecord("t", logging.INFO, "", 0, "after start", (), None)
        assert json.loads(JsonFormatter().format(record))["execution_id"] == str(eid)


async def test_record_success(tracker, memory_store, clock):
    state = make_state(consecutive_failures=1)
    eid = await tracker.start_execution()
    clock.advance(5)
    record = await tracker.record_success(eid, ExecutionResult(sub_steps_succeeded=2), state)

    assert state.consecutive_failures == 0
    assert state.last_run == T0 + timedelta(seconds=5)
    assert record.duration_seconds == 5.0
    [stored] = await tracker.get_history()
    assert stored.success is True
    assert stored.sub_steps_succeeded == 2


async def test_record_failure_trips_at_threshold(tracker):
    state = make_state()
    first = await tracker.start_execution()
    assert await tracker.record_failure(first, "boom", state) is False
    second = await tracker.start_execution()
    assert await tracker.record_failure(second, "boom again", state) is True
    assert state.is_paused
    assert state.consecutive_failures == 2

    history = await tracker.get_history()
    assert [r.error_message for r in history] == ["boom again", "boom"]


async def test_last_run_uses_scheduled_time(tracker, memory_store, clock):
    state = make_state()
    eid = await tracker.start_execution()
    clock.advance(5)
    await tracker.record_failure(eid, "boom", state, scheduled_at=T0)

    assert state.last_run == T0
    [record] = await memory_store.get_execution_history("t1")
    assert record.completed_at == T0 + timedelta(seconds=5)


async def test_failed_run_still_counts_for_the_cycle(tracker):
    state = make_state()
    eid = await tracker.start_execution()
    await tracker.record_failure(eid, "boom", state)
    assert state.last_run == T0
    assert not tracker.should_execute(state, IntervalSchedule(seconds=60), T0 + timedelta(seconds=30))


async def test_cannot_finalize_twice(tracker):
    state = make_state()
    eid = await tracker.start_execution()
    await tracker.record_success(eid, ExecutionResult(), state)
    with pytest.raises(ExecutionFinalizedError):
        await tracker.record_failure(eid, "late", state)


async def test_should_execute_blocks_paused_task(tracker):
    assert tracker.should_execute(make_state(), IntervalSchedule(seconds=60), T0)
    assert not tracker.should_execute(make_state(is_paused=True), IntervalSchedule(seconds=60), T0)


async def test_records_use_injected_clock(memory_store):
    clock = FakeClock(T0 + timedelta(days=1))
    tracker = ExecutionTracker(memory_store, CircuitBreaker(), "t1", "noop", clock=clock)
    await tracker.start_execution()
    [record] = await tracker.get_history()
    assert record.started_at == T0 + timedelta(days=1)
