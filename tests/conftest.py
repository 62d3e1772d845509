"""Shared fixtures: a controllable clock and scripted actors."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from actors.base import BaseActor
from scheduler.models import ExecutionResult
from store.memory_store import InMemoryStatePersistence
from store.state_store import SqlStatePersistence

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class CountingActor(BaseActor):
    """Succeeds or raises depending on ``fail``; counts invocations."""

    name = "counting"

    def __init__(self, fail: bool = False):
        super().__init__()
        self.fail = fail
        self.calls = 0

    async def execute(self) -> ExecutionResult:
        self.calls += 1
        if self.fail:
            raise RuntimeError("boom")
        return ExecutionResult(sub_steps_succeeded=1)


class BlockingActor(BaseActor):
    """Blocks until ``release`` is set; lets tests observe a run in flight."""

    name = "blocking"

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def execute(self) -> ExecutionResult:
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return ExecutionResult(sub_steps_succeeded=2, sub_steps_skipped=1)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return InMemoryStatePersistence()


@pytest.fixture
async def sql_store(tmp_path):
    store = SqlStatePersistence(f"sqlite+aiosqlite:///{tmp_path}/state.db")
    await store.init()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    """Both persistence backends; every contract test runs against each."""
    if request.param == "memory":
        yield InMemoryStatePersistence()
        return
    sql = SqlStatePersistence(f"sqlite+aiosqlite:///{tmp_path}/state.db")
    await sql.init()
    yield sql
    await sql.close()
