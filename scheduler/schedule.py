"""Schedule policies — decide whether a task is due and when it is next due.

Four policies are supported, as a closed tagged union discriminated by
``type``:

    cron       seven-field expression (sec min hour dom month dow year)
    interval   fixed period in seconds; 0 means "always due"
    once       a single absolute timestamp
    immediate  fires on the first evaluation after registration

Every policy is a pure function of ``(last_run, now)``; the caller always
supplies ``now``.
"""

import re
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Annotated, Any, Literal, Union

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class ScheduleCheck(BaseModel):
    should_run: bool
    next_run: datetime | None = None


def to_utc(dt: datetime) -> datetime:
    """Naive timestamps are taken as UTC; aware ones are converted."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ── Cron expression compilation ──────────────────────────────────────────────

# Field order of the expression, mapped to APScheduler CronTrigger kwargs
_CRON_FIELDS = ("second", "minute", "hour", "day", "month", "day_of_week", "year")

_CRON_ALIASES = {
    "@yearly":   "0 0 0 1 1 * *",
    "@annually": "0 0 0 1 1 * *",
    "@monthly":  "0 0 0 1 * * *",
    "@weekly":   "0 0 0 * * sun *",
    "@daily":    "0 0 0 * * * *",
    "@midnight": "0 0 0 * * * *",
    "@hourly":   "0 0 * * * * *",
}

# Numeric day-of-week runs 1-7 starting on Sunday
_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_DOW_NUMBER = re.compile(r"(?<!/)\b\d+\b")


def _translate_day_of_week(field: str) -> str:
    def _name(match: re.Match) -> str:
        value = int(match.group(0))
        if not 1 <= value <= 7:
            raise ValueError(f"day-of-week value {value} is outside 1-7")
        return _WEEKDAYS[value - 1]

    return _DOW_NUMBER.sub(_name, field.lower())


@lru_cache(maxsize=256)
def compile_cron(expression: str) -> CronTrigger:
    """Build a UTC CronTrigger from a six- or seven-field expression.

    Raises ValueError for anything APScheduler cannot parse.
    """
    expr = _CRON_ALIASES.get(expression.strip().lower(), expression)
    parts = expr.split()
    if len(parts) not in (6, 7):
        raise ValueError(
            f"Cron expression '{expression}' must have 6 or 7 fields, got {len(parts)}"
        )

    kwargs: dict[str, str] = {}
    for name, value in zip(_CRON_FIELDS, parts):
        if value == "?":
            value = "*"
        if name == "day_of_week" and value != "*":
            value = _translate_day_of_week(value)
        kwargs[name] = value

    try:
        return CronTrigger(timezone="UTC", **kwargs)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid cron expression '{expression}': {e}") from e


def cron_after(expression: str, after: datetime) -> datetime | None:
    """Earliest time matching *expression* strictly after *after*."""
    trigger = compile_cron(expression)
    # CronTrigger rounds its start up to the next whole second, so nudging past
    # `after` by a microsecond excludes `after` itself.
    start = to_utc(after) + timedelta(microseconds=1)
    fire = trigger.get_next_fire_time(None, start)
    return fire.astimezone(timezone.utc) if fire else None


# ── Policies ─────────────────────────────────────────────────────────────────

class _BaseSchedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def is_terminal(self) -> bool:
        """True for policies that stop firing after one run."""
        return False

    def check(self, last_run: datetime | None, now: datetime) -> ScheduleCheck:
        raise NotImplementedError

    def next_execution(self, after: datetime) -> datetime | None:
        raise NotImplementedError


class CronSchedule(_BaseSchedule):
    type: Literal["cron"] = "cron"
    expression: str

    @field_validator("expression")
    @classmethod
    def _validate_expression(cls, value: str) -> str:
        value = " ".join(value.split())
        compile_cron(value)
        return value

    def check(self, last_run: datetime | None, now: datetime) -> ScheduleCheck:
        now = to_utc(now)
        upcoming = cron_after(self.expression, last_run if last_run is not None else now)
        return ScheduleCheck(
            should_run=upcoming is not None and upcoming <= now,
            next_run=upcoming,
        )

    def next_execution(self, after: datetime) -> datetime | None:
        return cron_after(self.expression, after)


class IntervalSchedule(_BaseSchedule):
    type: Literal["interval"] = "interval"
    seconds: int = Field(ge=0)

    @property
    def period(self) -> timedelta:
        return timedelta(seconds=self.seconds)

    def check(self, last_run: datetime | None, now: datetime) -> ScheduleCheck:
        now = to_utc(now)
        if last_run is None:
            return ScheduleCheck(should_run=True, next_run=now + self.period)
        last_run = to_utc(last_run)
        return ScheduleCheck(
            should_run=now - last_run >= self.period,
            next_run=last_run + self.period,
        )

    def next_execution(self, after: datetime) -> datetime | None:
        return to_utc(after) + self.period


class OnceSchedule(_BaseSchedule):
    type: Literal["once"] = "once"
    at: datetime

    @field_validator("at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return to_utc(value)

    @property
    def is_terminal(self) -> bool:
        return True

    def check(self, last_run: datetime | None, now: datetime) -> ScheduleCheck:
        if last_run is not None:
            return ScheduleCheck(should_run=False, next_run=None)
        return ScheduleCheck(should_run=to_utc(now) >= self.at, next_run=self.at)

    def next_execution(self, after: datetime) -> datetime | None:
        return self.at if to_utc(after) < self.at else None


class ImmediateSchedule(_BaseSchedule):
    type: Literal["immediate"] = "immediate"

    @property
    def is_terminal(self) -> bool:
        return True

    def check(self, last_run: datetime | None, now: datetime) -> ScheduleCheck:
        return ScheduleCheck(should_run=last_run is None, next_run=None)

    def next_execution(self, after: datetime) -> datetime | None:
        return None


SchedulePolicy = Annotated[
    Union[CronSchedule, IntervalSchedule, OnceSchedule, ImmediateSchedule],
    Field(discriminator="type"),
]

_policy_adapter: TypeAdapter = TypeAdapter(SchedulePolicy)


def parse_schedule(data: Any) -> CronSchedule | IntervalSchedule | OnceSchedule | ImmediateSchedule:
    """Validate a schedule mapping (e.g. from a config file) into a policy."""
    return _policy_adapter.validate_python(data)
