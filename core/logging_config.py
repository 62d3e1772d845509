"""Structured JSON logging with task/execution context propagated via contextvars."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, TextIO

# Bound for the duration of one task run; every log line emitted inside the
# run (scheduler, tracker, actor) carries them.
_task_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "task_id", default="-"
)
_execution_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "execution_id", default="-"
)

# Attributes every LogRecord carries; anything else on a record came from extra=
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _timestamp(created: float) -> str:
    return datetime.fromtimestamp(created, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg, the bound task and
    execution ids, then any ``extra=`` fields (which win over the context)."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict = {
            "ts": _timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "task_id": _task_id_var.get(),
            "execution_id": _execution_id_var.get(),
        }
        data.update(
            (key, val) for key, val in vars(record).items()
            if key not in _RESERVED and not key.startswith("_")
        )
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_json_logging(level: str = "INFO", stream: TextIO | None = None) -> None:
    """Route all loggers through a single JSON handler.

    APScheduler reports every tick job at INFO, so it is capped at WARNING.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


@contextmanager
def task_context(task_id: str) -> Generator[None, None, None]:
    """Bind *task_id* to the current async context for the enclosed block."""
    task_token = _task_id_var.set(task_id)
    exec_token = _execution_id_var.set("-")
    try:
        yield
    finally:
        _execution_id_var.reset(exec_token)
        _task_id_var.reset(task_token)


def set_execution_id(execution_id: int | str) -> None:
    """Bind an execution id to the current async context."""
    _execution_id_var.set(str(execution_id))
