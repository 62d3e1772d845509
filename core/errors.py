"""Scheduler error types.

Configuration errors are raised while validating task definitions, before a
task is registered. Execution errors never escape the scheduler loop; they are
recorded against the task and feed the circuit breaker. Persistence errors
wrap whatever the storage backend raised so callers can tell infrastructure
failures apart from actor failures.
"""

from __future__ import annotations


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class ConfigError(SchedulerError):
    def __init__(self, message: str, task_id: str | None = None):
        self.task_id = task_id
        prefix = f"Task '{task_id}': " if task_id else ""
        super().__init__(prefix + message)


class PersistenceError(SchedulerError):
    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class TaskNotFoundError(SchedulerError, KeyError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found")

    def __str__(self) -> str:
        return self.args[0]


class ExecutionNotFoundError(SchedulerError, KeyError):
    def __init__(self, execution_id: int):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")

    def __str__(self) -> str:
        return self.args[0]


class ExecutionFinalizedError(SchedulerError):
    def __init__(self, execution_id: int):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} has already been finalized")


class ActorExecutionError(SchedulerError):
    """Raised by actors when their work failed."""
