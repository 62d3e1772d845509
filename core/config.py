"""Server and task configuration, loaded from a YAML (or JSON) file.

    server:
      tick_interval_seconds: 60
      max_consecutive_failures: 5
      database_url: sqlite+aiosqlite:///scheduler.db
    tasks:
      - task_id: nightly-report
        actor_name: http_request
        schedule: {type: cron, expression: "0 0 2 * * * *"}
        options:
          requests: [{method: POST, url: "https://example.com/report"}]

Tasks are kept as raw mappings until registration so that one malformed task
is rejected on its own instead of failing the whole file.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from core.errors import ConfigError
from scheduler.schedule import IntervalSchedule, SchedulePolicy

DEFAULT_CONFIG_PATH = "scheduler.yaml"
DEFAULT_DB_URL = "sqlite+aiosqlite:///scheduler.db"


class SchedulerSettings(BaseModel):
    tick_interval_seconds: float = Field(default=60, gt=0)
    max_consecutive_failures: int = Field(default=5, ge=1)
    execution_timeout_seconds: float | None = Field(default=300, gt=0)
    persistence_timeout_seconds: float | None = Field(default=10, gt=0)
    shutdown_grace_seconds: float = Field(default=30, ge=0)
    database_url: str = DEFAULT_DB_URL
    pool_size: int = Field(default=5, ge=1)
    # Finalized execution records older than this are pruned at startup
    history_retention_days: int | None = Field(default=None, ge=1)


class TaskConfig(BaseModel):
    task_id: str = Field(min_length=1)
    actor_name: str = Field(min_length=1)
    schedule: SchedulePolicy = IntervalSchedule(seconds=3600)
    enabled: bool = True
    options: dict[str, Any] = {}
    metadata: dict[str, Any] = {}


class ServerConfig(BaseModel):
    server: SchedulerSettings = SchedulerSettings()
    tasks: list[dict[str, Any]] = []


def load_file(path: str | Path) -> dict:
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) if path.suffix in (".yaml", ".yml") else json.load(f)
    return data or {}


def load_config(path: str | Path | None = None) -> ServerConfig:
    """Read the config file; environment variables override server settings.

    SCHEDULER_CONFIG          path used when *path* is None
    SCHEDULER_DATABASE_URL    overrides server.database_url
    """
    path = path or os.getenv("SCHEDULER_CONFIG", DEFAULT_CONFIG_PATH)
    try:
        raw = load_file(path)
        config = ServerConfig.model_validate(raw)
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {path}") from e
    except (yaml.YAMLError, json.JSONDecodeError, ValidationError) as e:
        raise ConfigError(f"invalid config file {path}: {e}") from e

    db_url = os.getenv("SCHEDULER_DATABASE_URL")
    if db_url:
        config.server.database_url = db_url
    return config


def parse_task_config(raw: dict[str, Any]) -> TaskConfig:
    """Validate one task mapping; schedule errors surface here, never at tick time."""
    task_id = (raw.get("task_id") or None) if isinstance(raw, dict) else None
    try:
        return TaskConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(str(e), task_id=task_id) from e


def parse_task_configs(raws: list[dict[str, Any]]) -> tuple[list[TaskConfig], list[ConfigError]]:
    """Validate every task independently; returns (valid tasks, errors)."""
    tasks: list[TaskConfig] = []
    errors: list[ConfigError] = []
    seen: set[str] = set()
    for raw in raws:
        try:
            task = parse_task_config(raw)
        except ConfigError as e:
            errors.append(e)
            continue
        if task.task_id in seen:
            errors.append(ConfigError("duplicate task_id", task_id=task.task_id))
            continue
        seen.add(task.task_id)
        tasks.append(task)
    return tasks, errors
