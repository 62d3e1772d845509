"""Tests for configuration loading and per-task validation."""

import json

import pytest
import yaml

from core.config import ServerConfig, load_config, parse_task_config, parse_task_configs
from core.errors import ConfigError
from scheduler.schedule import CronSchedule, IntervalSchedule


def write_yaml(tmp_path, data, name="scheduler.yaml"):
    path = tmp_path / name
    path.write_text(yaml.dump(data))
    return path


def test_defaults():
    config = ServerConfig()
    assert config.server.tick_interval_seconds == 60
    assert config.server.max_consecutive_failures == 5
    assert config.server.history_retention_days is None
    assert config.tasks == []


def test_load_yaml(tmp_path):
    path = write_yaml(tmp_path, {
        "server": {"tick_interval_seconds": 5, "max_consecutive_failures": 3},
        "tasks": [{"task_id": "t1", "actor_name": "noop"}],
    })
    config = load_config(path)
    assert config.server.tick_interval_seconds == 5
    assert config.server.max_consecutive_failures == 3
    assert config.tasks == [{"task_id": "t1", "actor_name": "noop"}]


def test_load_json(tmp_path):
    path = tmp_path / "scheduler.json"
    path.write_text(json.dumps({"server": {"pool_size": 2}}))
    assert load_config(path).server.pool_size == 2


def test_load_empty_file(tmp_path):
    path = tmp_path / "scheduler.yaml"
    path.write_text("")
    assert load_config(path).tasks == []


def test_env_overrides(tmp_path, monkeypatch):
    path = write_yaml(tmp_path, {"server": {"database_url": "sqlite+aiosqlite:///a.db"}})
    monkeypatch.setenv("SCHEDULER_CONFIG", str(path))
    monkeypatch.setenv("SCHEDULER_DATABASE_URL", "sqlite+aiosqlite:///b.db")
    assert load_config().server.database_url == "sqlite+aiosqlite:///b.db"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yaml")


def test_invalid_server_settings(tmp_path):
    path = write_yaml(tmp_path, {"server": {"max_consecutive_failures": 0}})
    with pytest.raises(ConfigError):
        load_config(path)


def test_task_defaults():
    task = parse_task_config({"task_id": "t1", "actor_name": "noop"})
    assert task.enabled
    assert task.schedule == IntervalSchedule(seconds=3600)
    assert task.options == {}


def test_task_with_cron_schedule():
    task = parse_task_config({
        "task_id": "t1",
        "actor_name": "noop",
        "schedule": {"type": "cron", "expression": "0 0 2 * * * *"},
    })
    assert isinstance(task.schedule, CronSchedule)


def test_bad_schedule_error_names_the_task():
    with pytest.raises(ConfigError) as exc:
        parse_task_config({
            "task_id": "nightly",
            "actor_name": "noop",
            "schedule": {"type": "cron", "expression": "0 0 99 * * * *"},
        })
    assert exc.value.task_id == "nightly"
    assert "nightly" in str(exc.value)


def test_parse_task_configs_collects_errors():
    tasks, errors = parse_task_configs([
        {"task_id": "a", "actor_name": "noop"},
        {"task_id": "b", "actor_name": "noop", "schedule": {"type": "interval", "seconds": -5}},
        {"task_id": "a", "actor_name": "noop"},
        {"task_id": "", "actor_name": "noop"},
    ])
    assert [t.task_id for t in tasks] == ["a"]
    assert [e.task_id for e in errors] == ["b", "a", None]
