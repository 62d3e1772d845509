"""Scheduler CLI — operate a running scheduler through its API."""

from __future__ import annotations

import json
import sys
from typing import Any

import click
import httpx
from rich import box
from rich.console import Console
from rich.table import Table

from actors.registry import default_registry
from core.config import load_config, parse_task_configs
from core.errors import ConfigError

console = Console()
err_console = Console(stderr=True)

_STATUS_COLOR: dict[str, str] = {
    "succeeded": "green",
    "failed": "red",
    "running": "yellow",
    "active": "green",
    "paused": "yellow",
    "not_due": "dim",
    "already_running": "yellow",
    "persistence_error": "red",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(status: str) -> str:
    return _STATUS_COLOR.get(status, "white")


def _client(url: str) -> httpx.Client:
    return httpx.Client(base_url=url.rstrip("/"), timeout=30)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {msg}")
    sys.exit(code)


def _check(resp: httpx.Response) -> None:
    if resp.status_code in (404, 409, 503):
        _die(resp.json().get("detail", f"HTTP {resp.status_code}"))
    if resp.is_error:
        _die(f"HTTP {resp.status_code}: {resp.text}")


def _request(obj: dict, method: str, path: str, **kwargs: Any) -> Any:
    try:
        with _client(obj["url"]) as c:
            resp = getattr(c, method)(path, **kwargs)
    except httpx.ConnectError:
        _die(f"Cannot connect to {obj['url']}")
    _check(resp)
    return resp.json() if resp.status_code != 204 else None


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _executions_table(rows: list[dict]) -> Table:
    table = Table(box=box.SIMPLE)
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    table.add_column("Steps ok/fail/skip", justify="right")
    table.add_column("Error")
    for row in rows:
        status = row.get("status", "?")
        dur = f"{row['duration_seconds']:.2f}s" if row.get("duration_seconds") is not None else "-"
        err = (row.get("error_message") or "")[:60]
        table.add_row(
            str(row.get("id")),
            row.get("task_id", ""),
            f"[{_color(status)}]{status}[/]",
            row.get("started_at") or "-",
            dur,
            f"{row.get('sub_steps_succeeded', 0)}/{row.get('sub_steps_failed', 0)}/{row.get('sub_steps_skipped', 0)}",
            f"[red]{err}[/]" if err else "",
        )
    return table


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--url", "-u",
    default="http://localhost:8000",
    envvar="SCHEDULER_URL",
    show_default=True,
    help="Scheduler API base URL.",
)
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, url: str, json_output: bool) -> None:
    """Actor scheduler — inspect and operate scheduled tasks."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["json_output"] = json_output


# ── scheduler tasks / show ────────────────────────────────────────────────────


@cli.command("tasks")
@click.option(
    "--filter", "kind",
    type=click.Choice(["all", "active", "paused"]),
    default="all",
    show_default=True,
)
@click.option("--actor", help="Only tasks using this actor.")
@click.pass_obj
def list_tasks(obj: dict, kind: str, actor: str | None) -> None:
    """List tasks and their breaker state."""
    params: dict[str, Any] = {"filter": kind}
    if actor:
        params["actor"] = actor
    data = _request(obj, "get", "/tasks", params=params)

    if obj["json_output"]:
        _echo_json(data)
        return

    if not data:
        click.echo("No tasks found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Task ID", style="cyan")
    table.add_column("Actor")
    table.add_column("State")
    table.add_column("Failures", justify="right")
    table.add_column("Last Run")
    table.add_column("Next Run")
    for row in data:
        state = row.get("breaker_state", "?")
        if row.get("running"):
            state = "running"
        table.add_row(
            row["task_id"],
            row.get("actor_name", ""),
            f"[{_color(state)}]{state}[/]",
            str(row.get("consecutive_failures", 0)),
            row.get("last_run") or "-",
            row.get("next_run") or "-",
        )
    console.print(table)


@cli.command("show")
@click.argument("task_id")
@click.pass_obj
def show(obj: dict, task_id: str) -> None:
    """Show one task's state."""
    data = _request(obj, "get", f"/tasks/{task_id}")
    if obj["json_output"]:
        _echo_json(data)
        return

    state = data.get("breaker_state", "?")
    console.print(f"Task:     [cyan]{data['task_id']}[/]  ({data.get('actor_name')})")
    console.print(f"State:    [{_color(state)}]{state}[/]{'  [yellow](running)[/]' if data.get('running') else ''}")
    console.print(f"Failures: {data.get('consecutive_failures', 0)}")
    console.print(f"Last run: {data.get('last_run') or '-'}")
    console.print(f"Next run: {data.get('next_run') or '-'}")
    if not data.get("registered", True):
        console.print("[dim]Not registered in the running scheduler.[/]")


# ── scheduler run / pause / resume / delete ───────────────────────────────────


@cli.command("run")
@click.argument("task_id")
@click.pass_obj
def run(obj: dict, task_id: str) -> None:
    """Run a task now (still subject to its breaker and schedule)."""
    data = _request(obj, "post", f"/tasks/{task_id}/run")
    if obj["json_output"]:
        _echo_json(data)
        return

    status = data.get("status", "?")
    line = f"{task_id}  [{_color(status)}]{status}[/]"
    if data.get("execution_id") is not None:
        line += f"  execution {data['execution_id']}"
    console.print(line)
    if data.get("error"):
        console.print(f"[red]{data['error']}[/]")
    if data.get("tripped"):
        console.print("[yellow]Circuit breaker tripped; task is now paused.[/]")
    if status in ("failed", "persistence_error"):
        sys.exit(1)


@cli.command("pause")
@click.argument("task_id")
@click.pass_obj
def pause(obj: dict, task_id: str) -> None:
    """Pause a task."""
    _request(obj, "post", f"/tasks/{task_id}/pause")
    click.echo(f"Paused  {task_id}")


@cli.command("resume")
@click.argument("task_id")
@click.pass_obj
def resume(obj: dict, task_id: str) -> None:
    """Resume a paused task (its failure count is kept)."""
    data = _request(obj, "post", f"/tasks/{task_id}/resume")
    click.echo(f"Resumed  {task_id}  (consecutive failures: {data.get('consecutive_failures', 0)})")


@cli.command("delete")
@click.argument("task_id")
@click.confirmation_option(prompt="Delete this task's state?")
@click.pass_obj
def delete(obj: dict, task_id: str) -> None:
    """Delete a task's state. Execution history is kept."""
    _request(obj, "delete", f"/tasks/{task_id}")
    click.echo(f"Deleted  {task_id}")


# ── scheduler history / executions ────────────────────────────────────────────


@cli.command("history")
@click.argument("task_id")
@click.option("--limit", default=20, show_default=True)
@click.option("--failed-only", is_flag=True, help="Only failed executions.")
@click.pass_obj
def history(obj: dict, task_id: str, limit: int, failed_only: bool) -> None:
    """Show a task's execution history, newest first."""
    params: dict[str, Any] = {"limit": limit}
    if failed_only:
        params["failed_only"] = "true"
    data = _request(obj, "get", f"/tasks/{task_id}/executions", params=params)

    if obj["json_output"]:
        _echo_json(data)
        return

    if not data:
        click.echo("No executions found.")
        return
    console.print(_executions_table(data))


@cli.command("executions")
@click.option("--incomplete", is_flag=True, help="Executions that never completed.")
@click.pass_obj
def executions(obj: dict, incomplete: bool) -> None:
    """Inspect executions across all tasks."""
    if not incomplete:
        _die("nothing to show; use --incomplete (or `history TASK_ID` for one task)")
    data = _request(obj, "get", "/executions/incomplete")

    if obj["json_output"]:
        _echo_json(data)
        return

    if not data:
        click.echo("No incomplete executions.")
        return
    console.print(_executions_table(data))


# ── scheduler serve / validate ────────────────────────────────────────────────


@cli.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True)
@click.option("--config", "config_path", type=click.Path(exists=True), help="Config file (YAML or JSON).")
def serve(host: str, port: int, config_path: str | None) -> None:
    """Run the scheduler service in the foreground."""
    from main import serve as run_server

    run_server(host=host, port=port, config_path=config_path)


@cli.command("validate")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def validate(obj: dict, file: str) -> None:
    """Check a config file offline: schedules, actors and their options."""
    try:
        config = load_config(file)
    except ConfigError as e:
        _die(str(e))

    tasks, errors = parse_task_configs(config.tasks)
    registry = default_registry()
    for task in tasks:
        try:
            registry.create(task.actor_name, task.options)
        except ConfigError as e:
            errors.append(e if e.task_id else ConfigError(str(e), task_id=task.task_id))

    rejected = {e.task_id for e in errors}
    valid = [t for t in tasks if t.task_id not in rejected]

    if obj["json_output"]:
        _echo_json({
            "valid": [t.task_id for t in valid],
            "errors": [{"task_id": e.task_id, "error": str(e)} for e in errors],
        })
    else:
        table = Table(box=box.SIMPLE)
        table.add_column("Task ID", style="cyan")
        table.add_column("Actor")
        table.add_column("Schedule")
        table.add_column("Enabled")
        for t in valid:
            table.add_row(t.task_id, t.actor_name, t.schedule.type, "yes" if t.enabled else "no")
        console.print(table)
        for e in errors:
            err_console.print(f"[red]✗[/] {e}")
        console.print(f"{len(valid)} valid, {len(errors)} rejected")

    if errors:
        sys.exit(1)
