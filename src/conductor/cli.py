from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from conductor import __version__
from conductor.config import ConductorConfig, ConfigError, load_config, save_config
from conductor.engine import IterationEngine
from conductor.executors import CommandExecutor, GuardedExecutor, RoleExecutor
from conductor.roles import RoleRegistry
from conductor.store import LoopStateFile, TaskStore, TaskStoreError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig
    store: TaskStore
    loop_state: LoopStateFile


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(config: ConductorConfig, verbose: bool) -> None:
    level = getattr(logging, config.logging.level.upper(), logging.INFO)
    if verbose:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _record_executor_event(loop_state: LoopStateFile, event: dict[str, Any]) -> None:
    loop_state.record_event(event)


def _build_executor(
    config: ConductorConfig, repo_root: Path, loop_state: LoopStateFile
) -> RoleExecutor:
    inner = CommandExecutor(
        config.executors.commands,
        default_command=config.executors.default_command,
        working_directory=repo_root,
    )
    return GuardedExecutor(
        inner,
        timeout_seconds=max(1.0, float(config.engine.executor_timeout_seconds)),
        event_hook=lambda event: _record_executor_event(loop_state, event),
    )


def _build_registry(config: ConductorConfig, executor: RoleExecutor) -> RoleRegistry:
    bound = {role: executor for role in config.executors.commands}
    default = executor if config.executors.default_command.strip() else None
    return RoleRegistry(bound, default=default)


def _load_runtime(repo_root: Path, config_path: Path, *, verbose: bool = False) -> Runtime:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    _configure_logging(config, verbose)
    tasks_dir = Path(config.engine.tasks_dir)
    if not tasks_dir.is_absolute():
        tasks_dir = repo_root / tasks_dir
    store = TaskStore(tasks_dir)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        loop_state=LoopStateFile(store),
    )


def _runtime(config_value: str, verbose: bool = False) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value), verbose=verbose)


config_option = click.option(
    "--config", "config_value", default="conductor.toml", show_default=True
)
verbose_option = click.option("--verbose", "-v", is_flag=True, default=False)


@click.group()
@click.version_option(__version__, prog_name="conductor")
def cli() -> None:
    """Conductor CLI."""


@cli.command("init")
@config_option
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    runtime = _load_runtime(repo_root, config_path)

    click.echo(f"Initialized Conductor in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Tasks: {runtime.store.root}")


@cli.group("task")
def task_group() -> None:
    """Manage the task board."""


@task_group.command("add")
@click.argument("description")
@click.option("--priority", "-p", type=int, default=2, show_default=True)
@click.option("--depends-on", "depends_on", multiple=True)
@click.option("--ready", is_flag=True, default=False, help="File straight into ready.")
@config_option
def task_add_command(
    description: str,
    priority: int,
    depends_on: tuple[str, ...],
    ready: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    task = runtime.store.create(
        description,
        priority=priority,
        depends_on=depends_on,
        status="ready" if ready else "backlog",
    )
    click.echo(task.id)


@task_group.command("list")
@click.option(
    "--status",
    type=click.Choice(["backlog", "ready", "in_progress", "blocked", "done"]),
    default=None,
)
@config_option
def task_list_command(status: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    tasks = runtime.store.list_tasks(status)
    if not tasks:
        click.echo("No tasks.")
        return
    for task in tasks:
        click.echo(f"{task.id} p{task.priority} {task.status:<11} {task.description}")


@task_group.command("show")
@click.argument("task_id")
@config_option
def task_show_command(task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        task = runtime.store.get(task_id)
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(task.to_dict(), ensure_ascii=False, indent=2))


@task_group.command("promote")
@click.argument("task_id")
@config_option
def task_promote_command(task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        task = runtime.store.transition(task_id, "ready")
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{task.id} -> {task.status}")


@task_group.command("unblock")
@click.argument("task_id")
@config_option
def task_unblock_command(task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        task = runtime.store.transition(task_id, "in_progress")
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{task.id} -> {task.status}")


@cli.command("run")
@click.option("--task", "task_id", default=None)
@config_option
@verbose_option
def run_command(task_id: str | None, config_value: str, verbose: bool) -> None:
    runtime = _runtime(config_value, verbose)
    executor = _build_executor(runtime.config, runtime.repo_root, runtime.loop_state)
    engine = IterationEngine(
        runtime.config,
        runtime.store,
        _build_registry(runtime.config, executor),
        loop_state=runtime.loop_state,
    )
    try:
        report = asyncio.run(engine.run(task_id))
    except (RuntimeError, TaskStoreError, ConfigError) as exc:
        raise click.ClickException(str(exc)) from exc

    if report is None:
        click.echo("No runnable task.")
        return
    click.echo(f"Iteration: {report.iteration_id}")
    click.echo(f"Task: {report.task_id} -> {report.final_status}")
    for kind, gate in report.gates.items():
        click.echo(f"  {kind:<12} {gate['status']:<9} {gate['cycles']}/{gate['max_cycles']}")
    if report.escalation_reason:
        click.echo(f"Escalation: {report.escalation_reason}")
    if report.filed_tasks:
        click.echo(f"Filed: {', '.join(report.filed_tasks)}")
    if report.recommendation:
        click.echo(f"Recommendation: {report.recommendation}")


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    state = runtime.loop_state.read()
    counts = {
        status: len(runtime.store.list_tasks(status))
        for status in ("backlog", "ready", "in_progress", "blocked", "done")
    }
    payload = {
        "tasks": counts,
        "loop_id": state.get("loop_id"),
        "agents": runtime.loop_state.counts(),
        "summary": runtime.loop_state.summary_line(),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("report")
@click.argument("iteration_id", required=False)
@config_option
def report_command(iteration_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    if iteration_id is None:
        reports = runtime.store.list_reports()
        if not reports:
            click.echo("No reports.")
            return
        for report in reports:
            click.echo(f"{report.iteration_id} {report.task_id} {report.final_status}")
        return
    try:
        report = runtime.store.read_report(iteration_id)
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))


@cli.command("messages")
@click.argument("iteration_id")
@config_option
def messages_command(iteration_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    messages = runtime.store.read_messages(iteration_id)
    if not messages:
        click.echo("No messages.")
        return
    for message in messages:
        marker = "" if message.get("delivered", True) else " (undelivered)"
        click.echo(
            f"#{message['sequence']} {message['sender']} -> {message['recipient']}{marker}: "
            + json.dumps(message.get("payload"), ensure_ascii=False)
        )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
