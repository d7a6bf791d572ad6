from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from hivectl.config import HiveConfig, load_config, save_config
from hivectl.controller import TaskController
from hivectl.errors import HiveError
from hivectl.features import FeatureGate
from hivectl.logs import setup_logging
from hivectl.models import Blocker, MergeStrategy, Outcome, PlanTask
from hivectl.paths import ProjectLayout
from hivectl.state import JsonFeatureStore, JsonTaskStore
from hivectl.workspaces import GitWorktreeBackend

DEFAULT_CONFIG = "hivectl.toml"

T = TypeVar("T")


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: HiveConfig
    layout: ProjectLayout
    features: FeatureGate
    controller: TaskController


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(repo_root: Path, config: HiveConfig) -> None:
    log_file = None
    if config.logging.file:
        log_file = Path(config.logging.file)
        if not log_file.is_absolute():
            log_file = repo_root / log_file
    setup_logging(config.logging.level, log_file)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    _configure_logging(repo_root, config)
    layout = ProjectLayout(repo_root, state_dir_name=config.project.state_dir)
    task_store = JsonTaskStore(layout)
    features = FeatureGate(JsonFeatureStore(layout), task_store)
    workspaces = GitWorktreeBackend(layout, branch_prefix=config.workspace.branch_prefix)
    controller = TaskController(features, task_store, workspaces, layout, config)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        layout=layout,
        features=features,
        controller=controller,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _call(action: Callable[[], T]) -> T:
    try:
        return action()
    except HiveError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _load_plan(plan_path: Path) -> list[PlanTask]:
    try:
        payload = json.loads(plan_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Plan file is not valid JSON: {exc}") from exc
    if isinstance(payload, dict):
        payload = payload.get("tasks", [])
    if not isinstance(payload, list):
        raise click.ClickException("Plan file must contain a list of tasks.")
    try:
        return [PlanTask.from_dict(item) for item in payload]
    except (KeyError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid plan task entry: {exc}") from exc


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG, show_default=True
)


@click.group()
def cli() -> None:
    """Hive task controller CLI."""


@cli.command("init")
@click.option("--branch-prefix", default=None)
@config_option
def init_command(branch_prefix: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if branch_prefix:
        config.workspace.branch_prefix = branch_prefix
    save_config(config_path, config)

    layout = ProjectLayout(repo_root, state_dir_name=config.project.state_dir)
    layout.ensure()
    click.echo(f"Initialized hivectl in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {layout.state_dir}")


@cli.group("feature")
def feature_group() -> None:
    """Manage feature lifecycle."""


@feature_group.command("create")
@click.argument("name")
@click.option("--ticket", default=None)
@config_option
def feature_create_command(name: str, ticket: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    runtime.layout.ensure()
    feature = _call(lambda: runtime.features.create(name, ticket=ticket))
    _echo_json(feature.to_dict())


@feature_group.command("approve")
@click.argument("name")
@config_option
def feature_approve_command(name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_call(lambda: runtime.features.approve(name)).to_dict())


@feature_group.command("complete")
@click.argument("name")
@click.option("--evidence", required=True, help="How the finished feature was verified.")
@config_option
def feature_complete_command(name: str, evidence: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_call(lambda: runtime.features.complete(name, evidence)).to_dict())


@feature_group.command("hold")
@click.argument("name")
@click.option("--reason", required=True)
@config_option
def feature_hold_command(name: str, reason: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _call(lambda: runtime.features.hold(name, reason))
    click.echo(f"Feature {name} is on hold.")


@feature_group.command("release")
@click.argument("name")
@config_option
def feature_release_command(name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _call(lambda: runtime.features.release(name))
    click.echo(f"Feature {name} released.")


@feature_group.command("list")
@config_option
def feature_list_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    features = runtime.features.list()
    if not features:
        click.echo("No features found.")
        return
    for feature in features:
        click.echo(f"{feature.name:<30} {feature.status}")


@cli.group("task")
def task_group() -> None:
    """Manage tasks of a feature."""


@task_group.command("create")
@click.argument("feature")
@click.argument("name")
@click.option("--order", type=int, default=None)
@click.option("--depends-on", "depends_on", multiple=True)
@click.option(
    "--independent",
    is_flag=True,
    default=False,
    help="Record an explicit empty dependency list instead of depending on lower orders.",
)
@config_option
def task_create_command(
    feature: str,
    name: str,
    order: int | None,
    depends_on: tuple[str, ...],
    independent: bool,
    config_value: str,
) -> None:
    if independent and depends_on:
        raise click.UsageError("--independent cannot be combined with --depends-on.")
    deps: list[str] | None = None
    if depends_on or independent:
        deps = list(depends_on)
    runtime = _runtime(config_value)
    task = _call(lambda: runtime.controller.create_task(feature, name, order, deps))
    _echo_json(task.describe())


@task_group.command("list")
@click.argument("feature")
@config_option
def task_list_command(feature: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    tasks = runtime.controller.tasks.list(feature)
    if not tasks:
        click.echo("No tasks found.")
        return
    for task in tasks:
        click.echo(f"{task.key:<30} {task.status:<12} {task.origin}")


@cli.command("sync")
@click.argument("feature")
@click.option(
    "--plan",
    "plan_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@config_option
def sync_command(feature: str, plan_path: Path, config_value: str) -> None:
    plan_tasks = _load_plan(plan_path)
    runtime = _runtime(config_value)
    result = _call(lambda: runtime.controller.sync_tasks(feature, plan_tasks))
    _echo_json(result.to_dict())


@cli.command("start")
@click.argument("feature")
@click.argument("task")
@click.option("--idempotency-key", default=None)
@click.option("--agent", default=None)
@config_option
def start_command(
    feature: str,
    task: str,
    idempotency_key: str | None,
    agent: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    result = _call(
        lambda: runtime.controller.start(
            feature, task, idempotency_key=idempotency_key, agent=agent
        )
    )
    _echo_json(result.to_dict())


@cli.command("complete")
@click.argument("feature")
@click.argument("task")
@click.option(
    "--outcome",
    type=click.Choice([str(outcome) for outcome in Outcome]),
    required=True,
)
@click.option("--summary", required=True)
@click.option("--blocker-reason", default=None)
@click.option("--option", "options", multiple=True)
@click.option("--recommendation", default=None)
@click.option("--context", "blocker_context", default=None)
@config_option
def complete_command(
    feature: str,
    task: str,
    outcome: str,
    summary: str,
    blocker_reason: str | None,
    options: tuple[str, ...],
    recommendation: str | None,
    blocker_context: str | None,
    config_value: str,
) -> None:
    blocker = None
    if blocker_reason:
        blocker = Blocker(
            reason=blocker_reason,
            options=list(options),
            recommendation=recommendation,
            context=blocker_context,
        )
    runtime = _runtime(config_value)
    result = _call(
        lambda: runtime.controller.complete(feature, task, outcome, summary, blocker=blocker)
    )
    _echo_json(result.to_dict())


@cli.command("discard")
@click.argument("feature")
@click.argument("task")
@config_option
def discard_command(feature: str, task: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_call(lambda: runtime.controller.discard(feature, task)).describe())


@cli.command("cancel")
@click.argument("feature")
@click.argument("task")
@config_option
def cancel_command(feature: str, task: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_call(lambda: runtime.controller.cancel(feature, task)).describe())


@cli.command("integrate")
@click.argument("feature")
@click.argument("task")
@click.option(
    "--strategy",
    type=click.Choice([str(strategy) for strategy in MergeStrategy]),
    default=None,
    help="Defaults to integration.default_strategy from the config.",
)
@config_option
def integrate_command(
    feature: str, task: str, strategy: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value)
    result = _call(lambda: runtime.controller.integrate(feature, task, strategy))
    _echo_json(result.to_dict())
    if not result.success:
        raise SystemExit(1)


@cli.command("heartbeat")
@click.argument("feature")
@click.argument("task")
@click.option("--session-id", default=None)
@config_option
def heartbeat_command(
    feature: str, task: str, session_id: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value)
    task_record = _call(lambda: runtime.controller.heartbeat(feature, task, session_id))
    _echo_json(task_record.describe())


@cli.command("status")
@click.argument("feature")
@config_option
def status_command(feature: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_call(lambda: runtime.controller.status(feature)).to_dict())


@cli.command("cleanup")
@click.argument("feature")
@config_option
def cleanup_command(feature: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_call(lambda: runtime.controller.cleanup(feature)).to_dict())
