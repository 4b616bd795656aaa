from __future__ import annotations

import asyncio
import importlib
import json
import logging
import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from waypoint.config import CONFIG_FILENAME, WaypointConfig, load_config, save_config
from waypoint.consilium import Consilium
from waypoint.errors import WaypointError
from waypoint.models import RunStatus, to_iso, utcnow
from waypoint.orchestrator import Orchestrator, RunResult
from waypoint.pipelines import PipelineKind
from waypoint.reviewers import CommandReviewer, OpenAIReviewer, ReviewerBackend
from waypoint.runner import StageRegistry
from waypoint.state import JsonFileStateStore
from waypoint.watchdog import Watchdog


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: WaypointConfig
    store: JsonFileStateStore
    consilium: Consilium


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _resolve_state_root(repo_root: Path, config: WaypointConfig) -> Path:
    root = Path(config.state.root)
    if not root.is_absolute():
        root = repo_root / root
    return root


def _record_event(store: JsonFileStateStore, event: dict[str, Any]) -> None:
    payload = dict(event)
    payload["at"] = to_iso(utcnow())
    store.append_event(payload)


def _build_consilium(
    config: WaypointConfig, repo_root: Path, store: JsonFileStateStore
) -> Consilium:
    reviewers: list[ReviewerBackend] = [
        CommandReviewer(name, command, working_directory=repo_root)
        for name, command in config.consilium.reviewers.items()
        if command
    ]
    reviewers.extend(
        OpenAIReviewer(name, model=model)
        for name, model in config.consilium.openai_reviewers.items()
        if model
    )
    return Consilium(
        reviewers,
        timeout_seconds=max(1.0, float(config.consilium.reviewer_timeout_seconds)),
        issue_prefix_length=max(1, int(config.consilium.issue_prefix_length)),
        event_hook=lambda event: _record_event(store, event),
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    store = JsonFileStateStore(_resolve_state_root(repo_root, config))
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        consilium=_build_consilium(config, repo_root, store),
    )


def _collect_registries(target: Any) -> list[StageRegistry]:
    if isinstance(target, StageRegistry):
        return [target]
    if isinstance(target, Mapping):
        target = target.values()
    if isinstance(target, Iterable) and not isinstance(target, (str, bytes)):
        registries = list(target)
        if registries and all(isinstance(item, StageRegistry) for item in registries):
            return registries
    raise click.ClickException(
        "Registry must be a StageRegistry, a collection of them, or a factory returning one."
    )


def load_registries(reference: str, runtime: Runtime) -> list[StageRegistry]:
    """Import ``module:attribute`` and turn it into stage registries.

    A callable attribute is treated as a factory and called with the
    configured consilium so review stages can be wired to real reviewers.
    """
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise click.ClickException(
            f"Registry reference must look like 'module:attribute': {reference}"
        )

    root = str(runtime.repo_root)
    if root not in sys.path:
        sys.path.insert(0, root)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise click.ClickException(
            f"Cannot import registry module '{module_name}': {exc}"
        ) from exc
    try:
        target = getattr(module, attribute)
    except AttributeError as exc:
        raise click.ClickException(
            f"Module '{module_name}' has no attribute '{attribute}'"
        ) from exc

    if callable(target) and not isinstance(target, StageRegistry):
        target = target(runtime.consilium)
    return _collect_registries(target)


def _build_orchestrator(runtime: Runtime, registry_value: str | None) -> Orchestrator:
    reference = registry_value or runtime.config.pipeline.registry
    if not reference:
        raise click.ClickException(
            "No stage registry configured. Set pipeline.registry or pass --registry."
        )
    return Orchestrator(
        runtime.store,
        load_registries(reference, runtime),
        config=runtime.config.pipeline,
        event_hook=lambda event: _record_event(runtime.store, event),
    )


def _read_json_file(path: Path | None) -> Any:
    if path is None:
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc


def _report_result(result: RunResult) -> None:
    click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    if result.status == RunStatus.PAUSED_FOR_INPUT:
        click.echo(f"Paused for input. Resume with: {result.resume_command}")
    elif result.status == RunStatus.FAILED:
        raise click.ClickException(f"Run {result.run_id} failed: {result.error}")
    elif result.status == RunStatus.COMPLETED:
        click.echo(f"Run {result.run_id} completed.")


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Waypoint pipeline orchestrator."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option(
    "--registry", "registry_value", default=None, help="module:attribute of stage registries"
)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(registry_value: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if registry_value:
        config.pipeline.registry = registry_value
    save_config(config_path, config)

    state_root = _resolve_state_root(repo_root, config)
    JsonFileStateStore(state_root)

    click.echo(f"Initialized Waypoint in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {state_root}")
    click.echo(f"Registry: {config.pipeline.registry or '(not set)'}")


@cli.command("run")
@click.argument("kind", type=click.Choice([str(kind) for kind in PipelineKind]))
@click.option(
    "--input", "input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option("--registry", "registry_value", default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(
    kind: str, input_path: Path | None, registry_value: str | None, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    payload = _read_json_file(input_path)
    if not isinstance(payload, dict):
        raise click.ClickException("Run input must be a JSON object.")
    orchestrator = _build_orchestrator(runtime, registry_value)
    try:
        result = asyncio.run(orchestrator.start(kind, payload))
    except WaypointError as exc:
        raise click.ClickException(str(exc)) from exc
    _report_result(result)


@cli.command("resume")
@click.argument("run_id")
@click.option(
    "--answers",
    "answers_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--registry", "registry_value", default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def resume_command(
    run_id: str, answers_path: Path, registry_value: str | None, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    answers = _read_json_file(answers_path)
    orchestrator = _build_orchestrator(runtime, registry_value)
    try:
        result = asyncio.run(orchestrator.resume(run_id, answers))
    except WaypointError as exc:
        raise click.ClickException(str(exc)) from exc
    _report_result(result)


@cli.command("continue")
@click.argument("run_id")
@click.option("--registry", "registry_value", default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def continue_command(run_id: str, registry_value: str | None, config_value: str) -> None:
    """Pick up a run whose process stopped before it finished."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    orchestrator = _build_orchestrator(runtime, registry_value)
    try:
        result = asyncio.run(orchestrator.run(run_id))
    except WaypointError as exc:
        raise click.ClickException(str(exc)) from exc
    _report_result(result)


@cli.command("status")
@click.argument("run_id")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(run_id: str, verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        state = runtime.store.load(run_id)
    except WaypointError as exc:
        raise click.ClickException(str(exc)) from exc
    if state is None:
        raise click.ClickException(f"Run {run_id} not found")

    payload: dict[str, Any] = {
        "run_id": state.run_id,
        "pipeline_kind": str(state.pipeline_kind),
        "status": str(state.status),
        "current_stage": state.current_stage,
        "stage_attempts": dict(state.stage_attempts),
        "accepted_stages": list(state.stage_outputs),
        "started_at": state.started_at,
        "updated_at": state.updated_at,
        "error": state.error,
        "pending_questions": state.pending_questions,
        "resume_command": state.resume_command,
    }
    liveness = runtime.store.get_liveness(run_id)
    payload["liveness"] = liveness.to_dict() if liveness else None
    if verbose:
        payload["stage_outputs"] = state.stage_outputs
        payload["history"] = state.history
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("runs")
@click.option("--active", "active_only", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def runs_command(active_only: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    run_ids = runtime.store.list_runs(active_only=active_only)
    if not run_ids:
        click.echo("No runs.")
        return
    for run_id in run_ids:
        state = runtime.store.load(run_id)
        if state is None:
            continue
        click.echo(f"{run_id}\t{state.status}\t{state.current_stage}")


@cli.command("events")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def events_command(limit: int, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    for event in runtime.store.read_events()[-limit:]:
        click.echo(json.dumps(event, ensure_ascii=False))


@cli.command("watchdog")
@click.option("--once", is_flag=True, default=False, help="Run a single scan and exit.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def watchdog_command(once: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    watchdog = Watchdog(
        runtime.store,
        runtime.config.watchdog,
        event_hook=lambda event: _record_event(runtime.store, event),
    )
    if once:
        try:
            report = watchdog.scan()
        except WaypointError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
        return

    interval = runtime.config.watchdog.interval_seconds
    click.echo(f"Watchdog running every {interval}s. Ctrl-C to stop.")
    try:
        asyncio.run(watchdog.run_forever())
    except KeyboardInterrupt:
        click.echo("Watchdog stopped.")
