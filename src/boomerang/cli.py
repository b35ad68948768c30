from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from boomerang.config import BoomerangConfig, load_config, save_config
from boomerang.controller import Orchestrator
from boomerang.errors import BoomerangError
from boomerang.logging_config import configure_logging
from boomerang.models import Phase, ProjectRun, RunStatus

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "boomerang.toml"


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: BoomerangConfig
    orchestrator: Orchestrator


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _record_dispatch_event(event: dict[str, Any]) -> None:
    logger.debug("dispatch event: %s", json.dumps(event, ensure_ascii=False, default=str))


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
        log_file = config.logging.file
        configure_logging(config.logging.level, root / log_file if log_file else None)
        orchestrator = Orchestrator.from_config(
            config, root=root, event_hook=_record_dispatch_event
        )
    except BoomerangError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(root=root, config_path=config_path, config=config, orchestrator=orchestrator)


def _runtime(config_value: str) -> Runtime:
    root = Path.cwd().resolve()
    return _load_runtime(root, _resolve_config_path(root, config_value))


def _echo_run(run: ProjectRun) -> None:
    click.echo(f"Run ID: {run.id}")
    click.echo(f"Status: {run.status.value}")
    click.echo(f"Phase: {run.phase.value} ({run.step.value})")
    if run.last_completed_phase:
        click.echo(f"Last completed phase: {run.last_completed_phase.value}")
    for reason in run.blocked_reasons:
        click.echo(f"Unmet: {reason}")
    if run.status is not RunStatus.COMPLETED and run.status is not RunStatus.ACTIVE:
        detail = f"{run.error_class}: {run.error}" if run.error_class else run.status.value
        raise click.ClickException(f"Run {run.id} stopped ({detail})")


@click.group()
def cli() -> None:
    """Boomerang phase-gated orchestration CLI."""


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    try:
        config = load_config(config_path)
    except BoomerangError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    if config.store.backend == "local":
        config.resolve_path(root).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized boomerang in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Store: {config.store.backend} ({config.store.path})")
    click.echo(f"Phases: {', '.join(phase.value for phase in config.phase_order)}")


@cli.command("run")
@click.argument("goal")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(goal: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        run = asyncio.run(runtime.orchestrator.execute(goal))
    except BoomerangError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_run(run)


@cli.command("resume")
@click.argument("run_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def resume_command(run_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        run = asyncio.run(runtime.orchestrator.resume(run_id))
    except BoomerangError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_run(run)


@cli.command("status")
@click.argument("run_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(run_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        view = runtime.orchestrator.get_run_status(run_id)
    except BoomerangError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(view.to_dict(), ensure_ascii=False, indent=2))


@cli.command("abort")
@click.argument("run_id")
@click.option("--reason", default="aborted by operator", show_default=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def abort_command(run_id: str, reason: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        run = asyncio.run(runtime.orchestrator.abort_run(run_id, reason))
    except BoomerangError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Run {run.id}: {run.status.value}")


@cli.command("gates")
@click.argument("run_id")
@click.argument("phase", type=click.Choice([phase.value for phase in Phase]))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def gates_command(run_id: str, phase: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        history = runtime.orchestrator.get_gate_history(run_id, Phase(phase))
    except BoomerangError as exc:
        raise click.ClickException(str(exc)) from exc
    payload = [evaluation.to_dict() for evaluation in history]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("history")
@click.argument("key")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def history_command(key: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    entries = runtime.orchestrator.store.history(key)
    if not entries:
        raise click.ClickException(f"No context entries for {key}")
    payload = [entry.to_record() for entry in entries]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
