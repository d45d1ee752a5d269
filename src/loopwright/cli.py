from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from loopwright.backends import AgentBackend, ClaudeCodeBackend, OpenAIBackend
from loopwright.config import BackendName, LoopwrightConfig, load_config, save_config
from loopwright.continuation import ContinuationGate
from loopwright.errors import LoopwrightError
from loopwright.graph import DependencyGraph
from loopwright.logger import SessionLogger
from loopwright.orchestrator import TaskOrchestrator
from loopwright.plan import WorkPlan, load_plan, save_plan
from loopwright.spec_lock import SpecLock
from loopwright.state import StateStore
from loopwright.workers import AgentWorker, AttemptPolicy, EchoWorker, WorkerRegistry


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: LoopwrightConfig
    logger: SessionLogger
    store: StateStore
    spec_lock: SpecLock


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    logger = SessionLogger("loopwright")
    store = StateStore(
        config.state_root(repo_root),
        logger=logger.child(component="state"),
        log_max_lines=config.cleanup.log_max_lines,
        archive_keep=config.cleanup.archive_keep,
        archive_max_age_days=config.cleanup.archive_max_age_days,
    )
    spec_lock = SpecLock(
        store.records,
        logger=logger.child(component="spec_lock"),
        poll_interval_seconds=config.spec_lock.poll_interval_seconds,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        logger=logger,
        store=store,
        spec_lock=spec_lock,
    )


def _build_single_backend(
    backend_name: BackendName, config: LoopwrightConfig, repo_root: Path
) -> AgentBackend:
    if backend_name == "openai":
        return OpenAIBackend(model=config.backend.openai_model)
    return ClaudeCodeBackend(working_directory=repo_root)


def _build_backends(config: LoopwrightConfig, repo_root: Path) -> list[AgentBackend]:
    backends: list[AgentBackend] = []
    for backend_name in dict.fromkeys(config.backend.order):
        backends.append(_build_single_backend(backend_name, config, repo_root))
    return backends


def _build_registry(runtime: Runtime, *, dry_run: bool) -> WorkerRegistry:
    registry = WorkerRegistry()
    if dry_run:
        for name in runtime.config.workers.names:
            registry.register(name, EchoWorker(name))
        return registry

    backends = _build_backends(runtime.config, runtime.repo_root)
    if not backends:
        raise click.ClickException("No agent backend configured in [backend] order.")
    policy = AttemptPolicy(
        attempts_per_backend=max(1, int(runtime.config.backend.attempts_per_backend)),
        backoff_seconds=max(0.0, float(runtime.config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(runtime.config.backend.timeout_seconds)),
    )
    logger = runtime.logger.child(component="worker")
    for name in runtime.config.workers.names:
        registry.register(name, AgentWorker(name, backends, policy=policy, logger=logger))
    return registry


def _load_plan_or_fail(plan_path: Path) -> WorkPlan:
    try:
        return load_plan(plan_path)
    except LoopwrightError as exc:
        raise click.ClickException(str(exc)) from exc


def _plan_path_option(runtime: Runtime, plan_value: str | None) -> Path:
    if plan_value:
        return _resolve_config_path(runtime.repo_root, plan_value)
    return runtime.config.plan_path(runtime.repo_root)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Loopwright CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default="loopwright.toml", show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    config.state_root(repo_root).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized loopwright in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State directory: {config.state_root(repo_root)}")


@cli.command("graph")
@click.argument("plan_file", required=False)
@click.option("--config", "config_value", default="loopwright.toml", show_default=True)
def graph_command(plan_file: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    plan = _load_plan_or_fail(_plan_path_option(runtime, plan_file))
    try:
        click.echo(DependencyGraph(plan).visualize())
    except LoopwrightError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("run")
@click.argument("plan_file", required=False)
@click.option("--max-iterations", type=int, default=None)
@click.option("--dry-run", is_flag=True, default=False, help="Use echo workers.")
@click.option("--prompt", default=None, help="Request replayed by `loopwright continue`.")
@click.option("--config", "config_value", default="loopwright.toml", show_default=True)
def run_command(
    plan_file: str | None,
    max_iterations: int | None,
    dry_run: bool,
    prompt: str | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    plan = _load_plan_or_fail(_plan_path_option(runtime, plan_file))

    session_plan_path = runtime.config.plan_path(repo_root)
    save_plan(session_plan_path, plan)
    if prompt:
        runtime.store.save_original_request(prompt)
    else:
        runtime.store.clear_original_request()

    orchestrator = TaskOrchestrator(
        runtime.store,
        _build_registry(runtime, dry_run=dry_run),
        logger=runtime.logger.child(component="orchestrator"),
        spec_lock=runtime.spec_lock,
        item_timeout_seconds=runtime.config.session.item_timeout_seconds,
        spec_lock_timeout_seconds=runtime.config.spec_lock.wait_timeout_seconds,
        archive_on_finish=runtime.config.session.archive_on_finish,
    )
    try:
        state = asyncio.run(
            orchestrator.execute(
                plan,
                max_iterations or runtime.config.session.max_iterations,
                plan_path=session_plan_path,
            )
        )
    except LoopwrightError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Session: {state.session_id}")
    click.echo(f"Status: {state.status}")
    click.echo(f"Completed: {len(state.completed_items)}/{len(plan.items)}")
    click.echo(f"Failed: {', '.join(state.failed_items) or 'none'}")
    click.echo(f"Iterations: {state.iteration}/{state.max_iterations}")
    if orchestrator.last_archive is not None:
        click.echo(f"Archived: {orchestrator.last_archive}")


@cli.command("status")
@click.option("--tail", type=int, default=20, show_default=True)
@click.option("--config", "config_value", default="loopwright.toml", show_default=True)
def status_command(tail: int, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    state = runtime.store.load()
    lock_state = runtime.spec_lock.get_lock_state()
    payload = {
        "session": state.to_dict() if state else None,
        "duration": runtime.store.duration(state) if state else None,
        "plan_exists": runtime.store.validate_plan_exists() if state else None,
        "plan_changed": runtime.store.has_plan_changed(),
        "spec_lock": lock_state.to_dict() if lock_state else None,
        "archives": [path.name for path in runtime.store.list_archives()],
        "progress": runtime.store.read_progress(tail=tail).splitlines(),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("continue")
@click.option("--config", "config_value", default="loopwright.toml", show_default=True)
def continue_command(config_value: str) -> None:
    """Print the request to replay, or nothing when the loop should stop."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    gate = ContinuationGate(runtime.store, logger=runtime.logger.child(component="continuation"))
    request = gate.should_continue()
    if request is not None:
        click.echo(request, nl=False)
        return
    if runtime.config.session.archive_on_finish:
        runtime.store.cleanup()


@cli.command("cancel")
@click.option("--config", "config_value", default="loopwright.toml", show_default=True)
def cancel_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    state = runtime.store.load()
    if state is None:
        click.echo("No session found.")
        return
    if state.is_terminal:
        click.echo(f"Session already finished ({state.status}).")
        return

    runtime.store.set_status("cancelled")
    click.echo(f"Cancelled session {state.session_id}")
    if runtime.config.session.archive_on_finish:
        archived = runtime.store.cleanup()
        if archived is not None:
            click.echo(f"Archived: {archived}")


@cli.command("cleanup")
@click.option("--config", "config_value", default="loopwright.toml", show_default=True)
def cleanup_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    archived = runtime.store.cleanup()
    if archived is None:
        click.echo("Nothing to archive.")
        return
    click.echo(f"Archived: {archived}")


@cli.group("lock")
def lock_group() -> None:
    """Inspect or change the spec lock."""


@lock_group.command("report")
@click.argument("item_id")
@click.argument("worker")
@click.argument("description")
@click.option("--config", "config_value", default="loopwright.toml", show_default=True)
def lock_report_command(item_id: str, worker: str, description: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    runtime.spec_lock.report_gap(item_id, worker, description)
    click.echo(f"Spec lock activated for {item_id}.")


@lock_group.command("release")
@click.option("--config", "config_value", default="loopwright.toml", show_default=True)
def lock_release_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    if runtime.spec_lock.release_lock():
        click.echo("Spec lock released.")
    else:
        click.echo("No lock to release.")


@lock_group.command("info")
@click.option("--config", "config_value", default="loopwright.toml", show_default=True)
def lock_info_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    click.echo(runtime.spec_lock.get_lock_info())
