"""nightly CLI.

Installed as the ``nightly`` console_script.
"""

from __future__ import annotations

import shutil
import sys
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import click

from nightly import __version__
from nightly.config import DEFAULT_CONFIG_FILE, PR_STRATEGIES, Config

if TYPE_CHECKING:
    from nightly.tasks.model import Task


CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def _fail(message: str) -> NoReturn:
    from nightly import log

    log.error(message)
    sys.exit(1)


def _resolve_config(config_file: str | None, workdir: str, **overrides: object) -> Config:
    """Load the session config; ``nightly-code.yaml`` in *workdir* is used when present."""
    from nightly.config import load_config
    from nightly.errors import ConfigError

    path: Path | None = None
    if config_file:
        path = Path(config_file)
    elif (Path(workdir) / DEFAULT_CONFIG_FILE).is_file():
        path = Path(workdir) / DEFAULT_CONFIG_FILE

    try:
        return load_config(path, workdir=workdir, **overrides)
    except ConfigError as exc:
        _fail(str(exc))


def _resolve_tasks(cfg: Config, tasks_file: str | None) -> list[Task]:
    from nightly.errors import TaskValidationError
    from nightly.tasks.io import load_tasks

    path = Path(tasks_file) if tasks_file else Path(cfg.workdir) / cfg.tasks_file
    try:
        return load_tasks(path, Path(cfg.workdir))
    except TaskValidationError as exc:
        _fail(str(exc))


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__, prog_name="nightly")
def main() -> None:
    """nightly: unattended coding sessions, one git branch per task.

    Reads a task file, orders tasks by their dependencies and drives the
    Claude Code CLI through them within a session time budget.

    \b
    EXAMPLES:
      nightly plan                               # Show the execution order
      nightly run                                # Run nightly-tasks.yaml
      nightly run --dry-run                      # Walk the session without executing
      nightly run --pr-strategy session          # One PR for the whole session
      nightly run --resume <checkpoint-id>       # Continue after a crash
      nightly checkpoints                        # List saved checkpoints
    """


# ── Subcommand: run ──────────────────────────────────────────────────


@main.command()
@click.option("--tasks", "tasks_file", default=None, help="Task file (default: nightly-tasks.yaml)")
@click.option("--config", "config_file", default=None, help="Session config file (default: nightly-code.yaml)")
@click.option("--max-duration", type=int, default=None, help="Session time budget in seconds")
@click.option("--dry-run", is_flag=True, help="Walk the session without running the worker or touching git")
@click.option("--resume", "resume_from", default=None, help="Resume from a checkpoint id or file")
@click.option("--strict-deps", is_flag=True, help="Fail tasks whose dependency branches are missing")
@click.option("--no-pr", is_flag=True, help="Do not open pull requests")
@click.option("--no-push", is_flag=True, help="Do not push branches")
@click.option("--pr-strategy", type=click.Choice(PR_STRATEGIES), default=None, help="One PR per task or per session")
@click.option("--workdir", default=".", type=click.Path(file_okay=False), help="Repository to work in")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
def run(
    tasks_file: str | None,
    config_file: str | None,
    max_duration: int | None,
    dry_run: bool,
    resume_from: str | None,
    strict_deps: bool,
    no_pr: bool,
    no_push: bool,
    pr_strategy: str | None,
    workdir: str,
    verbose: bool,
) -> None:
    """Run a coding session over the task file."""
    from nightly import log
    from nightly.engines.claude import ClaudeEngine
    from nightly.errors import NightlyError
    from nightly.executor import SessionExecutor
    from nightly.notify import notify_error, notify_session
    from nightly.report import show_summary

    log.set_verbose(verbose)

    # Flags only override the file when given.
    cfg = _resolve_config(
        config_file,
        workdir,
        max_duration=max_duration,
        dry_run=True if dry_run else None,
        resume_from=resume_from,
        strict_dependencies=True if strict_deps else None,
        create_pr=False if no_pr else None,
        auto_push=False if no_push else None,
        pr_strategy=pr_strategy,
        verbose=True if verbose else None,
    )
    tasks = _resolve_tasks(cfg, tasks_file)

    engine = ClaudeEngine(cfg.worker_command)
    if not cfg.dry_run:
        err = engine.check_available()
        if err:
            _fail(err)
        if cfg.create_pr and not shutil.which("gh"):
            log.warn("GitHub CLI (gh) not found; pull requests will be skipped")

    _show_banner(cfg, len(tasks))
    _check_budget(cfg, tasks)

    executor = SessionExecutor(cfg, engine)
    try:
        result = executor.run(tasks)
    except KeyboardInterrupt:
        log.warn("Interrupted!")
        if cfg.notify:
            notify_error("Nightly session interrupted")
        sys.exit(130)
    except NightlyError as exc:
        if cfg.notify:
            notify_error(str(exc))
        _fail(str(exc))

    show_summary(result)
    if cfg.notify:
        notify_session(result.success, len(result.completed), len(result.failed))
    sys.exit(0 if result.success else 1)


def _check_budget(cfg: Config, tasks: list[Task]) -> None:
    from nightly import log
    from nightly.scheduler import estimate_session

    estimate = estimate_session(tasks)
    if estimate.total_seconds > cfg.max_duration:
        log.warn(
            f"Estimated duration {estimate.total_hours:.1f}h exceeds the session budget of "
            f"{cfg.max_duration / 3600:.1f}h; later tasks may be skipped"
        )


def _show_banner(cfg: Config, task_count: int) -> None:
    from nightly import log

    log.console.print("[bold]============================================[/bold]")
    log.console.print("[bold]nightly[/bold] coding session")
    log.console.print(f"Worker: [magenta]{cfg.worker_command}[/magenta]")
    log.console.print(f"Tasks: {task_count}  Budget: {round(cfg.max_duration / 3600, 1)}h")

    parts: list[str] = [f"pr:{cfg.pr_strategy}" if cfg.create_pr else "no-pr"]
    if not cfg.auto_push:
        parts.append("no-push")
    if cfg.strict_dependencies:
        parts.append("strict-deps")
    if cfg.dry_run:
        parts.append("dry-run")
    if cfg.resume_from:
        parts.append(f"resume:{cfg.resume_from}")
    log.console.print(f"Mode: [yellow]{' '.join(parts)}[/yellow]")
    log.console.print("[bold]============================================[/bold]")


# ── Subcommand: plan ─────────────────────────────────────────────────


@main.command()
@click.option("--tasks", "tasks_file", default=None, help="Task file (default: nightly-tasks.yaml)")
@click.option("--config", "config_file", default=None, help="Session config file (default: nightly-code.yaml)")
@click.option("--workdir", default=".", type=click.Path(file_okay=False), help="Repository to work in")
def plan(tasks_file: str | None, config_file: str | None, workdir: str) -> None:
    """Print the resolved execution order, grouped by dependency level, and the time estimate."""
    from nightly import log
    from nightly.errors import NightlyError
    from nightly.scheduler import estimate_session, resolve_levels

    cfg = _resolve_config(config_file, workdir)
    tasks = _resolve_tasks(cfg, tasks_file)
    try:
        levels = resolve_levels(tasks)
    except NightlyError as exc:
        _fail(str(exc))

    position = 0
    for number, level in enumerate(levels, start=1):
        log.console.print(f"[bold]Level {number}[/bold]")
        for task in level:
            position += 1
            deps = f" (after {', '.join(task.dependencies)})" if task.dependencies else ""
            log.console.print(
                f"  {position}. [cyan]{task.id}[/cyan] {task.title} "
                f"[dim]{task.type}, priority {task.priority}, ~{task.estimated_duration} min{deps}[/dim]"
            )
    log.success(f"{position} task(s) in {len(levels)} level(s)")

    estimate = estimate_session(tasks)
    log.info(
        f"Estimated duration: {estimate.total_minutes} min ({estimate.total_hours:.1f}h), "
        f"including {estimate.overhead_minutes} min overhead"
    )
    for task_type, minutes in estimate.breakdown.items():
        if minutes:
            log.console.print(f"  {task_type}: {minutes} min")
    _check_budget(cfg, tasks)


# ── Subcommand: validate ─────────────────────────────────────────────


@main.command()
@click.option("--tasks", "tasks_file", default=None, help="Task file (default: nightly-tasks.yaml)")
@click.option("--config", "config_file", default=None, help="Session config file (default: nightly-code.yaml)")
@click.option("--workdir", default=".", type=click.Path(file_okay=False), help="Repository to work in")
def validate(tasks_file: str | None, config_file: str | None, workdir: str) -> None:
    """Check the config and task files without running anything."""
    from nightly import log
    from nightly.errors import NightlyError
    from nightly.scheduler import resolve_order

    cfg = _resolve_config(config_file, workdir)
    log.success("Configuration is valid")

    tasks = _resolve_tasks(cfg, tasks_file)
    try:
        resolve_order(tasks)
    except NightlyError as exc:
        _fail(str(exc))
    log.success(f"{len(tasks)} task(s) are valid and their dependencies resolve")


# ── Subcommand: checkpoints ──────────────────────────────────────────


@main.command()
@click.option("--session", "session_id", default=None, help="Only list checkpoints of this session")
@click.option("--workdir", default=".", type=click.Path(file_okay=False), help="Repository to work in")
def checkpoints(session_id: str | None, workdir: str) -> None:
    """List saved checkpoints, oldest first."""
    from nightly import log
    from nightly.checkpoint import CheckpointStore
    from nightly.errors import CheckpointError

    cfg = Config(workdir=workdir)
    store = CheckpointStore(cfg.checkpoint_dir)
    paths = store.list(session_id)
    if not paths:
        log.info("No checkpoints found")
        return

    for path in paths:
        try:
            cp = store.read(path)
        except CheckpointError as exc:
            log.warn(str(exc))
            continue
        log.console.print(
            f"[cyan]{path.stem}[/cyan]  completed={len(cp.completed_tasks)} "
            f"failed={len(cp.failed_tasks)} elapsed={round(cp.elapsed / 60000)}min"
            + (f" current={cp.current_task}" if cp.current_task else "")
        )
