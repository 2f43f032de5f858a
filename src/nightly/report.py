"""Session report: JSON file under the state dir and a terminal summary."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.table import Table

from nightly import log
from nightly.io_utils import write_json

if TYPE_CHECKING:
    from nightly.executor import SessionResult
    from nightly.state import SessionState


def build_report(state: SessionState, result: SessionResult) -> dict[str, Any]:
    with state.lock:
        completed = list(state.completed)
        failed = list(state.failed)
        skipped = list(state.skipped)
        samples = list(state.resource_usage)
        checkpoints = len(state.checkpoints)

    return {
        "success": result.success,
        "sessionId": result.session_id,
        "phase": result.phase.value,
        "duration": result.duration_ms,
        "completedTasks": len(completed),
        "totalTasks": len(completed) + len(failed) + len(skipped),
        "completed": [
            {
                "id": c.task.id,
                "title": c.task.title,
                "branch": c.branch,
                "commits": c.commits,
                "prUrl": c.pr_url,
                "filesChanged": c.result.changed_files,
                "duration": c.result.duration_ms,
                "automatic": c.task.automatic,
            }
            for c in completed
        ],
        "failed": [
            {"id": f.task_id, "title": f.title, "error": f.error, "kind": f.kind}
            for f in failed
        ],
        "skipped": skipped,
        "errors": [f.error for f in failed],
        "pullRequests": result.pr_urls,
        "resourceUsage": samples,
        "checkpoints": checkpoints,
    }


def write_report(path: Path, report: dict[str, Any]) -> Path:
    write_json(path, report)
    log.debug(f"Session report written to {path}")
    return path


def show_summary(result: SessionResult) -> None:
    """Print the final session summary."""
    minutes = round(result.duration_ms / 60000)
    log.console.print("")
    log.console.print("[bold]============================================[/bold]")
    if result.success:
        log.console.print(
            f"[green]Session complete![/green] {len(result.completed)} task(s) finished in {minutes} min."
        )
    else:
        log.console.print(
            f"[red]Session finished with failures[/red] ({result.phase.value}) after {minutes} min."
        )
    log.console.print(f"Session: [cyan]{result.session_id}[/cyan]")
    log.console.print("[bold]============================================[/bold]")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Details", overflow="fold")
    for c in result.completed:
        table.add_row(c.task.label, "[green]completed[/green]", c.pr_url or c.branch)
    for f in result.failed:
        table.add_row(f"{f.task_id}: {f.title}", "[red]failed[/red]", f.error)
    for task_id in result.skipped:
        table.add_row(task_id, "[yellow]skipped[/yellow]", "time budget exhausted or session halted")
    if table.row_count:
        log.console.print(table)

    if result.pr_urls:
        log.console.print("")
        log.console.print("[bold]>>> Pull Requests[/bold]")
        for url in result.pr_urls:
            log.console.print(f"  - {url}")

    log.console.print(f"Checkpoints written: {result.checkpoints}")
    if result.report_path:
        log.console.print(f"[dim]Report: {result.report_path}[/dim]")
    log.console.print("[bold]============================================[/bold]")
