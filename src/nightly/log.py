"""Logging utilities with colored output via Rich, mirrored to a session log file."""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from nightly.io_utils import open_text

console = Console(highlight=False)
_err_console = Console(highlight=False, stderr=True)

_verbose = False
_log_file: Path | None = None
_file_lock = threading.Lock()


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def set_log_file(path: Path | None) -> None:
    """Mirror every log line (without markup) to *path*. ``None`` disables it."""
    global _log_file
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
    _log_file = path


def _mirror(level: str, msg: str) -> None:
    if _log_file is None:
        return
    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    with _file_lock:
        with open_text(_log_file, "a") as f:
            f.write(f"{stamp} [{level}] {msg}\n")


def info(msg: str) -> None:
    console.print(f"[blue]\\[INFO][/blue] {escape(msg)}")
    _mirror("INFO", msg)


def success(msg: str) -> None:
    console.print(f"[green]\\[OK][/green] {escape(msg)}")
    _mirror("OK", msg)


def warn(msg: str) -> None:
    console.print(f"[yellow]\\[WARN][/yellow] {escape(msg)}")
    _mirror("WARN", msg)


def error(msg: str) -> None:
    _err_console.print(f"[red]\\[ERROR][/red] {escape(msg)}")
    _mirror("ERROR", msg)


def debug(msg: str) -> None:
    if _verbose:
        console.print(f"[dim]\\[DEBUG] {escape(msg)}[/dim]")
    _mirror("DEBUG", msg)
