"""Desktop notification when a session ends, best-effort.

Nothing here may fail a session: a missing notifier binary or an unsupported
platform just means no toast.
"""

from __future__ import annotations

import subprocess
import sys

APP_TITLE = "Nightly Code"

# Windows has no stock CLI toast; play the matching system sound instead.
_WINDOWS_SOUNDS = {False: "Asterisk", True: "Hand"}


def _spawn(*cmd: str) -> None:
    try:
        subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError:
        pass


def _applescript_string(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def notifier_command(title: str, message: str, critical: bool = False) -> list[str] | None:
    """The platform command that shows *message*, or ``None`` when unsupported."""
    if sys.platform == "darwin":
        script = (
            f"display notification {_applescript_string(message)} "
            f"with title {_applescript_string(title)}"
        )
        return ["osascript", "-e", script]
    if sys.platform.startswith("linux"):
        return ["notify-send", "-u", "critical" if critical else "normal", title, message]
    if sys.platform == "win32":
        sound = _WINDOWS_SOUNDS[critical]
        return ["powershell.exe", "-Command", f"[System.Media.SystemSounds]::{sound}.Play()"]
    return None


def notify(message: str, critical: bool = False) -> None:
    title = f"{APP_TITLE} - Error" if critical else APP_TITLE
    cmd = notifier_command(title, message, critical)
    if cmd:
        _spawn(*cmd)


def notify_done(message: str = "Nightly session completed") -> None:
    notify(message)


def notify_error(message: str = "Nightly session finished with failures") -> None:
    notify(message, critical=True)


def notify_session(success: bool, completed: int, failed: int) -> None:
    """Summarize the session outcome in one toast."""
    summary = f"{completed} task(s) completed, {failed} failed"
    if success:
        notify_done(f"Nightly session completed: {summary}")
    else:
        notify_error(f"Nightly session finished with failures: {summary}")
