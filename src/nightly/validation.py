"""Post-task validation: the task's own script, then configured test, lint and build commands."""

from __future__ import annotations

import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

from nightly import log
from nightly.config import Config
from nightly.engines.base import EngineResult
from nightly.errors import ValidationFailed
from nightly.tasks.model import CustomValidation, Task

OUTPUT_TAIL_CHARS = 500

# Scripts with these suffixes are run through an interpreter; anything else must be executable.
SCRIPT_INTERPRETERS = {".js": "node", ".mjs": "node", ".cjs": "node", ".py": sys.executable, ".sh": "sh"}


@dataclass
class CompletionCheck:
    passed: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _configured_commands(cfg: Config) -> list[tuple[str, str]]:
    commands: list[tuple[str, str]] = []
    if cfg.test_command and not cfg.skip_tests:
        commands.append(("tests", cfg.test_command))
    if cfg.lint_command and not cfg.skip_lint:
        commands.append(("lint", cfg.lint_command))
    if cfg.build_command and not cfg.skip_build:
        commands.append(("build", cfg.build_command))
    return commands


def script_command(custom: CustomValidation, cwd: Path) -> str:
    script = cwd / custom.script
    interpreter = SCRIPT_INTERPRETERS.get(script.suffix)
    return shlex.join([interpreter, str(script)] if interpreter else [str(script)])


def run_check(name: str, command: str, cwd: Path, timeout: int) -> str | None:
    """Run one validation command; return an error string or ``None`` on success."""
    log.info(f"Running {name}: {command}")
    try:
        r = subprocess.run(
            shlex.split(command),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=cwd,
            timeout=timeout,
        )
    except FileNotFoundError:
        return f"{name} command not found: {command}"
    except subprocess.TimeoutExpired:
        return f"{name} timed out after {timeout}s"

    if r.returncode != 0:
        output = (r.stderr or r.stdout or "").strip()[-OUTPUT_TAIL_CHARS:]
        return f"{name} failed (exit {r.returncode}): {output}" if output else f"{name} failed (exit {r.returncode})"
    log.success(f"{name.capitalize()} passed")
    return None


def validate_completion(task: Task, result: EngineResult, cfg: Config, cwd: Path) -> CompletionCheck:
    log.info("Validating task completion...")
    check = CompletionCheck()

    if not result.changed_files and task.type != "docs":
        check.warnings.append("No files were modified during task execution")
        log.warn("No files were modified during execution")

    checks: list[tuple[str, str, int]] = []
    custom = task.custom_validation
    if custom is not None:
        checks.append(("custom validation", script_command(custom, cwd), custom.timeout))
    checks.extend((name, command, cfg.validation_timeout) for name, command in _configured_commands(cfg))

    for name, command, timeout in checks:
        error = run_check(name, command, cwd, timeout)
        if error:
            check.passed = False
            check.errors.append(error)
            log.error(error)

    mark = "passed" if check.passed else "failed"
    log.info(
        f"Task validation {mark} ({len(check.errors)} errors, {len(check.warnings)} warnings)"
    )
    return check


def require_completion(task: Task, result: EngineResult, cfg: Config, cwd: Path) -> CompletionCheck:
    """Like :func:`validate_completion`, raising :class:`ValidationFailed` on failure."""
    check = validate_completion(task, result, cfg, cwd)
    if not check.passed:
        raise ValidationFailed(check.errors)
    return check
