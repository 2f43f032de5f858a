"""Configuration defaults, session-file loading and env overrides for nightly."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from nightly.errors import ConfigError
from nightly.io_utils import read_text

MAX_SESSION_DURATION = 28800  # 8 hours
MIN_SESSION_DURATION = 300
DEFAULT_CHECKPOINT_INTERVAL = 300
MIN_CHECKPOINT_INTERVAL = 60
MAX_CHECKPOINT_INTERVAL = 3600
DEFAULT_RETRIES = 5
MAX_RETRIES = 10

DEFAULT_TASKS_FILE = "nightly-tasks.yaml"
DEFAULT_CONFIG_FILE = "nightly-code.yaml"
STATE_DIR = ".nightly-code"

PR_STRATEGIES = ("task", "session")


@dataclass
class Config:
    """Runtime configuration. Durations are in seconds."""

    # Session
    max_duration: int = MAX_SESSION_DURATION
    checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL
    improvement_min_remaining: int = 300
    auto_improvement: bool = True
    resource_sample_interval: int = 30
    tasks_file: str = DEFAULT_TASKS_FILE
    state_dir: str = STATE_DIR
    workdir: str = "."
    dry_run: bool = False
    resume_from: str = ""

    # Git
    branch_prefix: str = "nightly/"
    auto_push: bool = True
    create_pr: bool = True
    pr_strategy: str = "task"
    dependency_aware: bool = True
    strict_dependencies: bool = False
    cleanup_branches: bool = True

    # Retry
    max_retries: int = DEFAULT_RETRIES
    base_delay: float = 60.0
    max_delay: float | None = None
    exponential_backoff: bool = True
    jitter: bool = True
    usage_limit_retry: bool = True

    # Worker
    worker_command: str = "claude"
    worker_timeout: int = 3600
    max_iterations: int = 50

    # Validation
    test_command: str = ""
    lint_command: str = ""
    build_command: str = ""
    skip_tests: bool = False
    skip_lint: bool = False
    skip_build: bool = False
    validation_timeout: int = 300

    # Misc
    notify: bool = True
    verbose: bool = False

    def __post_init__(self) -> None:
        prefix = os.environ.get("NIGHTLY_BRANCH_PREFIX")
        if prefix:
            self.branch_prefix = prefix

    @property
    def state_path(self) -> Path:
        return Path(self.workdir) / self.state_dir

    @property
    def checkpoint_dir(self) -> Path:
        return self.state_path / "checkpoints"

    @property
    def reports_dir(self) -> Path:
        return self.state_path / "reports"

    @property
    def logs_dir(self) -> Path:
        return self.state_path / "logs"

    def validate(self) -> list[str]:
        """Return a list of configuration errors (empty when valid)."""
        errors: list[str] = []
        if not MIN_SESSION_DURATION <= self.max_duration <= MAX_SESSION_DURATION:
            errors.append(
                f"session.max_duration must be between {MIN_SESSION_DURATION} "
                f"and {MAX_SESSION_DURATION} seconds"
            )
        if not MIN_CHECKPOINT_INTERVAL <= self.checkpoint_interval <= MAX_CHECKPOINT_INTERVAL:
            errors.append(
                f"session.checkpoint_interval must be between {MIN_CHECKPOINT_INTERVAL} "
                f"and {MAX_CHECKPOINT_INTERVAL} seconds"
            )
        if not 0 <= self.max_retries <= MAX_RETRIES:
            errors.append(f"retry.max_retries must be between 0 and {MAX_RETRIES}")
        if self.pr_strategy not in PR_STRATEGIES:
            errors.append(f"git.pr_strategy must be one of: {', '.join(PR_STRATEGIES)}")
        if self.base_delay < 0:
            errors.append("retry.base_delay must not be negative")
        if self.worker_timeout <= 0:
            errors.append("worker.timeout must be positive")
        return errors


# Maps "section.key" in the session file to a Config field.
_FILE_KEYS: dict[str, str] = {
    "session.max_duration": "max_duration",
    "session.checkpoint_interval": "checkpoint_interval",
    "session.auto_improvement": "auto_improvement",
    "session.improvement_min_remaining": "improvement_min_remaining",
    "session.tasks_file": "tasks_file",
    "git.branch_prefix": "branch_prefix",
    "git.auto_push": "auto_push",
    "git.create_pr": "create_pr",
    "git.pr_strategy": "pr_strategy",
    "git.dependency_aware": "dependency_aware",
    "git.strict_dependencies": "strict_dependencies",
    "git.cleanup_branches": "cleanup_branches",
    "retry.max_retries": "max_retries",
    "retry.base_delay": "base_delay",
    "retry.max_delay": "max_delay",
    "retry.exponential_backoff": "exponential_backoff",
    "retry.jitter": "jitter",
    "retry.usage_limit_retry": "usage_limit_retry",
    "worker.command": "worker_command",
    "worker.timeout": "worker_timeout",
    "worker.max_iterations": "max_iterations",
    "project.test_command": "test_command",
    "project.lint_command": "lint_command",
    "project.build_command": "build_command",
    "validation.skip_tests": "skip_tests",
    "validation.skip_lint": "skip_lint",
    "validation.skip_build": "skip_build",
    "validation.timeout": "validation_timeout",
    "notifications.desktop": "notify",
}


def config_values(data: dict[str, Any]) -> dict[str, Any]:
    """Flatten a parsed session document into ``Config`` keyword arguments."""
    values: dict[str, Any] = {}
    for dotted, attr in _FILE_KEYS.items():
        section, key = dotted.split(".", 1)
        block = data.get(section)
        if isinstance(block, dict) and key in block:
            values[attr] = block[key]
    return values


def load_config(path: Path | None = None, **overrides: Any) -> Config:
    """Build a :class:`Config` from an optional session file plus *overrides*.

    ``None`` overrides are ignored so CLI options left unset keep file values.
    Raises :class:`ConfigError` for unreadable files or invalid values.
    """
    values: dict[str, Any] = {}
    if path is not None:
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        try:
            data = yaml.safe_load(read_text(path)) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"{path}: could not parse config: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected a mapping at the top level")
        values.update(config_values(data))

    known = {f.name for f in fields(Config)}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigError(f"Unknown config option: {key}")
        if value is not None:
            values[key] = value

    cfg = Config(**values)
    errors = cfg.validate()
    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors))
    return cfg
