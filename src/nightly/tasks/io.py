"""Load task files (YAML or JSON) into validated :class:`Task` lists."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from nightly import log
from nightly.errors import TaskValidationError
from nightly.io_utils import read_text
from nightly.tasks import validate as task_validate
from nightly.tasks.model import Task


def parse_document(text: str, suffix: str = "") -> Any:
    """Parse *text* by file suffix; unknown suffixes try YAML, then JSON."""
    suffix = suffix.lower()
    if suffix in (".yaml", ".yml"):
        return yaml.safe_load(text)
    if suffix == ".json":
        return json.loads(text)
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return json.loads(text)


def tasks_from_document(data: Any, source: str = "<tasks>") -> list[Task]:
    if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
        raise TaskValidationError(f"{source}: expected a mapping with a 'tasks' list")

    tasks: list[Task] = []
    for index, entry in enumerate(data["tasks"]):
        if not isinstance(entry, dict):
            raise TaskValidationError(
                f"{source}: task #{index + 1} must be a mapping", task_ref=f"#{index + 1}"
            )
        task = Task.from_dict(entry)
        if not task.enabled:
            log.debug(f"Skipping disabled task {task.id or f'#{index + 1}'}")
            continue
        tasks.append(task)
    return tasks


def load_tasks(path: Path, workdir: Path | None = None) -> list[Task]:
    """Read, parse and validate the task file at *path*.

    *workdir* is the repository that custom validation scripts live in.

    Raises :class:`TaskValidationError` listing every schema problem found.
    """
    if not path.is_file():
        raise TaskValidationError(f"Task file not found: {path}")

    try:
        data = parse_document(read_text(path), path.suffix)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise TaskValidationError(f"{path}: could not parse task file: {exc}") from exc

    tasks = tasks_from_document(data, str(path))
    errors = task_validate.validate(tasks, workdir)
    if errors:
        first_ref = errors[0].split(":", 1)[0]
        raise TaskValidationError(f"{path}: " + "; ".join(errors), task_ref=first_ref)

    for warning in task_validate.warnings(tasks):
        log.warn(warning)

    log.debug(f"Loaded {len(tasks)} tasks from {path}")
    return tasks
