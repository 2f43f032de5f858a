"""Schema validation for loaded tasks.

Validation collects every problem instead of stopping at the first one, so a
task file can be fixed in a single pass.  Dependency references and cycles are
checked by :mod:`nightly.scheduler`.
"""

from __future__ import annotations

import re
from pathlib import Path

from nightly.tasks.model import IMPROVEMENT_TYPE, TASK_TYPES, Task

ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
MAX_TITLE_LENGTH = 200
MIN_ESTIMATED_DURATION = 1
MAX_ESTIMATED_DURATION = 480
LONG_TASK_WARNING = 240
MAX_VALIDATION_TIMEOUT = 600

_INVALID_GLOB_CHARS = re.compile(r'[<>:"|]')


def is_valid_glob(pattern: str) -> bool:
    """Reject patterns that could escape the repository or are not portable."""
    if not pattern:
        return False
    if _INVALID_GLOB_CHARS.search(pattern):
        return False
    if "../" in pattern or pattern.startswith("/") or pattern.startswith("~"):
        return False
    return True


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_task(task: Task, ref: str, workdir: Path | None = None) -> list[str]:
    errors: list[str] = []

    if not task.id:
        errors.append(f"{ref}: missing id")
    elif not ID_PATTERN.match(task.id):
        errors.append(f"{ref}: invalid id (use letters, digits, '-' and '_')")

    allowed_types = TASK_TYPES + ((IMPROVEMENT_TYPE,) if task.automatic else ())
    if task.type not in allowed_types:
        errors.append(f"{ref}: invalid type '{task.type}' (expected one of {', '.join(TASK_TYPES)})")

    if not _is_int(task.priority) or not 1 <= task.priority <= 10:
        errors.append(f"{ref}: priority must be an integer between 1 and 10")

    if not task.title:
        errors.append(f"{ref}: missing title")
    elif len(task.title) > MAX_TITLE_LENGTH:
        errors.append(f"{ref}: title longer than {MAX_TITLE_LENGTH} characters")

    if not task.requirements.strip():
        errors.append(f"{ref}: missing requirements")

    if (
        not _is_int(task.estimated_duration)
        or not MIN_ESTIMATED_DURATION <= task.estimated_duration <= MAX_ESTIMATED_DURATION
    ):
        errors.append(
            f"{ref}: estimated_duration must be between "
            f"{MIN_ESTIMATED_DURATION} and {MAX_ESTIMATED_DURATION} minutes"
        )

    if not _is_int(task.minimum_duration) or task.minimum_duration < 0:
        errors.append(f"{ref}: minimum_duration must be a non-negative integer")

    for pattern in task.files_to_modify:
        if not is_valid_glob(pattern):
            errors.append(f"{ref}: invalid file pattern '{pattern}'")

    custom = task.custom_validation
    if custom is not None:
        if not _is_int(custom.timeout) or not 1 <= custom.timeout <= MAX_VALIDATION_TIMEOUT:
            errors.append(
                f"{ref}: custom_validation timeout must be between 1 and {MAX_VALIDATION_TIMEOUT} seconds"
            )
        if workdir is not None and not (workdir / custom.script).is_file():
            errors.append(f"{ref}: custom validation script not found: {workdir / custom.script}")

    return errors


def validate(tasks: list[Task], workdir: Path | None = None) -> list[str]:
    """Return a list of human-readable validation errors (empty when valid).

    Custom validation scripts are resolved against *workdir* when it is given.
    """
    if not tasks:
        return ["No tasks defined"]

    errors: list[str] = []
    seen: set[str] = set()
    for index, task in enumerate(tasks):
        ref = f"Task {task.id}" if task.id else f"Task #{index + 1}"
        errors.extend(_validate_task(task, ref, workdir))
        if task.id:
            if task.id in seen:
                errors.append(f"Duplicate id: {task.id}")
            seen.add(task.id)
    return errors


def warnings(tasks: list[Task]) -> list[str]:
    """Non-fatal findings worth surfacing before a session starts."""
    found: list[str] = []
    for task in tasks:
        if _is_int(task.estimated_duration) and task.estimated_duration > LONG_TASK_WARNING:
            found.append(
                f"Task {task.id}: estimated duration {task.estimated_duration} min is longer "
                f"than {LONG_TASK_WARNING} min; consider splitting it"
            )
    return found
