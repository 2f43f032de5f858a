"""Task data model shared by the loader, the graph resolver and the executor."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

TASK_TYPES = ("feature", "bugfix", "refactor", "test", "docs")
IMPROVEMENT_TYPE = "improvement"

DEFAULT_PRIORITY = 5
DEFAULT_ESTIMATED_DURATION = 60  # minutes
DEFAULT_VALIDATION_TIMEOUT = 300  # seconds


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


@dataclass
class CustomValidation:
    """A project script run after the worker finishes; non-zero exit fails the task."""

    script: str
    timeout: int = DEFAULT_VALIDATION_TIMEOUT

    @classmethod
    def from_dict(cls, data: Any) -> CustomValidation | None:
        if not isinstance(data, dict) or not data.get("script"):
            return None
        return cls(script=str(data["script"]), timeout=data.get("timeout", DEFAULT_VALIDATION_TIMEOUT))


@dataclass
class Task:
    id: str
    title: str = ""
    type: str = "feature"
    priority: int = DEFAULT_PRIORITY
    requirements: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    estimated_duration: int = DEFAULT_ESTIMATED_DURATION
    minimum_duration: int = 0
    dependencies: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    custom_validation: CustomValidation | None = None
    enabled: bool = True
    automatic: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Build a task from a parsed task-file entry.

        Missing keys take their defaults and unknown keys are ignored.  Values
        are not range-checked here; see :func:`nightly.tasks.validate.validate`.
        """
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            type=str(data.get("type") or "feature"),
            priority=data.get("priority", DEFAULT_PRIORITY),
            requirements=str(data.get("requirements") or ""),
            acceptance_criteria=[str(c) for c in _as_list(data.get("acceptance_criteria"))],
            estimated_duration=data.get("estimated_duration", DEFAULT_ESTIMATED_DURATION),
            minimum_duration=data.get("minimum_duration", 0) or 0,
            dependencies=[str(d) for d in _as_list(data.get("dependencies"))],
            tags=[str(t) for t in _as_list(data.get("tags"))],
            files_to_modify=[str(f) for f in _as_list(data.get("files_to_modify"))],
            custom_validation=CustomValidation.from_dict(data.get("custom_validation")),
            enabled=bool(data.get("enabled", True)),
            automatic=bool(data.get("automatic", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def label(self) -> str:
        return f"{self.id}: {self.title}" if self.title else self.id
