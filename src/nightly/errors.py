"""Exception taxonomy for task loading, graph resolution, git and worker failures."""

from __future__ import annotations


class NightlyError(Exception):
    """Base class for every error raised by nightly."""


# ── Configuration / startup errors ───────────────────────────────────


class ConfigError(NightlyError):
    pass


class TaskValidationError(NightlyError):
    """A declared task is malformed (bad id, type, priority, glob, duplicate id)."""

    def __init__(self, message: str, task_ref: str = "") -> None:
        super().__init__(message)
        self.task_ref = task_ref


class UnknownDependency(NightlyError):
    def __init__(self, task_id: str, dependency_id: str) -> None:
        super().__init__(f"Task {task_id} depends on non-existent task: {dependency_id}")
        self.task_id = task_id
        self.dependency_id = dependency_id


class CircularDependency(NightlyError):
    """Carries the cycle as an ordered id list that starts and ends on the same id."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class UnresolvableGraph(NightlyError):
    def __init__(self, remaining: list[str]) -> None:
        super().__init__(
            "Unable to resolve task dependencies - possible circular reference "
            f"among: {', '.join(remaining)}"
        )
        self.remaining = remaining


# ── Git errors ───────────────────────────────────────────────────────


class RepositoryError(NightlyError):
    pass


class UnresolvedDependency(NightlyError):
    def __init__(self, task_id: str, missing: list[str]) -> None:
        super().__init__(f"Task {task_id} has unresolved dependencies: {', '.join(missing)}")
        self.task_id = task_id
        self.missing = missing


# ── Worker errors ────────────────────────────────────────────────────


class WorkerError(NightlyError):
    """A worker invocation failed. Subclasses carry the classification."""


class RateLimitError(WorkerError):
    pass


class UsageLimitError(WorkerError):
    pass


class WorkerTimeout(WorkerError):
    pass


class FatalWorkerError(WorkerError):
    pass


class TransientWorkerError(WorkerError):
    pass


# ── Session errors ───────────────────────────────────────────────────


class ValidationFailed(NightlyError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Task validation failed: {', '.join(errors)}")
        self.errors = errors


class CheckpointError(NightlyError):
    pass
