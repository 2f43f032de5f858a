"""Dependency graph resolution: validation, cycle detection and total execution order.

Tasks are grouped into levels (every dependency of a task sits in a strictly
earlier level) and each level is sorted by :func:`task_sort_key`.  The result is
a deterministic total order for the sequential executor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

from nightly import log
from nightly.errors import CircularDependency, UnknownDependency, UnresolvableGraph
from nightly.tasks.model import DEFAULT_ESTIMATED_DURATION, TASK_TYPES, Task

TYPE_PRIORITY: dict[str, int] = {
    "bugfix": 5,
    "feature": 4,
    "refactor": 3,
    "test": 2,
    "docs": 1,
}

# Minutes added per task for branch switching, validation and commits.
TASK_OVERHEAD_MINUTES = 5


def build_graph(tasks: list[Task]) -> dict[str, list[str]]:
    """Return the ``id -> dependencies`` adjacency view of *tasks*."""
    return {task.id: list(task.dependencies) for task in tasks}


def check_references(tasks: list[Task]) -> None:
    """Raise :class:`UnknownDependency` for the first dangling dependency id."""
    known = {task.id for task in tasks}
    for task in tasks:
        for dep in task.dependencies:
            if dep not in known:
                raise UnknownDependency(task.id, dep)


def find_cycle(graph: dict[str, list[str]]) -> list[str] | None:
    """Return the first cycle found as ``[a, ..., a]``, or ``None`` if acyclic.

    Depth-first search with an explicit stack of dependency iterators, so very
    deep chains do not hit the interpreter's recursion limit.  The reported
    cycle is the slice of the active path starting at the revisited node.
    """
    visited: set[str] = set()

    for start in graph:
        if start in visited:
            continue

        path: list[str] = [start]
        on_path: set[str] = {start}
        visited.add(start)
        stack: list[Iterator[str]] = [iter(graph[start])]

        while stack:
            descended = False
            for dep in stack[-1]:
                if dep in on_path:
                    return path[path.index(dep):] + [dep]
                if dep in visited or dep not in graph:
                    continue
                visited.add(dep)
                path.append(dep)
                on_path.add(dep)
                stack.append(iter(graph[dep]))
                descended = True
                break
            if not descended:
                stack.pop()
                on_path.discard(path.pop())

    return None


def task_sort_key(task: Task, index: int = 0) -> tuple[int, int, int, int]:
    """In-level ordering: priority desc, type priority desc, duration asc, then declaration order."""
    return (
        -task.priority,
        -TYPE_PRIORITY.get(task.type, 0),
        task.estimated_duration,
        index,
    )


def dependency_levels(tasks: list[Task]) -> list[list[Task]]:
    """Group *tasks* into execution levels, each sorted by :func:`task_sort_key`.

    Assumes references were checked and the graph is acyclic; a pass that
    places nothing raises :class:`UnresolvableGraph`.
    """
    index_of = {task.id: i for i, task in enumerate(tasks)}
    placed: set[str] = set()
    remaining = list(tasks)
    levels: list[list[Task]] = []

    while remaining:
        level = [t for t in remaining if all(dep in placed for dep in t.dependencies)]
        if not level:
            raise UnresolvableGraph([t.id for t in remaining])
        level.sort(key=lambda t: task_sort_key(t, index_of[t.id]))
        levels.append(level)
        placed.update(t.id for t in level)
        remaining = [t for t in remaining if t.id not in placed]

    return levels


def resolve_levels(tasks: list[Task]) -> list[list[Task]]:
    """Validate references and acyclicity, then return the sorted levels."""
    check_references(tasks)
    cycle = find_cycle(build_graph(tasks))
    if cycle is not None:
        raise CircularDependency(cycle)
    return dependency_levels(tasks)


def resolve_order(tasks: list[Task]) -> list[Task]:
    """Return *tasks* in dependency-respecting, deterministic execution order."""
    levels = resolve_levels(tasks)
    order = [task for level in levels for task in level]
    log.debug(
        f"Resolved {len(order)} tasks into {len(levels)} levels: "
        + " -> ".join(task.id for task in order)
    )
    return order


# ── session estimate ─────────────────────────────────────────────────


@dataclass
class SessionEstimate:
    total_minutes: int = 0
    overhead_minutes: int = 0
    task_count: int = 0
    breakdown: dict[str, int] = field(default_factory=lambda: dict.fromkeys(TASK_TYPES, 0))

    @property
    def total_seconds(self) -> int:
        return self.total_minutes * 60

    @property
    def total_hours(self) -> float:
        return self.total_minutes / 60

    @property
    def average_per_task(self) -> float:
        return self.total_minutes / self.task_count if self.task_count else 0.0


def estimate_session(tasks: list[Task]) -> SessionEstimate:
    """Sum task estimates per type and add a fixed switching overhead per task."""
    estimate = SessionEstimate(task_count=len(tasks))
    for task in tasks:
        minutes = task.estimated_duration or DEFAULT_ESTIMATED_DURATION
        estimate.total_minutes += minutes
        if task.type in estimate.breakdown:
            estimate.breakdown[task.type] += minutes
    estimate.overhead_minutes = len(tasks) * TASK_OVERHEAD_MINUTES
    estimate.total_minutes += estimate.overhead_minutes
    return estimate
