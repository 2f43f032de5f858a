"""Prompt text sent to the worker, plus the synthetic improvement task."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Iterable

from nightly.io_utils import read_text
from nightly.tasks.model import IMPROVEMENT_TYPE, Task

CONTEXT_FILES = ("README.md", "package.json", "requirements.txt", "go.mod", "Cargo.toml")
CONTEXT_CHARS = 2000

IMPROVEMENT_MAX_SECONDS = 3600
IMPROVEMENT_RESERVE_SECONDS = 60

IMPROVEMENT_CRITERIA = [
    "Code quality metrics improved",
    "No breaking changes introduced",
    "All existing tests continue to pass",
    "Changes follow project conventions",
    "Improvements are well-documented",
]


def project_context(workdir: Path) -> str:
    """Leading chunk of each well-known project file that exists in *workdir*."""
    blocks: list[str] = []
    for name in CONTEXT_FILES:
        path = workdir / name
        if path.is_file():
            content = read_text(path, errors="replace")[:CONTEXT_CHARS]
            blocks.append(f"### {name}\n```\n{content}\n```\n")
    return "\n".join(blocks) if blocks else "No project context files found."


def _matching_files(workdir: Path, pattern: str) -> int:
    try:
        return sum(1 for p in workdir.glob(pattern) if p.is_file())
    except (ValueError, NotImplementedError, OSError):
        return 0


def task_context(task: Task, workdir: Path, completed_tasks: Iterable[Task] = ()) -> str:
    parts: list[str] = []

    deps = [t for t in completed_tasks if t.id in task.dependencies]
    if deps:
        lines = "\n".join(f"- {t.id}: {t.title}" for t in deps)
        parts.append(f"### Completed Dependencies\n{lines}\n")

    if task.files_to_modify:
        lines = "\n".join(
            f'Files matching "{pattern}": {_matching_files(workdir, pattern)} files'
            for pattern in task.files_to_modify
        )
        parts.append(f"### Relevant Files\n{lines}\n")

    return "\n".join(parts)


def _criteria(task: Task) -> str:
    if not task.acceptance_criteria:
        return "None specified"
    return "\n".join(f"- {c}" for c in task.acceptance_criteria)


def build_task_prompt(task: Task, workdir: Path, completed_tasks: Iterable[Task] = ()) -> str:
    """Full prompt for the first worker invocation of *task*."""
    files = ", ".join(task.files_to_modify) or "Any relevant files"
    minimum = ""
    if task.minimum_duration:
        minimum = f"\n**Minimum Duration:** {task.minimum_duration} minutes (iterative mode active)"
    time_line = (
        f"Minimum time for this task: {task.minimum_duration} minutes"
        if task.minimum_duration
        else "No minimum duration specified"
    )

    return f"""# Automated Coding Task

## Project Context
{project_context(workdir)}

## Task Details
**ID:** {task.id}
**Type:** {task.type}
**Title:** {task.title}
**Priority:** {task.priority}

**Requirements:**
{task.requirements}

**Acceptance Criteria:**
{_criteria(task)}

**Estimated Duration:** {task.estimated_duration} minutes{minimum}
**Files to Modify:** {files}

## Task Context
{task_context(task, workdir, completed_tasks)}

## Instructions
1. Analyze the requirements carefully
2. Implement the requested changes following project conventions
3. Ensure all acceptance criteria are met
4. Write appropriate tests if required
5. Update documentation if necessary
6. Follow the project's coding standards and style guide

## Time Constraints
- {time_line}
- Focus on completing the core requirements first
- If time is limited, prioritize functionality over perfect polish

## Quality Requirements
- Code must be production-ready
- Follow existing patterns and conventions
- Ensure backward compatibility
- Add proper error handling
- Include appropriate logging

Please implement this task now."""


def build_continuation_prompt(
    task: Task,
    iteration: int,
    elapsed: float,
    remaining: float,
    changed_files: list[str] | None = None,
) -> str:
    """Short follow-up prompt for an iteration that continues a worker session.

    *elapsed* and *remaining* are seconds.
    """
    elapsed_min = round(elapsed / 60)
    remaining_min = round(max(remaining, 0) / 60)
    files = ", ".join(changed_files) if changed_files else "none yet"
    return f"""Continue working on the task "{task.title}" (iteration {iteration}).

Time Status:
- Elapsed: {elapsed_min} minutes
- Remaining: {remaining_min} minutes to meet minimum duration
- Files modified: {files}

Focus Areas for This Iteration:
- Build upon the previous work in our conversation
- Improve implementation quality and completeness
- Add comprehensive testing and error handling
- Enhance documentation and code comments
- Consider performance optimizations
- Ensure all acceptance criteria are thoroughly met

You have full context from our previous conversation, so continue naturally
from where we left off. Focus on adding meaningful value in the remaining {remaining_min} minutes."""


def improvement_task(remaining_seconds: float, now: float | None = None) -> Task:
    """Synthetic task that spends leftover session time on general improvements."""
    moment = time.time() if now is None else now
    seconds = min(remaining_seconds - IMPROVEMENT_RESERVE_SECONDS, IMPROVEMENT_MAX_SECONDS)
    minutes = max(round(seconds / 60), 1)
    requirements = f"""Perform automatic code improvements across the project. Focus on:
- Code quality and maintainability
- Performance optimizations
- Documentation improvements
- Test coverage enhancements
- Security best practices
- Code style consistency

Time available: {minutes} minutes"""

    return Task(
        id=f"auto-improve-{int(moment * 1000)}",
        title="Automatic Code Improvement",
        type=IMPROVEMENT_TYPE,
        priority=5,
        requirements=requirements,
        acceptance_criteria=list(IMPROVEMENT_CRITERIA),
        estimated_duration=minutes,
        minimum_duration=minutes,
        tags=["automatic", "improvement", "quality"],
        automatic=True,
    )
