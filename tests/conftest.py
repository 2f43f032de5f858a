"""Shared fixtures for nightly tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use nightly.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from nightly import log
from nightly.io_utils import write_text
from nightly.tasks.model import Task


@pytest.fixture(autouse=True)
def _no_session_log_file():
    """Executor runs point the log mirror at tmp dirs; reset it between tests."""
    yield
    log.set_log_file(None)


@pytest.fixture(autouse=True)
def _no_branch_prefix_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NIGHTLY_BRANCH_PREFIX", raising=False)


@pytest.fixture(autouse=True)
def _git_identity(monkeypatch: pytest.MonkeyPatch) -> None:
    """Repos created by the code under test need an author without global config."""
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Test")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "test@test")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo with one commit on ``main``."""
    subprocess.run(["git", "init", "-b", "main"], cwd=tmp_path, capture_output=True, check=True)
    subprocess.run(
        ["git", "config", "user.name", "Test"], cwd=tmp_path, capture_output=True
    )
    subprocess.run(
        ["git", "config", "user.email", "test@test"], cwd=tmp_path, capture_output=True
    )
    subprocess.run(
        ["git", "config", "commit.gpgsign", "false"], cwd=tmp_path, capture_output=True
    )
    write_text(tmp_path / "README.md", "# Test")
    subprocess.run(["git", "add", "README.md"], cwd=tmp_path, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial"], cwd=tmp_path, capture_output=True
    )
    return tmp_path


def _make_task(
    id: str,
    title: str = "",
    type: str = "feature",
    priority: int = 5,
    dependencies: list[str] | None = None,
    estimated_duration: int = 60,
    minimum_duration: int = 0,
    tags: list[str] | None = None,
    files_to_modify: list[str] | None = None,
    requirements: str = "",
    acceptance_criteria: list[str] | None = None,
) -> Task:
    return Task(
        id=id,
        title=title or f"Task {id}",
        type=type,
        priority=priority,
        requirements=requirements or f"Implement {id}",
        acceptance_criteria=acceptance_criteria or [],
        estimated_duration=estimated_duration,
        minimum_duration=minimum_duration,
        dependencies=dependencies or [],
        tags=tags or [],
        files_to_modify=files_to_modify or [],
    )


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


def git(repo: Path, *args: str) -> str:
    r = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)
    return r.stdout.strip()


@pytest.fixture
def run_git():
    """``run_git(repo, *args)`` returns stripped stdout and fails the test on error."""
    return git
