"""Branch graph management: one git branch per task, based on its dependencies.

:class:`BranchGraphManager` owns the table of :class:`TaskBranchRecord` entries
for a session.  A task branch is cut from the branch of the *last* dependency
listed on the task, so the branch graph is a tree even when the task graph is
not.  Nothing is merged back; each branch is meant to become a PR.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

from nightly import git_ops, log
from nightly.engines.base import EngineResult
from nightly.errors import RepositoryError, UnresolvedDependency
from nightly.tasks.model import IMPROVEMENT_TYPE, TASK_TYPES, Task

COMMIT_TYPES: dict[str, str] = {
    "feature": "feat",
    "bugfix": "fix",
    "refactor": "refactor",
    "test": "test",
    "docs": "docs",
}

COMMON_SCOPES = ("api", "ui", "auth", "db", "config", "build", "test")

BRANCH_SLUG_LENGTH = 30
SUBJECT_TITLE_LENGTH = 50
BODY_REQUIREMENTS_LENGTH = 200
MAX_LISTED_FILES = 5


@dataclass
class TaskBranchRecord:
    task_id: str
    branch_name: str
    base_branch: str
    created_at: float = field(default_factory=time.time)
    pr_url: str | None = None


@dataclass
class CommitChunk:
    """One commit of a multi-commit task.  Empty ``files`` stages everything."""

    files: list[str] = field(default_factory=list)
    summary: str = ""
    message: str = ""


def iso_timestamp(now: datetime | None = None) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    moment = now or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def commit_type(task_type: str) -> str:
    return COMMIT_TYPES.get(task_type, "chore")


def commit_scope(task: Task) -> str:
    """``(scope)`` from a well-known tag or the first path segment, else ``""``."""
    for tag in task.tags:
        if tag.lower() in COMMON_SCOPES:
            return f"({tag})"
    if task.files_to_modify:
        parts = task.files_to_modify[0].split("/")
        if len(parts) > 1 and parts[0] != ".":
            return f"({parts[0]})"
    return ""


def task_branch_name(task: Task, prefix: str = "nightly/") -> str:
    return f"{prefix}{task.type}-{task.id}-{git_ops.slugify(task.title, BRANCH_SLUG_LENGTH)}"


def session_branch_name(prefix: str = "nightly/", now: datetime | None = None) -> str:
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return f"{prefix}session-{moment.strftime('%Y-%m-%d-%H%M%S')}"


class BranchGraphManager:
    """Creates, commits, publishes and removes task branches for one session."""

    def __init__(
        self,
        repo_dir: Path,
        *,
        branch_prefix: str = "nightly/",
        auto_push: bool = True,
        create_pr: bool = True,
        pr_strategy: str = "task",
        dependency_aware: bool = True,
        strict_dependencies: bool = False,
        dry_run: bool = False,
        session_id: str = "",
        state_dir: str = ".nightly-code",
    ) -> None:
        self.repo_dir = repo_dir
        self.state_dir = state_dir
        self.branch_prefix = branch_prefix
        self.auto_push = auto_push
        self.create_pr = create_pr
        self.pr_strategy = pr_strategy
        self.dependency_aware = dependency_aware
        self.strict_dependencies = strict_dependencies
        self.dry_run = dry_run
        self.session_id = session_id

        self.base_branch: str = ""
        self.session_branch: str = ""
        self.records: dict[str, TaskBranchRecord] = {}

    # ── repository ───────────────────────────────────────────────────

    def ensure_repository(self) -> str:
        """Make *repo_dir* a clean git repository and record its current branch as base.

        Returns the base branch.  Pre-existing uncommitted changes are stashed.
        """
        if not git_ops.is_repository(self.repo_dir):
            if self.dry_run:
                log.info("Dry run mode: would initialize new git repository")
                self.base_branch = "main"
                return self.base_branch
            log.info("Initializing new git repository...")
            if not git_ops.init_repository(self.repo_dir):
                raise RepositoryError(f"Git repository setup failed in {self.repo_dir}")
        elif not git_ops.has_commits(self.repo_dir) and not self.dry_run:
            git_ops.exclude_locally(self._state_pattern(), self.repo_dir)
            log.info("Repository has no commits; creating initial commit")
            if not git_ops.initial_commit(self.repo_dir):
                raise RepositoryError("Git repository setup failed: could not create initial commit")

        git_ops.ensure_clean_git_state(self.repo_dir)

        self.base_branch = git_ops.current_branch(self.repo_dir)
        if not self.base_branch or self.base_branch == "HEAD":
            raise RepositoryError("Git repository setup failed: HEAD is detached or unreadable")
        log.info(f"Git repository ready on branch: {self.base_branch}")

        if self.dry_run:
            return self.base_branch

        # Session state lives inside the work tree but must never be committed or stashed.
        git_ops.exclude_locally(self._state_pattern(), self.repo_dir)

        if git_ops.has_dirty_worktree(self.repo_dir):
            count = len(git_ops.status_paths(self.repo_dir))
            log.warn(f"Found {count} uncommitted changes in working directory")
            if not git_ops.stash_push(f"Nightly Code auto-stash {iso_timestamp()}", self.repo_dir):
                raise RepositoryError("Git repository setup failed: could not stash local changes")
            log.info("Uncommitted changes safely stashed")
        return self.base_branch

    def _state_pattern(self) -> str:
        return f"/{self.state_dir.strip('/')}/"

    def _require_base(self) -> str:
        if not self.base_branch:
            raise RepositoryError("Git repository not initialized")
        return self.base_branch

    # ── branch creation ──────────────────────────────────────────────

    def create_session_branch(self, now: datetime | None = None) -> str:
        base = self._require_base()
        name = session_branch_name(self.branch_prefix, now)
        if self.dry_run:
            log.info(f"Dry run mode: would create session branch {name}")
            self.session_branch = name
            return name

        git_ops.checkout(base, self.repo_dir)
        r = git_ops.create_branch(name, base, self.repo_dir)
        if r.returncode != 0:
            raise RepositoryError(f"Failed to create session branch {name}: {r.stderr.strip()}")
        self.session_branch = name
        log.info(f"Created session branch {name} from {base}")
        return name

    def _find_dependency_branch(self, dep_id: str, prior_completions: Mapping[str, str]) -> str | None:
        candidates: list[str] = []
        if dep_id in prior_completions:
            candidates.append(prior_completions[dep_id])
        record = self.records.get(dep_id)
        if record is not None:
            candidates.append(record.branch_name)
        for name in candidates:
            if self.dry_run or git_ops.branch_exists(name, self.repo_dir):
                return name

        if self.dry_run:
            return None
        for branch in git_ops.local_branches(self.repo_dir):
            for task_type in TASK_TYPES + (IMPROVEMENT_TYPE,):
                stem = f"{self.branch_prefix}{task_type}-{dep_id}"
                if branch == stem or branch.startswith(f"{stem}-"):
                    return branch
        return None

    def resolve_base_branch(self, task: Task, prior_completions: Mapping[str, str] | None = None) -> str:
        """Pick the branch *task* should start from.

        Raises :class:`UnresolvedDependency` in strict mode when any dependency
        branch is missing.
        """
        base = self._require_base()
        if not task.dependencies:
            return base
        if not self.dependency_aware:
            log.info(f"Dependency-aware branching disabled; branching {task.id} from {base}")
            return base

        completions = prior_completions or {}
        found: list[str] = []
        missing: list[str] = []
        for dep_id in task.dependencies:
            branch = self._find_dependency_branch(dep_id, completions)
            if branch is None:
                missing.append(dep_id)
            else:
                found.append(branch)

        if missing and self.strict_dependencies:
            raise UnresolvedDependency(task.id, missing)
        if not found:
            log.warn(f"No dependency branches found for task {task.id}; branching from {base}")
            return base
        if missing:
            log.warn(f"Task {task.id}: missing dependency branches for {', '.join(missing)}")

        chosen = found[-1]
        log.info(f"Task {task.id} builds on dependency branch {chosen}")
        return chosen

    def create_task_branch(self, task: Task, prior_completions: Mapping[str, str] | None = None) -> str:
        """Create and check out the branch for *task*; returns its name."""
        if self.pr_strategy == "session" and self.session_branch:
            self.records[task.id] = TaskBranchRecord(task.id, self.session_branch, self._require_base())
            log.info(f"Using session branch for task {task.id}")
            return self.session_branch

        base = self.resolve_base_branch(task, prior_completions)
        name = task_branch_name(task, self.branch_prefix)

        if self.dry_run:
            log.info(f"Dry run mode: would create branch {name} from {base}")
            self.records[task.id] = TaskBranchRecord(task.id, name, base)
            return name

        if not git_ops.checkout(base, self.repo_dir):
            raise RepositoryError(f"Failed to checkout base branch {base} for task {task.id}")
        if git_ops.branch_exists(name, self.repo_dir):
            log.warn(f"Branch {name} already exists; recreating it from {base}")
            git_ops.delete_branch(name, force=True, cwd=self.repo_dir)
        r = git_ops.create_branch(name, base, self.repo_dir)
        if r.returncode != 0:
            raise RepositoryError(f"Failed to create branch {name}: {r.stderr.strip()}")

        self.records[task.id] = TaskBranchRecord(task.id, name, base)
        log.info(f"Created branch {name} from {base}")
        return name

    # ── commits ──────────────────────────────────────────────────────

    def generate_commit_message(
        self,
        task: Task,
        result: EngineResult,
        progress: bool = False,
        number: int | None = None,
        total: int | None = None,
        *,
        summary: str = "",
        now: datetime | None = None,
    ) -> str:
        subject = (
            f"{commit_type(task.type)}{commit_scope(task)}: "
            f"{task.title[:SUBJECT_TITLE_LENGTH]} [task:{task.id}]"
        )
        if progress and number and total:
            subject += f" [{number}/{total}]"

        if progress:
            return f"{subject}\n\n{summary or 'Work in progress on task implementation.'}"

        blocks = [subject]
        if task.requirements:
            text = task.requirements[:BODY_REQUIREMENTS_LENGTH]
            if len(task.requirements) > BODY_REQUIREMENTS_LENGTH:
                text += "..."
            blocks.append(text)
        if task.acceptance_criteria:
            blocks.append("\n".join(f"- {c}" for c in task.acceptance_criteria))
        if result.changed_files:
            listed = ", ".join(result.changed_files[:MAX_LISTED_FILES])
            more = "..." if len(result.changed_files) > MAX_LISTED_FILES else ""
            blocks.append(f"Files changed: {listed}{more}")

        duration_s = int(max(result.duration_ms, 0) / 1000 + 0.5)
        blocks.append(
            "\n".join(
                [
                    f"Task-ID: {task.id}",
                    f"Task-Title: {task.title}",
                    f"Task-Type: {task.type or 'feature'}",
                    "Task-Status: completed",
                    f"Task-Duration: {duration_s}",
                    f"Task-Session: {self.session_id or 'unknown'}",
                    f"Task-Date: {iso_timestamp(now)}",
                ]
            )
        )
        return "\n\n".join(blocks)

    def _stage_late_arrivals(self, result: EngineResult) -> None:
        leftover = git_ops.status_paths(self.repo_dir)
        staged = set(git_ops.staged_paths(self.repo_dir))
        late = [p for p in leftover if p not in staged]
        if not late:
            return
        log.warn(f"Found {len(late)} additional files changed after task execution")
        git_ops.add_paths(late, self.repo_dir)
        for path in late:
            if path not in result.changed_files:
                result.changed_files.append(path)

    def commit_task_changes(
        self,
        task: Task,
        result: EngineResult,
        chunks: list[CommitChunk] | None = None,
    ) -> list[str]:
        """Commit the task's work, returning the new commit SHAs.

        Raises :class:`RepositoryError` if a commit with staged changes fails.
        """
        if self.dry_run:
            log.info(f"Dry run mode: would commit task changes ({len(result.changed_files)} files modified)")
            return ["dry-run-commit"]

        if not chunks:
            chunks = [CommitChunk(files=list(result.changed_files))]

        commits: list[str] = []
        total = len(chunks)
        for index, chunk in enumerate(chunks):
            number = index + 1
            progress = number < total
            if chunk.files:
                git_ops.add_paths(chunk.files, self.repo_dir)
            else:
                git_ops.add_all(self.repo_dir)
            if not progress:
                self._stage_late_arrivals(result)

            if not git_ops.staged_paths(self.repo_dir):
                log.debug(f"Nothing staged for commit {number}/{total} of task {task.id}")
                continue

            message = chunk.message or self.generate_commit_message(
                task, result, progress, number, total, summary=chunk.summary
            )
            log.info(f"Creating commit: {message.splitlines()[0]}")
            if not git_ops.commit(message, self.repo_dir):
                raise RepositoryError(f"Failed to commit task {task.id}")
            commits.append(git_ops.head_sha(cwd=self.repo_dir))

        if commits and self.auto_push:
            self._push_current(task.id)
        log.info(f"Task {task.id} committed with {len(commits)} commit(s)")
        return commits

    def _push_current(self, task_id: str) -> bool:
        record = self.records.get(task_id)
        branch = record.branch_name if record else git_ops.current_branch(self.repo_dir)
        if not git_ops.has_remote(cwd=self.repo_dir):
            log.debug("No remote repository configured, skipping push")
            return False
        if not git_ops.push(branch, self.repo_dir):
            log.warn(f"Failed to push {branch}")
            return False
        return True

    def _commit_leftovers(self, task_id: str) -> None:
        if not git_ops.has_dirty_worktree(self.repo_dir):
            return
        count = len(git_ops.status_paths(self.repo_dir))
        log.warn(f"Found {count} uncommitted changes before PR creation")
        git_ops.add_all(self.repo_dir)
        if not git_ops.commit(f"chore: Add remaining changes for task {task_id}", self.repo_dir):
            log.warn(f"Could not commit remaining changes for task {task_id}")

    # ── pull requests ────────────────────────────────────────────────

    def pr_body(self, task: Task, result: EngineResult) -> str:
        lines = ["## Task Details", f"**Task ID:** {task.id}", f"**Type:** {task.type}", ""]
        if task.requirements:
            lines += ["## Requirements", task.requirements, ""]
        if task.acceptance_criteria:
            lines.append("## Acceptance Criteria")
            lines += [f"- [x] {c}" for c in task.acceptance_criteria]
            lines.append("")
        dep_lines = []
        for dep_id in task.dependencies:
            dep = self.records.get(dep_id)
            if dep is not None and dep.pr_url:
                dep_lines.append(f"Depends on: {dep.pr_url}")
        if dep_lines:
            lines += ["## Dependencies", *dep_lines, ""]
        if result.changed_files:
            lines.append("## Files Changed")
            lines += [f"- `{f}`" for f in result.changed_files]
            lines.append("")
        lines += [
            "---",
            "Automatically generated by nightly",
            f"**Session:** {self.session_id or 'unknown'}",
            f"**Duration:** {int(max(result.duration_ms, 0) / 1000 + 0.5)}s",
            f"**Generated:** {iso_timestamp()}",
        ]
        return "\n".join(lines)

    def create_task_pr(self, task: Task, result: EngineResult) -> str | None:
        """Open a PR for *task* against its recorded base.  Never raises.

        A PR needs the branch on the remote, so none is opened when pushing is disabled.
        """
        record = self.records.get(task.id)
        if record is None:
            log.warn(f"No branch recorded for task {task.id}; skipping PR")
            return None
        title = f"[Task {task.id}] {task.title}"
        if self.dry_run:
            log.info(f"Dry run mode: would create PR '{title}' into {record.base_branch}")
            return None
        if not self.auto_push:
            log.warn(
                f"Pushing is disabled; not opening a PR for task {task.id} "
                f"(branch {record.branch_name} stays local)"
            )
            return None

        try:
            self._commit_leftovers(task.id)
            self._push_current(task.id)
            url = git_ops.create_pull_request(
                record.branch_name,
                record.base_branch,
                title,
                self.pr_body(task, result),
                cwd=self.repo_dir,
            )
        except OSError as exc:
            log.warn(f"Failed to create PR for task {task.id}: {exc}")
            return None

        if url:
            record.pr_url = url
            log.success(f"PR created for task {task.id}: {url}")
        return url

    def create_session_pr(
        self,
        completed: list[tuple[Task, EngineResult]],
        failed: list[tuple[str, str]],
        duration_ms: int = 0,
    ) -> str | None:
        """Open one PR for the session branch.  *failed* holds ``(title, error)`` pairs."""
        if not self.session_branch:
            log.warn("No session branch to create PR from")
            return None
        title = f"Coding Session: {len(completed)} tasks completed"
        if self.dry_run:
            log.info(f"Dry run mode: would create session PR '{title}'")
            return None
        if not self.auto_push:
            log.warn(
                f"Pushing is disabled; not opening the session PR "
                f"(branch {self.session_branch} stays local)"
            )
            return None

        total = len(completed) + len(failed)
        lines = [
            "## Session Summary",
            f"Completed {len(completed)} out of {total} tasks in this coding session.",
            "",
        ]
        if completed:
            lines.append("## Tasks Completed")
            for index, (task, result) in enumerate(completed, start=1):
                lines.append(f"### {index}. {task.title}")
                if result.changed_files:
                    lines.append(f"**Files changed:** {', '.join(result.changed_files)}")
                lines.append(f"**Commits:** look for `[task:{task.id}]` in commit messages")
                lines.append("")
        if failed:
            lines.append("## Failed Tasks")
            lines += [f"- {title_} ({error or 'Unknown error'})" for title_, error in failed]
            lines.append("")
        lines += [
            "---",
            f"**Session ID:** {self.session_id or 'unknown'}",
            f"**Duration:** {round(duration_ms / 60000)} minutes",
            f"**Generated:** {iso_timestamp()}",
        ]

        try:
            git_ops.checkout(self.session_branch, self.repo_dir)
            self._commit_leftovers("session")
            if git_ops.has_remote(cwd=self.repo_dir):
                git_ops.push(self.session_branch, self.repo_dir)
            url = git_ops.create_pull_request(
                self.session_branch, self._require_base(), title, "\n".join(lines), cwd=self.repo_dir
            )
        except (OSError, RepositoryError) as exc:
            log.warn(f"Failed to create session pull request: {exc}")
            return None
        if url:
            for record in self.records.values():
                record.pr_url = url
            log.success(f"Session PR created: {url}")
        return url

    # ── revert / cleanup ─────────────────────────────────────────────

    def revert_task_changes(self, task: Task) -> None:
        """Return to base and force-delete the task's branch.  Never raises."""
        record = self.records.pop(task.id, None)
        if self.dry_run:
            log.info(f"Dry run mode: would revert task changes for {task.id}")
            return
        if not self.base_branch:
            log.warn(f"Cannot revert task {task.id}: repository not initialized")
            return

        try:
            git_ops.discard_changes(self.repo_dir)
            if record is not None and record.branch_name == self.session_branch:
                # Shared branch: only the uncommitted work of this task is dropped.
                log.info(f"Discarded uncommitted changes of task {task.id} on session branch")
                return

            if not git_ops.checkout(self.base_branch, self.repo_dir):
                log.warn(f"Failed to switch back to {self.base_branch} while reverting {task.id}")
                return
            branch = record.branch_name if record else task_branch_name(task, self.branch_prefix)
            if branch != self.base_branch and git_ops.branch_exists(branch, self.repo_dir):
                if git_ops.delete_branch(branch, force=True, cwd=self.repo_dir):
                    log.info(f"Deleted failed task branch {branch}")
                else:
                    log.warn(f"Failed to delete task branch {branch}")
        except OSError as exc:
            log.error(f"Failed to revert task changes for {task.id}: {exc}")

    def cleanup_session_branches(self) -> None:
        """Delete local branches whose work lives in a PR, then clear the table.

        Branches without a PR are kept so unpublished work is never lost.
        Never raises.
        """
        if self.dry_run:
            log.info("Dry run mode: would clean up session branches")
            self.records.clear()
            return
        if not self.base_branch:
            return

        try:
            if not git_ops.checkout(self.base_branch, self.repo_dir):
                log.warn(f"Failed to switch back to {self.base_branch}; skipping branch cleanup")
                return
            published = {r.branch_name for r in self.records.values() if r.pr_url}
            kept = {r.branch_name for r in self.records.values() if not r.pr_url}
            for branch in sorted(published - kept):
                if branch == self.base_branch or not git_ops.branch_exists(branch, self.repo_dir):
                    continue
                if git_ops.delete_branch(branch, force=True, cwd=self.repo_dir):
                    log.info(f"Deleted published branch {branch}")
                else:
                    log.warn(f"Failed to cleanup branch {branch}")
            for branch in sorted(kept):
                log.debug(f"Keeping branch {branch} (no pull request)")
        except OSError as exc:
            log.warn(f"Failed to cleanup session branches: {exc}")
        finally:
            self.records.clear()
            self.session_branch = ""
