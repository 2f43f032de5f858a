"""Tests for nightly.branches: dependency-aware task branches in real repos."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from nightly import git_ops
from nightly.branches import (
    BranchGraphManager,
    CommitChunk,
    commit_scope,
    commit_type,
    iso_timestamp,
    session_branch_name,
    task_branch_name,
)
from nightly.engines.base import EngineResult
from nightly.errors import RepositoryError, UnresolvedDependency
from nightly.io_utils import write_text

NOW = datetime(2026, 3, 4, 5, 6, 7, 890000, tzinfo=timezone.utc)


def _manager(repo: Path, **kwargs) -> BranchGraphManager:
    kwargs.setdefault("auto_push", False)
    kwargs.setdefault("session_id", "session-test")
    manager = BranchGraphManager(repo, **kwargs)
    manager.ensure_repository()
    return manager


def _do_work(manager: BranchGraphManager, task, filename: str) -> list[str]:
    write_text(manager.repo_dir / filename, f"work for {task.id}\n")
    result = EngineResult(success=True, changed_files=[filename], duration_ms=1500)
    return manager.commit_task_changes(task, result)


# ── naming and message helpers ───────────────────────────────────────


class TestNaming:
    def test_task_branch_name(self, make_task):
        task = make_task("auth-1", title="Add Login Endpoint!", type="bugfix")
        assert task_branch_name(task) == "nightly/bugfix-auth-1-add-login-endpoint"
        assert task_branch_name(task, "ci/") == "ci/bugfix-auth-1-add-login-endpoint"

    def test_session_branch_name(self):
        assert session_branch_name(now=NOW) == "nightly/session-2026-03-04-050607"

    def test_iso_timestamp(self):
        assert iso_timestamp(NOW) == "2026-03-04T05:06:07.890Z"

    @pytest.mark.parametrize(
        ("task_type", "expected"),
        [("feature", "feat"), ("bugfix", "fix"), ("docs", "docs"), ("improvement", "chore")],
    )
    def test_commit_type(self, task_type, expected):
        assert commit_type(task_type) == expected

    def test_commit_scope_from_tag(self, make_task):
        assert commit_scope(make_task("a", tags=["misc", "API"])) == "(API)"

    def test_commit_scope_from_first_path(self, make_task):
        assert commit_scope(make_task("a", files_to_modify=["web/app.ts"])) == "(web)"
        assert commit_scope(make_task("a", files_to_modify=["./app.ts"])) == ""
        assert commit_scope(make_task("a", files_to_modify=["app.ts"])) == ""


class TestCommitMessage:
    def test_final_message(self, tmp_path: Path, make_task):
        manager = BranchGraphManager(tmp_path, session_id="session-x")
        task = make_task(
            "a",
            title="Add login",
            tags=["auth"],
            requirements="Login with email",
            acceptance_criteria=["Token returned"],
        )
        result = EngineResult(changed_files=[f"f{i}.py" for i in range(7)], duration_ms=61_400)
        message = manager.generate_commit_message(task, result, now=NOW)
        blocks = message.split("\n\n")
        assert blocks[0] == "feat(auth): Add login [task:a]"
        assert blocks[1] == "Login with email"
        assert blocks[2] == "- Token returned"
        assert blocks[3] == "Files changed: f0.py, f1.py, f2.py, f3.py, f4.py..."
        assert blocks[4].splitlines() == [
            "Task-ID: a",
            "Task-Title: Add login",
            "Task-Type: feature",
            "Task-Status: completed",
            "Task-Duration: 61",
            "Task-Session: session-x",
            "Task-Date: 2026-03-04T05:06:07.890Z",
        ]

    def test_long_requirements_are_truncated(self, tmp_path: Path, make_task):
        manager = BranchGraphManager(tmp_path)
        task = make_task("a", requirements="r" * 250)
        body = manager.generate_commit_message(task, EngineResult(), now=NOW).split("\n\n")[1]
        assert body == "r" * 200 + "..."

    def test_progress_message(self, tmp_path: Path, make_task):
        manager = BranchGraphManager(tmp_path)
        task = make_task("a", title="Add login", type="refactor")
        message = manager.generate_commit_message(task, EngineResult(), True, 1, 3, summary="Step one")
        assert message == "refactor: Add login [task:a] [1/3]\n\nStep one"


# ── repository setup ─────────────────────────────────────────────────


class TestEnsureRepository:
    def test_records_base_branch(self, git_repo: Path):
        assert _manager(git_repo).base_branch == "main"

    def test_stashes_dirty_worktree(self, git_repo: Path, run_git):
        write_text(git_repo / "README.md", "# local edit")
        _manager(git_repo)
        assert not git_ops.has_dirty_worktree(git_repo)
        assert "Nightly Code auto-stash" in run_git(git_repo, "stash", "list")

    def test_state_dir_is_never_reported(self, git_repo: Path):
        _manager(git_repo)
        (git_repo / ".nightly-code" / "checkpoints").mkdir(parents=True, exist_ok=True)
        write_text(git_repo / ".nightly-code" / "checkpoints" / "c.json", "{}")
        assert git_ops.status_paths(git_repo) == []

    def test_initializes_missing_repository(self, tmp_path: Path):
        write_text(tmp_path / "main.py", "print(1)\n")
        manager = _manager(tmp_path)
        assert git_ops.is_repository(tmp_path)
        assert manager.base_branch

    def test_dry_run_leaves_directory_alone(self, tmp_path: Path):
        manager = BranchGraphManager(tmp_path, dry_run=True)
        assert manager.ensure_repository() == "main"
        assert not (tmp_path / ".git").exists()

    def test_detached_head_is_rejected(self, git_repo: Path, run_git):
        run_git(git_repo, "checkout", "--detach")
        with pytest.raises(RepositoryError):
            _manager(git_repo)

    def test_branch_ops_require_setup(self, git_repo: Path, make_task):
        manager = BranchGraphManager(git_repo)
        with pytest.raises(RepositoryError, match="not initialized"):
            manager.create_task_branch(make_task("a"))


# ── branch graph ─────────────────────────────────────────────────────


class TestTaskBranches:
    def test_independent_task_branches_from_base(self, git_repo: Path, make_task):
        manager = _manager(git_repo)
        name = manager.create_task_branch(make_task("a", title="Alpha"))
        assert name == "nightly/feature-a-alpha"
        assert git_ops.current_branch(git_repo) == name
        assert manager.records["a"].base_branch == "main"

    def test_dependent_task_builds_on_dependency_branch(self, git_repo: Path, make_task, run_git):
        manager = _manager(git_repo)
        a = make_task("a", title="Alpha")
        manager.create_task_branch(a)
        _do_work(manager, a, "a.txt")

        b = make_task("b", title="Beta", dependencies=["a"])
        manager.create_task_branch(b)
        assert manager.records["b"].base_branch == "nightly/feature-a-alpha"
        assert (git_repo / "a.txt").exists()
        assert run_git(git_repo, "log", "-1", "--format=%s", "HEAD") == "feat: Alpha [task:a]"

    def test_last_listed_dependency_wins(self, git_repo: Path, make_task):
        manager = _manager(git_repo)
        for dep in ("a", "c"):
            manager.create_task_branch(make_task(dep, title=dep.upper()))
            git_ops.checkout("main", git_repo)
        base = manager.resolve_base_branch(make_task("d", dependencies=["a", "c"]))
        assert base == "nightly/feature-c-c"

    def test_branch_found_by_name_scan(self, git_repo: Path, make_task):
        git_ops.create_branch("nightly/bugfix-old-fix-things", "main", git_repo)
        git_ops.checkout("main", git_repo)
        manager = _manager(git_repo)
        assert manager.resolve_base_branch(make_task("t", dependencies=["old"])) == (
            "nightly/bugfix-old-fix-things"
        )

    def test_prior_completions_are_consulted(self, git_repo: Path, make_task):
        git_ops.create_branch("elsewhere", "main", git_repo)
        git_ops.checkout("main", git_repo)
        manager = _manager(git_repo)
        task = make_task("t", dependencies=["x"])
        assert manager.resolve_base_branch(task, {"x": "elsewhere"}) == "elsewhere"

    def test_missing_dependency_falls_back_to_base(self, git_repo: Path, make_task):
        manager = _manager(git_repo)
        assert manager.resolve_base_branch(make_task("t", dependencies=["ghost"])) == "main"

    def test_strict_mode_raises_on_missing_dependency(self, git_repo: Path, make_task):
        manager = _manager(git_repo, strict_dependencies=True)
        manager.create_task_branch(make_task("a", title="A"))
        with pytest.raises(UnresolvedDependency) as info:
            manager.resolve_base_branch(make_task("t", dependencies=["a", "ghost"]))
        assert info.value.missing == ["ghost"]

    def test_dependency_awareness_can_be_disabled(self, git_repo: Path, make_task):
        manager = _manager(git_repo, dependency_aware=False)
        manager.create_task_branch(make_task("a", title="A"))
        assert manager.resolve_base_branch(make_task("b", dependencies=["a"])) == "main"

    def test_existing_branch_is_recreated(self, git_repo: Path, make_task, run_git):
        task = make_task("a", title="Alpha")
        git_ops.create_branch("nightly/feature-a-alpha", "main", git_repo)
        write_text(git_repo / "stale.txt", "old")
        git_ops.add_all(git_repo)
        git_ops.commit("stale work", git_repo)
        git_ops.checkout("main", git_repo)

        manager = _manager(git_repo)
        manager.create_task_branch(task)
        assert not (git_repo / "stale.txt").exists()
        assert run_git(git_repo, "log", "-1", "--format=%s") == "Initial"

    def test_session_strategy_shares_one_branch(self, git_repo: Path, make_task):
        manager = _manager(git_repo, pr_strategy="session")
        session = manager.create_session_branch(NOW)
        assert session == "nightly/session-2026-03-04-050607"
        assert manager.create_task_branch(make_task("a")) == session
        assert manager.create_task_branch(make_task("b", dependencies=["a"])) == session
        assert git_ops.current_branch(git_repo) == session

    def test_dry_run_records_without_touching_git(self, git_repo: Path, make_task):
        manager = _manager(git_repo, dry_run=True)
        name = manager.create_task_branch(make_task("a", title="A"))
        assert manager.records["a"].branch_name == name
        assert not git_ops.branch_exists(name, git_repo)
        assert manager.commit_task_changes(make_task("a"), EngineResult()) == ["dry-run-commit"]


# ── commits ──────────────────────────────────────────────────────────


class TestCommits:
    def test_commit_includes_late_arrivals(self, git_repo: Path, make_task):
        manager = _manager(git_repo)
        task = make_task("a", title="A")
        manager.create_task_branch(task)
        write_text(git_repo / "one.txt", "1")
        write_text(git_repo / "two.txt", "2")
        result = EngineResult(success=True, changed_files=["one.txt"])

        commits = manager.commit_task_changes(task, result)
        assert len(commits) == 1
        assert commits[0] == git_ops.head_sha(cwd=git_repo)
        assert "two.txt" in result.changed_files
        assert not git_ops.has_dirty_worktree(git_repo)

    def test_multi_commit_chunks(self, git_repo: Path, make_task, run_git):
        manager = _manager(git_repo)
        task = make_task("a", title="A")
        manager.create_task_branch(task)
        write_text(git_repo / "x.txt", "x")
        write_text(git_repo / "y.txt", "y")
        chunks = [CommitChunk(files=["x.txt"], summary="First half"), CommitChunk()]

        commits = manager.commit_task_changes(task, EngineResult(changed_files=["x.txt", "y.txt"]), chunks)
        assert len(commits) == 2
        subjects = run_git(git_repo, "log", "-2", "--format=%s").splitlines()
        assert subjects == ["feat: A [task:a]", "feat: A [task:a] [1/2]"]

    def test_nothing_to_commit(self, git_repo: Path, make_task):
        manager = _manager(git_repo)
        task = make_task("a")
        manager.create_task_branch(task)
        assert manager.commit_task_changes(task, EngineResult()) == []

    def test_push_skipped_without_remote(self, git_repo: Path, make_task):
        manager = _manager(git_repo, auto_push=True)
        task = make_task("a")
        manager.create_task_branch(task)
        with patch("nightly.branches.git_ops.push") as push:
            _do_work(manager, task, "a.txt")
        push.assert_not_called()


# ── pull requests ────────────────────────────────────────────────────


class TestPullRequests:
    def test_task_pr_targets_recorded_base(self, git_repo: Path, make_task):
        manager = _manager(git_repo, auto_push=True)
        a = make_task("a", title="Alpha")
        manager.create_task_branch(a)
        _do_work(manager, a, "a.txt")
        manager.records["a"].pr_url = "https://github.com/o/r/pull/1"

        b = make_task("b", title="Beta", dependencies=["a"], acceptance_criteria=["works"])
        manager.create_task_branch(b)
        _do_work(manager, b, "b.txt")
        result = EngineResult(changed_files=["b.txt"])
        with patch(
            "nightly.branches.git_ops.create_pull_request", return_value="https://github.com/o/r/pull/2"
        ) as create:
            url = manager.create_task_pr(b, result)

        assert url == "https://github.com/o/r/pull/2"
        assert manager.records["b"].pr_url == url
        branch, base, title, body = create.call_args.args
        assert branch == "nightly/feature-b-beta"
        assert base == "nightly/feature-a-alpha"
        assert title == "[Task b] Beta"
        assert "Depends on: https://github.com/o/r/pull/1" in body
        assert "- [x] works" in body
        assert "- `b.txt`" in body

    def test_task_pr_failure_is_not_fatal(self, git_repo: Path, make_task):
        manager = _manager(git_repo, auto_push=True)
        task = make_task("a")
        manager.create_task_branch(task)
        with patch("nightly.branches.git_ops.create_pull_request", side_effect=OSError("gh broke")):
            assert manager.create_task_pr(task, EngineResult()) is None

    def test_session_pr(self, git_repo: Path, make_task):
        manager = _manager(git_repo, pr_strategy="session", auto_push=True)
        manager.create_session_branch(NOW)
        task = make_task("a", title="Alpha")
        manager.create_task_branch(task)
        with patch(
            "nightly.branches.git_ops.create_pull_request", return_value="https://github.com/o/r/pull/9"
        ) as create:
            url = manager.create_session_pr(
                [(task, EngineResult(changed_files=["a.txt"]))], [("Beta", "boom")], 120_000
            )
        assert url == "https://github.com/o/r/pull/9"
        _, base, title, body = create.call_args.args
        assert base == "main"
        assert title == "Coding Session: 1 tasks completed"
        assert "Completed 1 out of 2 tasks" in body
        assert "- Beta (boom)" in body
        assert "**Duration:** 2 minutes" in body
        assert manager.records["a"].pr_url == url


    def test_no_pr_when_pushing_is_disabled(self, git_repo: Path, make_task):
        manager = _manager(git_repo, auto_push=False)
        task = make_task("a")
        manager.create_task_branch(task)
        with patch("nightly.branches.git_ops.create_pull_request") as create, patch(
            "nightly.branches.git_ops.push"
        ) as push:
            assert manager.create_task_pr(task, EngineResult()) is None
        create.assert_not_called()
        push.assert_not_called()
        assert manager.records["a"].pr_url is None

    def test_no_session_pr_when_pushing_is_disabled(self, git_repo: Path, make_task):
        manager = _manager(git_repo, pr_strategy="session", auto_push=False)
        manager.create_session_branch(NOW)
        with patch("nightly.branches.git_ops.create_pull_request") as create:
            assert manager.create_session_pr([(make_task("a"), EngineResult())], []) is None
        create.assert_not_called()

# ── revert / cleanup ─────────────────────────────────────────────────


class TestRevertAndCleanup:
    def test_revert_deletes_branch_and_discards_work(self, git_repo: Path, make_task):
        manager = _manager(git_repo)
        task = make_task("a", title="Alpha")
        manager.create_task_branch(task)
        write_text(git_repo / "half-done.txt", "partial")

        manager.revert_task_changes(task)
        assert git_ops.current_branch(git_repo) == "main"
        assert not git_ops.branch_exists("nightly/feature-a-alpha", git_repo)
        assert not (git_repo / "half-done.txt").exists()
        assert "a" not in manager.records

    def test_revert_on_session_branch_keeps_branch(self, git_repo: Path, make_task):
        manager = _manager(git_repo, pr_strategy="session")
        session = manager.create_session_branch(NOW)
        task = make_task("a")
        manager.create_task_branch(task)
        write_text(git_repo / "half-done.txt", "partial")

        manager.revert_task_changes(task)
        assert git_ops.current_branch(git_repo) == session
        assert not (git_repo / "half-done.txt").exists()

    def test_cleanup_deletes_only_published_branches(self, git_repo: Path, make_task):
        manager = _manager(git_repo)
        for task_id in ("a", "b"):
            task = make_task(task_id, title=task_id.upper())
            manager.create_task_branch(task)
            _do_work(manager, task, f"{task_id}.txt")
            git_ops.checkout("main", git_repo)
        manager.records["a"].pr_url = "https://github.com/o/r/pull/1"

        manager.cleanup_session_branches()
        assert git_ops.current_branch(git_repo) == "main"
        assert not git_ops.branch_exists("nightly/feature-a-a", git_repo)
        assert git_ops.branch_exists("nightly/feature-b-b", git_repo)
        assert manager.records == {}
