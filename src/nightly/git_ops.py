"""Git primitives: repository setup, branches, staging, commits, push and PRs.

Every helper shells out to the ``git`` binary.  Helpers return ``bool`` or
plain values and leave failure policy to :mod:`nightly.branches`.
"""

from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path

from nightly import log
from nightly.io_utils import open_text, read_text, write_text

DEFAULT_GITIGNORE = """node_modules/
__pycache__/
*.pyc
.venv/
.env
.DS_Store
.nightly-code/
"""


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing output."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        check=check,
    )


def slugify(text: str, max_len: int = 30) -> str:
    """Lowercase *text*, drop punctuation, hyphenate whitespace, truncate to *max_len*."""
    slug = re.sub(r"[^a-z0-9\s-]", "", text.lower())
    slug = re.sub(r"\s+", "-", slug.strip())
    return slug[:max_len]


# ── Repository ───────────────────────────────────────────────────────

def is_repository(cwd: Path | None = None) -> bool:
    r = _git("rev-parse", "--is-inside-work-tree", cwd=cwd)
    return r.returncode == 0 and r.stdout.strip() == "true"


def has_commits(cwd: Path | None = None) -> bool:
    r = _git("rev-parse", "--verify", "--quiet", "HEAD", cwd=cwd)
    return r.returncode == 0


def init_repository(cwd: Path) -> bool:
    """``git init`` plus a default ``.gitignore`` and an initial commit."""
    if _git("init", cwd=cwd).returncode != 0:
        return False
    gitignore = cwd / ".gitignore"
    if not gitignore.exists():
        write_text(gitignore, DEFAULT_GITIGNORE)
    return initial_commit(cwd)


def initial_commit(cwd: Path) -> bool:
    _git("add", "-A", cwd=cwd)
    r = _git("commit", "--allow-empty", "-m", "Initial commit", cwd=cwd)
    return r.returncode == 0


def current_branch(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


def head_sha(ref: str = "HEAD", cwd: Path | None = None) -> str:
    r = _git("rev-parse", ref, cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


def has_remote(name: str = "origin", cwd: Path | None = None) -> bool:
    r = _git("remote", cwd=cwd)
    return r.returncode == 0 and name in r.stdout.split()


def ensure_clean_git_state(cwd: Path | None = None) -> None:
    """Abort any interrupted merge/rebase/cherry-pick."""
    git_dir_r = _git("rev-parse", "--git-dir", cwd=cwd)
    if git_dir_r.returncode != 0:
        return
    git_dir = Path(git_dir_r.stdout.strip())
    if not git_dir.is_absolute():
        git_dir = (cwd or Path.cwd()) / git_dir

    if (git_dir / "MERGE_HEAD").exists():
        log.warn("Detected interrupted git merge. Aborting...")
        _git("merge", "--abort", cwd=cwd)
    if (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists():
        log.warn("Detected interrupted git rebase. Aborting...")
        _git("rebase", "--abort", cwd=cwd)
    if (git_dir / "CHERRY_PICK_HEAD").exists():
        log.warn("Detected interrupted git cherry-pick. Aborting...")
        _git("cherry-pick", "--abort", cwd=cwd)


# ── Branches ─────────────────────────────────────────────────────────

def branch_exists(name: str, cwd: Path | None = None) -> bool:
    r = _git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=cwd)
    return r.returncode == 0


def local_branches(cwd: Path | None = None) -> list[str]:
    r = _git("branch", "--format=%(refname:short)", cwd=cwd)
    if r.returncode != 0:
        return []
    return [line.strip() for line in r.stdout.splitlines() if line.strip()]


def checkout(branch: str, cwd: Path | None = None) -> bool:
    r = _git("checkout", branch, cwd=cwd)
    return r.returncode == 0


def create_branch(name: str, base: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """``git checkout -b name base``; returns the raw result for error reporting."""
    return _git("checkout", "-b", name, base, cwd=cwd)


def delete_branch(name: str, force: bool = False, cwd: Path | None = None) -> bool:
    flag = "-D" if force else "-d"
    r = _git("branch", flag, name, cwd=cwd)
    return r.returncode == 0


# ── Working tree ─────────────────────────────────────────────────────

def has_dirty_worktree(cwd: Path | None = None) -> bool:
    r = _git("status", "--porcelain", cwd=cwd)
    return bool(r.stdout.strip())


def status_paths(cwd: Path | None = None) -> list[str]:
    """Paths reported by ``git status --porcelain`` (untracked files expanded)."""
    r = _git("status", "--porcelain", "--untracked-files=all", cwd=cwd)
    if r.returncode != 0:
        return []
    paths: list[str] = []
    for line in r.stdout.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip().strip('"'))
    return paths


def staged_paths(cwd: Path | None = None) -> list[str]:
    r = _git("diff", "--cached", "--name-only", cwd=cwd)
    if r.returncode != 0:
        return []
    return [f.strip() for f in r.stdout.splitlines() if f.strip()]


def add_paths(paths: list[str], cwd: Path | None = None) -> bool:
    """Stage *paths*; ``-A`` so deletions in the list are staged too."""
    if not paths:
        return True
    r = _git("add", "-A", "--", *paths, cwd=cwd)
    return r.returncode == 0


def add_all(cwd: Path | None = None) -> bool:
    r = _git("add", "-A", cwd=cwd)
    return r.returncode == 0


def commit(message: str, cwd: Path | None = None) -> bool:
    r = _git("commit", "-m", message, cwd=cwd)
    return r.returncode == 0


def discard_changes(cwd: Path | None = None) -> None:
    """Drop every uncommitted change, untracked files included."""
    _git("reset", "--hard", "HEAD", cwd=cwd)
    _git("clean", "-fd", cwd=cwd)


def exclude_locally(pattern: str, cwd: Path | None = None) -> bool:
    """Add *pattern* to ``.git/info/exclude`` so the working tree never reports it."""
    r = _git("rev-parse", "--git-path", "info/exclude", cwd=cwd)
    if r.returncode != 0:
        return False
    exclude = Path(r.stdout.strip())
    if not exclude.is_absolute():
        exclude = (cwd or Path.cwd()) / exclude
    text = read_text(exclude) if exclude.is_file() else ""
    if pattern in text.splitlines():
        return True
    exclude.parent.mkdir(parents=True, exist_ok=True)
    with open_text(exclude, "a") as f:
        if text and not text.endswith("\n"):
            f.write("\n")
        f.write(f"{pattern}\n")
    return True


def stash_push(message: str, cwd: Path | None = None) -> bool:
    r = _git("stash", "push", "--include-untracked", "-m", message, cwd=cwd)
    return r.returncode == 0


# ── Remote ───────────────────────────────────────────────────────────

def push(branch: str, cwd: Path | None = None) -> bool:
    r = _git("push", "-u", "origin", branch, cwd=cwd)
    if r.returncode != 0:
        log.debug(f"git push {branch} failed: {r.stderr.strip()}")
    return r.returncode == 0


def create_pull_request(
    branch: str,
    base: str,
    title: str,
    body: str,
    cwd: Path | None = None,
    draft: bool = False,
) -> str | None:
    """Create a GitHub PR using ``gh`` CLI. Returns PR URL or None."""
    if not shutil.which("gh"):
        log.warn("gh CLI not found; cannot create PR")
        return None

    cmd = ["gh", "pr", "create", "--base", base, "--head", branch, "--title", title, "--body", body]
    if draft:
        cmd.append("--draft")

    r = subprocess.run(cmd, capture_output=True, text=True, cwd=cwd)
    if r.returncode != 0:
        log.warn(f"Failed to create PR for {branch}: {r.stderr.strip()}")
        return None

    url = r.stdout.strip().splitlines()[-1] if r.stdout.strip() else ""
    return url or None
