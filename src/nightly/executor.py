"""SessionExecutor: runs ordered tasks on their branches within a time budget.

Phases move ``IDLE -> VALIDATING -> LOADING -> EXECUTING -> FINALIZING -> DONE``;
``FAILED`` is reachable from any phase.  Every declared task ends completed,
failed (with its error recorded) or skipped.
"""

from __future__ import annotations

import errno
import subprocess
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from nightly import log
from nightly.branches import BranchGraphManager
from nightly.checkpoint import CheckpointStore, resume_info
from nightly.config import Config
from nightly.engine_errors import classify, is_critical_failure
from nightly.engines.base import EngineBase, EngineResult
from nightly.errors import CheckpointError, NightlyError, WorkerError
from nightly.monitor import PeriodicTimer, ResourceSampler
from nightly.prompts import build_continuation_prompt, build_task_prompt, improvement_task
from nightly.report import build_report, write_report
from nightly.retry import RetryPolicy, call_with_retry
from nightly.scheduler import resolve_order
from nightly.state import (
    CompletedTask,
    FailedTask,
    SessionPhase,
    SessionState,
    new_session_id,
)
from nightly.tasks.model import Task
from nightly.validation import require_completion

CONTINUATION_DELAY = 2.0
_CRITICAL_ERRNOS = (errno.ENOSPC, errno.ENOMEM)

# Errors that fail a single task without stopping the session.
TASK_ERRORS = (NightlyError, OSError, subprocess.SubprocessError)


@dataclass
class SessionResult:
    success: bool
    session_id: str
    completed: list[CompletedTask] = field(default_factory=list)
    failed: list[FailedTask] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    duration_ms: int = 0
    checkpoints: int = 0
    pr_urls: list[str] = field(default_factory=list)
    phase: SessionPhase = SessionPhase.DONE
    report_path: Path | None = None


def retry_policy_for(cfg: Config) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=cfg.max_retries,
        base_delay=cfg.base_delay,
        exponential=cfg.exponential_backoff,
        jitter=cfg.jitter,
        max_delay=cfg.max_delay,
        retry_usage_limits=cfg.usage_limit_retry,
    )


def is_critical(exc: BaseException) -> bool:
    """Failures that stop the whole session rather than just the task."""
    if isinstance(exc, OSError) and exc.errno in _CRITICAL_ERRNOS:
        return True
    return is_critical_failure(exc)


def _failure_kind(exc: BaseException) -> str:
    if isinstance(exc, WorkerError):
        return classify(exc).value
    return type(exc).__name__


class SessionExecutor:
    """Drives one session from task list to report.

    *clock* and *sleep* are injectable so time-budget and backoff behaviour
    can be exercised without waiting.
    """

    def __init__(
        self,
        cfg: Config,
        engine: EngineBase,
        *,
        branches: BranchGraphManager | None = None,
        store: CheckpointStore | None = None,
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        monitors: bool = True,
    ) -> None:
        self.cfg = cfg
        self.engine = engine
        self.workdir = Path(cfg.workdir).resolve()
        self.branches = branches
        self.store = store or CheckpointStore(cfg.checkpoint_dir, clock=clock)
        self.policy = policy or retry_policy_for(cfg)
        self.clock = clock
        self.sleep = sleep
        self.monitors = monitors
        self.state: SessionState | None = None
        self._timer: PeriodicTimer | None = None
        self._sampler: ResourceSampler | None = None
        self._halted = False

    # ── setup ────────────────────────────────────────────────────────

    def _new_state(self) -> SessionState:
        now = self.clock()
        if self.cfg.resume_from:
            info = resume_info(self.store.read(self.cfg.resume_from), now)
            state = SessionState(
                session_id=info.session_id,
                start_time=info.start_time,
                resumed_ids=set(info.completed_ids),
            )
            log.info(f"Resuming session {info.session_id}")
            if info.completed_ids:
                log.info(f"Previously completed tasks: {', '.join(info.completed_ids)}")
            return state
        session_id = new_session_id(datetime.fromtimestamp(now, timezone.utc))
        return SessionState(session_id=session_id, start_time=now)

    def _make_branches(self, session_id: str) -> BranchGraphManager:
        if self.branches is None:
            self.branches = BranchGraphManager(
                self.workdir,
                branch_prefix=self.cfg.branch_prefix,
                auto_push=self.cfg.auto_push,
                create_pr=self.cfg.create_pr,
                pr_strategy=self.cfg.pr_strategy,
                dependency_aware=self.cfg.dependency_aware,
                strict_dependencies=self.cfg.strict_dependencies,
                dry_run=self.cfg.dry_run,
                session_id=session_id,
                state_dir=self.cfg.state_dir,
            )
        elif not self.branches.session_id:
            self.branches.session_id = session_id
        return self.branches

    def _start_monitors(self, state: SessionState) -> None:
        if not self.monitors:
            return
        self._timer = PeriodicTimer(
            self.cfg.checkpoint_interval, self.checkpoint, name="nightly-checkpoint"
        )
        self._sampler = ResourceSampler(
            state.add_resource_sample, interval=self.cfg.resource_sample_interval
        )
        self._timer.start()
        self._sampler.start()

    def _stop_monitors(self) -> None:
        if self._timer is not None:
            self._timer.stop()
        if self._sampler is not None:
            self._sampler.stop()
        self._timer = self._sampler = None

    def checkpoint(self) -> str | None:
        """Write a checkpoint of the current state.  Failures are logged, not raised."""
        if self.state is None:
            return None
        try:
            return self.store.write(self.state)
        except (OSError, CheckpointError) as exc:
            log.warn(f"Failed to write checkpoint: {exc}")
            return None

    # ── session ──────────────────────────────────────────────────────

    def run(self, tasks: list[Task]) -> SessionResult:
        """Execute *tasks* in dependency order and return the session outcome.

        Graph errors (unknown dependency, cycle) and repository setup errors
        abort startup and propagate after the phase is set to ``FAILED``.
        """
        state = self.state = self._new_state()
        log.set_log_file(self.cfg.logs_dir / f"{state.session_id}.log")
        log.info(f"Session {state.session_id} starting ({len(tasks)} tasks)")

        state.set_phase(SessionPhase.VALIDATING)
        try:
            ordered = resolve_order(tasks)
        except NightlyError:
            state.set_phase(SessionPhase.FAILED)
            raise

        state.set_phase(SessionPhase.LOADING)
        if state.resumed_ids:
            ordered = [t for t in ordered if t.id not in state.resumed_ids]
        branches = self._make_branches(state.session_id)
        try:
            branches.ensure_repository()
            if self.cfg.pr_strategy == "session":
                branches.create_session_branch()
        except NightlyError:
            state.set_phase(SessionPhase.FAILED)
            self.checkpoint()
            raise

        self._start_monitors(state)
        try:
            state.set_phase(SessionPhase.EXECUTING)
            self._execute_all(ordered)
            self._run_improvement()

            state.set_phase(SessionPhase.FINALIZING)
            pr_urls = self._finalize()
        except KeyboardInterrupt:
            log.warn("Interrupted! Saving checkpoint...")
            state.set_phase(SessionPhase.FAILED)
            self.checkpoint()
            raise
        except Exception as exc:
            log.error(f"Session aborted by unexpected error: {exc}")
            state.set_phase(SessionPhase.FAILED)
            self.checkpoint()
            raise
        finally:
            self._stop_monitors()

        state.end_time = self.clock()
        state.set_phase(SessionPhase.FAILED if self._halted else SessionPhase.DONE)
        self.checkpoint()
        return self._result(pr_urls)

    def _execute_all(self, ordered: list[Task]) -> None:
        state = self.state
        total = len(ordered)
        for index, task in enumerate(ordered):
            elapsed = state.elapsed(self.clock())
            if elapsed >= self.cfg.max_duration:
                log.warn(f"Maximum session duration reached ({round(elapsed)}s)")
                self._skip_remaining(ordered[index:])
                return

            log.info(f"Task {index + 1}/{total}: {task.label}")
            try:
                self._run_task(task, self.policy)
                log.success(f"Task {index + 1}/{total} completed successfully!")
            except TASK_ERRORS as exc:
                self._record_failure(task, exc)
                log.error(f"Task {index + 1}/{total} failed: {exc}")
                self.branches.revert_task_changes(task)
                if is_critical(exc):
                    log.error("Critical failure detected, stopping execution")
                    self._halted = True
                    self.checkpoint()
                    self._skip_remaining(ordered[index + 1:])
                    return
            self.checkpoint()

    def _skip_remaining(self, tasks: list[Task]) -> None:
        for task in tasks:
            self.state.record_skip(task.id)
        if tasks:
            log.warn(f"Skipping {len(tasks)} remaining task(s): {', '.join(t.id for t in tasks)}")

    def _record_failure(self, task: Task, exc: BaseException) -> None:
        self.state.record_failure(
            FailedTask(
                task_id=task.id,
                title=task.title,
                error=str(exc),
                timestamp=self.clock(),
                kind=_failure_kind(exc),
            )
        )

    def _prior_completions(self) -> dict[str, str]:
        with self.state.lock:
            return {c.task.id: c.branch for c in self.state.completed if c.branch}

    # ── single task ──────────────────────────────────────────────────

    def _run_task(self, task: Task, policy: RetryPolicy) -> CompletedTask:
        state = self.state
        state.start_task(task.id)
        branch = self.branches.create_task_branch(task, self._prior_completions())

        result = self._execute_task(task, policy)
        if self.cfg.dry_run:
            log.info("Dry run mode: skipping task validation")
        else:
            require_completion(task, result, self.cfg, self.workdir)

        commits = self.branches.commit_task_changes(task, result)
        pr_url = None
        if self.branches.create_pr and self.cfg.pr_strategy == "task":
            pr_url = self.branches.create_task_pr(task, result)
            if not pr_url and not self.cfg.dry_run:
                log.warn(f"PR creation skipped for task {task.id}")

        record = CompletedTask(
            task=task,
            result=result,
            branch=branch,
            commits=commits,
            pr_url=pr_url,
            completed_at=self.clock(),
        )
        state.record_completion(record)
        return record

    def _invoke(self, task: Task, prompt: str, policy: RetryPolicy, session_token: str | None) -> EngineResult:
        log_file = self.cfg.logs_dir / f"{self.state.session_id}-worker.log"

        def attempt() -> EngineResult:
            result = self.engine.run(
                prompt,
                cwd=self.workdir,
                timeout=self.cfg.worker_timeout,
                session_token=session_token,
                log_file=log_file,
            )
            if not result.success:
                raise WorkerError(result.error or f"{self.engine.name} failed without output")
            return result

        return call_with_retry(
            attempt,
            policy,
            on_tick=self.checkpoint,
            sleep=self.sleep,
            label=f"Task {task.id}",
        )

    def _execute_task(self, task: Task, policy: RetryPolicy) -> EngineResult:
        """Run the worker for *task*, continuing until its minimum duration is met.

        Raises the classified :class:`WorkerError` once retries are exhausted.
        """
        if self.cfg.dry_run:
            log.info("Dry run mode: skipping worker execution")
            return EngineResult(success=True, text="Dry run - task not actually executed")

        with self.state.lock:
            done = [c.task for c in self.state.completed]
        minimum = max(task.minimum_duration, 0) * 60
        started = self.clock()
        token: str | None = None
        outputs: list[str] = []
        changed: list[str] = []
        duration_ms = 0
        iteration = 0

        while True:
            iteration += 1
            elapsed = self.clock() - started
            if iteration > 1 and token:
                prompt = build_continuation_prompt(task, iteration, elapsed, minimum - elapsed, changed)
                log.info(f"Continuing worker session (iteration {iteration})...")
            else:
                if iteration > 1:
                    log.warn("No worker session available, falling back to a full prompt")
                prompt = build_task_prompt(task, self.workdir, done)

            result = self._invoke(task, prompt, policy, token)
            token = result.session_token or token
            if result.text:
                outputs.append(result.text)
            for path in result.changed_files:
                if path not in changed:
                    changed.append(path)
            duration_ms += result.duration_ms

            elapsed = self.clock() - started
            if not minimum or elapsed >= minimum:
                break
            if iteration >= self.cfg.max_iterations:
                log.warn(f"Maximum iteration limit ({self.cfg.max_iterations}) reached. Stopping execution.")
                break
            log.info(
                f"Continuing session - {round((minimum - elapsed) / 60)} minutes remaining "
                "to meet minimum duration"
            )
            self.sleep(CONTINUATION_DELAY)

        if iteration > 1:
            log.success(f"Task execution completed ({iteration} iterations)")
        if changed:
            log.info(f"{len(changed)} unique files were modified")
        return EngineResult(
            success=True,
            text="\n\n".join(outputs),
            changed_files=changed,
            session_token=token,
            duration_ms=duration_ms,
        )

    # ── improvement / finalize ───────────────────────────────────────

    def _run_improvement(self) -> None:
        state = self.state
        if not self.cfg.auto_improvement or self._halted:
            return
        if state.failed:
            log.info("Skipping automatic improvements due to failed tasks")
            return
        remaining = self.cfg.max_duration - state.elapsed(self.clock())
        if remaining < self.cfg.improvement_min_remaining:
            log.info(
                f"Not enough time for automatic improvements ({round(remaining / 60)} minutes remaining)"
            )
            return

        task = improvement_task(remaining, self.clock())
        log.info(f"All tasks completed; starting automatic improvements ({round(remaining / 60)} minutes remaining)")
        try:
            self._run_task(task, replace(self.policy, max_attempts=0))
            log.success("Automatic improvements completed")
        except TASK_ERRORS as exc:
            state.start_task(None)
            log.warn(f"Automatic improvement failed: {exc}")
            self.branches.revert_task_changes(task)
        self.checkpoint()

    def _finalize(self) -> list[str]:
        state = self.state
        with state.lock:
            completed = list(state.completed)
            failed = list(state.failed)
        pr_urls = [c.pr_url for c in completed if c.pr_url]

        if self.branches.create_pr and self.cfg.pr_strategy == "session" and completed:
            url = self.branches.create_session_pr(
                [(c.task, c.result) for c in completed],
                [(f.title, f.error) for f in failed],
                int(state.elapsed(self.clock()) * 1000),
            )
            if url:
                pr_urls.append(url)
        for url in pr_urls:
            log.info(f"Pull request: {url}")

        if self.cfg.cleanup_branches:
            self.branches.cleanup_session_branches()
        return pr_urls

    def _result(self, pr_urls: list[str]) -> SessionResult:
        state = self.state
        with state.lock:
            result = SessionResult(
                success=not state.failed and not self._halted,
                session_id=state.session_id,
                completed=list(state.completed),
                failed=list(state.failed),
                skipped=list(state.skipped),
                duration_ms=int(((state.end_time or self.clock()) - state.start_time) * 1000),
                checkpoints=len(state.checkpoints),
                pr_urls=pr_urls,
                phase=state.phase,
            )
        path = self.cfg.reports_dir / f"{state.session_id}.json"
        try:
            result.report_path = write_report(path, build_report(state, result))
        except OSError as exc:
            log.warn(f"Failed to write session report: {exc}")
        return result
