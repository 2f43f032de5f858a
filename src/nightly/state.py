"""Session state owned by the executor and snapshotted into checkpoints."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from nightly.engines.base import EngineResult
from nightly.tasks.model import Task

MAX_RESOURCE_SAMPLES = 100


class SessionPhase(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    LOADING = "loading"
    EXECUTING = "executing"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


def new_session_id(now: datetime | None = None) -> str:
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return f"session-{moment.strftime('%Y-%m-%d-%H%M%S')}"


@dataclass
class CompletedTask:
    task: Task
    result: EngineResult
    branch: str = ""
    commits: list[str] = field(default_factory=list)
    pr_url: str | None = None
    completed_at: float = field(default_factory=time.time)


@dataclass
class FailedTask:
    task_id: str
    title: str
    error: str
    timestamp: float = field(default_factory=time.time)
    kind: str = ""


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of a session, serialized with camelCase keys."""

    timestamp: int  # epoch ms
    session_id: str
    current_task: str | None
    completed_tasks: tuple[str, ...]
    failed_tasks: tuple[str, ...]
    elapsed: int  # ms since session start
    resource_usage: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
            "currentTask": self.current_task,
            "completedTasks": list(self.completed_tasks),
            "failedTasks": list(self.failed_tasks),
            "elapsed": self.elapsed,
            "resourceUsage": self.resource_usage,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            timestamp=int(data["timestamp"]),
            session_id=str(data["sessionId"]),
            current_task=data.get("currentTask"),
            completed_tasks=tuple(data.get("completedTasks") or ()),
            failed_tasks=tuple(data.get("failedTasks") or ()),
            elapsed=int(data.get("elapsed") or 0),
            resource_usage=data.get("resourceUsage"),
        )


@dataclass
class SessionState:
    """Mutable state of one session.

    Mutations and snapshots go through ``lock`` so background checkpoint
    writes always see a consistent view.
    """

    session_id: str
    start_time: float = field(default_factory=time.time)
    current_task_id: str | None = None
    completed: list[CompletedTask] = field(default_factory=list)
    failed: list[FailedTask] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    resource_usage: deque = field(default_factory=lambda: deque(maxlen=MAX_RESOURCE_SAMPLES))
    phase: SessionPhase = SessionPhase.IDLE
    end_time: float | None = None
    resumed_ids: set[str] = field(default_factory=set)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def elapsed(self, now: float | None = None) -> float:
        """Seconds since the session started."""
        return (time.time() if now is None else now) - self.start_time

    def completed_ids(self) -> list[str]:
        with self.lock:
            return [c.task.id for c in self.completed]

    def set_phase(self, phase: SessionPhase) -> None:
        with self.lock:
            self.phase = phase

    def start_task(self, task_id: str | None) -> None:
        with self.lock:
            self.current_task_id = task_id

    def record_completion(self, record: CompletedTask) -> None:
        with self.lock:
            self.completed.append(record)
            self.current_task_id = None

    def record_failure(self, record: FailedTask) -> None:
        with self.lock:
            self.failed.append(record)
            self.current_task_id = None

    def record_skip(self, task_id: str) -> None:
        with self.lock:
            self.skipped.append(task_id)

    def add_resource_sample(self, sample: dict[str, Any]) -> None:
        with self.lock:
            self.resource_usage.append(sample)

    def snapshot(self, now: float | None = None) -> Checkpoint:
        moment = time.time() if now is None else now
        with self.lock:
            return Checkpoint(
                timestamp=int(moment * 1000),
                session_id=self.session_id,
                current_task=self.current_task_id,
                completed_tasks=tuple(sorted(self.resumed_ids)) + tuple(c.task.id for c in self.completed),
                failed_tasks=tuple(f.task_id for f in self.failed),
                elapsed=int(max(moment - self.start_time, 0) * 1000),
                resource_usage=dict(self.resource_usage[-1]) if self.resource_usage else None,
            )
