"""Append-only JSON checkpoints under ``<state dir>/checkpoints``."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from nightly import log
from nightly.errors import CheckpointError
from nightly.io_utils import read_json, write_json_exclusive
from nightly.state import Checkpoint, SessionState


@dataclass
class ResumeInfo:
    session_id: str
    start_time: float  # epoch seconds, so elapsed time carries over
    completed_ids: list[str]


def resume_info(checkpoint: Checkpoint, now: float | None = None) -> ResumeInfo:
    """Derive the resume baseline from *checkpoint*.  Branch state is not restored."""
    moment = time.time() if now is None else now
    return ResumeInfo(
        session_id=checkpoint.session_id,
        start_time=moment - checkpoint.elapsed / 1000,
        completed_ids=list(checkpoint.completed_tasks),
    )


class CheckpointStore:
    """Writes never overwrite an existing file; a numeric suffix breaks ties."""

    def __init__(self, directory: Path, clock: Callable[[], float] = time.time) -> None:
        self.directory = directory
        self._clock = clock
        self._lock = threading.Lock()

    def write(self, state: SessionState) -> str:
        """Snapshot *state* to a new file and return the checkpoint id (file stem)."""
        with self._lock:
            checkpoint = state.snapshot(self._clock())
            stem = f"{checkpoint.session_id}-{checkpoint.timestamp}"
            candidate = stem
            suffix = 0
            while True:
                try:
                    write_json_exclusive(self.directory / f"{candidate}.json", checkpoint.to_dict())
                    break
                except FileExistsError:
                    suffix += 1
                    candidate = f"{stem}-{suffix}"
            with state.lock:
                state.checkpoints.append(checkpoint)
        log.debug(f"Checkpoint created: {candidate} (elapsed {checkpoint.elapsed} ms)")
        return candidate

    def _path_for(self, ref: str | Path) -> Path:
        path = Path(ref)
        if path.suffix == ".json" and path.is_file():
            return path
        return self.directory / f"{ref}.json"

    def read(self, ref: str | Path) -> Checkpoint:
        """Load a checkpoint by id or by file path."""
        path = self._path_for(ref)
        if not path.is_file():
            raise CheckpointError(f"Checkpoint not found: {ref}")
        try:
            return Checkpoint.from_dict(read_json(path))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise CheckpointError(f"Invalid checkpoint file {path}: {exc}") from exc

    def list(self, session_id: str | None = None) -> list[Path]:
        """Checkpoint files, oldest first."""
        if not self.directory.is_dir():
            return []
        entries: list[tuple[int, str, Path]] = []
        for path in self.directory.glob("*.json"):
            if session_id and not path.stem.startswith(f"{session_id}-"):
                continue
            try:
                timestamp = int(read_json(path).get("timestamp", 0))
            except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
                log.debug(f"Skipping unreadable checkpoint {path.name}")
                continue
            entries.append((timestamp, path.name, path))
        entries.sort(key=lambda e: (e[0], len(e[1]), e[1]))
        return [path for _, _, path in entries]

    def latest(self, session_id: str | None = None) -> Checkpoint | None:
        paths = self.list(session_id)
        return self.read(paths[-1]) if paths else None
