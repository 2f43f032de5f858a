"""Base class for worker adapters (the external code-generation CLI)."""

from __future__ import annotations

import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from nightly import git_ops
from nightly.engine_errors import looks_like_rate_limit, looks_like_usage_limit
from nightly.io_utils import open_text


@dataclass
class EngineResult:
    """Uniform result from one worker invocation."""

    success: bool = False
    text: str = ""
    error: str = ""
    changed_files: list[str] = field(default_factory=list)
    session_token: str | None = None
    duration_ms: int = 0
    return_code: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class EngineBase(ABC):
    """Abstract worker adapter.  Subclasses implement ``build_cmd`` and ``parse_output``."""

    name: str = "base"

    @abstractmethod
    def build_cmd(self, prompt: str, session_token: str | None = None) -> list[str]:
        """Return the CLI command list for *prompt*, continuing *session_token* if given."""
        ...

    @abstractmethod
    def parse_output(self, raw: str) -> EngineResult:
        """Parse raw stdout into an :class:`EngineResult`."""
        ...

    def check_available(self) -> str | None:
        """Return an error message if the worker CLI is not available, else None."""
        cmd_name = self.build_cmd("test")[0]
        if not shutil.which(cmd_name):
            return f"{cmd_name} not found in PATH"
        return None

    def run(
        self,
        prompt: str,
        *,
        cwd: Path | None = None,
        timeout: int | None = None,
        session_token: str | None = None,
        log_file: Path | None = None,
    ) -> EngineResult:
        """Execute the worker synchronously and return the parsed result.

        Process failures are reported through ``result.error`` rather than
        raised; the caller decides whether to classify and retry them.
        """
        cmd = self.build_cmd(prompt, session_token)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
            )
        except FileNotFoundError:
            return EngineResult(error=f"{cmd[0]} not found", return_code=-1)

        try:
            proc_stdout, proc_stderr = self._communicate_with_interrupts(proc, timeout=timeout)
        except subprocess.TimeoutExpired:
            self._terminate_process(proc)
            return EngineResult(
                error=f"{self.name} execution timed out after {timeout}s",
                return_code=-1,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except KeyboardInterrupt:
            self._terminate_process(proc)
            raise

        elapsed_ms = int((time.monotonic() - start) * 1000)

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with open_text(log_file, "a") as f:
                if proc_stderr:
                    f.write(proc_stderr)

        result = self.parse_output(proc_stdout or "")
        result.return_code = proc.returncode
        if not result.duration_ms:
            result.duration_ms = elapsed_ms
        if result.session_token is None:
            result.session_token = session_token

        if proc.returncode != 0 and not result.error:
            output = (proc_stderr or "").strip() or (proc_stdout or "").strip() or "No output captured"
            result.error = f"{self.name} exited with code {proc.returncode}: {output}"

        result.error = self._normalize_error(result.error)
        result.success = proc.returncode == 0 and not result.error

        if cwd is not None and git_ops.is_repository(cwd):
            result.changed_files = git_ops.status_paths(cwd)

        return result

    @staticmethod
    def _normalize_error(error: str) -> str:
        """Give limit errors a canonical prefix while keeping the original text."""
        if not error:
            return ""
        if looks_like_usage_limit(error) and not error.startswith("Usage limit"):
            return f"Usage limit reached: {error}"
        if looks_like_rate_limit(error) and not error.startswith("Rate limit"):
            return f"Rate limit exceeded: {error}"
        return error

    @staticmethod
    def _communicate_with_interrupts(
        proc: subprocess.Popen[str],
        *,
        timeout: int | None,
    ) -> tuple[str, str]:
        """Read process output while remaining responsive to KeyboardInterrupt."""
        if timeout is None:
            return proc.communicate()

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise subprocess.TimeoutExpired(proc.args, timeout)

            wait_timeout = min(0.2, remaining)
            try:
                return proc.communicate(timeout=wait_timeout)
            except subprocess.TimeoutExpired:
                continue

    @staticmethod
    def _terminate_process(proc: subprocess.Popen[str]) -> None:
        """Terminate a subprocess promptly (best effort)."""
        try:
            if proc.poll() is None:
                proc.terminate()
            proc.wait(timeout=2)
            return
        except (OSError, subprocess.TimeoutExpired):
            pass

        try:
            if proc.poll() is None:
                proc.kill()
            proc.wait(timeout=2)
        except (OSError, subprocess.TimeoutExpired):
            pass
