"""Claude Code worker adapter."""

from __future__ import annotations

import json
import shutil

from nightly.engines.base import EngineBase, EngineResult


class ClaudeEngine(EngineBase):
    name = "claude"

    def __init__(self, command: str = "claude") -> None:
        self.command = command

    def build_cmd(self, prompt: str, session_token: str | None = None) -> list[str]:
        # Resolved path so the child process does not depend on PATH lookup.
        claude = shutil.which(self.command) or self.command
        cmd = [claude]
        if session_token:
            cmd += ["--resume", session_token]
        return cmd + [
            "-p",
            prompt,
            "--dangerously-skip-permissions",
            "--output-format",
            "json",
        ]

    def parse_output(self, raw: str) -> EngineResult:
        """Parse the single JSON object printed by ``--output-format json``.

        Non-JSON output is kept verbatim as the result text.
        """
        result = EngineResult()
        stripped = raw.strip()
        if not stripped:
            return result

        obj = None
        for candidate in (stripped, stripped.splitlines()[-1]):
            try:
                obj = json.loads(candidate)
                break
            except json.JSONDecodeError:
                continue

        if not isinstance(obj, dict):
            result.text = stripped
            return result

        result.text = str(obj.get("result") or "")
        session_id = obj.get("session_id")
        if session_id:
            result.session_token = str(session_id)
        usage = obj.get("usage") or {}
        try:
            result.input_tokens = int(usage.get("input_tokens", 0))
            result.output_tokens = int(usage.get("output_tokens", 0))
        except (ValueError, TypeError, AttributeError):
            pass
        duration = obj.get("duration_ms")
        if isinstance(duration, int):
            result.duration_ms = duration
        if obj.get("is_error"):
            result.error = result.text or str(obj.get("subtype") or "Worker reported an error")
        return result

    def check_available(self) -> str | None:
        if not shutil.which(self.command):
            return "Claude Code CLI not found. Install from https://github.com/anthropics/claude-code"
        return None
