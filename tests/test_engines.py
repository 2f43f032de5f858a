"""Tests for the Claude Code worker adapter."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from nightly.engines.base import EngineBase, EngineResult
from nightly.engines.claude import ClaudeEngine
from nightly.io_utils import read_text


def _proc(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.communicate.return_value = (stdout, stderr)
    proc.returncode = returncode
    proc.args = ["claude"]
    return proc


def _json(**fields) -> str:
    return json.dumps({"type": "result", **fields})


class TestClaudeEngineCommand:
    def test_build_cmd_uses_resolved_path_when_available(self) -> None:
        with patch("nightly.engines.claude.shutil.which", return_value="/usr/bin/claude"):
            cmd = ClaudeEngine().build_cmd("hello")

        assert cmd[0] == "/usr/bin/claude"
        assert cmd[cmd.index("-p") + 1] == "hello"
        assert cmd[cmd.index("--output-format") + 1] == "json"
        assert "--dangerously-skip-permissions" in cmd
        assert "--resume" not in cmd

    def test_build_cmd_falls_back_to_bare_name(self) -> None:
        with patch("nightly.engines.claude.shutil.which", return_value=None):
            assert ClaudeEngine("claude-dev").build_cmd("x")[0] == "claude-dev"

    def test_build_cmd_continues_session(self) -> None:
        with patch("nightly.engines.claude.shutil.which", return_value=None):
            cmd = ClaudeEngine().build_cmd("more", session_token="sess-42")
        assert cmd[1:3] == ["--resume", "sess-42"]

    def test_check_available(self) -> None:
        with patch("nightly.engines.claude.shutil.which", return_value=None):
            assert "not found" in ClaudeEngine().check_available()
        with patch("nightly.engines.claude.shutil.which", return_value="/usr/bin/claude"):
            assert ClaudeEngine().check_available() is None


class TestClaudeEngineParse:
    def test_extracts_result_session_and_usage(self) -> None:
        raw = _json(
            result="done",
            session_id="abc-123",
            usage={"input_tokens": 12, "output_tokens": 7},
            duration_ms=4200,
        )
        result = ClaudeEngine().parse_output(raw)
        assert result.text == "done"
        assert result.session_token == "abc-123"
        assert result.input_tokens == 12
        assert result.output_tokens == 7
        assert result.duration_ms == 4200
        assert result.error == ""

    def test_uses_last_line_when_preceded_by_noise(self) -> None:
        raw = "warming up...\n" + _json(result="ok")
        assert ClaudeEngine().parse_output(raw).text == "ok"

    def test_error_flag(self) -> None:
        result = ClaudeEngine().parse_output(_json(is_error=True, subtype="error_max_turns"))
        assert result.error == "error_max_turns"

    def test_non_json_output_is_kept(self) -> None:
        result = ClaudeEngine().parse_output("plain text answer")
        assert result.text == "plain text answer"
        assert result.error == ""

    def test_empty_output(self) -> None:
        assert ClaudeEngine().parse_output("  \n") == EngineResult()

    def test_bad_usage_values_are_ignored(self) -> None:
        result = ClaudeEngine().parse_output(_json(result="x", usage={"input_tokens": "many"}))
        assert result.input_tokens == 0


class TestEngineRun:
    def test_successful_run(self, tmp_path: Path) -> None:
        engine = ClaudeEngine()
        log_file = tmp_path / "logs" / "worker.log"
        with patch("nightly.engines.base.subprocess.Popen", return_value=_proc(_json(result="ok"), "progress\n")):
            result = engine.run("prompt", session_token="prev", log_file=log_file)

        assert result.success
        assert result.text == "ok"
        assert result.session_token == "prev"
        assert result.return_code == 0
        assert read_text(log_file) == "progress\n"

    def test_non_zero_exit_is_reported_not_raised(self) -> None:
        proc = _proc("", "429 Too Many Requests", returncode=1)
        with patch("nightly.engines.base.subprocess.Popen", return_value=proc):
            result = ClaudeEngine().run("prompt")

        assert not result.success
        assert result.error == "Rate limit exceeded: claude exited with code 1: 429 Too Many Requests"

    def test_usage_limit_is_normalized(self) -> None:
        proc = _proc(_json(is_error=True, result="Claude AI usage limit reached|1712345678"), returncode=1)
        with patch("nightly.engines.base.subprocess.Popen", return_value=proc):
            result = ClaudeEngine().run("prompt")
        assert result.error.startswith("Usage limit reached: Claude AI usage limit reached")

    def test_missing_binary(self) -> None:
        with patch("nightly.engines.base.subprocess.Popen", side_effect=FileNotFoundError):
            result = ClaudeEngine("nightly-missing-claude").run("prompt")
        assert not result.success
        assert result.error.endswith("not found")
        assert result.return_code == -1

    def test_timeout_terminates_process(self) -> None:
        proc = _proc()
        proc.poll.return_value = None
        with patch("nightly.engines.base.subprocess.Popen", return_value=proc), patch.object(
            EngineBase,
            "_communicate_with_interrupts",
            side_effect=subprocess.TimeoutExpired(["claude"], 5),
        ):
            result = ClaudeEngine().run("prompt", timeout=5)

        assert result.error == "claude execution timed out after 5s"
        assert not result.success
        proc.terminate.assert_called_once()

    def test_keyboard_interrupt_propagates(self) -> None:
        proc = _proc()
        proc.communicate.side_effect = KeyboardInterrupt
        with patch("nightly.engines.base.subprocess.Popen", return_value=proc):
            with pytest.raises(KeyboardInterrupt):
                ClaudeEngine().run("prompt")

    def test_changed_files_come_from_git_status(self, tmp_path: Path) -> None:
        with patch("nightly.engines.base.subprocess.Popen", return_value=_proc(_json(result="ok"))), patch(
            "nightly.engines.base.git_ops.is_repository", return_value=True
        ), patch("nightly.engines.base.git_ops.status_paths", return_value=["src/app.py"]):
            result = ClaudeEngine().run("prompt", cwd=tmp_path)
        assert result.changed_files == ["src/app.py"]
