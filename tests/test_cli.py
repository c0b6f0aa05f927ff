from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from apprentice import cli
from apprentice.agent.models import SessionOutcome
from apprentice.config import AppConfig
from apprentice.llm.client import ModelBackend


def _fake_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        api_key=None,
        model="claude-test",
        api_url="https://api.anthropic.com/v1/messages",
        max_tokens=1024,
        system_prompt="prompt",
        sandbox_root=str(tmp_path / "agents"),
        mount_point="/sandbox",
        log_dir=str(tmp_path / "logs"),
        max_turns=5,
        max_protocol_failures=1,
        max_backend_attempts=1,
        backend_backoff_seconds=0.01,
        model_timeout=5.0,
        exec_timeout=5.0,
        max_output_bytes=4096,
        max_read_bytes=4096,
        fetch_timeout=5.0,
        max_fetch_bytes=4096,
        web_fetch_enabled=False,
        history_limit=100,
    )


class ScriptedBackend(ModelBackend):
    def __init__(self, reply: str) -> None:
        self.reply = reply

    def complete(self, history) -> str:
        return self.reply


def _patch_config(monkeypatch: pytest.MonkeyPatch, config: AppConfig) -> None:
    monkeypatch.setattr(
        cli,
        "AppConfig",
        type("FakeConfig", (), {"from_env": staticmethod(lambda: config)}),
    )


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args([])

    assert args.goal is None
    assert args.sandbox is None
    assert args.name == "apprentice"
    assert args.max_turns is None
    assert args.serve_worker is False


def test_parser_accepts_overrides() -> None:
    args = cli.build_parser().parse_args(
        ["--sandbox", "./agents", "--name", "alpha", "--max-turns", "4", "write docs"]
    )

    assert args.sandbox == "./agents"
    assert args.name == "alpha"
    assert args.max_turns == 4
    assert args.goal == "write docs"


def test_main_rejects_invalid_agent_name(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr("sys.argv", ["apprentice", "--name", "bad name", "goal"])
    _patch_config(monkeypatch, _fake_config(tmp_path))

    assert cli.main() == 1
    assert "Invalid agent name" in capsys.readouterr().out


def test_main_requires_goal(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr("sys.argv", ["apprentice"])
    monkeypatch.setattr("builtins.input", lambda _prompt="": "   ")
    _patch_config(monkeypatch, _fake_config(tmp_path))

    assert cli.main() == 1
    assert "No goal provided." in capsys.readouterr().out


def test_main_rejects_sandbox_that_is_a_file(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    not_a_dir = tmp_path / "file.txt"
    not_a_dir.write_text("x")
    monkeypatch.setattr("sys.argv", ["apprentice", "--sandbox", str(not_a_dir), "goal"])
    _patch_config(monkeypatch, _fake_config(tmp_path))

    assert cli.main() == 1
    assert "Invalid sandbox directory" in capsys.readouterr().out


def test_main_runs_session_and_prints_report(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    reply = json.dumps(
        {
            "commands": [
                {"cmd": "Write", "path": "/sandbox/a.md", "content": "x"},
                {"cmd": "Report", "title": "t", "sections": [{"title": "S", "content": "ok"}]},
            ]
        }
    )
    monkeypatch.setattr("sys.argv", ["apprentice", "--name", "alpha", "write a file"])
    _patch_config(monkeypatch, _fake_config(tmp_path))
    monkeypatch.setattr(cli, "build_model_client", lambda _config: ScriptedBackend(reply))

    assert cli.main() == 0

    out = capsys.readouterr().out
    assert "=== Session ended: reported after 1 turn(s) ===" in out
    assert "[report]" in out
    assert "## S" in out
    assert (tmp_path / "agents" / "alpha" / "a.md").read_text() == "x"
    assert list((tmp_path / "logs").glob("turns-*.log"))


def test_main_exit_code_reflects_terminal_reason(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr("sys.argv", ["apprentice", "--sandbox", str(tmp_path / "box"), "goal"])
    _patch_config(monkeypatch, _fake_config(tmp_path))
    monkeypatch.setattr(cli, "build_model_client", lambda _config: ScriptedBackend("no json"))

    assert cli.main() == cli.EXIT_CODES["protocol_failure_limit_reached"]
    assert "protocol_failure_limit_reached after 2 turn(s)" in capsys.readouterr().out


def test_max_turns_flag_overrides_config(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    think = json.dumps({"commands": [{"cmd": "Think", "reasoning": "hmm"}]})
    monkeypatch.setattr("sys.argv", ["apprentice", "--max-turns", "2", "goal"])
    _patch_config(monkeypatch, _fake_config(tmp_path))
    monkeypatch.setattr(cli, "build_model_client", lambda _config: ScriptedBackend(think))

    assert cli.main() == cli.EXIT_CODES["turn_limit_reached"]


def test_serve_worker_answers_requests_on_stdio(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    stdin = io.TextIOWrapper(io.BytesIO(b'{"id": "1", "op": "status"}\n'))
    stdout = io.TextIOWrapper(io.BytesIO())
    monkeypatch.setattr("sys.argv", ["apprentice", "--serve-worker", "--name", "alpha"])
    monkeypatch.setattr("sys.stdin", stdin)
    monkeypatch.setattr("sys.stdout", stdout)
    _patch_config(monkeypatch, _fake_config(tmp_path))
    monkeypatch.setattr(cli, "build_model_client", lambda _config: ScriptedBackend("{}"))

    assert cli.main() == 0

    response = json.loads(stdout.buffer.getvalue())
    assert response["id"] == "1"
    assert response["status"]["name"] == "alpha"


def test_render_outcome_includes_detail_and_trims_report() -> None:
    rendered = cli.render_outcome(
        SessionOutcome(reason="reported", turns=3, report="# Done\n\n", detail="note")
    )

    assert rendered == "=== Session ended: reported after 3 turn(s) ===\nnote\n[report]\n# Done"
