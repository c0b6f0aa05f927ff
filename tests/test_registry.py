from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from apprentice.engine.audit import (
    AuditSink,
    CompositeAuditSink,
    JsonlAuditSink,
    LoggingAuditSink,
)
from apprentice.llm.client import ModelBackend
from apprentice.protocol.commands import ExecCommand
from apprentice.registry import (
    RegistryError,
    SessionRegistry,
    SessionSettings,
    WorkerLauncher,
    is_valid_agent_name,
    worker_name_for,
)

REPORT = json.dumps({"commands": [{"cmd": "Report", "title": "done", "sections": []}]})


class RecordingLauncher(WorkerLauncher):
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def start(self, worker_name: str) -> None:
        self.events.append(("start", worker_name))

    def stop(self, worker_name: str) -> None:
        self.events.append(("stop", worker_name))


class ReportingBackend(ModelBackend):
    def complete(self, history) -> str:
        return REPORT


class StallingBackend(ModelBackend):
    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def complete(self, history) -> str:
        self.entered.set()
        self.release.wait(5)
        return REPORT


class QuietAudit(AuditSink):
    def record(self, event: str, **fields: object) -> None:
        return None


def _registry(tmp_path: Path, backend: ModelBackend | None = None, **kwargs) -> SessionRegistry:
    settings = SessionSettings(backoff_seconds=0.0, web_fetch_enabled=False)
    return SessionRegistry(
        base_dir=tmp_path / "agents",
        backend_factory=lambda _name: backend or ReportingBackend(),
        settings=settings,
        search_factory=None,
        audit_factory=lambda _name: QuietAudit(),
        **kwargs,
    )


@pytest.mark.parametrize(
    ("name", "valid"),
    [
        ("alpha", True),
        ("agent_7-b", True),
        ("a" * 32, True),
        ("", False),
        ("a" * 33, False),
        ("has space", False),
        ("../escape", False),
        ("dot.name", False),
    ],
)
def test_agent_name_validation(name: str, valid: bool) -> None:
    assert is_valid_agent_name(name) is valid


def test_summon_creates_isolated_sandbox_and_starts_worker(tmp_path: Path) -> None:
    launcher = RecordingLauncher()
    registry = _registry(tmp_path, launcher=launcher)

    alpha = registry.summon("alpha")
    beta = registry.summon("beta")

    assert alpha.sandbox_root == tmp_path / "agents" / "alpha"
    assert alpha.sandbox_root.is_dir()
    assert alpha.store is not beta.store
    assert launcher.events == [("start", "apprentice-alpha"), ("start", "apprentice-beta")]
    assert worker_name_for("alpha") == "apprentice-alpha"


def test_summon_rejects_invalid_and_duplicate_names(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    registry.summon("alpha")

    with pytest.raises(RegistryError, match="Invalid agent name"):
        registry.summon("bad name")
    with pytest.raises(RegistryError, match="already exists"):
        registry.summon("alpha")


def test_get_unknown_agent_raises(tmp_path: Path) -> None:
    with pytest.raises(RegistryError, match="not found"):
        _registry(tmp_path).get("ghost")


def test_run_completes_session_and_lists_outcome(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    registry.summon("beta")
    registry.summon("alpha")

    outcome = registry.run("alpha", "say done")

    assert outcome.reason == "reported"
    assert registry.get("alpha").history.snapshot() == outcome.history
    listing = registry.list_sessions()
    assert [entry["name"] for entry in listing] == ["alpha", "beta"]
    assert listing[0]["outcome"] == "reported"
    assert listing[0]["worker"] == "apprentice-alpha"
    assert listing[1]["outcome"] is None


def test_remove_cancels_running_session_and_stops_worker(tmp_path: Path) -> None:
    backend = StallingBackend()
    launcher = RecordingLauncher()
    registry = _registry(tmp_path, backend=backend, launcher=launcher)
    registry.summon("alpha")

    session = registry.start("alpha", "goal")
    try:
        assert backend.entered.wait(5)
        registry.remove("alpha", grace_period=5.0)
    finally:
        backend.release.set()

    assert not session.running
    assert session.outcome is not None and session.outcome.reason == "cancelled"
    assert launcher.events[-1] == ("stop", "apprentice-alpha")
    with pytest.raises(RegistryError):
        registry.get("alpha")


def test_removed_name_can_be_summoned_again(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    registry.summon("alpha")
    registry.remove("alpha", purge_sandbox=True)

    assert not (tmp_path / "agents" / "alpha").exists()
    assert registry.summon("alpha").name == "alpha"


def test_failed_session_build_stops_worker(tmp_path: Path) -> None:
    launcher = RecordingLauncher()

    def broken_factory(_name: str) -> ModelBackend:
        raise RuntimeError("no credentials")

    registry = SessionRegistry(
        base_dir=tmp_path,
        backend_factory=broken_factory,
        launcher=launcher,
        search_factory=None,
    )

    with pytest.raises(RuntimeError):
        registry.summon("alpha")

    assert launcher.events == [("start", "apprentice-alpha"), ("stop", "apprentice-alpha")]
    assert registry.list_sessions() == []


def test_run_rejects_session_already_running_in_background(tmp_path: Path) -> None:
    backend = StallingBackend()
    registry = _registry(tmp_path, backend=backend)
    registry.summon("alpha")

    session = registry.start("alpha", "goal")
    try:
        assert backend.entered.wait(5)
        with pytest.raises(RegistryError, match="already running"):
            registry.run("alpha", "second goal")
        with pytest.raises(RegistryError, match="already running"):
            registry.start("alpha", "third goal")
    finally:
        backend.release.set()
        session.thread.join(5)

    assert not session.running
    assert session.outcome is not None and session.outcome.reason == "reported"
    assert registry.run("alpha", "again").reason == "reported"


def test_remove_drops_per_name_lock(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    registry.summon("alpha")
    registry.run("alpha", "goal")

    registry.remove("alpha")

    assert "alpha" not in registry._name_locks


def test_default_audit_reaches_logging_and_session_log(tmp_path: Path) -> None:
    registry = SessionRegistry(
        base_dir=tmp_path / "agents",
        backend_factory=lambda _name: ReportingBackend(),
        settings=SessionSettings(log_dir=str(tmp_path / "logs"), web_fetch_enabled=False),
        search_factory=None,
    )

    session = registry.summon("alpha")
    registry.run("alpha", "goal")

    audit = session.controller.engine.audit
    assert isinstance(audit, CompositeAuditSink)
    assert [type(sink) for sink in audit.sinks] == [LoggingAuditSink, JsonlAuditSink]
    [log_file] = list((tmp_path / "logs").glob("session-*.log"))
    assert json.loads(log_file.read_text().splitlines()[-1])["event"] == "report"


def test_exec_denylist_from_settings_blocks_command(tmp_path: Path) -> None:
    registry = SessionRegistry(
        base_dir=tmp_path / "agents",
        backend_factory=lambda _name: ReportingBackend(),
        settings=SessionSettings(web_fetch_enabled=False, exec_denylist=("rm",)),
        search_factory=None,
        audit_factory=lambda _name: QuietAudit(),
    )
    session = registry.summon("alpha")
    (session.sandbox_root / "x").write_text("keep")

    result = session.controller.engine.execute(ExecCommand(command="rm", args=("-rf", "x")))

    assert not result.ok
    assert result.error_kind == "PermissionError"
    assert "denylist" in result.message
    assert (session.sandbox_root / "x").read_text() == "keep"


def test_exec_allowlist_from_settings_rejects_other_commands(tmp_path: Path) -> None:
    registry = SessionRegistry(
        base_dir=tmp_path / "agents",
        backend_factory=lambda _name: ReportingBackend(),
        settings=SessionSettings(web_fetch_enabled=False, exec_allowlist=("git",)),
        search_factory=None,
        audit_factory=lambda _name: QuietAudit(),
    )
    session = registry.summon("alpha")

    result = session.controller.engine.execute(ExecCommand(command="/bin/ls"))

    assert result.error_kind == "PermissionError"
    assert "allowlist" in result.message
