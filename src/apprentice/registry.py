"""Registry of active agent sessions.

The registry is an explicit object rather than module state: each controller
process (or test) owns its own instance. Summon and remove are serialized per
agent name so a name can never be created twice or removed while its
creation is still in flight.
"""

from __future__ import annotations

import abc
import logging
import re
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from apprentice.agent.loop import TurnController
from apprentice.agent.models import History, SessionOutcome
from apprentice.agent.store import SessionStore
from apprentice.config import AppConfig
from apprentice.engine.audit import (
    AuditSink,
    CompositeAuditSink,
    JsonlAuditSink,
    LoggingAuditSink,
)
from apprentice.engine.executor import EngineLimits, ExecutionEngine
from apprentice.engine.sandbox import DEFAULT_MOUNT_POINT, Sandbox
from apprentice.llm.client import ModelBackend
from apprentice.net.fetch import HttpFetcher, UrllibFetcher
from apprentice.shell import (
    ProcessRunner,
    SubprocessRunner,
    TextSearch,
    command_name_hook,
    create_text_search,
)

LOGGER = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,32}$")
WORKER_PREFIX = "apprentice-"

BackendFactory = Callable[[str], ModelBackend]


class RegistryError(Exception):
    """Invalid name, duplicate summon or unknown session."""


class WorkerLauncher(abc.ABC):
    """Container lifecycle collaborator: start and stop the worker for a name."""

    @abc.abstractmethod
    def start(self, worker_name: str) -> None: ...

    @abc.abstractmethod
    def stop(self, worker_name: str) -> None: ...


def is_valid_agent_name(name: str) -> bool:
    return bool(_NAME_PATTERN.match(name))


def worker_name_for(name: str) -> str:
    return f"{WORKER_PREFIX}{name}"


@dataclass(slots=True)
class SessionSettings:
    max_turns: int = 30
    max_protocol_failures: int = 3
    max_backend_attempts: int = 3
    backoff_seconds: float = 1.0
    mount_point: str = DEFAULT_MOUNT_POINT
    limits: EngineLimits = field(default_factory=EngineLimits)
    log_dir: str | None = None
    web_fetch_enabled: bool = True
    fetch_timeout: float = 30.0
    max_fetch_bytes: int = 1024 * 1024
    exec_allowlist: tuple[str, ...] = ()
    exec_denylist: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: AppConfig) -> SessionSettings:
        return cls(
            max_turns=config.max_turns,
            max_protocol_failures=config.max_protocol_failures,
            max_backend_attempts=config.max_backend_attempts,
            backoff_seconds=config.backend_backoff_seconds,
            mount_point=config.mount_point,
            limits=EngineLimits(
                exec_timeout=config.exec_timeout,
                max_output_bytes=config.max_output_bytes,
                max_read_bytes=config.max_read_bytes,
            ),
            log_dir=config.log_dir,
            web_fetch_enabled=config.web_fetch_enabled,
            fetch_timeout=config.fetch_timeout,
            max_fetch_bytes=config.max_fetch_bytes,
            exec_allowlist=config.exec_allowlist,
            exec_denylist=config.exec_denylist,
        )


def _idle_event() -> threading.Event:
    event = threading.Event()
    event.set()
    return event


@dataclass(slots=True)
class AgentSession:
    """One agent: its sandbox, store, history and controller share a lifetime."""

    name: str
    sandbox_root: Path
    store: SessionStore
    history: History
    controller: TurnController
    thread: threading.Thread | None = None
    outcome: SessionOutcome | None = None
    # Cleared while a run (foreground or background) owns the controller.
    idle: threading.Event = field(default_factory=_idle_event)

    @property
    def running(self) -> bool:
        return not self.idle.is_set()

    def describe(self) -> dict[str, object]:
        return {
            "name": self.name,
            "worker": worker_name_for(self.name),
            "state": self.controller.state,
            "turns": self.controller.turns,
            "running": self.running,
            "outcome": self.outcome.reason if self.outcome else None,
        }


class SessionRegistry:
    def __init__(
        self,
        *,
        base_dir: str | Path,
        backend_factory: BackendFactory,
        settings: SessionSettings | None = None,
        launcher: WorkerLauncher | None = None,
        runner: ProcessRunner | None = None,
        search: TextSearch | None = None,
        search_factory: Callable[[], TextSearch | None] | None = create_text_search,
        fetcher: HttpFetcher | None = None,
        audit_factory: Callable[[str], AuditSink] | None = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.backend_factory = backend_factory
        self.settings = settings or SessionSettings()
        self.launcher = launcher
        self.runner = runner
        if search is None and search_factory is not None:
            search = search_factory()
        self.search = search
        self.fetcher = fetcher
        self.audit_factory = audit_factory
        self._sessions: dict[str, AgentSession] = {}
        self._lock = threading.Lock()
        self._name_locks: dict[str, threading.Lock] = {}

    def summon(self, name: str) -> AgentSession:
        if not is_valid_agent_name(name):
            raise RegistryError(
                "Invalid agent name. Names must be 1-32 characters, alphanumeric with"
                " hyphens/underscores only"
            )
        with self._name_lock(name):
            with self._lock:
                if name in self._sessions:
                    raise RegistryError(f"Agent {name} already exists")
            if self.launcher is not None:
                self.launcher.start(worker_name_for(name))
            try:
                session = self._build_session(name)
            except Exception:
                if self.launcher is not None:
                    self.launcher.stop(worker_name_for(name))
                raise
            with self._lock:
                self._sessions[name] = session
        LOGGER.info("agent_summoned", extra={"agent": name, "sandbox": str(session.sandbox_root)})
        return session

    def get(self, name: str) -> AgentSession:
        with self._lock:
            session = self._sessions.get(name)
        if session is None:
            raise RegistryError(f"Agent {name} not found")
        return session

    def list_sessions(self) -> list[dict[str, object]]:
        with self._lock:
            sessions = sorted(self._sessions.values(), key=lambda item: item.name)
        return [session.describe() for session in sessions]

    def run(self, name: str, goal: str) -> SessionOutcome:
        """Run a session to completion on the calling thread."""
        session = self._claim(name)
        try:
            session.outcome = session.controller.run(goal)
        finally:
            session.idle.set()
        return session.outcome

    def start(self, name: str, goal: str) -> AgentSession:
        """Run a session on a background thread."""
        session = self._claim(name)

        def target() -> None:
            try:
                session.outcome = session.controller.run(goal)
            finally:
                session.idle.set()

        session.thread = threading.Thread(target=target, name=f"agent-{name}", daemon=True)
        try:
            session.thread.start()
        except RuntimeError:
            session.idle.set()
            raise
        return session

    def remove(self, name: str, *, grace_period: float = 5.0, purge_sandbox: bool = False) -> None:
        with self._name_lock(name):
            session = self.get(name)
            session.controller.cancel()
            if not session.idle.wait(grace_period):
                LOGGER.warning(
                    "agent_stop_grace_exceeded",
                    extra={"agent": name, "grace_period": grace_period},
                )
            if self.launcher is not None:
                self.launcher.stop(worker_name_for(name))
            with self._lock:
                del self._sessions[name]
                self._name_locks.pop(name, None)
            if purge_sandbox:
                shutil.rmtree(session.sandbox_root, ignore_errors=True)
        LOGGER.info("agent_removed", extra={"agent": name})

    def _name_lock(self, name: str) -> threading.Lock:
        with self._lock:
            return self._name_locks.setdefault(name, threading.Lock())

    def _claim(self, name: str) -> AgentSession:
        """Mark a session busy; only one run may drive a controller at a time."""
        with self._name_lock(name):
            session = self.get(name)
            if session.running:
                raise RegistryError(f"Agent {name} is already running")
            session.idle.clear()
        return session

    def _build_session(self, name: str) -> AgentSession:
        settings = self.settings
        sandbox_root = self.base_dir / name
        sandbox_root.mkdir(parents=True, exist_ok=True)
        store = SessionStore()
        history = History()
        cancel_event = threading.Event()
        if self.audit_factory is not None:
            audit = self.audit_factory(name)
        elif settings.log_dir:
            audit = CompositeAuditSink(
                LoggingAuditSink(name), JsonlAuditSink(settings.log_dir, session=name)
            )
        else:
            audit = LoggingAuditSink(name)
        runner = self.runner
        if runner is None and (settings.exec_allowlist or settings.exec_denylist):
            runner = SubprocessRunner(
                allowlist_hook=(
                    command_name_hook(settings.exec_allowlist) if settings.exec_allowlist else None
                ),
                denylist_hook=(
                    command_name_hook(settings.exec_denylist) if settings.exec_denylist else None
                ),
            )
        fetcher = self.fetcher
        if fetcher is None and settings.web_fetch_enabled:
            fetcher = UrllibFetcher(
                timeout=settings.fetch_timeout,
                max_bytes=settings.max_fetch_bytes,
            )
        engine = ExecutionEngine(
            sandbox=Sandbox(sandbox_root, mount_point=settings.mount_point),
            store=store,
            runner=runner,
            search=self.search,
            fetcher=fetcher,
            audit=audit,
            limits=settings.limits,
            cancel_event=cancel_event,
        )
        controller = TurnController(
            backend=self.backend_factory(name),
            engine=engine,
            history=history,
            log_dir=settings.log_dir,
            session_name=name,
            max_turns=settings.max_turns,
            max_protocol_failures=settings.max_protocol_failures,
            max_backend_attempts=settings.max_backend_attempts,
            backoff_seconds=settings.backoff_seconds,
            cancel_event=cancel_event,
        )
        return AgentSession(
            name=name,
            sandbox_root=sandbox_root,
            store=store,
            history=history,
            controller=controller,
        )
