"""Execution engine: runs one validated command and reports the outcome as data."""

from __future__ import annotations

import errno
import fnmatch
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from apprentice.agent.models import ExecutionResult
from apprentice.agent.store import SessionStore
from apprentice.engine.audit import AuditSink, AuditUnavailable, LoggingAuditSink
from apprentice.engine.parsers import parse_content
from apprentice.engine.sandbox import Sandbox
from apprentice.errors import (
    CommandError,
    CommandTimeout,
    FatalError,
    NotFoundError,
    ResourceExceeded,
    SandboxIOError,
    SandboxViolation,
    UnavailableError,
    ValidationError,
)
from apprentice.net.fetch import FetchError, FetchTimeout, FetchTooLarge, HttpFetcher
from apprentice.protocol.commands import (
    Command,
    DeleteCommand,
    EditCommand,
    ExecCommand,
    ListCommand,
    ParseCommand,
    PlanCommand,
    ReadCommand,
    RecallCommand,
    RememberCommand,
    ReportCommand,
    SearchCommand,
    StatusCommand,
    ThinkCommand,
    UpdatePlanCommand,
    WebFetchCommand,
    WriteCommand,
)
from apprentice.shell import ProcessRunner, SearchFailed, SubprocessRunner, TextSearch

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class EngineLimits:
    exec_timeout: float = 60.0
    max_output_bytes: int = 64 * 1024
    max_read_bytes: int = 1024 * 1024
    search_timeout: float = 30.0


class ExecutionEngine:
    """Executes commands for a single session against its sandbox and store."""

    def __init__(
        self,
        *,
        sandbox: Sandbox,
        store: SessionStore,
        runner: ProcessRunner | None = None,
        search: TextSearch | None = None,
        fetcher: HttpFetcher | None = None,
        audit: AuditSink | None = None,
        limits: EngineLimits | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.sandbox = sandbox
        self.store = store
        self.runner = runner or SubprocessRunner()
        self.search = search
        self.fetcher = fetcher
        self.audit = audit or LoggingAuditSink()
        self.limits = limits or EngineLimits()
        self.cancel_event = cancel_event or threading.Event()

    def execute(self, command: Command) -> ExecutionResult:
        """Run ``command``; every failure except ``FatalError`` comes back as data."""
        try:
            data = self._dispatch(command)
        except CommandError as exc:
            LOGGER.info(
                "command_failed",
                extra={"cmd": command.cmd, "error_kind": exc.kind, "error": exc.message},
            )
            return ExecutionResult.failure(command.cmd, exc.kind, exc.message)
        except FatalError:
            raise
        except MemoryError as exc:
            raise FatalError(f"Out of memory while executing {command.cmd}") from exc
        except Exception as exc:
            LOGGER.exception("command_crashed", extra={"cmd": command.cmd})
            return ExecutionResult.failure(
                command.cmd, "IOError", f"{command.cmd} failed unexpectedly: {exc}"
            )
        LOGGER.debug("command_succeeded", extra={"cmd": command.cmd})
        return ExecutionResult.success(command.cmd, data)

    def _dispatch(self, command: Command) -> object:
        match command:
            case ReadCommand(path=path):
                return self._read(path)
            case WriteCommand(path=path, content=content):
                return self._write(path, content)
            case EditCommand(path=path, pattern=pattern, replacement=replacement):
                return self._edit(path, pattern, replacement)
            case DeleteCommand(path=path):
                return self._delete(path)
            case ExecCommand(command=executable, args=args):
                return self._exec(executable, args)
            case ListCommand(path=path, pattern=pattern):
                return self._list(path, pattern)
            case SearchCommand(pattern=pattern, path=path, file_type=file_type):
                return self._search(pattern, path, file_type)
            case ThinkCommand(reasoning=reasoning):
                self._audit("think", reasoning=reasoning)
                return None
            case PlanCommand(tasks=tasks):
                plan = self.store.create_plan(tasks)
                self.store.check_integrity()
                return plan.to_dict()
            case UpdatePlanCommand(plan_id=plan_id, task_id=task_id, status=status):
                task = self.store.update_task(plan_id, task_id, status)
                self.store.check_integrity()
                return {"plan_id": plan_id, **task.to_dict()}
            case RememberCommand(key=key, value=value):
                self.store.remember(key, value)
                self.store.check_integrity()
                return f"Remembered: {key}"
            case RecallCommand(key=key):
                return self.store.recall(key)
            case WebFetchCommand(url=url, extract=extract):
                return self._web_fetch(url, extract)
            case ParseCommand(content=content, format=format_name):
                return parse_content(content, format_name)
            case StatusCommand(message=message, level=level):
                self._audit("status", message=message, level=level)
                return None
            case ReportCommand():
                report = render_report(command)
                self._audit("report", title=command.title, report=report)
                return report
        raise ValidationError(f"Unsupported command: {command!r}")

    def _read(self, path: str) -> str:
        target = self.sandbox.resolve(path)
        with _io_errors(path):
            size = target.stat().st_size
            if target.is_dir():
                raise IsADirectoryError(errno.EISDIR, "Is a directory", str(target))
            if size > self.limits.max_read_bytes:
                raise ResourceExceeded(
                    f"{path} is {size} bytes; read limit is {self.limits.max_read_bytes}"
                )
            return target.read_bytes().decode("utf-8", errors="replace")

    def _write(self, path: str, content: str) -> str:
        target = self.sandbox.resolve(path)
        with _io_errors(path):
            target.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(target, content.encode("utf-8"))
        return f"Wrote {len(content.encode('utf-8'))} bytes to {self.sandbox.relative(target)}"

    def _edit(self, path: str, pattern: str, replacement: str) -> dict[str, object]:
        target = self.sandbox.resolve(path)
        with _io_errors(path):
            original = target.read_bytes().decode("utf-8")
            occurrences = original.count(pattern)
            if occurrences == 0:
                raise NotFoundError(f"Pattern not found in {path}")
            _atomic_write(target, original.replace(pattern, replacement).encode("utf-8"))
        return {"path": self.sandbox.relative(target), "replacements": occurrences}

    def _delete(self, path: str) -> str:
        # A symlink is removed itself, never the file it points at.
        target = self.sandbox.resolve_entry(path)
        if target == self.sandbox.root:
            raise SandboxViolation("Refusing to delete the sandbox root")
        with _io_errors(path):
            target.unlink()
        return f"Deleted {self.sandbox.relative(target)}"

    def _exec(self, executable: str, args: tuple[str, ...]) -> dict[str, object]:
        try:
            result = self.runner.run(
                [executable, *args],
                cwd=str(self.sandbox.root),
                timeout=self.limits.exec_timeout,
                max_output_bytes=self.limits.max_output_bytes,
                cancel_event=self.cancel_event,
            )
        except FileNotFoundError as exc:
            raise NotFoundError(f"Executable not found: {executable}") from exc
        except ValueError as exc:
            # Popen rejects NUL bytes in argv.
            raise ValidationError(f"Exec: invalid command or argument: {exc}") from exc
        except OSError as exc:
            raise SandboxIOError(f"Failed to execute {executable}: {exc}") from exc

        if result.blocked:
            raise SandboxViolation(result.block_reason or "command blocked by policy")
        if result.timed_out:
            raise CommandTimeout(
                f"{executable} exceeded {self.limits.exec_timeout:.1f}s and was terminated"
            )
        if result.cancelled:
            raise CommandTimeout(f"{executable} was terminated because the session stopped")
        return {
            "exit_code": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "truncated": result.truncated,
            "duration": round(result.duration_seconds, 4),
        }

    def _list(self, path: str, pattern: str | None) -> list[dict[str, object]]:
        target = self.sandbox.resolve(path)
        entries: list[dict[str, object]] = []
        with _io_errors(path):
            for entry in target.iterdir():
                if pattern and not fnmatch.fnmatch(entry.name, pattern):
                    continue
                try:
                    stat = entry.stat()
                except OSError:
                    # Dangling symlinks and races with concurrent deletes.
                    continue
                entries.append(
                    {
                        "path": self.sandbox.relative(entry),
                        "is_dir": entry.is_dir(),
                        "size": stat.st_size,
                    }
                )
        return sorted(entries, key=lambda item: str(item["path"]))

    def _search(
        self, pattern: str, path: str | None, file_type: str | None
    ) -> list[dict[str, object]]:
        if self.search is None:
            raise UnavailableError("Text search tool (ripgrep) is not available in this session")
        root = self.sandbox.resolve(path or ".")
        if not root.exists():
            raise NotFoundError(f"No such file or directory: {path}")
        try:
            matches = self.search.search(
                pattern,
                str(root),
                file_type=file_type,
                timeout=self.limits.search_timeout,
                cancel_event=self.cancel_event,
            )
        except TimeoutError as exc:
            raise CommandTimeout(str(exc)) from exc
        except SearchFailed as exc:
            raise SandboxIOError(f"Search failed: {exc}") from exc
        except FileNotFoundError as exc:
            raise UnavailableError(f"Text search tool could not be started: {exc}") from exc
        return [
            {
                "file": self.sandbox.relative(Path(match.file)),
                "line": match.line,
                "content": match.content,
            }
            for match in matches
        ]

    def _web_fetch(self, url: str, extract: str | None) -> dict[str, object]:
        try:
            scheme = urlparse(url).scheme
        except ValueError as exc:
            raise ValidationError(f"WebFetch: malformed URL {url!r}: {exc}") from exc
        if scheme not in {"http", "https"}:
            raise ValidationError(f"WebFetch supports http and https URLs only: {url}")
        if self.fetcher is None:
            raise UnavailableError("Outbound HTTP fetch is not available in this session")
        try:
            response = self.fetcher.fetch(url)
        except FetchTimeout as exc:
            raise CommandTimeout(str(exc)) from exc
        except FetchTooLarge as exc:
            raise ResourceExceeded(str(exc)) from exc
        except FetchError as exc:
            raise SandboxIOError(str(exc)) from exc
        return {**response.to_dict(), "extract": extract}

    def _audit(self, event: str, **fields: object) -> None:
        try:
            self.audit.record(event, **fields)
        except AuditUnavailable as exc:
            raise UnavailableError(str(exc)) from exc


def render_report(command: ReportCommand) -> str:
    parts = [f"# {command.title}\n"]
    for section in command.sections:
        parts.append(f"## {section.title}\n\n{section.content}\n")
    return "\n".join(parts)


@contextmanager
def _io_errors(path: str) -> Iterator[None]:
    """Map filesystem exceptions raised in the block to command errors for ``path``."""
    try:
        yield
    except CommandError:
        raise
    except FileNotFoundError as exc:
        raise NotFoundError(f"No such file or directory: {path}") from exc
    except UnicodeDecodeError as exc:
        raise SandboxIOError(f"{path} is not valid UTF-8 text") from exc
    except OSError as exc:
        raise SandboxIOError(f"{path}: {exc.strerror or exc}") from exc


def _atomic_write(target: Path, payload: bytes) -> None:
    fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        if target.exists():
            os.chmod(temp_name, target.stat().st_mode & 0o7777)
        os.replace(temp_name, target)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise
