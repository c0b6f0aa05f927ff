"""Base process runner primitives with policy hooks."""

from __future__ import annotations

import abc
import locale
import logging
import os
import re
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

PolicyHook = Callable[[Sequence[str]], bool]

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)\s+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
    )
]


def command_name_hook(names: Sequence[str]) -> PolicyHook:
    """Build a hook matching argv[0] by basename, so ``/bin/rm`` matches ``rm``."""
    wanted = frozenset(names)

    def matches(argv: Sequence[str]) -> bool:
        return bool(argv) and os.path.basename(argv[0]) in wanted

    return matches


@dataclass(slots=True)
class ProcessResult:
    """Result of running one argv command."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False
    truncated: bool = False
    duration_seconds: float = 0.0
    blocked: bool = False
    block_reason: str | None = None


class ProcessRunner(abc.ABC):
    """Abstract runner for argv-style process execution (never via a shell string)."""

    def __init__(
        self,
        *,
        allowlist_hook: PolicyHook | None = None,
        denylist_hook: PolicyHook | None = None,
    ) -> None:
        self.allowlist_hook = allowlist_hook
        self.denylist_hook = denylist_hook

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly runner name."""

    @abc.abstractmethod
    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | None = None,
        timeout: float | None = None,
        max_output_bytes: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ProcessResult:
        """Run a command and return a normalized result."""

    def enforce_guardrails(self, argv: Sequence[str]) -> str | None:
        """Run policy checks and return a block reason when rejected."""
        if self.denylist_hook and self.denylist_hook(argv):
            return "command blocked by denylist policy"
        if self.allowlist_hook and not self.allowlist_hook(argv):
            return "command rejected by allowlist policy"
        return None

    def log_request(self, argv: Sequence[str], *, timeout: float | None) -> None:
        LOGGER.info(
            "command_request",
            extra={
                "runner": self.name,
                "command": self._sanitize_command(" ".join(argv)),
                "timeout": timeout,
            },
        )

    def log_result(self, result: ProcessResult) -> None:
        LOGGER.info(
            "command_result",
            extra={
                "runner": self.name,
                "returncode": result.returncode,
                "timed_out": result.timed_out,
                "cancelled": result.cancelled,
                "truncated": result.truncated,
                "duration_seconds": round(result.duration_seconds, 4),
                "blocked": result.blocked,
                "stdout_length": len(result.stdout),
                "stderr_length": len(result.stderr),
            },
        )

    @staticmethod
    def monotonic_now() -> float:
        return time.monotonic()

    def _sanitize_command(self, command: str) -> str:
        sanitized = command
        for pattern in _SECRET_PATTERNS:
            sanitized = pattern.sub(r"\1***", sanitized)
        return sanitized


def normalize_output(payload: bytes | str | None, *, limit: int | None = None) -> tuple[str, bool]:
    """Decode captured output, capping it at ``limit`` bytes.

    Returns the text and whether it was truncated.
    """
    if payload is None:
        return "", False
    if isinstance(payload, str):
        payload = payload.encode("utf-8")

    truncated = False
    if limit is not None and len(payload) > limit:
        payload = payload[:limit]
        truncated = True

    for encoding in ("utf-8", "utf-8-sig", locale.getpreferredencoding(False), "cp1252"):
        try:
            return payload.decode(encoding), truncated
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace"), truncated
