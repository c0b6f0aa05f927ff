"""Data models used by the turn controller and execution engine."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Literal

from apprentice.errors import ErrorKind

Role = Literal["user", "assistant", "system"]
TerminalReason = Literal[
    "reported",
    "turn_limit_reached",
    "protocol_failure_limit_reached",
    "backend_unavailable",
    "fatal",
    "cancelled",
]


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    """A single message in the session history."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class History:
    """Append-only conversation history owned by one session."""

    def __init__(self, turns: list[ConversationTurn] | None = None) -> None:
        self._turns: list[ConversationTurn] = list(turns) if turns else []

    def append(self, role: Role, content: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, content=content)
        self._turns.append(turn)
        return turn

    def snapshot(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(tuple(self._turns))


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one command: a success payload or an error kind and message."""

    cmd: str
    ok: bool
    data: object = None
    error_kind: ErrorKind | None = None
    message: str | None = None

    @classmethod
    def success(cls, cmd: str, data: object = None) -> ExecutionResult:
        return cls(cmd=cmd, ok=True, data=data)

    @classmethod
    def failure(cls, cmd: str, kind: ErrorKind, message: str) -> ExecutionResult:
        return cls(cmd=cmd, ok=False, error_kind=kind, message=message)

    def to_dict(self) -> dict[str, object]:
        if self.ok:
            return {"cmd": self.cmd, "ok": True, "data": self.data}
        return {
            "cmd": self.cmd,
            "ok": False,
            "error": {"kind": self.error_kind, "message": self.message},
        }


@dataclass(slots=True)
class SessionOutcome:
    """Terminal state of a session, reported to the operator."""

    reason: TerminalReason
    turns: int
    history: tuple[ConversationTurn, ...] = ()
    report: str | None = None
    detail: str | None = None
    results: list[list[ExecutionResult]] = field(default_factory=list)
