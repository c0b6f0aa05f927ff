"""Error taxonomy shared by the protocol parser, engine and controller."""

from __future__ import annotations

from typing import Literal

ErrorKind = Literal[
    "ProtocolError",
    "ValidationError",
    "PermissionError",
    "NotFoundError",
    "InvalidTransition",
    "Timeout",
    "ResourceExceeded",
    "IOError",
    "ParseError",
    "UnavailableError",
    "BackendUnavailable",
    "Fatal",
]


class CommandError(Exception):
    """A recoverable failure reported back to the model as data."""

    kind: ErrorKind = "IOError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ProtocolError(CommandError):
    kind: ErrorKind = "ProtocolError"


class ValidationError(CommandError):
    kind: ErrorKind = "ValidationError"


class SandboxViolation(CommandError):
    kind: ErrorKind = "PermissionError"


class NotFoundError(CommandError):
    kind: ErrorKind = "NotFoundError"


class InvalidTransition(CommandError):
    kind: ErrorKind = "InvalidTransition"


class CommandTimeout(CommandError):
    kind: ErrorKind = "Timeout"


class ResourceExceeded(CommandError):
    kind: ErrorKind = "ResourceExceeded"


class SandboxIOError(CommandError):
    kind: ErrorKind = "IOError"


class ParseError(CommandError):
    kind: ErrorKind = "ParseError"

    def __init__(
        self,
        message: str,
        *,
        format_name: str,
        line: int | None = None,
        column: int | None = None,
    ) -> None:
        location = ""
        if line is not None:
            location = f" at line {line}" + (f", column {column}" if column is not None else "")
        super().__init__(f"{format_name} parse error{location}: {message}")
        self.format_name = format_name
        self.line = line
        self.column = column


class UnavailableError(CommandError):
    kind: ErrorKind = "UnavailableError"


class ModelBackendError(Exception):
    """The model capability failed for one attempt (HTTP, transport, decoding)."""


class FatalError(Exception):
    """Unrecoverable session fault; terminates the agent session."""

    kind: ErrorKind = "Fatal"
