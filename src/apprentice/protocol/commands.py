"""Command batch wire format and per-command validation.

A model reply is a JSON object ``{"commands": [...]}``. Each entry carries a
``cmd`` discriminator plus the fields of that command kind. Parsing happens in
two stages: :func:`parse_batch` rejects replies that are not a batch at all
(``ProtocolError``), and :func:`validate_command` checks a single entry
(``ValidationError``) without affecting its siblings.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import ClassVar, Literal, cast

from apprentice.errors import ProtocolError, ValidationError

SCHEMA_VERSION = "1"

TaskStatus = Literal["pending", "in_progress", "completed", "failed"]
DataFormat = Literal["json", "yaml", "toml", "xml"]
StatusLevel = Literal["info", "warning", "error", "success"]

VALID_TASK_STATUSES: tuple[TaskStatus, ...] = ("pending", "in_progress", "completed", "failed")
VALID_DATA_FORMATS: tuple[DataFormat, ...] = ("json", "yaml", "toml", "xml")
VALID_STATUS_LEVELS: tuple[StatusLevel, ...] = ("info", "warning", "error", "success")

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*\n([\s\S]*?)\n?```\s*$", re.IGNORECASE)

RawEntry = dict[str, object]


@dataclass(frozen=True, slots=True)
class Section:
    title: str
    content: str


@dataclass(frozen=True, slots=True)
class ReadCommand:
    cmd: ClassVar[str] = "Read"
    path: str


@dataclass(frozen=True, slots=True)
class WriteCommand:
    cmd: ClassVar[str] = "Write"
    path: str
    content: str


@dataclass(frozen=True, slots=True)
class EditCommand:
    cmd: ClassVar[str] = "Edit"
    path: str
    pattern: str
    replacement: str


@dataclass(frozen=True, slots=True)
class DeleteCommand:
    cmd: ClassVar[str] = "Delete"
    path: str


@dataclass(frozen=True, slots=True)
class ExecCommand:
    cmd: ClassVar[str] = "Exec"
    command: str
    args: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ListCommand:
    cmd: ClassVar[str] = "List"
    path: str
    pattern: str | None = None


@dataclass(frozen=True, slots=True)
class SearchCommand:
    cmd: ClassVar[str] = "Search"
    pattern: str
    path: str | None = None
    file_type: str | None = None


@dataclass(frozen=True, slots=True)
class ThinkCommand:
    cmd: ClassVar[str] = "Think"
    reasoning: str


@dataclass(frozen=True, slots=True)
class PlanCommand:
    cmd: ClassVar[str] = "Plan"
    tasks: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class UpdatePlanCommand:
    cmd: ClassVar[str] = "UpdatePlan"
    plan_id: str
    task_id: str
    status: TaskStatus


@dataclass(frozen=True, slots=True)
class RememberCommand:
    cmd: ClassVar[str] = "Remember"
    key: str
    value: str


@dataclass(frozen=True, slots=True)
class RecallCommand:
    cmd: ClassVar[str] = "Recall"
    key: str


@dataclass(frozen=True, slots=True)
class WebFetchCommand:
    cmd: ClassVar[str] = "WebFetch"
    url: str
    extract: str | None = None


@dataclass(frozen=True, slots=True)
class ParseCommand:
    cmd: ClassVar[str] = "Parse"
    content: str
    format: DataFormat


@dataclass(frozen=True, slots=True)
class StatusCommand:
    cmd: ClassVar[str] = "Status"
    message: str
    level: StatusLevel = "info"


@dataclass(frozen=True, slots=True)
class ReportCommand:
    cmd: ClassVar[str] = "Report"
    title: str
    sections: tuple[Section, ...] = ()


Command = (
    ReadCommand
    | WriteCommand
    | EditCommand
    | DeleteCommand
    | ExecCommand
    | ListCommand
    | SearchCommand
    | ThinkCommand
    | PlanCommand
    | UpdatePlanCommand
    | RememberCommand
    | RecallCommand
    | WebFetchCommand
    | ParseCommand
    | StatusCommand
    | ReportCommand
)

COMMAND_TYPES: dict[str, type] = {
    command_type.cmd: command_type
    for command_type in (
        ReadCommand,
        WriteCommand,
        EditCommand,
        DeleteCommand,
        ExecCommand,
        ListCommand,
        SearchCommand,
        ThinkCommand,
        PlanCommand,
        UpdatePlanCommand,
        RememberCommand,
        RecallCommand,
        WebFetchCommand,
        ParseCommand,
        StatusCommand,
        ReportCommand,
    )
}

_FIELD_HELP: dict[str, str] = {
    "Read": "path",
    "Write": "path, content",
    "Edit": "path, pattern, replacement (replaces every occurrence)",
    "Delete": "path",
    "Exec": "command, args (list of strings, no shell)",
    "List": "path, pattern (optional glob)",
    "Search": "pattern, path (optional), file_type (optional, e.g. py)",
    "Think": "reasoning",
    "Plan": "tasks (list of descriptions)",
    "UpdatePlan": "plan_id, task_id, status (pending|in_progress|completed|failed)",
    "Remember": "key, value",
    "Recall": "key",
    "WebFetch": "url, extract (optional hint)",
    "Parse": "content, format (json|yaml|toml|xml)",
    "Status": "message, level (info|warning|error|success)",
    "Report": "title, sections (list of {title, content}); ends the session",
}


@dataclass(frozen=True, slots=True)
class CommandBatch:
    """Ordered raw entries from one model reply; validated one by one."""

    entries: tuple[object, ...]

    def __len__(self) -> int:
        return len(self.entries)


def parse_batch(text: str) -> CommandBatch:
    """Decode a model reply into a batch or raise ``ProtocolError``."""
    if not isinstance(text, str) or not text.strip():
        raise ProtocolError("Reply was empty; expected a JSON object with a commands list.")

    candidate = text.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1).strip()

    try:
        decoded = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ProtocolError(
            f"Reply is not valid JSON (line {exc.lineno}, column {exc.colno}): {exc.msg}"
        ) from exc

    if not isinstance(decoded, dict):
        raise ProtocolError("Reply must be a JSON object with a commands list.")
    commands = decoded.get("commands")
    if not isinstance(commands, list):
        raise ProtocolError("Reply object is missing a commands list.")
    return CommandBatch(entries=tuple(commands))


def validate_command(entry: object) -> Command:
    """Turn one raw batch entry into a typed command or raise ``ValidationError``."""
    if not isinstance(entry, dict):
        raise ValidationError("Command entry must be a JSON object.")
    raw = cast(RawEntry, entry)
    kind = raw.get("cmd")
    if not isinstance(kind, str):
        raise ValidationError("Command entry is missing a string cmd field.")
    if kind not in COMMAND_TYPES:
        raise ValidationError(f"Unknown command kind: {kind}")

    if kind == "Read":
        return ReadCommand(path=_required_str(raw, "path"))
    if kind == "Write":
        return WriteCommand(
            path=_required_str(raw, "path"),
            content=_required_str(raw, "content", allow_empty=True),
        )
    if kind == "Edit":
        return EditCommand(
            path=_required_str(raw, "path"),
            pattern=_required_str(raw, "pattern"),
            replacement=_required_str(raw, "replacement", allow_empty=True),
        )
    if kind == "Delete":
        return DeleteCommand(path=_required_str(raw, "path"))
    if kind == "Exec":
        return ExecCommand(
            command=_required_str(raw, "command"),
            args=_string_list(raw, "args", required=False),
        )
    if kind == "List":
        return ListCommand(path=_required_str(raw, "path"), pattern=_optional_str(raw, "pattern"))
    if kind == "Search":
        return SearchCommand(
            pattern=_required_str(raw, "pattern"),
            path=_optional_str(raw, "path"),
            file_type=_optional_str(raw, "file_type"),
        )
    if kind == "Think":
        return ThinkCommand(reasoning=_required_str(raw, "reasoning", allow_empty=True))
    if kind == "Plan":
        return PlanCommand(tasks=_string_list(raw, "tasks", required=True))
    if kind == "UpdatePlan":
        return UpdatePlanCommand(
            plan_id=_required_str(raw, "plan_id"),
            task_id=_id_value(raw, "task_id"),
            status=cast(TaskStatus, _required_choice(raw, "status", VALID_TASK_STATUSES)),
        )
    if kind == "Remember":
        return RememberCommand(
            key=_required_str(raw, "key"),
            value=_required_str(raw, "value", allow_empty=True),
        )
    if kind == "Recall":
        return RecallCommand(key=_required_str(raw, "key"))
    if kind == "WebFetch":
        return WebFetchCommand(url=_required_str(raw, "url"), extract=_optional_str(raw, "extract"))
    if kind == "Parse":
        return ParseCommand(
            content=_required_str(raw, "content", allow_empty=True),
            format=cast(DataFormat, _required_choice(raw, "format", VALID_DATA_FORMATS)),
        )
    if kind == "Status":
        level = raw.get("level", "info")
        if level is None:
            level = "info"
        return StatusCommand(
            message=_required_str(raw, "message", allow_empty=True),
            level=cast(StatusLevel, _choice_value(kind, "level", level, VALID_STATUS_LEVELS)),
        )
    return ReportCommand(title=_required_str(raw, "title"), sections=_sections(raw))


def describe_protocol() -> str:
    """Render the command contract included in the model's system prompt."""
    lines = [
        f"Command protocol v{SCHEMA_VERSION}.",
        'Reply with JSON only: {"commands": [{"cmd": "<Kind>", ...fields}, ...]}.',
        "Commands run in order; later commands see the effects of earlier ones.",
        "Available commands:",
    ]
    lines.extend(f"- {kind}: {_FIELD_HELP[kind]}" for kind in COMMAND_TYPES)
    return "\n".join(lines)


def _required_str(raw: RawEntry, field: str, *, allow_empty: bool = False) -> str:
    value = raw.get(field)
    if not isinstance(value, str):
        raise ValidationError(f"{raw.get('cmd')}: field '{field}' must be a string.")
    if not allow_empty and not value:
        raise ValidationError(f"{raw.get('cmd')}: field '{field}' must not be empty.")
    return value


def _optional_str(raw: RawEntry, field: str) -> str | None:
    value = raw.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{raw.get('cmd')}: field '{field}' must be a string or null.")
    return value or None


def _id_value(raw: RawEntry, field: str) -> str:
    value = raw.get(field)
    # Task ids are strings on the wire, but models often send bare integers.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return _required_str(raw, field)


def _string_list(raw: RawEntry, field: str, *, required: bool) -> tuple[str, ...]:
    value = raw.get(field)
    if value is None and not required:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"{raw.get('cmd')}: field '{field}' must be a list of strings.")
    return tuple(value)


def _required_choice(raw: RawEntry, field: str, choices: tuple[str, ...]) -> str:
    return _choice_value(str(raw.get("cmd")), field, raw.get(field), choices)


def _choice_value(kind: str, field: str, value: object, choices: tuple[str, ...]) -> str:
    if not isinstance(value, str) or value not in choices:
        raise ValidationError(
            f"{kind}: field '{field}' must be one of {', '.join(choices)}; got {value!r}."
        )
    return value


def _sections(raw: RawEntry) -> tuple[Section, ...]:
    value = raw.get("sections")
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValidationError("Report: field 'sections' must be a list.")
    sections: list[Section] = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise ValidationError(f"Report: section {index} must be an object.")
        title = item.get("title")
        content = item.get("content")
        if not isinstance(title, str) or not isinstance(content, str):
            raise ValidationError(
                f"Report: section {index} needs string title and content fields."
            )
        sections.append(Section(title=title, content=content))
    return tuple(sections)
