"""Audit trail sinks for side-effect-free commands (Think, Status, Report)."""

from __future__ import annotations

import abc
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class AuditUnavailable(Exception):
    """The audit sink could not record an event."""


class AuditSink(abc.ABC):
    @abc.abstractmethod
    def record(self, event: str, **fields: object) -> None:
        """Record one audit event or raise ``AuditUnavailable``."""


class LoggingAuditSink(AuditSink):
    """Forwards audit events to the standard logging tree."""

    def __init__(self, session: str | None = None) -> None:
        self.session = session

    def record(self, event: str, **fields: object) -> None:
        level = _LEVELS.get(str(fields.get("level", "info")), logging.INFO)
        LOGGER.log(level, event, extra={"session": self.session, "audit": fields})


class JsonlAuditSink(AuditSink):
    """Appends audit events as JSON lines to a daily session log."""

    def __init__(self, log_dir: str | Path, *, session: str | None = None) -> None:
        self.log_dir = Path(log_dir)
        self.session = session

    def record(self, event: str, **fields: object) -> None:
        timestamp = datetime.now(timezone.utc)
        entry = {
            "log_version": 1,
            "timestamp": timestamp.isoformat(),
            "session": self.session,
            "event": event,
            **fields,
        }
        day_file = self.log_dir / f"session-{timestamp.date().isoformat()}.log"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with day_file.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        except OSError as exc:
            raise AuditUnavailable(f"Audit log {day_file} is not writable: {exc}") from exc


class CompositeAuditSink(AuditSink):
    def __init__(self, *sinks: AuditSink) -> None:
        self.sinks = sinks

    def record(self, event: str, **fields: object) -> None:
        for sink in self.sinks:
            sink.record(event, **fields)
