"""Text search collaborator backed by ripgrep."""

from __future__ import annotations

import abc
import json
import logging
import shutil
import threading
from dataclasses import dataclass

from .base import ProcessRunner
from .subprocess_runner import SubprocessRunner

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SearchMatch:
    file: str
    line: int
    content: str

    def to_dict(self) -> dict[str, object]:
        return {"file": self.file, "line": self.line, "content": self.content}


class SearchFailed(Exception):
    """The search tool ran but reported an error."""


class TextSearch(abc.ABC):
    @abc.abstractmethod
    def search(
        self,
        pattern: str,
        root: str,
        *,
        file_type: str | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> list[SearchMatch]:
        """Return matches for ``pattern`` under ``root``."""


class RipgrepSearch(TextSearch):
    """Runs ``rg --json`` and collects match events."""

    def __init__(
        self,
        executable: str = "rg",
        *,
        runner: ProcessRunner | None = None,
        max_output_bytes: int = 4 * 1024 * 1024,
    ) -> None:
        self.executable = executable
        self.runner = runner or SubprocessRunner()
        self.max_output_bytes = max_output_bytes

    def search(
        self,
        pattern: str,
        root: str,
        *,
        file_type: str | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> list[SearchMatch]:
        argv = [self.executable, "--json"]
        if file_type:
            argv.extend(["-t", file_type])
        argv.extend(["-e", pattern, "--", root])
        result = self.runner.run(
            argv,
            cwd=root,
            timeout=timeout,
            max_output_bytes=self.max_output_bytes,
            cancel_event=cancel_event,
        )
        if result.timed_out:
            raise TimeoutError(f"search timed out after {timeout}s")
        # rg exits 1 when nothing matched.
        if result.returncode not in (0, 1):
            raise SearchFailed(result.stderr.strip() or f"rg exited with {result.returncode}")
        return parse_ripgrep_json(result.stdout)


def parse_ripgrep_json(output: str) -> list[SearchMatch]:
    matches: list[SearchMatch] = []
    for line in output.splitlines():
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict) or event.get("type") != "match":
            continue
        data = event.get("data")
        if not isinstance(data, dict):
            continue
        path = _text_field(data.get("path"))
        lines = _text_field(data.get("lines"))
        line_number = data.get("line_number")
        if path is None or lines is None or not isinstance(line_number, int):
            continue
        matches.append(SearchMatch(file=path, line=line_number, content=lines.strip()))
    return matches


def create_text_search(executable: str = "rg") -> TextSearch | None:
    """Return a ripgrep-backed search when the executable is on PATH."""
    resolved = shutil.which(executable)
    if resolved is None:
        LOGGER.warning("text_search_unavailable", extra={"executable": executable})
        return None
    return RipgrepSearch(resolved)


def _text_field(value: object) -> str | None:
    if isinstance(value, dict) and isinstance(value.get("text"), str):
        return value["text"]
    return None
