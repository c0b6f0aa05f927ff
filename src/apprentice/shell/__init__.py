"""Process execution and text search collaborators."""

from .base import ProcessResult, ProcessRunner, command_name_hook
from .search import RipgrepSearch, SearchFailed, SearchMatch, TextSearch, create_text_search
from .subprocess_runner import SubprocessRunner


def create_process_runner(runner_name: str = "subprocess") -> ProcessRunner:
    normalized = runner_name.strip().lower()
    if normalized in {"subprocess", "local"}:
        return SubprocessRunner()
    msg = f"Unsupported process runner: {runner_name}"
    raise ValueError(msg)


__all__ = [
    "ProcessResult",
    "ProcessRunner",
    "RipgrepSearch",
    "SearchFailed",
    "SearchMatch",
    "SubprocessRunner",
    "TextSearch",
    "command_name_hook",
    "create_process_runner",
    "create_text_search",
]
