"""Subprocess-backed process runner."""

from __future__ import annotations

import subprocess
import threading
from collections.abc import Sequence
from typing import BinaryIO

from .base import PolicyHook, ProcessResult, ProcessRunner, normalize_output

_POLL_INTERVAL = 0.1
_KILL_GRACE_SECONDS = 5.0
_READ_CHUNK_BYTES = 64 * 1024


class _CappedReader:
    """Drains one pipe on a daemon thread, keeping at most ``limit`` bytes."""

    def __init__(self, stream: BinaryIO, limit: int | None) -> None:
        self.stream = stream
        self.limit = limit
        self.buffer = bytearray()
        self.truncated = False
        self._thread = threading.Thread(target=self._drain, daemon=True)
        self._thread.start()

    def _drain(self) -> None:
        try:
            while True:
                chunk = self.stream.read1(_READ_CHUNK_BYTES)
                if not chunk:
                    return
                if self.limit is None:
                    self.buffer.extend(chunk)
                    continue
                room = self.limit - len(self.buffer)
                if len(chunk) > room:
                    self.truncated = True
                if room > 0:
                    self.buffer.extend(chunk[:room])
        except (OSError, ValueError):
            # Pipe closed underneath the reader.
            return

    def join(self, timeout: float) -> bytes:
        self._thread.join(timeout)
        return bytes(self.buffer)


class SubprocessRunner(ProcessRunner):
    """Runs argv lists with ``subprocess.Popen``; kills the child on timeout or cancel.

    Both pipes are read as output arrives and capped at ``max_output_bytes``,
    so a chatty child cannot grow the parent's memory past the limit.
    """

    def __init__(
        self,
        *,
        allowlist_hook: PolicyHook | None = None,
        denylist_hook: PolicyHook | None = None,
        poll_interval: float = _POLL_INTERVAL,
    ) -> None:
        super().__init__(allowlist_hook=allowlist_hook, denylist_hook=denylist_hook)
        self.poll_interval = poll_interval

    @property
    def name(self) -> str:
        return "subprocess"

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | None = None,
        timeout: float | None = None,
        max_output_bytes: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ProcessResult:
        command = tuple(argv)
        self.log_request(command, timeout=timeout)
        blocked_reason = self.enforce_guardrails(command)
        if blocked_reason:
            result = ProcessResult(
                argv=command,
                returncode=126,
                stdout="",
                stderr=blocked_reason,
                blocked=True,
                block_reason=blocked_reason,
            )
            self.log_result(result)
            return result

        started = self.monotonic_now()
        deadline = None if timeout is None else started + timeout
        timed_out = False
        cancelled = False
        # FileNotFoundError / PermissionError from Popen propagate to the caller.
        with subprocess.Popen(
            list(command),
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        ) as process:
            stdout_reader = _CappedReader(process.stdout, max_output_bytes)
            stderr_reader = _CappedReader(process.stderr, max_output_bytes)
            try:
                while True:
                    wait = self.poll_interval
                    if deadline is not None:
                        wait = max(0.0, min(wait, deadline - self.monotonic_now()))
                    try:
                        process.wait(timeout=wait)
                        break
                    except subprocess.TimeoutExpired:
                        if cancel_event is not None and cancel_event.is_set():
                            cancelled = True
                        elif deadline is not None and self.monotonic_now() >= deadline:
                            timed_out = True
                        else:
                            continue
                        process.kill()
                        process.wait(timeout=_KILL_GRACE_SECONDS)
                        break
            except BaseException:
                process.kill()
                raise
            # A grandchild holding the pipes open must not stall the result.
            stdout = stdout_reader.join(_KILL_GRACE_SECONDS)
            stderr = stderr_reader.join(_KILL_GRACE_SECONDS)

        stdout_text, _ = normalize_output(stdout)
        stderr_text, _ = normalize_output(stderr)
        result = ProcessResult(
            argv=command,
            returncode=124 if timed_out else (130 if cancelled else process.returncode),
            stdout=stdout_text,
            stderr=stderr_text,
            timed_out=timed_out,
            cancelled=cancelled,
            truncated=stdout_reader.truncated or stderr_reader.truncated,
            duration_seconds=self.monotonic_now() - started,
        )
        self.log_result(result)
        return result
