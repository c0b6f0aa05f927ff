"""Turn controller: drives the model -> batch -> execution cycle for one session."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from apprentice.agent.models import ExecutionResult, History, SessionOutcome, TerminalReason
from apprentice.engine.executor import ExecutionEngine
from apprentice.errors import FatalError, ModelBackendError, ProtocolError, ValidationError
from apprentice.llm.client import ModelBackend
from apprentice.protocol.commands import CommandBatch, ReportCommand, parse_batch, validate_command

ControllerState = Literal["idle", "awaiting_model", "parsing_batch", "executing_batch", "terminated"]

LOGGER = logging.getLogger(__name__)

CORRECTION_TEMPLATE = (
    "Your previous reply could not be used: {error} "
    'Resend valid JSON only, shaped as {{"commands": [{{"cmd": "...", ...}}]}}.'
)


class _SessionCancelled(Exception):
    pass


class _BackendExhausted(Exception):
    pass


class TurnController:
    """Explicit state machine for one agent session.

    ``run`` loops ``awaiting_model -> parsing_batch -> executing_batch`` until a
    successful Report, the turn limit, the protocol-failure limit, backend
    exhaustion, a fatal store fault or cancellation ends the session.
    """

    def __init__(
        self,
        *,
        backend: ModelBackend,
        engine: ExecutionEngine,
        history: History | None = None,
        log_dir: str | Path | None = None,
        session_name: str | None = None,
        max_turns: int = 30,
        max_protocol_failures: int = 3,
        max_backend_attempts: int = 3,
        backoff_seconds: float = 1.0,
        poll_interval: float = 0.05,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.backend = backend
        self.engine = engine
        self.history = history if history is not None else History()
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.session_name = session_name
        self.max_turns = max_turns
        self.max_protocol_failures = max_protocol_failures
        self.max_backend_attempts = max_backend_attempts
        self.backoff_seconds = backoff_seconds
        self.poll_interval = poll_interval
        # The engine shares this event so a running Exec child is killed on cancel.
        self.cancel_event = cancel_event or engine.cancel_event
        engine.cancel_event = self.cancel_event
        self.state: ControllerState = "idle"
        self.turns = 0
        self.protocol_failures = 0
        self.outcome: SessionOutcome | None = None

    def cancel(self) -> None:
        """Interrupt the session at its next suspension point."""
        self.cancel_event.set()

    def run(self, goal: str | None = None) -> SessionOutcome:
        if goal:
            self.history.append("user", goal)
        batch_results: list[list[ExecutionResult]] = []

        try:
            while True:
                self._check_cancelled()
                if self.turns >= self.max_turns:
                    return self._finish(
                        "turn_limit_reached",
                        batch_results,
                        detail=f"Reached {self.turns}/{self.max_turns} turns without a report.",
                    )

                self.state = "awaiting_model"
                try:
                    reply = self._request_reply()
                except _BackendExhausted as exc:
                    return self._finish("backend_unavailable", batch_results, detail=str(exc))
                self.turns += 1

                self.state = "parsing_batch"
                try:
                    batch = parse_batch(reply)
                except ProtocolError as exc:
                    self.protocol_failures += 1
                    self.history.append("assistant", reply)
                    self.history.append("system", CORRECTION_TEMPLATE.format(error=exc.message))
                    self._append_log(reply=reply, protocol_error=exc.message)
                    if self.protocol_failures > self.max_protocol_failures:
                        return self._finish(
                            "protocol_failure_limit_reached",
                            batch_results,
                            detail=(
                                f"{self.protocol_failures} consecutive unparsable replies;"
                                f" last error: {exc.message}"
                            ),
                        )
                    continue
                self.protocol_failures = 0

                self.state = "executing_batch"
                results, report = self._execute_batch(batch)
                batch_results.append(results)
                self.history.append("assistant", reply)
                self.history.append("system", format_results(results))
                self._append_log(reply=reply, results=results)
                if report is not None:
                    return self._finish("reported", batch_results, report=report)
        except _SessionCancelled:
            return self._finish("cancelled", batch_results, detail="Session was stopped.")
        except FatalError as exc:
            LOGGER.error("session_fatal", extra={"session": self.session_name, "error": str(exc)})
            return self._finish("fatal", batch_results, detail=str(exc))
        except Exception as exc:
            LOGGER.exception("session_crashed", extra={"session": self.session_name})
            return self._finish(
                "fatal", batch_results, detail=f"Unexpected {type(exc).__name__}: {exc}"
            )

    def _request_reply(self) -> str:
        last_error: ModelBackendError | None = None
        for attempt in range(1, self.max_backend_attempts + 1):
            try:
                return self._call_backend()
            except ModelBackendError as exc:
                last_error = exc
                LOGGER.warning(
                    "model_request_failed",
                    extra={
                        "session": self.session_name,
                        "attempt": attempt,
                        "max_attempts": self.max_backend_attempts,
                        "error": str(exc),
                    },
                )
                if attempt < self.max_backend_attempts:
                    delay = self.backoff_seconds * (2 ** (attempt - 1))
                    if self.cancel_event.wait(delay):
                        raise _SessionCancelled() from exc
        raise _BackendExhausted(
            f"Model backend failed {self.max_backend_attempts} times: {last_error}"
        )

    def _call_backend(self) -> str:
        """Run the model call in a helper thread so cancellation can abandon it."""
        snapshot = self.history.snapshot()
        outcome: dict[str, object] = {}
        done = threading.Event()

        def call() -> None:
            try:
                outcome["reply"] = self.backend.complete(snapshot)
            except BaseException as exc:  # handed back to the controller thread
                outcome["error"] = exc
            finally:
                done.set()

        worker = threading.Thread(
            target=call, name=f"model-call-{self.session_name or 'session'}", daemon=True
        )
        worker.start()
        while not done.wait(self.poll_interval):
            if self.cancel_event.is_set():
                LOGGER.info("model_request_abandoned", extra={"session": self.session_name})
                raise _SessionCancelled()

        error = outcome.get("error")
        if isinstance(error, BaseException):
            raise error
        reply = outcome.get("reply")
        if not isinstance(reply, str):
            raise ModelBackendError("Model backend returned a non-text reply")
        return reply

    def _execute_batch(self, batch: CommandBatch) -> tuple[list[ExecutionResult], str | None]:
        results: list[ExecutionResult] = []
        report: str | None = None
        for entry in batch.entries:
            self._check_cancelled()
            try:
                command = validate_command(entry)
            except ValidationError as exc:
                results.append(ExecutionResult.failure(_entry_kind(entry), exc.kind, exc.message))
                continue
            result = self.engine.execute(command)
            results.append(result)
            if isinstance(command, ReportCommand) and result.ok:
                report = str(result.data)
        return results, report

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise _SessionCancelled()

    def _finish(
        self,
        reason: TerminalReason,
        batch_results: list[list[ExecutionResult]],
        *,
        report: str | None = None,
        detail: str | None = None,
    ) -> SessionOutcome:
        self.state = "terminated"
        self.outcome = SessionOutcome(
            reason=reason,
            turns=self.turns,
            history=self.history.snapshot(),
            report=report,
            detail=detail,
            results=batch_results,
        )
        LOGGER.info(
            "session_terminated",
            extra={"session": self.session_name, "reason": reason, "turns": self.turns},
        )
        self._append_log(terminal_reason=reason, detail=detail)
        return self.outcome

    def _append_log(
        self,
        *,
        reply: str | None = None,
        results: list[ExecutionResult] | None = None,
        protocol_error: str | None = None,
        terminal_reason: TerminalReason | None = None,
        detail: str | None = None,
    ) -> None:
        if self.log_dir is None:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        day_file = self.log_dir / f"turns-{datetime.now(timezone.utc).date().isoformat()}.log"
        entry = {
            "log_version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session": self.session_name,
            "turn": self.turns,
            "state": self.state,
            "reply": reply,
            "results": [result.to_dict() for result in results] if results is not None else None,
            "protocol_error": protocol_error,
            "protocol_failures": self.protocol_failures,
            "terminal_reason": terminal_reason,
            "detail": detail,
        }
        with day_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, default=str) + "\n")


def format_results(results: list[ExecutionResult]) -> str:
    """Serialize batch results for the system turn that follows a reply."""
    return json.dumps(
        {"results": [result.to_dict() for result in results]},
        ensure_ascii=False,
        default=str,
    )


def _entry_kind(entry: object) -> str:
    if isinstance(entry, dict) and isinstance(entry.get("cmd"), str):
        return entry["cmd"]
    return "unknown"
