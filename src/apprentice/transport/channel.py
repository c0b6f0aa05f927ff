"""Controller and worker ends of the turn channel.

The channel is a pair of byte streams carrying one JSON object per line. The
controller side (:class:`WorkerChannel`) plays the model role for the turn
controller; the worker side (:class:`WorkerServer`) answers each request by
asking its own model backend.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import BinaryIO, Literal

from apprentice.agent.models import ConversationTurn
from apprentice.errors import ModelBackendError
from apprentice.llm.client import ModelBackend, trim_history
from apprentice.transport.messages import MessageError, TurnRequest, TurnResponse

WorkerState = Literal["idle", "busy", "error"]

LOGGER = logging.getLogger(__name__)


class WorkerChannel(ModelBackend):
    """Controller-side client: one request, one response, strictly in order."""

    def __init__(
        self,
        reader: BinaryIO,
        writer: BinaryIO,
        *,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._lock = threading.Lock()

    def complete(self, history: list[ConversationTurn] | tuple[ConversationTurn, ...]) -> str:
        request = TurnRequest(request_id=self._id_factory(), history=list(history))
        response = self._round_trip(request)
        if response.error is not None:
            raise ModelBackendError(f"Worker reported an error: {response.error}")
        if response.reply is None:
            raise ModelBackendError("Worker response carried no reply")
        return response.reply

    def status(self) -> dict[str, object]:
        response = self._round_trip(TurnRequest(request_id=self._id_factory(), op="status"))
        if response.status is None:
            raise ModelBackendError(response.error or "Worker response carried no status")
        return response.status

    def _round_trip(self, request: TurnRequest) -> TurnResponse:
        with self._lock:
            try:
                self.writer.write(request.encode())
                self.writer.flush()
                line = self.reader.readline()
            except OSError as exc:
                raise ModelBackendError(f"Worker channel failed: {exc}") from exc
        if not line:
            raise ModelBackendError("Worker channel closed")
        try:
            response = TurnResponse.decode(line)
        except MessageError as exc:
            raise ModelBackendError(f"Malformed worker response: {exc}") from exc
        if response.request_id != request.request_id:
            raise ModelBackendError(
                f"Out-of-order response {response.request_id} for request {request.request_id}"
            )
        return response


class WorkerServer:
    """Worker-side loop answering turn requests with a model backend."""

    def __init__(self, *, name: str, backend: ModelBackend, history_limit: int = 100) -> None:
        self.name = name
        self.backend = backend
        self.history_limit = history_limit
        self.state: WorkerState = "idle"
        self.turns_served = 0
        self.last_turn_time: str | None = None

    def handle(self, line: bytes | str) -> TurnResponse:
        try:
            request = TurnRequest.decode(line)
        except MessageError as exc:
            LOGGER.warning("worker_bad_request", extra={"worker": self.name, "error": str(exc)})
            return TurnResponse(request_id="", error=f"bad request: {exc}")

        if request.op == "status":
            return TurnResponse(request_id=request.request_id, status=self.status())

        self.state = "busy"
        try:
            reply = self.backend.complete(trim_history(request.history, self.history_limit))
        except ModelBackendError as exc:
            self.state = "error"
            LOGGER.error("worker_turn_failed", extra={"worker": self.name, "error": str(exc)})
            return TurnResponse(request_id=request.request_id, error=str(exc))
        self.state = "idle"
        self.turns_served += 1
        self.last_turn_time = _utc_now()
        return TurnResponse(request_id=request.request_id, reply=reply)

    def status(self) -> dict[str, object]:
        return {
            "name": self.name,
            "state": self.state,
            "turns_served": self.turns_served,
            "last_turn_time": self.last_turn_time,
        }

    def serve(self, reader: BinaryIO, writer: BinaryIO) -> None:
        """Answer requests until the reader reaches end of stream."""
        LOGGER.info("worker_serving", extra={"worker": self.name})
        for line in iter(reader.readline, b""):
            if not line.strip():
                continue
            writer.write(self.handle(line).encode())
            writer.flush()
        LOGGER.info("worker_stopped", extra={"worker": self.name, "turns": self.turns_served})


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
