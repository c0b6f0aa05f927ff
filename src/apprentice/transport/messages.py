"""Turn request/response messages exchanged between controller and worker."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from apprentice.agent.models import ConversationTurn

VALID_ROLES = {"user", "assistant", "system"}


class MessageError(ValueError):
    """A frame on the channel could not be decoded."""


@dataclass(slots=True)
class TurnRequest:
    request_id: str
    history: list[ConversationTurn] = field(default_factory=list)
    op: str = "turn"

    def encode(self) -> bytes:
        payload: dict[str, object] = {"id": self.request_id, "op": self.op}
        if self.op == "turn":
            payload["history"] = [turn.to_dict() for turn in self.history]
        return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")

    @classmethod
    def decode(cls, line: bytes | str) -> TurnRequest:
        payload = _decode_object(line)
        request_id = payload.get("id")
        if not isinstance(request_id, str):
            raise MessageError("request is missing a string id")
        op = payload.get("op", "turn")
        if op not in {"turn", "status"}:
            raise MessageError(f"unsupported op: {op!r}")
        history: list[ConversationTurn] = []
        if op == "turn":
            raw_history = payload.get("history")
            if not isinstance(raw_history, list):
                raise MessageError("turn request is missing a history list")
            for item in raw_history:
                if (
                    not isinstance(item, dict)
                    or item.get("role") not in VALID_ROLES
                    or not isinstance(item.get("content"), str)
                ):
                    raise MessageError("history entries need a role and string content")
                history.append(ConversationTurn(role=item["role"], content=item["content"]))
        return cls(request_id=request_id, history=history, op=str(op))


@dataclass(slots=True)
class TurnResponse:
    request_id: str
    reply: str | None = None
    error: str | None = None
    status: dict[str, object] | None = None

    def encode(self) -> bytes:
        payload: dict[str, object] = {"id": self.request_id}
        if self.error is not None:
            payload["error"] = self.error
        elif self.status is not None:
            payload["status"] = self.status
        else:
            payload["reply"] = self.reply or ""
        return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")

    @classmethod
    def decode(cls, line: bytes | str) -> TurnResponse:
        payload = _decode_object(line)
        request_id = payload.get("id")
        if not isinstance(request_id, str):
            raise MessageError("response is missing a string id")
        reply = payload.get("reply")
        error = payload.get("error")
        status = payload.get("status")
        return cls(
            request_id=request_id,
            reply=reply if isinstance(reply, str) else None,
            error=error if isinstance(error, str) else None,
            status=status if isinstance(status, dict) else None,
        )


def _decode_object(line: bytes | str) -> dict[str, object]:
    try:
        text = line.decode("utf-8") if isinstance(line, bytes) else line
    except UnicodeDecodeError as exc:
        raise MessageError("frame is not valid UTF-8") from exc
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MessageError(f"frame is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise MessageError("frame must be a JSON object")
    return payload
