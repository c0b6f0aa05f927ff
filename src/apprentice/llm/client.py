"""Thin model client that returns the next raw assistant reply."""

from __future__ import annotations

import abc
import http.client
import json
import logging
from collections.abc import Sequence
from urllib import request
from urllib.error import HTTPError, URLError

from apprentice.agent.models import ConversationTurn
from apprentice.errors import ModelBackendError
from apprentice.protocol.commands import describe_protocol

BASE_SYSTEM_PROMPT_PARTS = [
    "You are an apprentice agent working inside an isolated sandbox.",
    (
        "Work toward the user's goal by emitting batches of commands; results"
        " come back as a system message listing one result per command, in order."
    ),
    "Prefer small, verifiable steps and read files before editing them.",
    "When a command fails, read the error kind and message and correct course.",
    "Finish by sending a Report command summarizing what you did.",
]

SYSTEM_TURN_PREFIX = "[system]"
LOGGER = logging.getLogger(__name__)


class ModelBackend(abc.ABC):
    """Capability: given the conversation history, produce the next reply text."""

    @abc.abstractmethod
    def complete(self, history: Sequence[ConversationTurn]) -> str:
        """Return the raw assistant reply or raise ``ModelBackendError``."""


class ModelClient(ModelBackend):
    """Small HTTP client for the messages API."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        system_prompt: str | None = None,
        api_url: str = "https://api.anthropic.com/v1/messages",
        api_version: str = "2023-06-01",
        max_tokens: int = 4096,
        timeout: float = 120.0,
        history_limit: int = 100,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.system_prompt = system_prompt
        self.api_url = api_url
        self.api_version = api_version
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.history_limit = history_limit

    def complete(self, history: Sequence[ConversationTurn]) -> str:
        if not self.api_key:
            raise ModelBackendError("Model API key is not configured")

        payload = self._build_payload(history)
        body = json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
        }

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "payload_bytes": len(body),
                "messages": len(payload["messages"]),  # type: ignore[arg-type]
            },
        )

        req = request.Request(self.api_url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw_response = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            body_excerpt = self._read_error_body_excerpt(exc)
            LOGGER.error(
                "llm_request_http_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "http_status": exc.code,
                    "reason": exc.reason,
                    "response_excerpt": body_excerpt,
                },
            )
            details = f"Model request failed with HTTP {exc.code}: {exc.reason}"
            if body_excerpt:
                details = f"{details}. Response body: {body_excerpt}"
            raise ModelBackendError(details) from exc
        except URLError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={"api_url": self.api_url, "model": self.model, "reason": str(exc.reason)},
            )
            raise ModelBackendError(f"Model request transport error: {exc.reason}") from exc
        except TimeoutError as exc:
            LOGGER.error(
                "llm_request_timeout",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "timeout_seconds": self.timeout,
                },
            )
            raise ModelBackendError(f"Model request timed out after {self.timeout:.1f}s") from exc
        except (OSError, http.client.HTTPException) as exc:
            # Dropped or reset connections surface from getresponse(), outside URLError.
            LOGGER.error(
                "llm_request_connection_error",
                extra={"api_url": self.api_url, "model": self.model, "error": repr(exc)},
            )
            raise ModelBackendError(f"Model request connection error: {exc!r}") from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error(
                "llm_response_parse_error",
                extra={"api_url": self.api_url, "model": self.model, "error": str(exc)},
            )
            raise ModelBackendError(f"Model response parsing error: {exc}") from exc

        return self._extract_text(raw_response)

    def _build_payload(self, history: Sequence[ConversationTurn]) -> dict[str, object]:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": self._build_system_prompt(),
            "messages": self._build_messages(trim_history(history, self.history_limit)),
        }

    def _build_system_prompt(self) -> str:
        if self.system_prompt:
            return f"{self.system_prompt}\n\n{describe_protocol()}"
        return " ".join(BASE_SYSTEM_PROMPT_PARTS) + "\n\n" + describe_protocol()

    @staticmethod
    def _build_messages(history: Sequence[ConversationTurn]) -> list[dict[str, str]]:
        """Map history onto alternating user/assistant messages.

        System turns (tool results, corrections) are sent as user content, and
        consecutive messages with the same role are merged.
        """
        messages: list[dict[str, str]] = []
        for turn in history:
            role = "assistant" if turn.role == "assistant" else "user"
            content = (
                f"{SYSTEM_TURN_PREFIX} {turn.content}" if turn.role == "system" else turn.content
            )
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"] = f"{messages[-1]['content']}\n\n{content}"
            else:
                messages.append({"role": role, "content": content})
        if messages and messages[0]["role"] != "user":
            messages.insert(0, {"role": "user", "content": "Continue."})
        return messages

    @staticmethod
    def _extract_text(raw_response: object) -> str:
        if not isinstance(raw_response, dict):
            raise ModelBackendError("Model response parsing error: expected top-level object")
        content_items = raw_response.get("content")
        if not isinstance(content_items, list):
            raise ModelBackendError("Model response parsing error: missing content list")
        texts = [
            item["text"]
            for item in content_items
            if isinstance(item, dict) and item.get("type", "text") == "text"
            and isinstance(item.get("text"), str)
        ]
        return "\n".join(texts)

    @staticmethod
    def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None

        if not raw:
            return None

        excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
        if len(excerpt) > max_chars:
            return f"{excerpt[:max_chars]}..."
        return excerpt


def trim_history(
    history: Sequence[ConversationTurn], limit: int
) -> list[ConversationTurn]:
    """Keep the goal turn plus the most recent turns, ``limit`` turns in total."""
    turns = list(history)
    if limit <= 0 or len(turns) <= limit:
        return turns
    return [turns[0], *turns[-(limit - 1):]] if limit > 1 else [turns[0]]
