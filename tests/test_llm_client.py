import http.client
import io
import json
from urllib.error import HTTPError, URLError

import pytest

from apprentice.agent.models import ConversationTurn
from apprentice.errors import ModelBackendError
from apprentice.llm.client import ModelClient, trim_history


def _client(**kwargs) -> ModelClient:
    kwargs.setdefault("api_key", "test-key")
    kwargs.setdefault("model", "claude-test")
    return ModelClient(**kwargs)


class FakeResponse:
    def __init__(self, body: bytes) -> None:
        self.body = body

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return None

    def read(self):
        return self.body


def test_extract_text_joins_text_blocks() -> None:
    payload = {
        "content": [
            {"type": "text", "text": '{"commands": ['},
            {"type": "tool_use", "id": "ignored"},
            {"type": "text", "text": "]}"},
        ]
    }

    assert ModelClient._extract_text(payload) == '{"commands": [\n]}'


def test_extract_text_rejects_missing_content() -> None:
    with pytest.raises(ModelBackendError, match="missing content list"):
        ModelClient._extract_text({"id": "msg_1"})


def test_payload_includes_protocol_description() -> None:
    payload = _client(system_prompt="be careful", max_tokens=512)._build_payload(
        [ConversationTurn("user", "build it")]
    )

    assert payload["model"] == "claude-test"
    assert payload["max_tokens"] == 512
    assert payload["system"].startswith("be careful\n\n")
    assert '{"commands": [' in payload["system"]
    assert payload["messages"] == [{"role": "user", "content": "build it"}]


def test_payload_uses_default_prompt_when_unset() -> None:
    payload = _client()._build_payload([ConversationTurn("user", "goal")])

    assert payload["system"].startswith("You are an apprentice agent")


def test_messages_fold_system_turns_into_user_role() -> None:
    messages = ModelClient._build_messages(
        [
            ConversationTurn("user", "goal"),
            ConversationTurn("assistant", '{"commands": []}'),
            ConversationTurn("system", '{"results": []}'),
            ConversationTurn("assistant", "oops"),
            ConversationTurn("system", "Your previous reply could not be used"),
        ]
    )

    assert [message["role"] for message in messages] == ["user", "assistant", "user", "assistant", "user"]
    assert messages[2]["content"] == '[system] {"results": []}'


def test_messages_merge_consecutive_roles_and_start_with_user() -> None:
    messages = ModelClient._build_messages(
        [
            ConversationTurn("assistant", "a"),
            ConversationTurn("system", "one"),
            ConversationTurn("user", "two"),
        ]
    )

    assert messages == [
        {"role": "user", "content": "Continue."},
        {"role": "assistant", "content": "a"},
        {"role": "user", "content": "[system] one\n\ntwo"},
    ]


def test_trim_history_keeps_goal_and_recent_turns() -> None:
    history = [ConversationTurn("user", "goal")] + [
        ConversationTurn("assistant" if index % 2 else "system", str(index)) for index in range(1, 10)
    ]

    trimmed = trim_history(history, 4)

    assert [turn.content for turn in trimmed] == ["goal", "7", "8", "9"]
    assert len(trimmed) == 4
    assert [turn.content for turn in trim_history(history, 1)] == ["goal"]
    assert trim_history(history, 0) == history
    assert trim_history(history, 100) == history


def test_complete_sends_headers_and_returns_text(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(req, timeout):
        captured["headers"] = {key.lower(): value for key, value in req.header_items()}
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return FakeResponse(b'{"content": [{"type": "text", "text": "{\\"commands\\": []}"}]}')

    monkeypatch.setattr("apprentice.llm.client.request.urlopen", fake_urlopen)

    reply = _client(timeout=7.5).complete([ConversationTurn("user", "goal")])

    assert reply == '{"commands": []}'
    assert captured["headers"]["x-api-key"] == "test-key"
    assert captured["headers"]["anthropic-version"] == "2023-06-01"
    assert captured["body"]["messages"][0]["content"] == "goal"
    assert captured["timeout"] == 7.5


def test_complete_requires_api_key(monkeypatch) -> None:
    def fail_urlopen(*_args, **_kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr("apprentice.llm.client.request.urlopen", fail_urlopen)

    with pytest.raises(ModelBackendError, match="API key"):
        _client(api_key=None).complete([ConversationTurn("user", "goal")])


def test_complete_http_error_includes_response_excerpt(monkeypatch) -> None:
    class FakeHTTPError(HTTPError):
        def __init__(self):
            super().__init__(
                url="https://example.com",
                code=529,
                msg="Overloaded",
                hdrs=None,
                fp=io.BytesIO(b'{"error":{"message":"overloaded_error"}}'),
            )

    def fake_urlopen(*_args, **_kwargs):
        raise FakeHTTPError()

    monkeypatch.setattr("apprentice.llm.client.request.urlopen", fake_urlopen)

    with pytest.raises(ModelBackendError) as excinfo:
        _client().complete([ConversationTurn("user", "goal")])

    assert "HTTP 529" in str(excinfo.value)
    assert "overloaded_error" in str(excinfo.value)


def test_complete_transport_error_raises_backend_error(monkeypatch) -> None:
    def fake_urlopen(*_args, **_kwargs):
        raise URLError("connection refused")

    monkeypatch.setattr("apprentice.llm.client.request.urlopen", fake_urlopen)

    with pytest.raises(ModelBackendError, match="transport error"):
        _client().complete([ConversationTurn("user", "goal")])


def test_complete_invalid_json_raises_backend_error(monkeypatch) -> None:
    monkeypatch.setattr(
        "apprentice.llm.client.request.urlopen", lambda *_a, **_k: FakeResponse(b"not-json")
    )

    with pytest.raises(ModelBackendError, match="parsing error"):
        _client().complete([ConversationTurn("user", "goal")])


@pytest.mark.parametrize(
    "error",
    [
        http.client.RemoteDisconnected("Remote end closed connection without response"),
        ConnectionResetError(104, "Connection reset by peer"),
        http.client.IncompleteRead(b"partial"),
    ],
)
def test_complete_dropped_connection_raises_backend_error(monkeypatch, error) -> None:
    def fake_urlopen(*_args, **_kwargs):
        raise error

    monkeypatch.setattr("apprentice.llm.client.request.urlopen", fake_urlopen)

    with pytest.raises(ModelBackendError, match="connection error"):
        _client().complete([ConversationTurn("user", "goal")])
