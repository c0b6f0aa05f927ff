"""Outbound HTTP fetch collaborator built on ``urllib``."""

from __future__ import annotations

import abc
import http.client
import logging
from dataclasses import dataclass
from urllib import request
from urllib.error import HTTPError, URLError

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


@dataclass(slots=True)
class FetchResponse:
    url: str
    status: int
    content_type: str | None
    body: str

    def to_dict(self) -> dict[str, object]:
        return {
            "url": self.url,
            "status": self.status,
            "content_type": self.content_type,
            "body": self.body,
        }


class FetchError(Exception):
    """Transport-level failure (DNS, refused connection, TLS)."""


class FetchTimeout(FetchError):
    pass


class FetchTooLarge(FetchError):
    pass


class HttpFetcher(abc.ABC):
    @abc.abstractmethod
    def fetch(self, url: str) -> FetchResponse:
        """Fetch ``url`` and return the decoded body."""


class UrllibFetcher(HttpFetcher):
    """GET requests with a bounded timeout and a maximum body size."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        max_bytes: int = 1024 * 1024,
        user_agent: str = "apprentice/0.1",
    ) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.user_agent = user_agent

    def fetch(self, url: str) -> FetchResponse:
        req = request.Request(url, headers={"User-Agent": self.user_agent}, method="GET")
        LOGGER.debug("web_fetch_request", extra={"url": url, "timeout_seconds": self.timeout})
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                return self._read_response(url, resp, resp.status)
        except HTTPError as exc:
            # Error statuses still carry a body worth showing to the agent.
            if exc.fp is None:
                return FetchResponse(url=url, status=exc.code, content_type=None, body="")
            try:
                return self._read_response(url, exc, exc.code)
            finally:
                exc.close()
        except TimeoutError as exc:
            LOGGER.warning("web_fetch_timeout", extra={"url": url, "timeout_seconds": self.timeout})
            raise FetchTimeout(f"Fetching {url} timed out after {self.timeout:.1f}s") from exc
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise FetchTimeout(
                    f"Fetching {url} timed out after {self.timeout:.1f}s"
                ) from exc
            LOGGER.warning("web_fetch_transport_error", extra={"url": url, "reason": str(exc.reason)})
            raise FetchError(f"Failed to fetch {url}: {exc.reason}") from exc
        except (OSError, http.client.HTTPException) as exc:
            LOGGER.warning(
                "web_fetch_connection_error", extra={"url": url, "error": repr(exc)}
            )
            raise FetchError(f"Failed to fetch {url}: {exc!r}") from exc

    def _read_response(self, url: str, resp: object, status: int) -> FetchResponse:
        headers = getattr(resp, "headers", None)
        declared = headers.get("Content-Length") if headers is not None else None
        if declared is not None and declared.isdigit() and int(declared) > self.max_bytes:
            raise FetchTooLarge(
                f"Response from {url} declares {declared} bytes; limit is {self.max_bytes}"
            )

        chunks: list[bytes] = []
        received = 0
        while True:
            chunk = resp.read(_CHUNK_SIZE)  # type: ignore[attr-defined]
            if not chunk:
                break
            received += len(chunk)
            if received > self.max_bytes:
                raise FetchTooLarge(f"Response from {url} exceeded {self.max_bytes} bytes")
            chunks.append(chunk)

        content_type = headers.get("Content-Type") if headers is not None else None
        charset = "utf-8"
        if headers is not None and hasattr(headers, "get_content_charset"):
            charset = headers.get_content_charset() or "utf-8"
        try:
            body = b"".join(chunks).decode(charset, errors="replace")
        except LookupError:
            body = b"".join(chunks).decode("utf-8", errors="replace")
        LOGGER.debug("web_fetch_response", extra={"url": url, "status": status, "bytes": received})
        return FetchResponse(url=url, status=status, content_type=content_type, body=body)
