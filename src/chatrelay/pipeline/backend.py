"""
Backend client — POSTs normalized messages to the Django chat webhook.

Request:  POST <base><path>
          {"external_id", "text", "provider_message_id", "raw"}
Response: {"reply_text": str} or {"reply": str}

Errors are raised as BackendError carrying the status code and a truncated
body so the caller can log them and fall back. No retries happen here: the
backend may already have acted on a request that timed out.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chatrelay.core.config import BackendConfig

logger = logging.getLogger(__name__)

# Accepted reply fields, in order of preference
REPLY_FIELDS = ("reply_text", "reply")

_MAX_BODY_LOG = 500


class BackendError(Exception):
    """Backend call failed (timeout, network error, non-2xx, bad JSON)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def extract_reply(data: Any) -> str | None:
    """Pick the first non-blank reply field from a response body."""
    if not isinstance(data, dict):
        return None
    for key in REPLY_FIELDS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class BackendClient:
    """Async HTTP client for the backend webhook."""

    def __init__(
        self,
        config: BackendConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def url(self) -> str:
        return self._config.chat_url

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=self._config.timeout,
            transport=self._transport,
        )

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.auth_token:
            headers["Authorization"] = f"Bearer {self._config.auth_token}"
        return headers

    async def post_message(self, payload: dict[str, Any]) -> str | None:
        """Send one message; return the reply text, or None if the backend gave none.

        Raises:
            BackendError: on a bad URL, timeout, connection failure, non-2xx
                or non-JSON body.
        """
        if self._client is None:
            await self.start()
        assert self._client is not None

        try:
            resp = await self._client.post(
                self.url, json=payload, headers=self._headers()
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise BackendError(f"Backend URL is invalid ({self.url!r}): {e}") from e
        except httpx.TimeoutException as e:
            raise BackendError(f"Backend timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise BackendError(f"Backend request failed: {e!r}") from e

        if not resp.is_success:
            raise BackendError(
                f"Backend returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text[:_MAX_BODY_LOG],
            )

        if not resp.content:
            return None

        try:
            data = resp.json()
        except ValueError as e:
            raise BackendError(
                "Backend returned a non-JSON body",
                status_code=resp.status_code,
                body=resp.text[:_MAX_BODY_LOG],
            ) from e

        return extract_reply(data)
