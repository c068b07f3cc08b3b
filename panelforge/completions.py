"""HTTP client for OpenAI-style chat-completion endpoints."""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional, Sequence

import httpx  # type: ignore[import-untyped]

from panelforge.errors import StreamTransportError, UpstreamHTTPError
from panelforge.relay import StreamRelay

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response) -> str:
    detail_payload: object = response.text
    try:
        detail_payload = response.json()
    except ValueError:
        pass
    if isinstance(detail_payload, str):
        return detail_payload
    return json.dumps(detail_payload, default=str)


class CompletionClient:
    """Talks to one chat-completion endpoint, streaming or not."""

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        user_agent: str = "panelforge",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._api_key = api_key or None
        self._user_agent = user_agent
        self._timeout = timeout
        self._transport = transport

    @property
    def url(self) -> str:
        return self._url

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": self._user_agent}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _client(self, timeout: float | None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(timeout if timeout is not None else self._timeout, connect=10.0),
        )

    async def complete(self, messages: Sequence[dict[str, str]], *, model: str, **extra: Any) -> str:
        """Send one non-streaming request and return the assistant message text."""
        payload = {"model": model, "messages": list(messages), **extra}
        try:
            async with self._client(None) as client:
                response = await client.post(self._url, json=payload, headers=self._headers())
        except httpx.TransportError as exc:
            raise StreamTransportError(f"Unable to reach completion endpoint {self._url}: {exc}") from exc

        if not response.is_success:
            detail = _detail(response)
            logger.error("Completion request to %s failed: HTTP %s", self._url, response.status_code)
            raise UpstreamHTTPError(response.status_code, detail, url=self._url)

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamHTTPError(response.status_code, "response did not contain a message", url=self._url) from exc
        if not isinstance(content, str):
            raise UpstreamHTTPError(response.status_code, "message content is not text", url=self._url)
        return content

    async def stream(
        self,
        messages: Sequence[dict[str, str]],
        *,
        model: str,
        url: Optional[str] = None,
        enable_tools: bool = False,
        timeout: float | None = None,
    ) -> AsyncIterator[str]:
        """Yield text deltas of a streaming completion until ``[DONE]`` or end of body."""
        target = url or self._url
        payload: dict[str, Any] = {"model": model, "messages": list(messages), "stream": True}
        if enable_tools:
            payload["enable_tools"] = True

        try:
            async with self._client(timeout) as client:
                async with client.stream("POST", target, json=payload, headers=self._headers()) as response:
                    if not response.is_success:
                        await response.aread()
                        detail = _detail(response)
                        logger.error("Streaming request to %s failed: HTTP %s", target, response.status_code)
                        raise UpstreamHTTPError(response.status_code, detail, url=target)

                    relay = StreamRelay(response.aiter_text())
                    async for delta in relay:
                        yield delta
                    if not relay.terminated:
                        logger.warning(
                            "Stream from %s closed without %s sentinel after %d deltas", target, "[DONE]", relay.deltas
                        )
                    else:
                        logger.debug("Stream from %s finished after %d deltas", target, relay.deltas)
        except httpx.TransportError as exc:
            raise StreamTransportError(f"Stream from {target} failed: {exc}") from exc


__all__ = ["CompletionClient"]
