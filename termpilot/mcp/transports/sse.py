"""MCP over Server-Sent Events: GET push stream plus POSTed requests."""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import urljoin

import httpx

from termpilot.exceptions import ConnectError, TransportError
from termpilot.logging import get_logger
from termpilot.mcp.transports.base import BaseTransport
from termpilot.mcp.transports.framing import ServerSentEvent, SSEDecoder

log = get_logger(__name__)


def build_events_url(url: str) -> str:
    """Derive the push-stream URL from a configured server URL."""
    if url.endswith("/"):
        return url + "events"
    if url.endswith("/sse") or url.endswith("/events"):
        return url
    if "/message" in url:
        return url.replace("/message", "/events", 1)
    if "/send" in url:
        return url.replace("/send", "/events", 1)
    return url + "/events"


def build_message_url(url: str) -> str:
    """Derive the request POST URL from a configured server URL."""
    if url.endswith("/events"):
        return url[: -len("/events")] + "/message"
    if url.endswith("/sse"):
        return url[: -len("/sse")] + "/message"
    if "/events" in url:
        return url.replace("/events", "/message", 1)
    if url.endswith("/message") or url.endswith("/send"):
        return url
    if url.endswith("/"):
        return url + "message"
    return url + "/message"


class SSETransport(BaseTransport):
    """SSE transport with bounded reconnection of the push channel."""

    kind = "sse"
    max_reconnect_attempts = 5
    reconnect_delay_seconds = 3.0

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__()
        self.url = url
        self.headers = dict(headers or {})
        self.events_url = build_events_url(url)
        self.message_url = build_message_url(url)
        self._client = http_client
        self._owns_client = http_client is None
        self._stream_task: asyncio.Task | None = None
        self._reconnect_attempts = 0
        self._closing = False

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, read=None),
                follow_redirects=True,
            )
        return self._client

    async def _open(self) -> None:
        self._closing = False
        self._reconnect_attempts = 0
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._stream_task = asyncio.create_task(self._run_stream(ready))
        await ready
        log.info("SSE stream opened", url=self.events_url)

    async def _run_stream(self, ready: asyncio.Future[None]) -> None:
        while True:
            try:
                await self._consume_stream(ready)
                error: Exception = TransportError("Event stream closed")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e

            if not ready.done():
                ready.set_exception(
                    error if isinstance(error, ConnectError)
                    else ConnectError(f"SSE connect failed: {error}")
                )
                return
            if self._closing:
                return

            if self._reconnect_attempts >= self.max_reconnect_attempts:
                log.error("SSE reconnect attempts exhausted", url=self.events_url, error=str(error))
                self._connected = False
                self._fail_pending(TransportError("Connection failed after max reconnect attempts"))
                self._close_subscriptions()
                return

            self._reconnect_attempts += 1
            log.warning(
                "SSE stream lost, reconnecting",
                url=self.events_url,
                attempt=self._reconnect_attempts,
                max_attempts=self.max_reconnect_attempts,
                error=str(error),
            )
            await asyncio.sleep(self.reconnect_delay_seconds * self._reconnect_attempts)

    async def _consume_stream(self, ready: asyncio.Future[None]) -> None:
        headers = {**self.headers, "Accept": "text/event-stream", "Cache-Control": "no-cache"}
        async with self._get_client().stream("GET", self.events_url, headers=headers) as response:
            if not response.is_success:
                raise ConnectError(f"SSE connect failed: HTTP {response.status_code}")
            self._reconnect_attempts = 0
            if not ready.done():
                ready.set_result(None)

            decoder = SSEDecoder()
            async for line in response.aiter_lines():
                event = decoder.feed_line(line)
                if event is not None:
                    self._handle_event(event)
            event = decoder.flush()
            if event is not None:
                self._handle_event(event)

    def _handle_event(self, event: ServerSentEvent) -> None:
        if event.event == "endpoint":
            target = event.data.strip()
            if target:
                self.message_url = urljoin(self.events_url, target)
                log.debug("SSE message endpoint announced", url=self.message_url)
            return
        self._dispatch_raw(event.data)

    async def _transmit(self, payload: dict[str, Any], expects_response: bool) -> None:
        headers = {**self.headers, "Content-Type": "application/json"}
        try:
            response = await self._get_client().post(self.message_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"SSE request failed: {e}") from e

        if not response.is_success:
            raise TransportError(f"HTTP {response.status_code}: {response.text}")

        # 202 Accepted (or an empty body) means the answer comes over the stream.
        if response.status_code == 202 or not response.content.strip():
            return
        if "json" in response.headers.get("content-type", ""):
            self._dispatch_raw(response.text)

    async def _close(self) -> None:
        self._closing = True
        task = self._stream_task
        self._stream_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
