"""MCP streamable HTTP transport: POST per message, optional GET push stream."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from termpilot.exceptions import TransportError
from termpilot.logging import get_logger
from termpilot.mcp.transports.base import BaseTransport
from termpilot.mcp.transports.framing import SSEDecoder

log = get_logger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


class StreamableHTTPTransport(BaseTransport):
    """Streamable HTTP transport with session tracking."""

    kind = "streamable-http"
    poll_retry_seconds = 5.0

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__()
        self.url = url
        self.headers = dict(headers or {})
        self.session_id: str | None = None
        self._client = http_client
        self._owns_client = http_client is None
        self._poll_task: asyncio.Task | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, read=None),
                follow_redirects=True,
            )
        return self._client

    def _request_headers(self, accept: str) -> dict[str, str]:
        headers = {**self.headers, "Accept": accept}
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    def _capture_session(self, response: httpx.Response) -> None:
        session = response.headers.get(SESSION_HEADER)
        if session and not self.session_id:
            self.session_id = session
            log.debug("MCP HTTP session established", url=self.url)

    async def _open(self) -> None:
        # The channel is stateless until the handshake; nothing to dial yet.
        self._get_client()

    async def initialize(self, *args: Any, **kwargs: Any) -> dict[str, Any]:
        result = await super().initialize(*args, **kwargs)
        if self._poll_task is None and self._connected:
            self._poll_task = asyncio.create_task(self._poll_loop())
        return result

    async def _transmit(self, payload: dict[str, Any], expects_response: bool) -> None:
        headers = self._request_headers("application/json, text/event-stream")
        headers["Content-Type"] = "application/json"
        try:
            async with self._get_client().stream(
                "POST", self.url, json=payload, headers=headers
            ) as response:
                self._capture_session(response)
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(f"HTTP {response.status_code}: {body}")

                content_type = response.headers.get("content-type", "")
                if "text/event-stream" in content_type:
                    await self._consume_events(response)
                else:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    if body.strip():
                        self._dispatch_raw(body)
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP request failed: {e}") from e

        if expects_response:
            future = self._pending.get(payload.get("id"))
            if future is not None and not future.done():
                future.set_exception(TransportError("Response stream ended without a result"))

    async def _consume_events(self, response: httpx.Response) -> None:
        decoder = SSEDecoder()
        async for line in response.aiter_lines():
            event = decoder.feed_line(line)
            if event is not None and event.data:
                self._dispatch_raw(event.data)
        event = decoder.flush()
        if event is not None and event.data:
            self._dispatch_raw(event.data)

    async def _poll_loop(self) -> None:
        while self._connected:
            try:
                async with self._get_client().stream(
                    "GET", self.url, headers=self._request_headers("text/event-stream")
                ) as response:
                    if response.status_code == 405:
                        log.debug("MCP HTTP server has no push stream", url=self.url)
                        return
                    if not response.is_success:
                        raise TransportError(f"HTTP {response.status_code}")
                    await self._consume_events(response)
                log.debug("MCP HTTP push stream ended", url=self.url)
            except asyncio.CancelledError:
                raise
            except (httpx.HTTPError, TransportError) as e:
                log.debug("MCP HTTP poll failed, retrying", url=self.url, error=str(e))
            except Exception as e:
                log.warning("MCP HTTP poll error, retrying", url=self.url, error=str(e))
            # Some servers close the push stream immediately; pace the re-dial.
            await asyncio.sleep(self.poll_retry_seconds)

    async def _close(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        client = self._client
        if client is not None and self.session_id:
            try:
                await client.delete(self.url, headers=self._request_headers("application/json"))
            except httpx.HTTPError as e:
                log.debug("MCP HTTP session delete failed", url=self.url, error=str(e))
        self.session_id = None

        if self._owns_client and client is not None:
            await client.aclose()
            self._client = None
