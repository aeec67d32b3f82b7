"""Transport base class: correlation, notification fan-out, handshake."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any

from termpilot.exceptions import ConnectError, ProtocolError, TransportError
from termpilot.logging import get_logger
from termpilot.mcp.messages import (
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    is_response,
)

log = get_logger(__name__)

_CLOSED = object()


class NotificationSubscription:
    """Async-iterable view of inbound notifications for one consumer."""

    def __init__(self, owner: "BaseTransport"):
        self._owner = owner
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    def _push(self, item: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    def _finish(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def close(self) -> None:
        """Stop receiving; pending iteration ends."""
        self._owner._unsubscribe(self)
        self._finish()

    def __aiter__(self) -> "NotificationSubscription":
        return self

    async def __anext__(self) -> JsonRpcNotification:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class BaseTransport(ABC):
    """Abstract transport for one MCP connection.

    Subclasses implement `_open`, `_close` and `_transmit`; inbound
    messages are fed to `_dispatch` from whatever reader the channel uses.
    """

    kind: str = ""

    def __init__(self) -> None:
        self._pending: dict[int | str, asyncio.Future[JsonRpcResponse]] = {}
        self._subscriptions: list[NotificationSubscription] = []
        self._connected = False
        self._request_id = 0
        self._handshake_lock = asyncio.Lock()
        self._initialize_result: dict[str, Any] | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def initialize_result(self) -> dict[str, Any] | None:
        return self._initialize_result

    async def connect(self) -> None:
        """Establish the channel; raises ConnectError when unreachable."""
        if self._connected:
            return
        try:
            await self._open()
        except ConnectError:
            await self._safe_close()
            raise
        except Exception as e:
            await self._safe_close()
            raise ConnectError(f"{self.kind or 'transport'} connect failed: {e}") from e
        self._connected = True

    async def disconnect(self) -> None:
        """Release resources and reject all pending calls. Idempotent."""
        self._connected = False
        await self._safe_close()
        self._fail_pending(TransportError("Transport disconnected"))
        self._close_subscriptions()

    async def send(self, request: JsonRpcRequest) -> JsonRpcResponse:
        """Send a request and wait for the correlated response."""
        if not self._connected:
            raise TransportError("Transport not connected")

        if request.id is None:
            request.id = self._next_id()
        if request.id in self._pending:
            raise TransportError(f"Request id already in flight: {request.id}")

        future: asyncio.Future[JsonRpcResponse] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        try:
            await self._transmit(request.to_dict(), expects_response=True)
            return await future
        finally:
            self._pending.pop(request.id, None)

    async def notify(self, notification: JsonRpcNotification) -> None:
        """Fire-and-forget message with no id."""
        if not self._connected:
            raise TransportError("Transport not connected")
        await self._transmit(notification.to_dict(), expects_response=False)

    async def initialize(
        self,
        client_name: str,
        client_version: str,
        protocol_version: str,
        capabilities: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Run the MCP handshake once; later calls return the cached result."""
        async with self._handshake_lock:
            if self._initialize_result is not None:
                return self._initialize_result
            response = await self.send(
                JsonRpcRequest(
                    method="initialize",
                    params={
                        "protocolVersion": protocol_version,
                        "capabilities": capabilities or {},
                        "clientInfo": {"name": client_name, "version": client_version},
                    },
                )
            )
            try:
                response.raise_for_error()
            except ProtocolError as e:
                raise ConnectError(f"Handshake rejected: {e}") from e
            result = response.result if isinstance(response.result, dict) else {}
            await self.notify(JsonRpcNotification(method="notifications/initialized"))
            self._initialize_result = result
            return result

    def subscribe(self) -> NotificationSubscription:
        """Open a notification stream; closed when the transport closes."""
        subscription = NotificationSubscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: NotificationSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _next_id(self) -> int:
        self._request_id += 1
        while self._request_id in self._pending:
            self._request_id += 1
        return self._request_id

    def _dispatch(self, message: Any) -> None:
        """Route one decoded inbound message."""
        if isinstance(message, list):
            for item in message:
                self._dispatch(item)
            return
        if not isinstance(message, dict):
            log.warning("Dropping non-object MCP message", transport=self.kind)
            return

        if is_response(message):
            future = self._pending.get(message["id"])
            if future is not None and not future.done():
                future.set_result(JsonRpcResponse.from_dict(message))
            else:
                log.warning("Unexpected response id", transport=self.kind, id=message.get("id"))
            return

        if message.get("method"):
            notification = JsonRpcNotification.from_dict(message)
            for subscription in list(self._subscriptions):
                subscription._push(notification)
            return

        log.warning("Dropping unrecognized MCP message", transport=self.kind)

    def _dispatch_raw(self, raw: str) -> None:
        """Parse one JSON payload and dispatch it; parse errors are logged."""
        text = raw.strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError as e:
            log.warning("Failed to parse MCP message", transport=self.kind, error=str(e))
            return
        self._dispatch(message)

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    def _close_subscriptions(self) -> None:
        for subscription in list(self._subscriptions):
            subscription._finish()
        self._subscriptions.clear()

    async def _safe_close(self) -> None:
        try:
            await self._close()
        except Exception as e:
            log.warning("Error while closing transport", transport=self.kind, error=str(e))

    @abstractmethod
    async def _open(self) -> None:
        """Open the physical channel."""
        ...

    @abstractmethod
    async def _close(self) -> None:
        """Release the physical channel."""
        ...

    @abstractmethod
    async def _transmit(self, payload: dict[str, Any], expects_response: bool) -> None:
        """Write one message; responses are delivered through `_dispatch`."""
        ...
