"""MCP client manager: live connections, tool routing and call history."""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from termpilot.config import MCPConfig
from termpilot.exceptions import (
    ConnectError,
    ProtocolError,
    ServerNotConnectedError,
    ToolTimeoutError,
    UnknownToolError,
)
from termpilot.llm import ToolDefinition
from termpilot.logging import get_logger
from termpilot.mcp.messages import (
    PERMANENT_ERROR_CODES,
    JsonRpcRequest,
    MCPResource,
    MCPTool,
    ServerConfig,
    ServerState,
    ServerStatus,
    ToolCallRecord,
    ToolCallStats,
    parse_foreign_servers,
)
from termpilot.mcp.storage import SERVERS_KEY, KeyValueStore
from termpilot.mcp.transports import BaseTransport, create_transport
from termpilot.redaction import redact_secrets
from termpilot.tools.registry import ToolResult

log = get_logger(__name__)

COMPOSITE_PREFIX = "mcp_"
TOOLS_CHANGED_NOTIFICATION = "notifications/tools/list_changed"

TransportFactory = Callable[[ServerConfig], BaseTransport]
StatusListener = Callable[[ServerState], None]
ToolsListener = Callable[[], None]


def format_composite_name(server_id: str, tool_name: str) -> str:
    """Catalog name under which a server tool is advertised."""
    return f"{COMPOSITE_PREFIX}{server_id}_{tool_name}"


def parse_tool_call(name: str) -> tuple[str, str] | None:
    """Split a composite name into (server_id, tool_name).

    Returns None for names that are not routed to MCP servers.
    """
    if not name.startswith(COMPOSITE_PREFIX):
        return None
    parts = name.split("_")
    if len(parts) < 3 or not parts[1] or not parts[2]:
        return None
    return parts[1], "_".join(parts[2:])


def format_tool_result(result: Any) -> str:
    """Render a tools/call result as display text."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        lines: list[str] = []
        for item in result["content"]:
            if not isinstance(item, dict):
                lines.append(str(item))
                continue
            kind = item.get("type")
            if kind == "text":
                lines.append(str(item.get("text", "")))
            elif kind in ("image", "audio"):
                lines.append(f"[{kind}: {item.get('mimeType', 'unknown')}]")
            elif kind == "resource":
                resource = item.get("resource") or {}
                text = resource.get("text")
                lines.append(str(text) if text is not None else f"[resource: {resource.get('uri', '')}]")
            else:
                lines.append(json.dumps(item, indent=2, ensure_ascii=False))
        return "\n".join(lines)
    if isinstance(result, list):
        return "\n".join(
            item if isinstance(item, str) else json.dumps(item, indent=2, ensure_ascii=False)
            for item in result
        )
    return json.dumps(result, indent=2, ensure_ascii=False)


@dataclass
class LiveClient:
    """Runtime state of one connected server."""

    config: ServerConfig
    transport: BaseTransport
    capabilities: dict[str, Any] = field(default_factory=dict)
    server_info: dict[str, Any] = field(default_factory=dict)
    tools: list[MCPTool] = field(default_factory=list)
    resources: list[MCPResource] = field(default_factory=list)
    watcher: asyncio.Task | None = None

    @property
    def id(self) -> str:
        return self.config.id


class MCPClientManager:
    """Owns every live MCP connection keyed by server id."""

    def __init__(
        self,
        store: KeyValueStore,
        settings: MCPConfig | None = None,
        transport_factory: TransportFactory | None = None,
    ):
        self.store = store
        self.settings = settings or MCPConfig()
        self._transport_factory = transport_factory or create_transport
        self._clients: dict[str, LiveClient] = {}
        self._status: dict[str, tuple[ServerStatus, str | None]] = {}
        self._known: dict[str, ServerConfig] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._retired_ids: set[str] = set()
        self._history: deque[ToolCallRecord] = deque(maxlen=self.settings.history_capacity)
        self._status_listeners: list[StatusListener] = []
        self._tools_listeners: list[ToolsListener] = []
        self._startup_tasks: list[asyncio.Task] = []

    # Composite names are exposed on the manager as well.
    format_composite_name = staticmethod(format_composite_name)
    parse_tool_call = staticmethod(parse_tool_call)

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        lock = self._locks.get(server_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[server_id] = lock
        return lock

    def _timeout_seconds(self, config: ServerConfig) -> float:
        return (config.timeout or self.settings.default_timeout_ms) / 1000

    # ------------------------------------------------------------------
    # Listeners

    def on_status_changed(self, callback: StatusListener) -> Callable[[], None]:
        """Register a status listener; returns an unsubscribe callable."""
        self._status_listeners.append(callback)
        return lambda: self._remove_listener(self._status_listeners, callback)

    def on_tools_changed(self, callback: ToolsListener) -> Callable[[], None]:
        """Register a tool-list listener; returns an unsubscribe callable."""
        self._tools_listeners.append(callback)
        return lambda: self._remove_listener(self._tools_listeners, callback)

    @staticmethod
    def _remove_listener(listeners: list[Any], callback: Any) -> None:
        if callback in listeners:
            listeners.remove(callback)

    def _set_status(self, config: ServerConfig, status: ServerStatus, error: str | None = None) -> None:
        self._known[config.id] = config
        self._status[config.id] = (status, error)
        state = self._state_for(config)
        for listener in list(self._status_listeners):
            try:
                listener(state)
            except Exception as e:
                log.warning("MCP status listener failed", error=str(e))

    def _emit_tools_changed(self) -> None:
        for listener in list(self._tools_listeners):
            try:
                listener()
            except Exception as e:
                log.warning("MCP tools listener failed", error=str(e))

    def _state_for(self, config: ServerConfig) -> ServerState:
        status, error = self._status.get(config.id, (ServerStatus.DISCONNECTED, None))
        client = self._clients.get(config.id)
        return ServerState(
            config=config,
            status=status,
            error=error,
            tool_count=len(client.tools) if client else 0,
        )

    # ------------------------------------------------------------------
    # Connection lifecycle

    async def connect(self, config: ServerConfig) -> LiveClient:
        """Connect (or reconnect) one server and discover its tools.

        Raises:
            ConnectError if the channel or the handshake fails
        """
        async with self._lock_for(config.id):
            await self._disconnect_locked(config.id)
            self._set_status(config, ServerStatus.CONNECTING)

            transport: BaseTransport | None = None
            try:
                transport = self._transport_factory(config)
                timeout = self._timeout_seconds(config)
                await asyncio.wait_for(transport.connect(), timeout=timeout)
                init_result = await asyncio.wait_for(
                    transport.initialize(
                        self.settings.client_name,
                        self.settings.client_version,
                        self.settings.protocol_version,
                    ),
                    timeout=timeout,
                )
                client = LiveClient(
                    config=config,
                    transport=transport,
                    capabilities=dict(init_result.get("capabilities") or {}),
                    server_info=dict(init_result.get("serverInfo") or {}),
                )
                client.tools = await self._list_tools(client)
                client.resources = await self._list_resources(client)
            except asyncio.CancelledError:
                if transport is not None:
                    await transport.disconnect()
                self._set_status(config, ServerStatus.DISCONNECTED)
                raise
            except Exception as e:
                if transport is not None:
                    await transport.disconnect()
                if isinstance(e, asyncio.TimeoutError):
                    message = f"Connection timed out after {int(self._timeout_seconds(config) * 1000)}ms"
                else:
                    message = redact_secrets(str(e) or type(e).__name__)
                self._set_status(config, ServerStatus.ERROR, message)
                log.error("Failed to connect MCP server", server_id=config.id, error=message)
                raise ConnectError(message, server_id=config.id) from e

            self._clients[config.id] = client
            client.watcher = asyncio.create_task(self._watch_notifications(client))
            self._set_status(config, ServerStatus.CONNECTED)
            self._emit_tools_changed()
            log.info(
                "MCP server connected",
                server_id=config.id,
                name=config.name,
                tool_count=len(client.tools),
                resource_count=len(client.resources),
            )
            return client

    async def _list_tools(self, client: LiveClient) -> list[MCPTool]:
        try:
            response = await asyncio.wait_for(
                client.transport.send(JsonRpcRequest(method="tools/list")),
                timeout=self._timeout_seconds(client.config),
            )
            response.raise_for_error()
            raw_tools = (response.result or {}).get("tools") or []
            return [MCPTool.model_validate(item) for item in raw_tools]
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Failed to list tools", server_id=client.id, error=str(e))
            return []

    async def _list_resources(self, client: LiveClient) -> list[MCPResource]:
        try:
            response = await asyncio.wait_for(
                client.transport.send(JsonRpcRequest(method="resources/list")),
                timeout=self._timeout_seconds(client.config),
            )
            response.raise_for_error()
            raw_resources = (response.result or {}).get("resources") or []
            return [MCPResource.model_validate(item) for item in raw_resources]
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Failed to list resources", server_id=client.id, error=str(e))
            return []

    async def _watch_notifications(self, client: LiveClient) -> None:
        """Consume server pushes until the transport closes."""
        subscription = client.transport.subscribe()
        async for notification in subscription:
            if notification.method == TOOLS_CHANGED_NOTIFICATION:
                client.tools = await self._list_tools(client)
                log.info("MCP tool list refreshed", server_id=client.id, tool_count=len(client.tools))
                self._emit_tools_changed()
            else:
                log.debug("MCP notification", server_id=client.id, method=notification.method)

        # Transport closed underneath us (process exit, reconnect exhaustion).
        if self._clients.get(client.id) is client:
            self._clients.pop(client.id, None)
            await client.transport.disconnect()
            self._set_status(client.config, ServerStatus.ERROR, "Connection lost")
            self._emit_tools_changed()
            log.warning("MCP server connection lost", server_id=client.id)

    async def disconnect(self, server_id: str) -> None:
        """Tear down one connection. No-op when not connected."""
        async with self._lock_for(server_id):
            await self._disconnect_locked(server_id)

    async def _disconnect_locked(self, server_id: str) -> None:
        client = self._clients.pop(server_id, None)
        if client is None:
            return

        watcher = client.watcher
        client.watcher = None
        try:
            await client.transport.disconnect()
        except Exception as e:
            log.warning("Error disconnecting MCP server", server_id=server_id, error=str(e))
        if watcher is not None and not watcher.done():
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass

        self._set_status(client.config, ServerStatus.DISCONNECTED)
        self._emit_tools_changed()
        log.info("MCP server disconnected", server_id=server_id)

    async def disconnect_all(self) -> None:
        await asyncio.gather(*(self.disconnect(server_id) for server_id in list(self._clients)))

    async def close(self) -> None:
        """Cancel pending auto-connects and drop every connection."""
        for task in self._startup_tasks:
            if not task.done():
                task.cancel()
        if self._startup_tasks:
            await asyncio.gather(*self._startup_tasks, return_exceptions=True)
        self._startup_tasks = []
        await self.disconnect_all()

    def get_client(self, server_id: str) -> LiveClient | None:
        return self._clients.get(server_id)

    def is_connected(self, server_id: str) -> bool:
        client = self._clients.get(server_id)
        return client is not None and client.transport.is_connected

    def _connected_client(self, server_id: str) -> LiveClient:
        client = self._clients.get(server_id)
        if client is None or not client.transport.is_connected:
            raise ServerNotConnectedError(server_id)
        return client

    # ------------------------------------------------------------------
    # Tool calls

    def _is_retryable(self, error: Exception) -> bool:
        if self.settings.retry_permanent_errors:
            return True
        if isinstance(error, ServerNotConnectedError):
            return False
        if isinstance(error, ProtocolError) and error.code in PERMANENT_ERROR_CODES:
            return False
        return True

    async def _call_tool_once(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        timeout_ms: int,
    ) -> Any:
        # Re-resolve every attempt; a concurrent disconnect may have happened.
        client = self._connected_client(server_id)
        request = JsonRpcRequest(method="tools/call", params={"name": tool_name, "arguments": arguments})
        try:
            response = await asyncio.wait_for(client.transport.send(request), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError(tool_name, timeout_ms) from e
        response.raise_for_error()
        return response.result

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> Any:
        """Invoke a tool with per-call timeout and retries.

        Exactly one history record is written per invocation that reaches
        a connected server, reflecting the final outcome.

        Raises:
            ServerNotConnectedError if the server has no live connection
            The last attempt's error once retries are exhausted
        """
        arguments = dict(arguments or {})
        client = self._connected_client(server_id)
        timeout_ms = client.config.timeout or self.settings.default_timeout_ms

        started = time.monotonic()
        attempts = 0
        last_error: Exception | None = None
        try:
            while True:
                attempts += 1
                try:
                    result = await self._call_tool_once(server_id, tool_name, arguments, timeout_ms)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    last_error = e
                    if attempts > self.settings.max_retries or not self._is_retryable(e):
                        break
                    delay_ms = self.settings.retry_delay_ms * attempts
                    log.warning(
                        "Tool call failed, retrying",
                        server_id=server_id,
                        tool=tool_name,
                        attempt=attempts,
                        delay_ms=delay_ms,
                        error=str(e),
                    )
                    await asyncio.sleep(delay_ms / 1000)
                    continue

                self._record(server_id, tool_name, arguments, started, attempts, result=result)
                return result
        except asyncio.CancelledError:
            self._record(server_id, tool_name, arguments, started, attempts, error="Tool call cancelled")
            raise

        assert last_error is not None
        self._record(server_id, tool_name, arguments, started, attempts, error=str(last_error))
        log.error(
            "Tool call failed",
            server_id=server_id,
            tool=tool_name,
            attempts=attempts,
            error=str(last_error),
        )
        raise last_error

    def _record(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        started: float,
        attempts: int,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        record = ToolCallRecord(
            server_id=server_id,
            tool_name=tool_name,
            arguments=arguments,
            success=error is None,
            duration_ms=int((time.monotonic() - started) * 1000),
            result=result,
            error=redact_secrets(error) if error is not None else None,
            attempts=attempts,
        )
        self._history.appendleft(record)
        log.debug(
            "MCP tool call",
            server_id=server_id,
            tool=tool_name,
            success=record.success,
            duration_ms=record.duration_ms,
        )

    async def call_tool_formatted(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> str:
        """Invoke a tool and render its result as display text."""
        return format_tool_result(await self.call_tool(server_id, tool_name, arguments))

    async def execute_mcp_tool(self, composite_name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Route a composite tool name; failures become error results."""
        parsed = parse_tool_call(composite_name)
        if parsed is None:
            return ToolResult(success=False, error=str(UnknownToolError(composite_name)))
        server_id, tool_name = parsed

        try:
            result = await self.call_tool(server_id, tool_name, arguments)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return ToolResult(success=False, error=redact_secrets(str(e) or type(e).__name__))

        text = format_tool_result(result)
        if isinstance(result, dict) and result.get("isError"):
            return ToolResult(success=False, content=text, error=redact_secrets(text) or "Tool reported an error")
        return ToolResult(success=True, content=text)

    # ------------------------------------------------------------------
    # Catalog

    def get_all_tools(self) -> list[tuple[LiveClient, MCPTool]]:
        return [
            (client, tool)
            for client in self._clients.values()
            if client.transport.is_connected
            for tool in client.tools
        ]

    def get_all_resources(self) -> list[tuple[LiveClient, MCPResource]]:
        return [
            (client, resource)
            for client in self._clients.values()
            if client.transport.is_connected
            for resource in client.resources
        ]

    def get_tool_definitions(self) -> list[ToolDefinition]:
        """Every connected server tool under its composite name."""
        return [
            ToolDefinition(
                name=format_composite_name(client.id, tool.name),
                description=f"[MCP:{client.config.name}] {tool.description}".rstrip(),
                parameters=tool.input_schema,
            )
            for client, tool in self.get_all_tools()
        ]

    # ------------------------------------------------------------------
    # Persistence

    def _load_raw_servers(self) -> list[Any]:
        """Stored entries exactly as persisted, including ones that fail validation."""
        raw_entries = self.store.load(SERVERS_KEY, []) or []
        if not isinstance(raw_entries, list):
            log.warning("Persisted MCP server list is not a list; ignoring")
            return []
        return list(raw_entries)

    def load_servers(self) -> list[ServerConfig]:
        """Read the persisted server list; invalid entries are skipped."""
        configs: list[ServerConfig] = []
        for entry in self._load_raw_servers():
            try:
                configs.append(ServerConfig.model_validate(entry))
            except ValidationError as e:
                log.warning("Skipping invalid MCP server entry", error=str(e))
        return configs

    @staticmethod
    def _raw_id(entry: Any) -> Any:
        return entry.get("id") if isinstance(entry, dict) else None

    def get_all_servers(self) -> list[ServerState]:
        return [self._state_for(config) for config in self.load_servers()]

    def get_server(self, server_id: str) -> ServerState | None:
        for state in self.get_all_servers():
            if state.id == server_id:
                return state
        return None

    async def add_server(self, config: ServerConfig) -> None:
        """Persist a new server and connect it when enabled."""
        raw_entries = self._load_raw_servers()
        if any(self._raw_id(entry) == config.id for entry in raw_entries):
            raise ValueError(f"MCP server id already exists: {config.id}")
        if config.id in self._retired_ids:
            raise ValueError(f"MCP server id was deleted in this session: {config.id}")

        await self.disconnect(config.id)
        raw_entries.append(config.to_storage())
        self.store.save(SERVERS_KEY, raw_entries)
        log.info("MCP server added", server_id=config.id, name=config.name)
        if config.enabled:
            await self.connect(config)

    async def update_server(self, config: ServerConfig) -> None:
        """Replace a persisted server and reconnect it when enabled."""
        raw_entries = self._load_raw_servers()
        index = next(
            (i for i, entry in enumerate(raw_entries) if self._raw_id(entry) == config.id),
            None,
        )
        if index is None:
            raise ValueError(f"Unknown MCP server: {config.id}")

        await self.disconnect(config.id)
        raw_entries[index] = config.to_storage()
        self.store.save(SERVERS_KEY, raw_entries)
        log.info("MCP server updated", server_id=config.id)
        if config.enabled:
            await self.connect(config)

    async def delete_server(self, server_id: str) -> None:
        await self.disconnect(server_id)
        raw_entries = [entry for entry in self._load_raw_servers() if self._raw_id(entry) != server_id]
        self.store.save(SERVERS_KEY, raw_entries)
        self._retired_ids.add(server_id)
        self._status.pop(server_id, None)
        self._known.pop(server_id, None)
        self._emit_tools_changed()
        log.info("MCP server deleted", server_id=server_id)

    async def import_servers(self, data: dict[str, Any]) -> list[ServerConfig]:
        """Import an ``mcpServers`` mapping; connect failures are logged."""
        imported = parse_foreign_servers(data)
        raw_entries = self._load_raw_servers()
        raw_entries.extend(config.to_storage() for config in imported)
        self.store.save(SERVERS_KEY, raw_entries)
        log.info("MCP servers imported", count=len(imported))

        for config in imported:
            if not config.should_auto_connect:
                continue
            try:
                await self.connect(config)
            except ConnectError as e:
                log.warning("Imported MCP server failed to connect", server_id=config.id, error=str(e))
        return imported

    # ------------------------------------------------------------------
    # Startup

    def start(self) -> None:
        """Schedule auto-connect for enabled servers without blocking."""
        try:
            configs = self.load_servers()
        except Exception as e:
            log.error("Failed to load MCP server list", error=str(e))
            return
        for config in configs:
            if config.should_auto_connect:
                self._startup_tasks.append(asyncio.create_task(self._auto_connect(config)))

    async def _auto_connect(self, config: ServerConfig) -> None:
        try:
            await self.connect(config)
        except ConnectError as e:
            log.error("Failed to auto-connect MCP server", server_id=config.id, error=str(e))

    async def wait_until_started(self) -> None:
        """Await every auto-connect attempt scheduled by `start()`."""
        if self._startup_tasks:
            await asyncio.gather(*self._startup_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # History

    def get_tool_call_history(
        self,
        limit: int | None = None,
        server_id: str | None = None,
    ) -> list[ToolCallRecord]:
        """Newest-first call records, optionally filtered by server."""
        records = [r for r in self._history if server_id is None or r.server_id == server_id]
        if limit and limit > 0:
            return records[:limit]
        return records

    def get_tool_call_stats(self) -> ToolCallStats:
        total = len(self._history)
        success = sum(1 for record in self._history if record.success)
        average = sum(record.duration_ms for record in self._history) / total if total else 0
        return ToolCallStats(
            total_calls=total,
            success_calls=success,
            failed_calls=total - success,
            average_duration_ms=round(average),
        )

    def clear_tool_call_history(self) -> None:
        self._history.clear()
        log.info("Tool call history cleared")
