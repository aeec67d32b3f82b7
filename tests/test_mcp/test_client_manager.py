import asyncio
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

from termpilot.config import MCPConfig
from termpilot.exceptions import (
    ConnectError,
    ProtocolError,
    ServerNotConnectedError,
    ToolTimeoutError,
)
from termpilot.mcp import (
    MCPClientManager,
    MemoryStore,
    ServerConfig,
    ServerStatus,
    format_composite_name,
    format_tool_result,
    parse_tool_call,
)
from termpilot.mcp.storage import SERVERS_KEY
from termpilot.mcp.transports import BaseTransport

ECHO_SERVER = str(Path(__file__).resolve().parents[1] / "fixtures" / "echo_server.py")

Handler = Callable[[str, dict[str, Any]], "dict[str, Any] | None"]


class DummyTransport(BaseTransport):
    """Scripted transport: a handler maps (method, params) to a reply."""

    kind = "dummy"

    def __init__(self, handler: Handler, open_error: Exception | None = None):
        super().__init__()
        self.handler = handler
        self.open_error = open_error
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def _open(self) -> None:
        if self.open_error is not None:
            raise self.open_error

    async def _close(self) -> None:
        self.closed = True

    async def _transmit(self, payload: dict[str, Any], expects_response: bool) -> None:
        self.sent.append(payload)
        if not expects_response:
            return
        reply = self.handler(payload["method"], payload.get("params") or {})
        if reply is None:
            return
        message = {"jsonrpc": "2.0", "id": payload["id"], **reply}
        asyncio.get_running_loop().call_soon(self._dispatch, message)

    def push(self, method: str, params: dict[str, Any] | None = None) -> None:
        self._dispatch({"jsonrpc": "2.0", "method": method, "params": params or {}})

    def drop(self) -> None:
        """Simulate the peer going away."""
        self._connected = False
        self._close_subscriptions()


def make_handler(
    tools: list[dict[str, Any]] | None = None,
    call: Callable[[str, dict[str, Any]], dict[str, Any] | None] | None = None,
) -> Handler:
    tools = tools if tools is not None else [{"name": "ping", "description": "Reply with pong"}]

    def handler(method: str, params: dict[str, Any]) -> dict[str, Any] | None:
        if method == "initialize":
            return {"result": {"capabilities": {"tools": {}}, "serverInfo": {"name": "dummy"}}}
        if method == "tools/list":
            return {"result": {"tools": tools}}
        if method == "resources/list":
            return {"result": {"resources": [{"uri": "file:///readme", "name": "readme"}]}}
        if method == "tools/call":
            if call is not None:
                return call(params["name"], params.get("arguments") or {})
            return {"result": {"content": [{"type": "text", "text": "pong"}]}}
        return {"error": {"code": -32601, "message": f"Method not found: {method}"}}

    return handler


def dummy_config(server_id: str = "s1", **overrides: Any) -> ServerConfig:
    values: dict[str, Any] = {"id": server_id, "name": f"Server {server_id}", "command": "dummy"}
    values.update(overrides)
    return ServerConfig(**values)


def make_manager(
    handler: Handler | None = None,
    settings: MCPConfig | None = None,
    store: MemoryStore | None = None,
) -> tuple[MCPClientManager, list[DummyTransport]]:
    created: list[DummyTransport] = []

    def factory(config: ServerConfig) -> DummyTransport:
        transport = DummyTransport(handler or make_handler())
        created.append(transport)
        return transport

    manager = MCPClientManager(
        store or MemoryStore(),
        settings=settings or MCPConfig(retry_delay_ms=0),
        transport_factory=factory,
    )
    return manager, created


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_echo_server_end_to_end_over_stdio():
    manager = MCPClientManager(MemoryStore(), settings=MCPConfig(retry_delay_ms=0))
    config = ServerConfig(id="s1", name="echo", transport="stdio", command=sys.executable, args=[ECHO_SERVER])
    try:
        await manager.add_server(config)

        state = manager.get_server("s1")
        assert state is not None
        assert state.status == ServerStatus.CONNECTED
        assert state.tool_count == 3

        result = await manager.execute_mcp_tool("mcp_s1_ping", {})
        assert result.success
        assert result.content == "pong"

        echoed = await manager.call_tool_formatted("s1", "echo", {"text": "hi"})
        assert echoed == '{"text": "hi"}'

        await manager.disconnect("s1")
        with pytest.raises(ServerNotConnectedError):
            await manager.call_tool("s1", "ping", {})
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_connect_discovers_tools_and_resources():
    manager, transports = make_manager()
    client = await manager.connect(dummy_config())

    assert [tool.name for tool in client.tools] == ["ping"]
    assert [resource.uri for resource in client.resources] == ["file:///readme"]
    assert client.server_info == {"name": "dummy"}
    assert manager.is_connected("s1")

    methods = [payload["method"] for payload in transports[0].sent]
    assert methods[:2] == ["initialize", "notifications/initialized"]
    await manager.close()


@pytest.mark.asyncio
async def test_connect_failure_sets_error_status():
    created: list[DummyTransport] = []

    def factory(config: ServerConfig) -> DummyTransport:
        transport = DummyTransport(make_handler(), open_error=OSError("connection refused"))
        created.append(transport)
        return transport

    store = MemoryStore()
    manager = MCPClientManager(store, transport_factory=factory)
    store.save(SERVERS_KEY, [dummy_config().to_storage()])

    with pytest.raises(ConnectError) as exc_info:
        await manager.connect(dummy_config())
    assert exc_info.value.server_id == "s1"

    state = manager.get_server("s1")
    assert state.status == ServerStatus.ERROR
    assert "connection refused" in state.error
    assert not manager.is_connected("s1")
    assert created[0].closed


@pytest.mark.asyncio
async def test_transient_failures_are_retried_and_recorded_once():
    attempts = {"count": 0}

    def flaky(name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        attempts["count"] += 1
        if attempts["count"] < 3:
            return {"error": {"code": -32000, "message": "backend busy"}}
        return {"result": {"content": [{"type": "text", "text": "ok"}]}}

    manager, _ = make_manager(make_handler(call=flaky))
    await manager.connect(dummy_config())

    result = await manager.call_tool("s1", "ping", {})
    assert result["content"][0]["text"] == "ok"
    assert attempts["count"] == 3

    history = manager.get_tool_call_history()
    assert len(history) == 1
    assert history[0].success
    assert history[0].attempts == 3
    await manager.close()


@pytest.mark.asyncio
async def test_retry_delay_grows_with_each_attempt(monkeypatch):
    delays: list[float] = []
    real_sleep = asyncio.sleep

    async def recording_sleep(delay: float, *args: Any, **kwargs: Any) -> None:
        if delay > 0:
            delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", recording_sleep)

    def busy(name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        return {"error": {"code": -32000, "message": "backend busy"}}

    manager, _ = make_manager(make_handler(call=busy), settings=MCPConfig())
    await manager.connect(dummy_config())

    with pytest.raises(ProtocolError) as exc_info:
        await manager.call_tool("s1", "ping", {})
    assert exc_info.value.code == -32000
    assert delays == [1.0, 2.0, 3.0]
    assert manager.get_tool_call_history()[0].attempts == 4
    await manager.close()


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried():
    attempts = {"count": 0}

    def unknown(name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        attempts["count"] += 1
        return {"error": {"code": -32602, "message": f"Unknown tool: {name}"}}

    manager, _ = make_manager(make_handler(call=unknown))
    await manager.connect(dummy_config())

    with pytest.raises(ProtocolError) as exc_info:
        await manager.call_tool("s1", "nope", {})
    assert exc_info.value.code == -32602
    assert attempts["count"] == 1

    record = manager.get_tool_call_history()[0]
    assert not record.success
    assert record.attempts == 1
    assert "Unknown tool" in record.error
    await manager.close()


@pytest.mark.asyncio
async def test_permanent_errors_retried_when_configured():
    attempts = {"count": 0}

    def unknown(name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        attempts["count"] += 1
        return {"error": {"code": -32601, "message": "Method not found"}}

    settings = MCPConfig(retry_delay_ms=0, max_retries=2, retry_permanent_errors=True)
    manager, _ = make_manager(make_handler(call=unknown), settings=settings)
    await manager.connect(dummy_config())

    with pytest.raises(ProtocolError):
        await manager.call_tool("s1", "nope", {})
    assert attempts["count"] == 3
    assert manager.get_tool_call_history()[0].attempts == 3
    await manager.close()


@pytest.mark.asyncio
async def test_call_on_unconnected_server_raises_without_record():
    manager, _ = make_manager()

    with pytest.raises(ServerNotConnectedError, match="MCP server ghost not connected"):
        await manager.call_tool("ghost", "ping", {})
    assert manager.get_tool_call_history() == []


@pytest.mark.asyncio
async def test_call_timeout_raises_tool_timeout():
    def silent(name: str, arguments: dict[str, Any]) -> None:
        return None

    manager, _ = make_manager(make_handler(call=silent), settings=MCPConfig(retry_delay_ms=0, max_retries=0))
    await manager.connect(dummy_config(timeout=50))

    with pytest.raises(ToolTimeoutError, match="50ms"):
        await manager.call_tool("s1", "ping", {})
    record = manager.get_tool_call_history()[0]
    assert not record.success
    assert "timeout" in record.error.lower()
    await manager.close()


@pytest.mark.asyncio
async def test_history_is_bounded_newest_first_and_filterable():
    def echo(name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        return {"result": {"content": [{"type": "text", "text": str(arguments["i"])}]}}

    manager, _ = make_manager(make_handler(call=echo), settings=MCPConfig(retry_delay_ms=0, history_capacity=3))
    await manager.connect(dummy_config("s1"))
    await manager.connect(dummy_config("s2"))

    for i in range(5):
        await manager.call_tool("s1" if i % 2 == 0 else "s2", "ping", {"i": i})

    history = manager.get_tool_call_history()
    assert [record.arguments["i"] for record in history] == [4, 3, 2]
    assert [record.arguments["i"] for record in manager.get_tool_call_history(limit=1)] == [4]
    assert [record.arguments["i"] for record in manager.get_tool_call_history(server_id="s2")] == [3]

    stats = manager.get_tool_call_stats()
    assert stats.total_calls == 3
    assert stats.success_calls == 3
    assert stats.failed_calls == 0

    manager.clear_tool_call_history()
    assert manager.get_tool_call_stats().total_calls == 0
    await manager.close()


def test_composite_names_round_trip():
    assert format_composite_name("s1", "read_file") == "mcp_s1_read_file"
    assert parse_tool_call("mcp_s1_read_file") == ("s1", "read_file")
    assert parse_tool_call("mcp_s1") is None
    assert parse_tool_call("mcp__ping") is None
    assert parse_tool_call("read_terminal_output") is None
    assert MCPClientManager.parse_tool_call("mcp_abc_x") == ("abc", "x")


@pytest.mark.asyncio
async def test_tool_definitions_carry_server_prefix():
    tools = [{"name": "read_file", "description": "Read a file", "inputSchema": {"type": "object"}}]
    manager, _ = make_manager(make_handler(tools=tools))
    await manager.connect(dummy_config("fs", name="Files"))

    definitions = manager.get_tool_definitions()
    assert len(definitions) == 1
    assert definitions[0].name == "mcp_fs_read_file"
    assert definitions[0].description == "[MCP:Files] Read a file"
    assert definitions[0].parameters == {"type": "object"}
    await manager.close()


@pytest.mark.asyncio
async def test_execute_mcp_tool_maps_failures_to_results():
    def reported(name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        return {"result": {"isError": True, "content": [{"type": "text", "text": "disk full"}]}}

    manager, _ = make_manager(make_handler(call=reported))
    await manager.connect(dummy_config())

    unknown = await manager.execute_mcp_tool("not_composite", {})
    assert not unknown.success
    assert unknown.error == "Unknown tool: not_composite"

    failed = await manager.execute_mcp_tool("mcp_s1_ping", {})
    assert not failed.success
    assert failed.error == "disk full"

    missing = await manager.execute_mcp_tool("mcp_s9_ping", {})
    assert not missing.success
    assert "not connected" in missing.error
    await manager.close()


def test_format_tool_result_variants():
    result = {
        "content": [
            {"type": "text", "text": "hello"},
            {"type": "image", "mimeType": "image/png", "data": "..."},
            {"type": "resource", "resource": {"uri": "file:///a", "text": "inline"}},
            {"type": "resource", "resource": {"uri": "file:///b"}},
        ]
    }
    assert format_tool_result(result) == "hello\n[image: image/png]\ninline\n[resource: file:///b]"
    assert format_tool_result("plain") == "plain"
    assert format_tool_result({"value": 1}) == '{\n  "value": 1\n}'


@pytest.mark.asyncio
async def test_add_update_delete_persist_servers():
    store = MemoryStore()
    manager, transports = make_manager(store=store)

    await manager.add_server(dummy_config("s1"))
    assert [entry["id"] for entry in store.load(SERVERS_KEY)] == ["s1"]
    assert manager.is_connected("s1")

    with pytest.raises(ValueError, match="already exists"):
        await manager.add_server(dummy_config("s1"))

    await manager.update_server(dummy_config("s1", name="Renamed", enabled=False))
    assert store.load(SERVERS_KEY)[0]["name"] == "Renamed"
    assert not manager.is_connected("s1")
    assert transports[0].closed

    with pytest.raises(ValueError, match="Unknown MCP server"):
        await manager.update_server(dummy_config("s2"))

    await manager.delete_server("s1")
    assert store.load(SERVERS_KEY) == []
    assert manager.get_server("s1") is None

    with pytest.raises(ValueError, match="deleted"):
        await manager.add_server(dummy_config("s1"))


@pytest.mark.asyncio
async def test_load_servers_skips_invalid_entries():
    store = MemoryStore(
        {
            SERVERS_KEY: [
                {"id": "good", "name": "Good", "transport": "stdio", "command": "run"},
                {"id": "bad_id", "name": "Bad", "transport": "stdio", "command": "run"},
                {"id": "nourl", "name": "No URL", "transport": "sse"},
            ]
        }
    )
    manager, _ = make_manager(store=store)
    assert [config.id for config in manager.load_servers()] == ["good"]


@pytest.mark.asyncio
async def test_server_edits_keep_entries_that_fail_validation():
    legacy = {"id": "legacy_id", "name": "Legacy", "transport": "stdio", "command": "run"}
    no_url = {"id": "nourl", "name": "No URL", "transport": "sse"}
    store = MemoryStore(
        {
            SERVERS_KEY: [
                {"id": "good", "name": "Good", "transport": "stdio", "command": "run", "enabled": False},
                legacy,
                no_url,
            ]
        }
    )
    manager, _ = make_manager(store=store)

    await manager.add_server(dummy_config("new", enabled=False))
    stored = store.load(SERVERS_KEY)
    assert [entry["id"] for entry in stored] == ["good", "legacy_id", "nourl", "new"]
    assert stored[1] == legacy
    assert stored[2] == no_url

    await manager.update_server(dummy_config("good", name="Better", enabled=False))
    await manager.delete_server("new")
    await manager.import_servers({"mcpServers": {"extra": {"command": "run"}}})

    stored = store.load(SERVERS_KEY)
    assert stored[0]["name"] == "Better"
    assert stored[1] == legacy
    assert stored[2] == no_url
    assert "new" not in [entry["id"] for entry in stored]
    assert len(stored) == 4
    await manager.close()


@pytest.mark.asyncio
async def test_import_servers_connects_auto_connect_entries():
    store = MemoryStore()
    manager, transports = make_manager(store=store)

    imported = await manager.import_servers(
        {
            "mcpServers": {
                "files": {"command": "npx", "args": ["-y", "server-files"]},
                "remote": {"url": "https://example.com/sse"},
            }
        }
    )
    assert [config.transport for config in imported] == ["stdio", "sse"]
    assert len(store.load(SERVERS_KEY)) == 2
    assert len(transports) == 2
    assert all(manager.is_connected(config.id) for config in imported)
    await manager.close()


@pytest.mark.asyncio
async def test_start_auto_connects_enabled_servers_only():
    store = MemoryStore(
        {
            SERVERS_KEY: [
                dummy_config("on").to_storage(),
                dummy_config("off", enabled=False).to_storage(),
                dummy_config("manual", auto_connect=False).to_storage(),
            ]
        }
    )
    manager, _ = make_manager(store=store)
    manager.start()
    await manager.wait_until_started()

    statuses = {state.id: state.status for state in manager.get_all_servers()}
    assert statuses == {
        "on": ServerStatus.CONNECTED,
        "off": ServerStatus.DISCONNECTED,
        "manual": ServerStatus.DISCONNECTED,
    }
    await manager.close()


@pytest.mark.asyncio
async def test_listeners_receive_events_until_unsubscribed():
    manager, _ = make_manager()
    statuses: list[ServerStatus] = []
    tool_events: list[int] = []

    unsubscribe = manager.on_status_changed(lambda state: statuses.append(state.status))
    manager.on_tools_changed(lambda: tool_events.append(1))

    def broken(state: Any) -> None:
        raise RuntimeError("listener bug")

    manager.on_status_changed(broken)

    await manager.connect(dummy_config())
    assert statuses == [ServerStatus.CONNECTING, ServerStatus.CONNECTED]
    assert tool_events == [1]

    unsubscribe()
    await manager.disconnect("s1")
    assert statuses == [ServerStatus.CONNECTING, ServerStatus.CONNECTED]
    assert tool_events == [1, 1]


@pytest.mark.asyncio
async def test_tools_list_changed_notification_refreshes_tools():
    tools = [{"name": "ping"}]
    manager, transports = make_manager(make_handler(tools=tools))
    changes: list[int] = []
    manager.on_tools_changed(lambda: changes.append(1))

    await manager.connect(dummy_config())
    tools.append({"name": "pong"})
    transports[0].push("notifications/tools/list_changed")

    await wait_for_condition(lambda: len(changes) == 2)
    assert [tool.name for tool in manager.get_client("s1").tools] == ["ping", "pong"]
    await manager.close()


@pytest.mark.asyncio
async def test_lost_connection_moves_server_to_error():
    store = MemoryStore({SERVERS_KEY: [dummy_config().to_storage()]})
    manager, transports = make_manager(store=store)
    await manager.connect(dummy_config())

    transports[0].drop()
    await wait_for_condition(lambda: manager.get_client("s1") is None)

    state = manager.get_server("s1")
    assert state.status == ServerStatus.ERROR
    assert state.error == "Connection lost"
    assert manager.get_tool_definitions() == []
