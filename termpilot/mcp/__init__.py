"""MCP client subsystem."""

from termpilot.mcp.client_manager import (
    LiveClient,
    MCPClientManager,
    format_composite_name,
    format_tool_result,
    parse_tool_call,
)
from termpilot.mcp.messages import (
    MCPResource,
    MCPTool,
    ServerConfig,
    ServerState,
    ServerStatus,
    ToolCallRecord,
    ToolCallStats,
    generate_server_id,
    parse_foreign_servers,
)
from termpilot.mcp.storage import KeyValueStore, MemoryStore, YamlFileStore

__all__ = [
    "KeyValueStore",
    "LiveClient",
    "MCPClientManager",
    "MCPResource",
    "MCPTool",
    "MemoryStore",
    "ServerConfig",
    "ServerState",
    "ServerStatus",
    "ToolCallRecord",
    "ToolCallStats",
    "YamlFileStore",
    "format_composite_name",
    "format_tool_result",
    "generate_server_id",
    "parse_foreign_servers",
    "parse_tool_call",
]
