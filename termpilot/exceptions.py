"""Custom exceptions for Termpilot."""


class TermpilotError(Exception):
    """Base exception for Termpilot."""

    pass


class ConfigurationError(TermpilotError):
    """Configuration-related errors."""

    pass


class MCPError(TermpilotError):
    """MCP protocol subsystem errors."""

    pass


class ConnectError(MCPError):
    """Transport unreachable or handshake rejected."""

    def __init__(self, message: str, server_id: str | None = None):
        super().__init__(message)
        self.server_id = server_id


class ProtocolError(MCPError):
    """Well-formed JSON-RPC error object returned by a server."""

    def __init__(self, message: str, code: int | None = None, data: object = None):
        super().__init__(message)
        self.code = code
        self.data = data


class TransportError(MCPError):
    """Physical channel failure (closed, exited, HTTP failure)."""

    pass


class ToolTimeoutError(MCPError, TimeoutError):
    """No response within the per-call window."""

    def __init__(self, tool_name: str, timeout_ms: int):
        super().__init__(f"Tool call timeout after {timeout_ms}ms: {tool_name}")
        self.tool_name = tool_name
        self.timeout_ms = timeout_ms


class ServerNotConnectedError(MCPError):
    """Tool call routed to a server with no live connection."""

    def __init__(self, server_id: str):
        super().__init__(f"MCP server {server_id} not connected")
        self.server_id = server_id


class UnknownToolError(MCPError):
    """Composite tool name unparseable or not routable."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ToolError(TermpilotError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by the consent callback."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool '{tool_name}' blocked: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class ModelError(TermpilotError):
    """Upstream model event source failed."""

    pass
