"""MCP transports and the factory that picks one for a server entry."""

from termpilot.mcp.messages import ServerConfig
from termpilot.mcp.transports.base import BaseTransport, NotificationSubscription
from termpilot.mcp.transports.http import StreamableHTTPTransport
from termpilot.mcp.transports.sse import SSETransport
from termpilot.mcp.transports.stdio import StdioTransport


def create_transport(config: ServerConfig) -> BaseTransport:
    """Create the transport matching a server entry's kind."""
    if config.transport == "stdio":
        return StdioTransport(
            command=config.command or "",
            args=config.args,
            env=config.env,
            cwd=config.cwd,
        )
    if config.transport == "sse":
        return SSETransport(url=config.url or "", headers=config.headers)
    if config.transport == "streamable-http":
        return StreamableHTTPTransport(url=config.url or "", headers=config.headers)
    raise ValueError(f"Unsupported transport type: {config.transport}")


__all__ = [
    "BaseTransport",
    "NotificationSubscription",
    "SSETransport",
    "StdioTransport",
    "StreamableHTTPTransport",
    "create_transport",
]
