"""MCP message and record types.

JSON-RPC 2.0 envelopes travel as plain dicts on the wire; the dataclasses
here are the typed view the transports and the client manager work with.
Persisted server entries are pydantic models so the on-disk shape
(``autoConnect``, ``streamable-http``) is validated on load.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from termpilot.exceptions import ProtocolError

JSONRPC_VERSION = "2.0"

# JSON-RPC error codes that will not succeed on retry.
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
PERMANENT_ERROR_CODES = frozenset({METHOD_NOT_FOUND, INVALID_PARAMS})

TransportKind = Literal["stdio", "sse", "streamable-http"]


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""

    method: str
    params: dict[str, Any] | None = None
    id: int | str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id, "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        return payload


@dataclass
class JsonRpcNotification:
    """JSON-RPC 2.0 notification (no id, no response)."""

    method: str
    params: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JsonRpcNotification":
        params = data.get("params")
        return cls(method=str(data.get("method", "")), params=params if isinstance(params, dict) else None)


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""

    id: int | str | None
    result: Any = None
    error: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JsonRpcResponse":
        error = data.get("error")
        return cls(
            id=data.get("id"),
            result=data.get("result"),
            error=error if isinstance(error, dict) else None,
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def raise_for_error(self) -> None:
        """Unwrap a JSON-RPC error object into ProtocolError."""
        if self.error is None:
            return
        message = str(self.error.get("message") or "Unknown JSON-RPC error")
        raise ProtocolError(message, code=self.error.get("code"), data=self.error.get("data"))


def is_response(message: dict[str, Any]) -> bool:
    """Whether a decoded message answers a request."""
    return message.get("id") is not None and ("result" in message or "error" in message)


class MCPTool(BaseModel):
    """Tool advertised by an MCP server."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )


class MCPResource(BaseModel):
    """Resource advertised by an MCP server."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    uri: str
    name: str = ""
    description: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")


class ServerConfig(BaseModel):
    """Persisted description of how to reach one tool provider."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    transport: TransportKind = "stdio"
    enabled: bool = True

    # stdio
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None

    # sse / streamable-http
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    timeout: int | None = Field(default=None, gt=0)
    auto_connect: bool | None = Field(default=None, alias="autoConnect")

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        cleaned = str(value or "").strip()
        if not cleaned:
            raise ValueError("server id must not be empty")
        if "_" in cleaned:
            raise ValueError("server id must not contain '_' (used by composite tool names)")
        return cleaned

    @model_validator(mode="after")
    def _check_transport_params(self) -> "ServerConfig":
        if self.transport == "stdio" and not (self.command or "").strip():
            raise ValueError("stdio transport requires a command")
        if self.transport in ("sse", "streamable-http") and not (self.url or "").strip():
            raise ValueError(f"{self.transport} transport requires a url")
        return self

    @property
    def should_auto_connect(self) -> bool:
        return self.enabled and self.auto_connect is not False

    def to_storage(self) -> dict[str, Any]:
        """Persisted shape with camelCase keys and no empty optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ServerStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ServerState:
    """Server config joined with its runtime status."""

    config: ServerConfig
    status: ServerStatus = ServerStatus.DISCONNECTED
    error: str | None = None
    tool_count: int = 0

    @property
    def id(self) -> str:
        return self.config.id


@dataclass
class ToolCallRecord:
    """One logged call_tool invocation (final outcome after retries)."""

    server_id: str
    tool_name: str
    arguments: dict[str, Any]
    success: bool
    duration_ms: int
    result: Any = None
    error: str | None = None
    attempts: int = 1
    timestamp: float = field(default_factory=time.time)


@dataclass
class ToolCallStats:
    total_calls: int
    success_calls: int
    failed_calls: int
    average_duration_ms: int


def generate_server_id() -> str:
    """Generate a server id safe for composite tool names."""
    return f"mcp-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def parse_foreign_servers(data: dict[str, Any]) -> list[ServerConfig]:
    """Convert an ``mcpServers`` style mapping into server configs.

    Accepts ``{"mcpServers": {name: {...}}}`` or a bare ``{name: {...}}``
    mapping. URL entries are ``sse`` when the URL mentions sse, otherwise
    ``streamable-http``.
    """
    if not isinstance(data, dict):
        raise ValueError("Server import expects a JSON object")
    servers = data.get("mcpServers", data)
    if not isinstance(servers, dict):
        raise ValueError("'mcpServers' must be an object keyed by server name")

    imported: list[ServerConfig] = []
    for name, raw in servers.items():
        if not isinstance(raw, dict):
            raise ValueError(f"Server entry '{name}' must be an object")
        url = str(raw.get("url") or "").strip()
        if url:
            imported.append(
                ServerConfig(
                    id=generate_server_id(),
                    name=str(name),
                    transport="sse" if "sse" in url.lower() else "streamable-http",
                    url=url,
                    headers=dict(raw.get("headers") or {}),
                    enabled=True,
                )
            )
            continue
        imported.append(
            ServerConfig(
                id=generate_server_id(),
                name=str(name),
                transport="stdio",
                command=str(raw.get("command") or ""),
                args=[str(arg) for arg in raw.get("args") or []],
                env={str(k): str(v) for k, v in (raw.get("env") or {}).items()},
                cwd=raw.get("cwd"),
                enabled=True,
            )
        )
    return imported
