"""One flat tool list for the agent loop: built-ins plus MCP server tools."""

import asyncio

from termpilot.exceptions import UnknownToolError
from termpilot.llm import ToolCall, ToolDefinition
from termpilot.logging import get_logger
from termpilot.mcp.client_manager import COMPOSITE_PREFIX, MCPClientManager
from termpilot.redaction import redact_secrets
from termpilot.tools.registry import ToolRegistry, ToolResult

log = get_logger(__name__)


class ToolCatalog:
    """Routes tool calls to the built-in registry or the MCP client manager."""

    def __init__(self, registry: ToolRegistry, manager: MCPClientManager | None = None):
        self.registry = registry
        self.manager = manager

    def definitions(self) -> list[ToolDefinition]:
        """Built-ins first, then every connected server tool."""
        definitions = list(self.registry.get_definitions())
        if self.manager is not None:
            definitions.extend(self.manager.get_tool_definitions())
        return definitions

    def names(self) -> list[str]:
        return [definition.name for definition in self.definitions()]

    async def execute(self, call: ToolCall, abort_event: asyncio.Event | None = None) -> ToolResult:
        """Run one tool call. Failures come back as error results."""
        arguments = call.arguments if isinstance(call.arguments, dict) else {}
        try:
            if self.registry.has_tool(call.name):
                result = await self.registry.execute(call.name, arguments, abort_event=abort_event)
            elif call.name.startswith(COMPOSITE_PREFIX) and self.manager is not None:
                result = await self.manager.execute_mcp_tool(call.name, arguments)
            else:
                raise UnknownToolError(call.name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Tool call failed", tool=call.name, error=str(e))
            return ToolResult(success=False, error=redact_secrets(str(e) or type(e).__name__))

        if not result.success and result.error:
            result = ToolResult(success=False, content=result.content, error=redact_secrets(result.error))
        return result
