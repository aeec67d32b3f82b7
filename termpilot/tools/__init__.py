"""Tools package for Termpilot."""

from termpilot.terminal.backend import TerminalBackend
from termpilot.terminal.tasks import AsyncTaskManager
from termpilot.tools.registry import Tool, ToolRegistry, ToolResult
from termpilot.tools.task_complete import TASK_COMPLETE_TOOL, TaskCompleteTool
from termpilot.tools.terminal import (
    AsyncTerminalCommandTool,
    CheckTaskStatusTool,
    FocusTerminalTool,
    GetTerminalCwdTool,
    GetTerminalListTool,
    GetTerminalSelectionTool,
    ReadTerminalOutputTool,
    WriteToTerminalTool,
)


def register_builtin_tools(
    registry: ToolRegistry,
    backend: TerminalBackend,
    tasks: AsyncTaskManager,
) -> ToolRegistry:
    """Install the built-in catalog into a registry."""
    registry.register(TaskCompleteTool())
    registry.register(ReadTerminalOutputTool(backend))
    registry.register(WriteToTerminalTool(backend))
    registry.register(GetTerminalListTool(backend))
    registry.register(GetTerminalCwdTool(backend))
    registry.register(GetTerminalSelectionTool(backend))
    registry.register(FocusTerminalTool(backend))
    registry.register(AsyncTerminalCommandTool(tasks))
    registry.register(CheckTaskStatusTool(tasks))
    return registry


__all__ = [
    "AsyncTerminalCommandTool",
    "CheckTaskStatusTool",
    "FocusTerminalTool",
    "GetTerminalCwdTool",
    "GetTerminalListTool",
    "GetTerminalSelectionTool",
    "ReadTerminalOutputTool",
    "TASK_COMPLETE_TOOL",
    "TaskCompleteTool",
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "WriteToTerminalTool",
    "register_builtin_tools",
]
