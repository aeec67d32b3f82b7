"""Built-in tools that drive the host terminal."""

import platform
from typing import Any

from termpilot.logging import get_logger
from termpilot.terminal.backend import TerminalBackend
from termpilot.terminal.tasks import AsyncTaskManager
from termpilot.tools.registry import Tool, ToolResult

log = get_logger(__name__)

_TERMINAL_INDEX = {
    "type": "number",
    "description": "Target terminal index (0-based). Defaults to the active terminal.",
}


def _optional_index(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


class TerminalTool(Tool):
    """Base for tools bound to a terminal backend."""

    def __init__(self, backend: TerminalBackend):
        self.backend = backend


class ReadTerminalOutputTool(TerminalTool):
    name = "read_terminal_output"
    description = "Read the most recent output of a terminal. Use it to inspect command results."
    parameters = {
        "type": "object",
        "properties": {
            "lines": {"type": "number", "description": "Number of lines to read (default 50)"},
            "terminal_index": _TERMINAL_INDEX,
        },
        "required": [],
    }

    async def execute(self, lines: int | None = None, terminal_index: int | None = None, **kwargs: Any) -> ToolResult:
        output = self.backend.read_output(int(lines or 50), _optional_index(terminal_index))
        return ToolResult(success=True, content=output)


class WriteToTerminalTool(TerminalTool):
    name = "write_to_terminal"
    description = (
        "Write a command to a terminal. By default the command is executed and "
        "the latest output is returned."
    )
    timeout_seconds = 60.0
    requires_approval = True
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Command to write"},
            "execute": {
                "type": "boolean",
                "description": "Press enter after writing (default true)",
            },
            "terminal_index": _TERMINAL_INDEX,
        },
        "required": ["command"],
    }

    def approval_prompt(self, arguments: dict[str, Any]) -> str:
        return f"Allow terminal command?\nCommand: {arguments.get('command', '')}"

    async def execute(
        self,
        command: str,
        execute: bool = True,
        terminal_index: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        index = _optional_index(terminal_index)
        if not await self.backend.send_command(command, execute=bool(execute), index=index):
            target = f"terminal {index}" if index is not None else "the active terminal"
            return ToolResult(success=False, error=f"Cannot write to {target}: invalid index or unavailable")

        if not execute:
            return ToolResult(success=True, content=f"Typed into terminal (not executed): {command}")

        output = self.backend.read_output(30, index)
        return ToolResult(
            success=True,
            content="\n".join(
                [f"Command executed: {command}", "", "=== Terminal output ===", output, "=== End of output ==="]
            ),
        )


class GetTerminalListTool(TerminalTool):
    name = "get_terminal_list"
    description = "List open terminals with their index, title, working directory and active flag."
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs: Any) -> ToolResult:
        terminals = self.backend.list_terminals()
        if not terminals:
            return ToolResult(success=True, content="(no open terminals)")

        system = platform.system() or "Unknown"
        is_windows = system == "Windows"
        lines = [
            f"[{t.index}] {t.title}{' (active)' if t.is_active else ''}{f' - {t.cwd}' if t.cwd else ''}"
            for t in terminals
        ]
        hint = (
            "Use Windows commands (dir, cd, type)."
            if is_windows
            else "Use Unix commands (ls, cd, cat)."
        )
        return ToolResult(
            success=True,
            content=f"OS: {system}\n{len(terminals)} terminal(s):\n" + "\n".join(lines) + f"\n\nNote: {hint}",
        )


class GetTerminalCwdTool(TerminalTool):
    name = "get_terminal_cwd"
    description = "Get the working directory of the active terminal."
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs: Any) -> ToolResult:
        cwd = self.backend.get_cwd()
        if not cwd:
            return ToolResult(success=False, error="Cannot determine the working directory")
        return ToolResult(success=True, content=f"Current working directory: {cwd}")


class GetTerminalSelectionTool(TerminalTool):
    name = "get_terminal_selection"
    description = "Get the text currently selected in the active terminal."
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs: Any) -> ToolResult:
        selection = self.backend.get_selection()
        return ToolResult(success=True, content=selection or "(no text selected)")


class FocusTerminalTool(TerminalTool):
    name = "focus_terminal"
    description = "Make the terminal at the given index the active one."
    parameters = {
        "type": "object",
        "properties": {
            "terminal_index": {"type": "number", "description": "Target terminal index (0-based)"},
        },
        "required": ["terminal_index"],
    }

    async def execute(self, terminal_index: int, **kwargs: Any) -> ToolResult:
        index = int(terminal_index)
        if not self.backend.focus(index):
            return ToolResult(success=False, error=f"Invalid terminal index: {index}")
        return ToolResult(success=True, content=f"Switched to terminal {index}")


class AsyncTerminalCommandTool(Tool):
    name = "async_terminal_command"
    description = (
        "Start a long-running command (installs, builds, clones) in the background. "
        "Returns a task id; poll it with check_task_status."
    )
    requires_approval = True
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Command to run"},
            "terminal_index": _TERMINAL_INDEX,
            "timeout_seconds": {
                "type": "number",
                "description": "Give up after this many seconds (default 300)",
            },
        },
        "required": ["command"],
    }

    def __init__(self, tasks: AsyncTaskManager):
        self.tasks = tasks

    def approval_prompt(self, arguments: dict[str, Any]) -> str:
        return f"Allow background command?\nCommand: {arguments.get('command', '')}"

    async def execute(
        self,
        command: str,
        terminal_index: int | None = None,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        task_id = self.tasks.create_task(
            command,
            terminal_index=_optional_index(terminal_index),
            timeout=float(timeout_seconds) if timeout_seconds else None,
        )
        return ToolResult(
            success=True,
            content=f"Started task {task_id}: {command}\nUse check_task_status with this task id to follow it.",
        )


class CheckTaskStatusTool(Tool):
    name = "check_task_status"
    description = "Report the status and output of a background task started by async_terminal_command."
    parameters = {
        "type": "object",
        "properties": {
            "task_id": {"type": "string", "description": "Task id returned by async_terminal_command"},
            "full_output": {
                "type": "boolean",
                "description": "Return the complete output instead of the tail (default false)",
            },
        },
        "required": ["task_id"],
    }

    def __init__(self, tasks: AsyncTaskManager):
        self.tasks = tasks

    async def execute(self, task_id: str, full_output: bool = False, **kwargs: Any) -> ToolResult:
        result = self.tasks.get_task_result(str(task_id), full_output=bool(full_output))
        if result is None:
            return ToolResult(success=False, error=f"Task not found: {task_id}")

        lines = [
            f"Task: {result.task_id}",
            f"Status: {result.status.value}",
            f"Elapsed: {result.elapsed_ms / 1000:.1f}s",
        ]
        if result.exit_code is not None:
            lines.append(f"Exit code: {result.exit_code}")
        if result.error:
            lines.append(f"Error: {result.error}")
        lines.append("")
        if result.truncated:
            lines.append("...(output truncated, showing the tail)...")
        lines.append(result.output or "(no output yet)")
        return ToolResult(success=True, content="\n".join(lines))
