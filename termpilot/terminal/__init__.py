"""Terminal access for the built-in tools."""

from termpilot.terminal.backend import (
    CommandResult,
    LocalTerminalBackend,
    TerminalBackend,
    TerminalInfo,
)
from termpilot.terminal.tasks import AsyncTaskManager, TaskResult, TaskStatus

__all__ = [
    "AsyncTaskManager",
    "CommandResult",
    "LocalTerminalBackend",
    "TaskResult",
    "TaskStatus",
    "TerminalBackend",
    "TerminalInfo",
]
