import asyncio
import os
import time
from pathlib import Path

import pytest

from termpilot.config import TerminalConfig
from termpilot.terminal import AsyncTaskManager, LocalTerminalBackend
from termpilot.tools import TASK_COMPLETE_TOOL, ToolRegistry, register_builtin_tools
from termpilot.tools.task_complete import format_completion

pytestmark = pytest.mark.skipif(os.name == "nt", reason="posix shell commands")

BUILTIN_NAMES = [
    "task_complete",
    "read_terminal_output",
    "write_to_terminal",
    "get_terminal_list",
    "get_terminal_cwd",
    "get_terminal_selection",
    "focus_terminal",
    "async_terminal_command",
    "check_task_status",
]


def make_registry(tmp_path: Path) -> tuple[ToolRegistry, LocalTerminalBackend, AsyncTaskManager]:
    backend = LocalTerminalBackend(TerminalConfig(shell="/bin/sh"), cwd=tmp_path)
    tasks = AsyncTaskManager(backend)
    registry = register_builtin_tools(ToolRegistry(approval_callback=lambda _: True), backend, tasks)
    return registry, backend, tasks


def test_builtin_catalog_names_and_schemas(tmp_path: Path):
    registry, _, _ = make_registry(tmp_path)

    assert registry.list_tools() == BUILTIN_NAMES
    definitions = {d.name: d for d in registry.get_definitions()}
    assert definitions[TASK_COMPLETE_TOOL].parameters["required"] == ["summary", "success"]
    assert definitions["write_to_terminal"].parameters["required"] == ["command"]
    assert registry.get("write_to_terminal").requires_approval
    assert registry.get("async_terminal_command").requires_approval
    assert not registry.get("read_terminal_output").requires_approval


@pytest.mark.asyncio
async def test_write_then_read_terminal(tmp_path: Path):
    registry, _, _ = make_registry(tmp_path)

    written = await registry.execute("write_to_terminal", {"command": "echo hello"})
    assert written.success
    assert written.content.startswith("Command executed: echo hello")
    assert "=== Terminal output ===" in written.content
    assert "hello" in written.content

    read = await registry.execute("read_terminal_output", {"lines": 1})
    assert read.content == "hello"

    typed = await registry.execute("write_to_terminal", {"command": "partial", "execute": False})
    assert typed.content == "Typed into terminal (not executed): partial"

    invalid = await registry.execute("write_to_terminal", {"command": "ls", "terminal_index": 4})
    assert not invalid.success
    assert "terminal 4" in invalid.error


@pytest.mark.asyncio
async def test_terminal_list_cwd_selection_and_focus(tmp_path: Path):
    registry, backend, _ = make_registry(tmp_path)
    backend.open_terminal(title="second", cwd=tmp_path)

    listing = await registry.execute("get_terminal_list", {})
    assert listing.content.startswith("OS: ")
    assert "2 terminal(s)" in listing.content
    assert "[0] Terminal 1 (active)" in listing.content
    assert "Use Unix commands" in listing.content

    cwd = await registry.execute("get_terminal_cwd", {})
    assert cwd.content == f"Current working directory: {tmp_path.resolve()}"

    empty = await registry.execute("get_terminal_selection", {})
    assert empty.content == "(no text selected)"
    backend.select("Traceback (most recent call last)")
    selected = await registry.execute("get_terminal_selection", {})
    assert selected.content == "Traceback (most recent call last)"

    focused = await registry.execute("focus_terminal", {"terminal_index": 1})
    assert focused.content == "Switched to terminal 1"
    assert backend.active_index == 1

    missing = await registry.execute("focus_terminal", {"terminal_index": 9})
    assert not missing.success
    assert missing.error == "Invalid terminal index: 9"


@pytest.mark.asyncio
async def test_async_command_and_status_polling(tmp_path: Path):
    registry, _, tasks = make_registry(tmp_path)

    started = await registry.execute("async_terminal_command", {"command": "echo built"})
    assert started.success
    task_id = started.content.split()[2].rstrip(":")

    deadline = time.monotonic() + 5
    while not tasks.get_task(task_id).is_complete:
        assert time.monotonic() < deadline
        await asyncio.sleep(0.02)

    status = await registry.execute("check_task_status", {"task_id": task_id})
    assert status.success
    assert f"Task: {task_id}" in status.content
    assert "Status: completed" in status.content
    assert "Exit code: 0" in status.content
    assert status.content.endswith("built")

    unknown = await registry.execute("check_task_status", {"task_id": "task_nope"})
    assert not unknown.success
    assert unknown.error == "Task not found: task_nope"


@pytest.mark.asyncio
async def test_task_complete_formats_summary(tmp_path: Path):
    registry, _, _ = make_registry(tmp_path)

    done = await registry.execute(TASK_COMPLETE_TOOL, {"summary": "Installed deps", "success": True})
    assert done.content == "Task completed: Installed deps"

    assert format_completion("Gave up", False, "Check the proxy") == (
        "Task ended without success: Gave up\n\nNext steps: Check the proxy"
    )
