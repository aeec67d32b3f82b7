"""Terminal backend port and an in-process implementation."""

from __future__ import annotations

import asyncio
import os
import shlex
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from termpilot.config import TerminalConfig
from termpilot.logging import get_logger

log = get_logger(__name__)

EMPTY_OUTPUT = "(terminal output is empty)"


@dataclass
class TerminalInfo:
    """Summary of one terminal session."""

    index: int
    title: str
    cwd: str
    is_active: bool = False


@dataclass
class CommandResult:
    """Outcome of one executed command."""

    command: str
    exit_code: int | None
    output: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return not self.timed_out and self.exit_code == 0


class TerminalBackend(ABC):
    """What the terminal tools need from a host terminal."""

    @abstractmethod
    def list_terminals(self) -> list[TerminalInfo]: ...

    @property
    @abstractmethod
    def active_index(self) -> int: ...

    @abstractmethod
    def read_output(self, lines: int = 50, index: int | None = None) -> str: ...

    @abstractmethod
    async def send_command(self, command: str, execute: bool = True, index: int | None = None) -> bool:
        """Type a command into a terminal, optionally pressing enter."""
        ...

    @abstractmethod
    async def run_command(
        self,
        command: str,
        index: int | None = None,
        timeout: float | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> CommandResult:
        """Execute a command and wait for it to finish."""
        ...

    @abstractmethod
    def get_cwd(self, index: int | None = None) -> str | None: ...

    @abstractmethod
    def get_selection(self) -> str: ...

    @abstractmethod
    def focus(self, index: int) -> bool: ...


@dataclass
class LocalTerminal:
    title: str
    cwd: str
    buffer: deque[str]
    pending_input: str = ""
    selection: str = ""
    history: list[str] = field(default_factory=list)

    def append(self, text: str) -> None:
        for line in text.splitlines():
            self.buffer.append(line)


def _parse_cd(command: str) -> str | None:
    """Target of a plain `cd` command, or None when it is something else."""
    stripped = command.strip()
    if not (stripped == "cd" or stripped.startswith("cd ")):
        return None
    if any(token in stripped for token in ("&&", "||", ";", "|", "`", "$(")):
        return None
    try:
        parts = shlex.split(stripped)
    except ValueError:
        return None
    if len(parts) > 2:
        return None
    return parts[1] if len(parts) == 2 else "~"


class LocalTerminalBackend(TerminalBackend):
    """Terminals simulated in-process; commands run through the shell."""

    def __init__(self, config: TerminalConfig | None = None, cwd: str | Path | None = None):
        self.config = config or TerminalConfig()
        self._terminals: list[LocalTerminal] = []
        self._active = 0
        self.open_terminal(cwd=cwd)

    def open_terminal(self, title: str | None = None, cwd: str | Path | None = None) -> int:
        """Open a new terminal and return its index."""
        index = len(self._terminals)
        self._terminals.append(
            LocalTerminal(
                title=title or f"Terminal {index + 1}",
                cwd=str(Path(cwd or os.getcwd()).expanduser().resolve()),
                buffer=deque(maxlen=self.config.max_buffer_lines),
            )
        )
        return index

    def _terminal(self, index: int | None) -> LocalTerminal:
        target = self._active if index is None else index
        if not isinstance(target, int) or target < 0 or target >= len(self._terminals):
            raise ValueError(f"Invalid terminal index: {index}")
        return self._terminals[target]

    def list_terminals(self) -> list[TerminalInfo]:
        return [
            TerminalInfo(index=i, title=t.title, cwd=t.cwd, is_active=i == self._active)
            for i, t in enumerate(self._terminals)
        ]

    @property
    def active_index(self) -> int:
        return self._active

    def read_output(self, lines: int = 50, index: int | None = None) -> str:
        terminal = self._terminal(index)
        if not terminal.buffer:
            return EMPTY_OUTPUT
        count = max(1, int(lines))
        return "\n".join(list(terminal.buffer)[-count:])

    def get_cwd(self, index: int | None = None) -> str | None:
        return self._terminal(index).cwd

    def get_selection(self) -> str:
        return self._terminal(None).selection

    def select(self, text: str, index: int | None = None) -> None:
        """Set the selected text (the host's mouse selection)."""
        self._terminal(index).selection = text

    def focus(self, index: int) -> bool:
        try:
            self._terminal(index)
        except ValueError:
            return False
        self._active = index
        return True

    async def send_command(self, command: str, execute: bool = True, index: int | None = None) -> bool:
        try:
            terminal = self._terminal(index)
        except ValueError:
            return False
        if not execute:
            terminal.pending_input += command
            return True
        full_command = terminal.pending_input + command
        terminal.pending_input = ""
        await self.run_command(full_command, index=index)
        return True

    async def run_command(
        self,
        command: str,
        index: int | None = None,
        timeout: float | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> CommandResult:
        terminal = self._terminal(index)
        terminal.history.append(command)
        terminal.append(f"{terminal.cwd}$ {command}")

        target = _parse_cd(command)
        if target is not None:
            return self._change_directory(terminal, command, target)

        timeout = float(timeout if timeout is not None else self.config.command_timeout)
        kwargs = {}
        if os.name != "nt":
            kwargs["executable"] = self.config.shell
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=terminal.cwd,
            **kwargs,
        )
        log.debug("Running terminal command", command=command, pid=process.pid, cwd=terminal.cwd)

        chunks: list[str] = []

        async def _pump() -> None:
            assert process.stdout is not None
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip("\r\n")
                chunks.append(text)
                terminal.append(text)
                if on_output is not None:
                    on_output(text)
            await process.wait()

        timed_out = False
        try:
            await asyncio.wait_for(_pump(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            self._kill(process)
            await process.wait()
            terminal.append(f"[command timed out after {timeout:g}s]")
        except asyncio.CancelledError:
            self._kill(process)
            raise

        return CommandResult(
            command=command,
            exit_code=process.returncode,
            output="\n".join(chunks),
            timed_out=timed_out,
        )

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    def _change_directory(self, terminal: LocalTerminal, command: str, target: str) -> CommandResult:
        path = Path(os.path.expanduser(target))
        if not path.is_absolute():
            path = Path(terminal.cwd) / path
        path = path.resolve()
        if not path.is_dir():
            message = f"cd: no such directory: {target}"
            terminal.append(message)
            return CommandResult(command=command, exit_code=1, output=message)
        terminal.cwd = str(path)
        return CommandResult(command=command, exit_code=0, output="")
