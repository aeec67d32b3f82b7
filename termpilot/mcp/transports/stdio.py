"""MCP over a child process's stdin/stdout (newline-delimited JSON)."""

from __future__ import annotations

import asyncio
import json
import os
import subprocess
import sys
from typing import Any

from termpilot.exceptions import ConnectError, TransportError
from termpilot.logging import get_logger
from termpilot.mcp.transports.base import BaseTransport

log = get_logger(__name__)

# Launchers that are .cmd shims on Windows and need the shell.
_WINDOWS_SHELL_COMMANDS = {"npx", "npm", "node", "yarn", "pnpm"}

# asyncio's default 64 KiB line limit is too small for large tool listings.
_STREAM_LIMIT = 16 * 1024 * 1024


class StdioTransport(BaseTransport):
    """Spawn a server process and talk JSON-RPC over its pipes."""

    kind = "stdio"
    startup_grace_seconds = 0.1
    terminate_timeout_seconds = 5.0

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ):
        super().__init__()
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.cwd = cwd
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def _use_shell(self) -> bool:
        if sys.platform != "win32":
            return False
        base = os.path.basename(self.command).lower()
        return base.rsplit(".", 1)[0] in _WINDOWS_SHELL_COMMANDS

    def _shell_command_line(self) -> str:
        """Command line for cmd.exe, quoted with Windows argument rules."""
        return subprocess.list2cmdline([self.command, *self.args])

    async def _open(self) -> None:
        merged_env = {**os.environ, **self.env}
        try:
            if self._use_shell():
                self._process = await asyncio.create_subprocess_shell(
                    self._shell_command_line(),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=merged_env,
                    cwd=self.cwd,
                    limit=_STREAM_LIMIT,
                )
            else:
                self._process = await asyncio.create_subprocess_exec(
                    self.command,
                    *self.args,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=merged_env,
                    cwd=self.cwd,
                    limit=_STREAM_LIMIT,
                )
        except (OSError, ValueError) as e:
            raise ConnectError(f"Failed to spawn '{self.command}': {e}") from e

        log.info("Spawned MCP server process", command=self.command, pid=self._process.pid)
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())

        # A server that dies immediately (bad args, missing module) is a connect failure.
        await asyncio.sleep(self.startup_grace_seconds)
        if self._process.returncode is not None:
            raise ConnectError(
                f"Process exited during startup with code {self._process.returncode}"
            )

    async def _read_stdout(self) -> None:
        process = self._process
        assert process is not None and process.stdout is not None
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                self._dispatch_raw(line.decode("utf-8", errors="replace"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("MCP stdout reader failed", command=self.command, error=str(e))

        code = await process.wait()
        if self._connected:
            log.warning("MCP server process exited", command=self.command, code=code)
        self._connected = False
        self._fail_pending(TransportError(f"Process exited with code {code}"))
        self._close_subscriptions()

    async def _read_stderr(self) -> None:
        process = self._process
        assert process is not None and process.stderr is not None
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                log.debug("MCP server stderr", command=self.command, line=text)

    async def _transmit(self, payload: dict[str, Any], expects_response: bool) -> None:
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise TransportError("Process is not running")
        data = (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise TransportError(f"Write to process failed: {e}") from e

    async def _close(self) -> None:
        process = self._process
        self._process = None
        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if process.returncode is None:
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout_seconds)
                except asyncio.TimeoutError:
                    log.warning("MCP server did not exit, killing", command=self.command)
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._stderr_task = None
