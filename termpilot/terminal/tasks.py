"""Background terminal commands tracked by task id."""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum

from termpilot.logging import get_logger
from termpilot.terminal.backend import TerminalBackend

log = get_logger(__name__)

TASK_ID_PREFIX = "task_"
DEFAULT_TIMEOUT_SECONDS = 300.0
MAX_OUTPUT_CHARS = 50_000

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


FINISHED_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.TIMEOUT}
)


@dataclass
class AsyncTask:
    task_id: str
    command: str
    terminal_index: int | None = None
    status: TaskStatus = TaskStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    output_lines: list[str] = field(default_factory=list)
    exit_code: int | None = None
    error: str | None = None

    @property
    def output(self) -> str:
        return "\n".join(self.output_lines)

    @property
    def is_complete(self) -> bool:
        return self.status in FINISHED_STATUSES


@dataclass
class TaskResult:
    task_id: str
    status: TaskStatus
    elapsed_ms: int
    output: str
    is_complete: bool
    exit_code: int | None = None
    error: str | None = None
    truncated: bool = False


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_task_id() -> str:
    return f"{TASK_ID_PREFIX}{_base36(int(time.time() * 1000))}_{secrets.token_hex(3)}"


class AsyncTaskManager:
    """Run terminal commands in the background and report on them later."""

    def __init__(self, backend: TerminalBackend, default_timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.backend = backend
        self.default_timeout = default_timeout
        self._tasks: dict[str, AsyncTask] = {}
        self._runners: dict[str, asyncio.Task] = {}

    def create_task(
        self,
        command: str,
        terminal_index: int | None = None,
        timeout: float | None = None,
    ) -> str:
        """Start a command in the background and return its task id."""
        task = AsyncTask(task_id=generate_task_id(), command=command, terminal_index=terminal_index)
        self._tasks[task.task_id] = task
        self._runners[task.task_id] = asyncio.create_task(
            self._run(task, float(timeout or self.default_timeout))
        )
        log.info("Async task created", task_id=task.task_id, command=command)
        return task.task_id

    async def _run(self, task: AsyncTask, timeout: float) -> None:
        task.status = TaskStatus.RUNNING
        task.started_at = time.time()
        try:
            result = await self.backend.run_command(
                task.command,
                index=task.terminal_index,
                timeout=timeout,
                on_output=task.output_lines.append,
            )
        except asyncio.CancelledError:
            if task.status is TaskStatus.RUNNING:
                task.status = TaskStatus.CANCELLED
            task.completed_at = time.time()
            raise
        except Exception as e:
            task.status = TaskStatus.FAILED
            task.error = str(e)
            task.completed_at = time.time()
            log.warning("Async task failed to start", task_id=task.task_id, error=str(e))
            return
        finally:
            self._runners.pop(task.task_id, None)

        task.exit_code = result.exit_code
        task.completed_at = time.time()
        if result.timed_out:
            task.status = TaskStatus.TIMEOUT
            task.error = f"Timed out after {timeout:g}s"
        elif result.exit_code == 0:
            task.status = TaskStatus.COMPLETED
        else:
            task.status = TaskStatus.FAILED
            task.error = f"Exit code {result.exit_code}"
        log.info("Async task finished", task_id=task.task_id, status=task.status.value)

    def get_task(self, task_id: str) -> AsyncTask | None:
        return self._tasks.get(task_id)

    def get_active_tasks(self) -> list[AsyncTask]:
        return [task for task in self._tasks.values() if not task.is_complete]

    def get_task_result(self, task_id: str, full_output: bool = False) -> TaskResult | None:
        task = self._tasks.get(task_id)
        if task is None:
            return None

        end = task.completed_at or time.time()
        elapsed_ms = int((end - task.started_at) * 1000) if task.started_at else 0
        output = task.output
        truncated = False
        if not full_output and len(output) > MAX_OUTPUT_CHARS:
            output = output[-MAX_OUTPUT_CHARS:]
            truncated = True

        return TaskResult(
            task_id=task_id,
            status=task.status,
            elapsed_ms=elapsed_ms,
            output=output,
            is_complete=task.is_complete,
            exit_code=task.exit_code,
            error=task.error,
            truncated=truncated,
        )

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a running task; False when it is unknown or finished."""
        task = self._tasks.get(task_id)
        runner = self._runners.get(task_id)
        if task is None or task.is_complete or runner is None:
            return False
        task.status = TaskStatus.CANCELLED
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass
        log.info("Async task cancelled", task_id=task_id)
        return True

    def cleanup_completed_tasks(self, max_age: float = 3600.0) -> int:
        """Forget finished tasks older than `max_age` seconds."""
        now = time.time()
        stale = [
            task_id
            for task_id, task in self._tasks.items()
            if task.is_complete and now - task.created_at > max_age
        ]
        for task_id in stale:
            del self._tasks[task_id]
        return len(stale)

    async def shutdown(self) -> None:
        for task_id in list(self._runners):
            await self.cancel_task(task_id)
