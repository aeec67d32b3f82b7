"""Bounded multi-round tool-use loop."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from termpilot.agent.termination import (
    AgentLoopSettings,
    LoopState,
    RoundOutcome,
    TerminationDecision,
    TerminationDetector,
    TerminationReason,
    TextSignal,
)
from termpilot.exceptions import ModelError
from termpilot.llm import Message, ModelEventSource, ToolCall
from termpilot.logging import get_logger
from termpilot.redaction import redact_secrets
from termpilot.tools.catalog import ToolCatalog
from termpilot.tools.task_complete import TASK_COMPLETE_TOOL

log = get_logger(__name__)

AGENT_SYSTEM_PROMPT = """## Agent mode
You are a task-executing agent with terminal access and external tools.

### Tool rules
1. When an action is needed, call the tool directly.
2. After a call, wait for the real result returned by the system.
3. When everything is done, call the task_complete tool.

### Never
- Describe tool calls as text (for example <invoke> or <parameter> tags).
- Pretend a tool succeeded.
- Answer the user before real results arrive.
"""

FAKE_TOOL_CALL_CORRECTION = (
    "[System] You wrote tool-call markup as text (<invoke>/<parameter>). That does not "
    "run anything. Call the tool directly; the system executes structured tool calls."
)


class LoopStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TERMINATED = "terminated"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class AgentEvent:
    """Progress notification for hosts rendering the loop."""

    type: str  # round_start, text_delta, tool_executing, tool_executed, round_end, agent_complete, error
    round: int = 0
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResult:
    reason: TerminationReason
    status: LoopStatus
    rounds: int
    final_output: str = ""
    message: str = ""
    error: str | None = None
    history: list[Message] = field(default_factory=list)


def _normalize_arguments(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str):
        try:
            parsed = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            return {"raw": arguments}
        return parsed if isinstance(parsed, dict) else {"value": parsed}
    return {}


class AgentLoop:
    """Runs model rounds and tool calls until a termination reason fires.

    One instance runs one conversation once. `cancel()` may be called from
    any task; it ends `run()` immediately without waiting for tool calls
    that are still in flight.
    """

    def __init__(
        self,
        model: ModelEventSource,
        catalog: ToolCatalog,
        settings: AgentLoopSettings | None = None,
        on_event: Callable[[AgentEvent], None] | None = None,
        system_prompt: str | None = AGENT_SYSTEM_PROMPT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model = model
        self.catalog = catalog
        self.settings = settings or AgentLoopSettings()
        self.on_event = on_event
        self.system_prompt = system_prompt
        self.clock = clock
        self.detector = TerminationDetector(self.settings, clock=clock)
        self._status = LoopStatus.IDLE
        self._cancel_event = asyncio.Event()
        self._messages: list[Message] = []
        self._state = LoopState(started_at=clock())
        self._last_text = ""

    @property
    def status(self) -> LoopStatus:
        return self._status

    def cancel(self) -> None:
        """Request immediate cancellation."""
        self._cancel_event.set()

    def _emit(self, event_type: str, round_number: int = 0, **data: Any) -> None:
        if not self.on_event:
            return
        try:
            self.on_event(AgentEvent(type=event_type, round=round_number, data=data))
        except Exception as e:
            log.warning("Agent event callback failed", event=event_type, error=str(e))

    async def run(self, history: list[Message]) -> AgentResult:
        """Run the loop over an effective conversation history."""
        if self._status is not LoopStatus.IDLE:
            raise RuntimeError("AgentLoop instances can only run once")
        self._status = LoopStatus.RUNNING

        self._messages = []
        if self.system_prompt:
            self._messages.append(Message(role="system", content=self.system_prompt))
        self._messages.extend(history)
        self._state = LoopState(started_at=self.clock())

        main = asyncio.create_task(self._run_rounds())
        cancel_wait = asyncio.create_task(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({main, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            main.cancel()
            cancel_wait.cancel()
            raise

        if main in done:
            cancel_wait.cancel()
            try:
                return main.result()
            except Exception as e:
                log.error("Agent loop crashed", error=str(e))
                return self._finish(
                    LoopStatus.FAILED,
                    TerminationReason.ERROR,
                    message="Agent loop failed",
                    error=redact_secrets(str(e)),
                )

        # Cancelled: abandon in-flight work without awaiting it.
        main.cancel()
        main.add_done_callback(_discard_result)
        log.info("Agent loop cancelled", rounds=self._state.rounds)
        return self._finish(
            LoopStatus.CANCELLED,
            TerminationReason.USER_CANCEL,
            message="Cancelled by user",
        )

    def _finish(
        self,
        status: LoopStatus,
        reason: TerminationReason,
        message: str = "",
        final_output: str | None = None,
        error: str | None = None,
    ) -> AgentResult:
        self._status = status
        result = AgentResult(
            reason=reason,
            status=status,
            rounds=self._state.rounds,
            final_output=final_output if final_output is not None else self._last_text,
            message=message,
            error=error,
            history=list(self._messages),
        )
        if status is LoopStatus.FAILED:
            self._emit("error", self._state.rounds, reason=reason.value, error=error)
        self._emit(
            "agent_complete",
            self._state.rounds,
            reason=reason.value,
            status=status.value,
            message=message,
        )
        return result

    async def _run_rounds(self) -> AgentResult:
        while True:
            round_number = self._state.rounds + 1
            self._emit("round_start", round_number)

            try:
                text, calls = await self._model_turn(round_number)
            except asyncio.TimeoutError:
                self._state.rounds = round_number
                return self._finish(
                    LoopStatus.TERMINATED,
                    TerminationReason.TIMEOUT,
                    message=f"Task timed out after {self.settings.timeout_seconds:g}s",
                )
            except ModelError as e:
                self._state.rounds = round_number
                error = redact_secrets(str(e))
                log.error("Model call failed", round=round_number, error=error)
                return self._finish(
                    LoopStatus.FAILED,
                    TerminationReason.ERROR,
                    message="Model call failed",
                    error=error,
                )

            if text.strip():
                self._last_text = text
            outcome = await self._execute_round(round_number, text, calls)
            self._state.record(outcome)
            decision = self.detector.evaluate(outcome, self._state)
            self._emit(
                "round_end",
                round_number,
                tool_calls=len(outcome.tool_calls),
                should_stop=decision.should_stop,
                reason=decision.reason.value if decision.reason else None,
            )

            if decision.should_stop:
                return self._stop(decision, outcome)

            if decision.signal is TextSignal.FAKE_TOOL_CALL:
                log.warning("Model wrote tool-call markup as text", round=round_number)
                self._messages.append(Message(role="user", content=FAKE_TOOL_CALL_CORRECTION))

    def _stop(self, decision: TerminationDecision, outcome: RoundOutcome) -> AgentResult:
        assert decision.reason is not None
        log.info("Agent loop finished", reason=decision.reason.value, rounds=self._state.rounds)
        final_output = None
        if decision.reason is TerminationReason.TASK_COMPLETE:
            final_output = outcome.completion_summary or decision.message
        return self._finish(
            LoopStatus.TERMINATED,
            decision.reason,
            message=decision.message,
            final_output=final_output,
        )

    async def _model_turn(self, round_number: int) -> tuple[str, list[ToolCall]]:
        remaining = self.settings.timeout_seconds - (self.clock() - self._state.started_at)
        if remaining <= 0:
            raise asyncio.TimeoutError
        return await asyncio.wait_for(self._consume_stream(round_number), timeout=remaining)

    async def _consume_stream(self, round_number: int) -> tuple[str, list[ToolCall]]:
        text_parts: list[str] = []
        calls: list[ToolCall] = []
        try:
            async for event in self.model.stream(list(self._messages), self.catalog.definitions()):
                if event.type == "text_delta":
                    if event.text:
                        text_parts.append(event.text)
                        self._emit("text_delta", round_number, text=event.text)
                elif event.type == "tool_call" and event.tool_call is not None:
                    call = event.tool_call
                    calls.append(
                        ToolCall(id=call.id, name=call.name, arguments=_normalize_arguments(call.arguments))
                    )
                elif event.type == "error":
                    raise ModelError(event.error or "Model stream reported an error")
        except (ModelError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise ModelError(str(e) or type(e).__name__) from e
        return "".join(text_parts), calls

    async def _execute_round(self, round_number: int, text: str, calls: list[ToolCall]) -> RoundOutcome:
        outcome = RoundOutcome(number=round_number, text=text, tool_calls=list(calls))
        executed: list[ToolCall] = []
        assistant = Message(role="assistant", content=text, tool_calls=executed)
        self._messages.append(assistant)

        for call in calls:
            executed.append(call)
            self._emit("tool_executing", round_number, tool=call.name, arguments=call.arguments)
            result = await self.catalog.execute(call)
            outcome.results.append(result)
            self._messages.append(
                Message(
                    role="tool",
                    content=result.to_text(),
                    tool_call_id=call.id,
                    tool_name=call.name,
                )
            )
            self._emit(
                "tool_executed",
                round_number,
                tool=call.name,
                success=result.success,
                content=result.content if result.success else result.error,
            )

            if call.name == TASK_COMPLETE_TOOL:
                outcome.task_complete = True
                outcome.completion_summary = str(call.arguments.get("summary") or result.content or "")
                break
        return outcome


def _discard_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()
