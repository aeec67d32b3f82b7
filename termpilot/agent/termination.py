"""Round-by-round stop/continue decisions for the agent loop."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from termpilot.agent.phrases import (
    FAKE_TOOL_CALL_PATTERNS,
    INCOMPLETE_PATTERNS,
    SUMMARY_PATTERNS,
    TOOL_MENTION_PATTERNS,
    matches_any,
)
from termpilot.config import AgentConfig
from termpilot.llm import ToolCall
from termpilot.tools.registry import ToolResult


class TerminationReason(str, Enum):
    TASK_COMPLETE = "task_complete"
    NO_TOOLS = "no_tools"
    SUMMARIZING = "summarizing"
    REPEATED_TOOL = "repeated_tool"
    HIGH_FAILURE_RATE = "high_failure_rate"
    TIMEOUT = "timeout"
    MAX_ROUNDS = "max_rounds"
    USER_CANCEL = "user_cancel"
    ERROR = "error"


class TextSignal(str, Enum):
    INCOMPLETE = "incomplete"
    SUMMARY = "summary"
    NEUTRAL = "neutral"
    FAKE_TOOL_CALL = "fake_tool_call"


@dataclass
class AgentLoopSettings:
    """Runtime limits; any positive round cap is accepted here."""

    max_rounds: int = 50
    timeout_seconds: float = 600.0
    repeat_threshold: int = 3
    failure_window: int = 4
    max_failure_rate: float = 0.5

    def __post_init__(self) -> None:
        if self.max_rounds < 1:
            raise ValueError("max_rounds must be positive")
        if self.repeat_threshold < 1:
            raise ValueError("repeat_threshold must be positive")
        if self.failure_window < 1:
            raise ValueError("failure_window must be positive")

    @classmethod
    def from_config(cls, config: AgentConfig) -> "AgentLoopSettings":
        return cls(
            max_rounds=config.max_rounds,
            timeout_seconds=config.timeout_seconds,
            repeat_threshold=config.repeat_threshold,
            failure_window=config.failure_window,
            max_failure_rate=config.max_failure_rate,
        )


def call_signature(name: str, arguments: Any) -> str:
    """Tool name plus canonical JSON arguments."""
    try:
        canonical = json.dumps(arguments, sort_keys=True, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        canonical = repr(arguments)
    return f"{name}:{canonical}"


@dataclass
class RoundOutcome:
    """Everything one round produced."""

    number: int
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    results: list[ToolResult] = field(default_factory=list)
    task_complete: bool = False
    completion_summary: str | None = None


@dataclass
class LoopState:
    rounds: int = 0
    started_at: float = field(default_factory=time.monotonic)
    round_signatures: list[frozenset[str]] = field(default_factory=list)
    call_outcomes: list[bool] = field(default_factory=list)
    completed: bool = False

    def record(self, outcome: RoundOutcome) -> None:
        """Fold a finished round into the loop state."""
        self.rounds = max(self.rounds, outcome.number)
        self.round_signatures.append(
            frozenset(call_signature(call.name, call.arguments) for call in outcome.tool_calls)
        )
        self.call_outcomes.extend(result.success for result in outcome.results)
        if outcome.task_complete:
            self.completed = True

    @property
    def failure_count(self) -> int:
        return sum(1 for ok in self.call_outcomes if not ok)


@dataclass
class TerminationDecision:
    should_stop: bool
    reason: TerminationReason | None = None
    message: str = ""
    signal: TextSignal | None = None


def classify_text(text: str) -> TextSignal:
    """Classify round text produced without any tool call."""
    cleaned = (text or "").strip()
    if len(cleaned) < 2:
        return TextSignal.NEUTRAL
    if matches_any(FAKE_TOOL_CALL_PATTERNS, cleaned):
        return TextSignal.FAKE_TOOL_CALL
    if matches_any(INCOMPLETE_PATTERNS, cleaned) or matches_any(TOOL_MENTION_PATTERNS, cleaned):
        return TextSignal.INCOMPLETE
    if matches_any(SUMMARY_PATTERNS, cleaned):
        return TextSignal.SUMMARY
    return TextSignal.NEUTRAL


class TerminationDetector:
    """Evaluates stop conditions in a fixed order."""

    def __init__(self, settings: AgentLoopSettings, clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.clock = clock

    def _repeated_signature(self, state: LoopState) -> str | None:
        threshold = self.settings.repeat_threshold
        if len(state.round_signatures) < threshold:
            return None
        recent = state.round_signatures[-threshold:]
        common = frozenset.intersection(*recent)
        if not common:
            return None
        return sorted(common)[0]

    def _failure_rate(self, state: LoopState) -> float | None:
        window = self.settings.failure_window
        if len(state.call_outcomes) < window:
            return None
        recent = state.call_outcomes[-window:]
        return sum(1 for ok in recent if not ok) / window

    def evaluate(self, outcome: RoundOutcome, state: LoopState) -> TerminationDecision:
        """Decide after a round whose outcome is already recorded in `state`."""
        if outcome.task_complete or state.completed:
            return TerminationDecision(
                True,
                TerminationReason.TASK_COMPLETE,
                outcome.completion_summary or "Task completed",
            )

        if state.rounds >= self.settings.max_rounds:
            return TerminationDecision(
                True,
                TerminationReason.MAX_ROUNDS,
                f"Reached the maximum of {self.settings.max_rounds} rounds",
            )

        repeated = self._repeated_signature(state)
        if repeated is not None:
            tool_name = repeated.split(":", 1)[0]
            return TerminationDecision(
                True,
                TerminationReason.REPEATED_TOOL,
                f"Tool {tool_name} was called with identical arguments in "
                f"{self.settings.repeat_threshold} consecutive rounds",
            )

        rate = self._failure_rate(state)
        if rate is not None and rate > self.settings.max_failure_rate:
            return TerminationDecision(
                True,
                TerminationReason.HIGH_FAILURE_RATE,
                f"{rate:.0%} of the last {self.settings.failure_window} tool calls failed",
            )

        elapsed = self.clock() - state.started_at
        if elapsed > self.settings.timeout_seconds:
            return TerminationDecision(
                True,
                TerminationReason.TIMEOUT,
                f"Task timed out after {round(elapsed)}s",
            )

        if outcome.tool_calls:
            return TerminationDecision(False)

        signal = classify_text(outcome.text)
        if signal in (TextSignal.INCOMPLETE, TextSignal.FAKE_TOOL_CALL):
            return TerminationDecision(False, signal=signal)
        if signal is TextSignal.SUMMARY:
            return TerminationDecision(
                True,
                TerminationReason.SUMMARIZING,
                "The model is summarizing; treating the task as done",
                signal=signal,
            )
        return TerminationDecision(
            True,
            TerminationReason.NO_TOOLS,
            "No tool calls this round",
            signal=signal,
        )
