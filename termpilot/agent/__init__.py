"""Agent loop and its termination logic."""

from termpilot.agent.loop import (
    AGENT_SYSTEM_PROMPT,
    AgentEvent,
    AgentLoop,
    AgentResult,
    LoopStatus,
)
from termpilot.agent.termination import (
    AgentLoopSettings,
    LoopState,
    RoundOutcome,
    TerminationDecision,
    TerminationDetector,
    TerminationReason,
    TextSignal,
    classify_text,
)

__all__ = [
    "AGENT_SYSTEM_PROMPT",
    "AgentEvent",
    "AgentLoop",
    "AgentLoopSettings",
    "AgentResult",
    "LoopState",
    "LoopStatus",
    "RoundOutcome",
    "TerminationDecision",
    "TerminationDetector",
    "TerminationReason",
    "TextSignal",
    "classify_text",
]
