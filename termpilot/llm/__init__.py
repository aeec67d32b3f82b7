"""Provider-neutral model shapes consumed by the agent loop."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal


@dataclass
class ToolCall:
    """A tool call from the model."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class ToolDefinition:
    """Definition of a tool for the model."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


ModelEventType = Literal["text_delta", "tool_call", "error"]


@dataclass
class ModelEvent:
    """One streamed event from a model turn."""

    type: ModelEventType
    text: str = ""
    tool_call: ToolCall | None = None
    error: str | None = None

    @classmethod
    def text_delta(cls, text: str) -> "ModelEvent":
        return cls(type="text_delta", text=text)

    @classmethod
    def call(cls, tool_call: ToolCall) -> "ModelEvent":
        return cls(type="tool_call", tool_call=tool_call)

    @classmethod
    def failure(cls, error: str) -> "ModelEvent":
        return cls(type="error", error=error)


class ModelEventSource(ABC):
    """Anything that can turn a conversation into a stream of model events.

    Provider wire formats live behind implementations of this class; the
    agent loop only sees text deltas, complete tool calls and errors.
    """

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
    ) -> AsyncIterator[ModelEvent]:
        """Yield events for one model turn."""
        ...


__all__ = [
    "Message",
    "ModelEvent",
    "ModelEventSource",
    "ModelEventType",
    "ToolCall",
    "ToolDefinition",
]
