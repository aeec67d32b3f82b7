"""Explicit completion signal for the agent loop."""

from typing import Any

from termpilot.tools.registry import Tool, ToolResult

TASK_COMPLETE_TOOL = "task_complete"


class TaskCompleteTool(Tool):
    """Ends the agent loop; its summary becomes the final output."""

    name = TASK_COMPLETE_TOOL
    description = (
        "Call this when the user's task is finished (or cannot be finished). "
        "Provide a summary of what was done. The conversation ends after this call."
    )
    parameters = {
        "type": "object",
        "properties": {
            "summary": {"type": "string", "description": "What was accomplished"},
            "success": {"type": "boolean", "description": "Whether the task succeeded"},
            "next_steps": {"type": "string", "description": "Optional follow-up suggestions"},
        },
        "required": ["summary", "success"],
    }

    async def execute(
        self,
        summary: str,
        success: bool = True,
        next_steps: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        return ToolResult(success=True, content=format_completion(summary, bool(success), next_steps))


def format_completion(summary: str, success: bool, next_steps: str | None = None) -> str:
    status = "Task completed" if success else "Task ended without success"
    text = f"{status}: {summary}".rstrip()
    if next_steps:
        text += f"\n\nNext steps: {next_steps}"
    return text
