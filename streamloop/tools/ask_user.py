"""Tool the model calls when it needs input from the user."""

from typing import Any

from streamloop.tools.registry import Tool, ToolResult


class AskUserTool(Tool):
    """Hand a question back to the user and pause the loop."""

    name = "ask_user"
    description = (
        "Ask the user a question when you cannot continue without their input. "
        "The conversation pauses until they answer."
    )
    parameters = {
        "type": "object",
        "properties": {
            "question": {
                "type": "string",
                "description": "The question to show to the user",
            },
        },
        "required": ["question"],
    }

    @property
    def operation_kind(self) -> str:
        return "await_input"

    async def execute(self, question: str, **kwargs: Any) -> ToolResult:
        return ToolResult(success=True, content=f"Question sent to user: {question.strip()}")
