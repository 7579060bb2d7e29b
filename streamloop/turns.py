"""Conversation turns and the tool_use/tool_result pairing rules."""

from dataclasses import dataclass, field
from typing import Any, Literal, Sequence, Union

from streamloop.exceptions import ProtocolError
from streamloop.logging import get_logger
from streamloop.tool_assembler import AssembledResponse
from streamloop.tools.dispatcher import ToolExecutionRecord

log = get_logger(__name__)

MISSING_RESULT_ERROR = "Error: no result was produced for this tool call."


@dataclass
class TextBlock:
    text: str
    type: Literal["text"] = "text"

    def to_wire(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ThinkingBlock:
    thinking: str
    signature: str | None = None
    type: Literal["thinking"] = "thinking"

    def to_wire(self) -> dict[str, Any]:
        block: dict[str, Any] = {"type": "thinking", "thinking": self.thinking}
        if self.signature:
            block["signature"] = self.signature
        return block


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = "tool_use"

    def to_wire(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": dict(self.input)}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"

    def to_wire(self) -> dict[str, Any]:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            block["is_error"] = True
        return block


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class ConversationTurn:
    """One role-tagged unit of conversation history."""

    role: Literal["assistant", "user"]
    blocks: list[ContentBlock] = field(default_factory=list)

    @property
    def tool_use_ids(self) -> list[str]:
        return [block.id for block in self.blocks if isinstance(block, ToolUseBlock)]

    @property
    def tool_result_ids(self) -> list[str]:
        return [block.tool_use_id for block in self.blocks if isinstance(block, ToolResultBlock)]

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.blocks if isinstance(block, TextBlock))

    def to_message(self) -> dict[str, Any]:
        """Wire format for the model API."""
        return {"role": self.role, "content": [block.to_wire() for block in self.blocks]}


def user_text_turn(text: str) -> ConversationTurn:
    """Plain user message."""
    return ConversationTurn(role="user", blocks=[TextBlock(text=text)])


def check_tool_result_pairing(assistant_turn: ConversationTurn, user_turn: ConversationTurn) -> list[str]:
    """Return every violation of the tool_use/tool_result contract."""
    problems: list[str] = []
    use_ids = assistant_turn.tool_use_ids
    if not use_ids:
        return problems
    if user_turn.role != "user":
        problems.append(f"turn after tool_use must be a user turn, got {user_turn.role}")

    leading: list[str] = []
    for block in user_turn.blocks:
        if not isinstance(block, ToolResultBlock):
            break
        leading.append(block.tool_use_id)
    all_results = user_turn.tool_result_ids

    if len(all_results) != len(leading):
        problems.append("tool_result blocks must come before any other block")
    if sorted(all_results) != sorted(use_ids):
        missing = sorted(set(use_ids) - set(all_results))
        extra = sorted(set(all_results) - set(use_ids))
        if missing:
            problems.append(f"missing tool_result for: {', '.join(missing)}")
        if extra:
            problems.append(f"tool_result without tool_use: {', '.join(extra)}")
        if not missing and not extra:
            problems.append("duplicate tool_result ids")
    return problems


def ensure_tool_result_pairing(assistant_turn: ConversationTurn, user_turn: ConversationTurn) -> None:
    """Raise ProtocolError when the pairing contract is broken."""
    problems = check_tool_result_pairing(assistant_turn, user_turn)
    if problems:
        raise ProtocolError("; ".join(problems))


class TurnBuilder:
    """Assemble assistant and tool-result turns."""

    def build_assistant_turn(self, response: AssembledResponse) -> ConversationTurn:
        """Text blocks, then thinking blocks, then tool_use blocks in sequence order."""
        blocks: list[ContentBlock] = []
        for text_block in response.text_blocks:
            if text_block.text:
                blocks.append(TextBlock(text=text_block.text))
        for thinking_block in response.thinking_blocks:
            blocks.append(ThinkingBlock(thinking=thinking_block.text, signature=thinking_block.signature))
        for call in sorted(response.tool_calls, key=lambda c: c.index):
            blocks.append(ToolUseBlock(id=call.id, name=call.name, input=dict(call.arguments)))
        return ConversationTurn(role="assistant", blocks=blocks)

    def build_tool_result_turn(
        self,
        assistant_turn: ConversationTurn,
        records: Sequence[ToolExecutionRecord],
        trailing_text: str | None = None,
    ) -> ConversationTurn:
        """One tool_result per tool_use, in tool_use order, followed by optional text."""
        by_id = {record.call.id: record for record in records}
        blocks: list[ContentBlock] = []
        for tool_id in assistant_turn.tool_use_ids:
            record = by_id.pop(tool_id, None)
            if record is None:
                log.error("Tool call has no result, sending error result", tool_id=tool_id)
                blocks.append(ToolResultBlock(tool_use_id=tool_id, content=MISSING_RESULT_ERROR, is_error=True))
                continue
            result = record.result
            if result.success:
                blocks.append(ToolResultBlock(tool_use_id=tool_id, content=result.content or "(no output)"))
            else:
                blocks.append(ToolResultBlock(tool_use_id=tool_id, content=f"Error: {result.error}", is_error=True))
        if by_id:
            log.warning("Dropping results for calls not in the assistant turn", tool_ids=sorted(by_id))
        if trailing_text:
            blocks.append(TextBlock(text=trailing_text))
        turn = ConversationTurn(role="user", blocks=blocks)
        ensure_tool_result_pairing(assistant_turn, turn)
        return turn
