import pytest

from streamloop.exceptions import ProtocolError
from streamloop.llm import ToolCall
from streamloop.tool_assembler import AssembledResponse, TextBuffer
from streamloop.tools.dispatcher import ToolExecutionRecord
from streamloop.tools.registry import ToolResult
from streamloop.turns import (
    MISSING_RESULT_ERROR,
    ConversationTurn,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    TurnBuilder,
    check_tool_result_pairing,
    ensure_tool_result_pairing,
    user_text_turn,
)


def response_with(calls: list[ToolCall], text: str = "Working on it", thinking: str | None = None) -> AssembledResponse:
    thinking_blocks = [TextBuffer(block_index=0, type="thinking", text=thinking, signature="s")] if thinking else []
    return AssembledResponse(
        text_blocks=[TextBuffer(block_index=1, type="text", text=text)],
        thinking_blocks=thinking_blocks,
        tool_calls=calls,
    )


def record(call: ToolCall, success: bool = True, content: str = "done", error: str | None = None) -> ToolExecutionRecord:
    return ToolExecutionRecord(call=call, result=ToolResult(success=success, content=content, error=error))


def test_assistant_turn_orders_text_thinking_then_tool_use():
    calls = [
        ToolCall(id="t2", name="write", arguments={"path": "b"}, index=1),
        ToolCall(id="t1", name="read", arguments={"path": "a"}, index=0),
    ]

    turn = TurnBuilder().build_assistant_turn(response_with(calls, thinking="hmm"))

    assert [block.type for block in turn.blocks] == ["text", "thinking", "tool_use", "tool_use"]
    assert turn.tool_use_ids == ["t1", "t2"]
    message = turn.to_message()
    assert message["role"] == "assistant"
    assert message["content"][1] == {"type": "thinking", "thinking": "hmm", "signature": "s"}
    assert message["content"][2] == {"type": "tool_use", "id": "t1", "name": "read", "input": {"path": "a"}}


def test_assistant_turn_skips_empty_text():
    turn = TurnBuilder().build_assistant_turn(response_with([ToolCall(id="t1", name="read", arguments={})], text=""))

    assert [block.type for block in turn.blocks] == ["tool_use"]


def test_tool_result_turn_pairs_every_tool_use_in_order():
    calls = [ToolCall(id=f"t{i}", name="read", arguments={}, index=i) for i in range(3)]
    builder = TurnBuilder()
    assistant = builder.build_assistant_turn(response_with(calls))
    records = [record(calls[2]), record(calls[0]), record(calls[1], success=False, error="boom")]

    turn = builder.build_tool_result_turn(assistant, records, trailing_text="Continue.")

    assert turn.role == "user"
    assert turn.tool_result_ids == ["t0", "t1", "t2"]
    assert turn.blocks[1].is_error is True
    assert turn.blocks[1].content == "Error: boom"
    assert isinstance(turn.blocks[-1], TextBlock)
    assert check_tool_result_pairing(assistant, turn) == []
    wire = turn.to_message()["content"]
    assert wire[0] == {"type": "tool_result", "tool_use_id": "t0", "content": "done"}
    assert wire[1]["is_error"] is True


def test_missing_record_gets_error_result():
    calls = [ToolCall(id="t1", name="read", arguments={}), ToolCall(id="t2", name="read", arguments={}, index=1)]
    builder = TurnBuilder()
    assistant = builder.build_assistant_turn(response_with(calls))

    turn = builder.build_tool_result_turn(assistant, [record(calls[0])])

    assert turn.tool_result_ids == ["t1", "t2"]
    assert turn.blocks[1].content == MISSING_RESULT_ERROR
    assert turn.blocks[1].is_error is True


def test_empty_success_content_is_replaced():
    call = ToolCall(id="t1", name="read", arguments={})
    builder = TurnBuilder()
    assistant = builder.build_assistant_turn(response_with([call]))

    turn = builder.build_tool_result_turn(assistant, [record(call, content="")])

    assert turn.blocks[0].content == "(no output)"


def test_pairing_check_reports_text_before_results_and_missing_ids():
    assistant = ConversationTurn(role="assistant", blocks=[ToolUseBlock(id="t1", name="read"), ToolUseBlock(id="t2", name="read")])
    user = ConversationTurn(
        role="user",
        blocks=[TextBlock(text="first"), ToolResultBlock(tool_use_id="t1", content="ok")],
    )

    problems = check_tool_result_pairing(assistant, user)

    assert any("before any other block" in p for p in problems)
    assert any("missing tool_result for: t2" in p for p in problems)
    with pytest.raises(ProtocolError):
        ensure_tool_result_pairing(assistant, user)


def test_pairing_check_ignores_turns_without_tool_use():
    assistant = ConversationTurn(role="assistant", blocks=[TextBlock(text="hi")])

    assert check_tool_result_pairing(assistant, user_text_turn("next")) == []
