"""Incremental assembly of content blocks and tool calls from stream events.

Every content block of a streamed response (text, thinking, tool_use) is
identified by an integer index and goes through start -> delta* -> stop.
Tool-use payloads arrive as JSON fragments; once a tool block stops its
payload is parsed and ``on_tool_ready`` fires immediately, so execution can
begin while later blocks of the same response are still streaming.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from streamloop.llm import ToolCall
from streamloop.logging import get_logger
from streamloop.stream_decoder import StreamEvent, StreamEventKind

log = get_logger(__name__)


class ToolCallStatus(str, Enum):
    """Lifecycle of a tool call buffer."""

    PENDING = "pending"
    READY = "ready"
    DISPATCHED = "dispatched"
    COMPLETE = "complete"
    ERROR = "error"


_STATUS_RANK = {
    ToolCallStatus.PENDING: 0,
    ToolCallStatus.READY: 1,
    ToolCallStatus.DISPATCHED: 2,
    ToolCallStatus.COMPLETE: 3,
    ToolCallStatus.ERROR: 3,
}

BLOCK_TEXT = "text"
BLOCK_THINKING = "thinking"
BLOCK_TOOL_USE = "tool_use"


@dataclass(frozen=True)
class ContentBlockDescriptor:
    """Identity of one content block in a streamed response."""

    block_index: int
    type: str
    tool_id: str | None = None
    tool_name: str | None = None


@dataclass
class ToolCallBuffer:
    """Partial tool invocation accumulated from stream deltas."""

    tool_id: str
    tool_name: str
    block_index: int
    sequence_index: int
    accumulated_payload: str = ""
    status: ToolCallStatus = ToolCallStatus.PENDING

    def advance(self, status: ToolCallStatus) -> None:
        """Move status forward; terminal states and backward moves are rejected."""
        current = _STATUS_RANK[self.status]
        target = _STATUS_RANK[status]
        if status == self.status:
            return
        if current == 3 or target <= current:
            raise ValueError(
                f"Tool call {self.tool_id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status


@dataclass
class TextBuffer:
    """Accumulated text or thinking block."""

    block_index: int
    type: str
    text: str = ""
    signature: str | None = None
    closed: bool = False


@dataclass
class AssembledResponse:
    """Everything collected from one streamed model response."""

    text_blocks: list[TextBuffer] = field(default_factory=list)
    thinking_blocks: list[TextBuffer] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    failed_tool_ids: list[str] = field(default_factory=list)
    stop_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    model: str = ""

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.text_blocks)


def decode_tool_payload(raw: str) -> tuple[dict[str, Any] | None, str | None]:
    """Parse a merged tool payload into (arguments, error)."""
    if not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        return None, f"Invalid tool input JSON: {e}"
    if not isinstance(parsed, dict):
        return None, f"Tool input must be a JSON object, got {type(parsed).__name__}"
    return parsed, None


class ToolCallAssembler:
    """Consume StreamEvents for one response and assemble blocks and tool calls."""

    def __init__(
        self,
        on_tool_detected: Callable[[ToolCallBuffer], None] | None = None,
        on_tool_ready: Callable[[ToolCall], None] | None = None,
        on_tool_error: Callable[[str, str], None] | None = None,
        on_text: Callable[[int, str], None] | None = None,
    ):
        self.on_tool_detected = on_tool_detected
        self.on_tool_ready = on_tool_ready
        self.on_tool_error = on_tool_error
        self.on_text = on_text

        self._open_tools: dict[str, ToolCallBuffer] = {}
        self._index_to_tool: dict[int, str] = {}
        self._open_blocks: dict[int, TextBuffer] = {}
        self._closed_blocks: list[TextBuffer] = []
        self._finished: dict[str, ToolCallBuffer] = {}
        self._ready_calls: list[ToolCall] = []
        self._failed: list[str] = []
        self._sequence = 0
        self._descriptors: list[ContentBlockDescriptor] = []
        self.stop_reason: str | None = None
        self.usage: dict[str, int] = {}
        self.model = ""
        self.message_stopped = False

    # Public API

    def handle(self, event: StreamEvent) -> None:
        """Apply one event. Events must arrive in stream order."""
        if event.kind == StreamEventKind.MESSAGE_START:
            self._on_message_start(event.payload)
        elif event.kind == StreamEventKind.BLOCK_START:
            self._on_block_start(event.index, event.payload)
        elif event.kind == StreamEventKind.BLOCK_DELTA:
            self._on_block_delta(event.index, event.payload)
        elif event.kind == StreamEventKind.BLOCK_STOP:
            self._on_block_stop(event.index)
        elif event.kind == StreamEventKind.MESSAGE_DELTA:
            self._on_message_delta(event.payload)
        elif event.kind == StreamEventKind.MESSAGE_STOP:
            self.message_stopped = True
            log.debug("Message stopped", stop_reason=self.stop_reason)

    def buffer(self, tool_id: str) -> ToolCallBuffer | None:
        """Return an open or finished buffer by tool id."""
        return self._open_tools.get(tool_id) or self._finished.get(tool_id)

    @property
    def blocks(self) -> list[ContentBlockDescriptor]:
        """Every content block started in this response, in arrival order."""
        return list(self._descriptors)

    @property
    def open_buffers(self) -> list[ToolCallBuffer]:
        return sorted(self._open_tools.values(), key=lambda b: b.sequence_index)

    def mark(self, tool_id: str, status: ToolCallStatus) -> None:
        """Advance the status of a finalised tool buffer."""
        buffer = self._finished.get(tool_id)
        if buffer is None:
            log.warning("Status update for unknown tool call", tool_id=tool_id, status=status.value)
            return
        buffer.advance(status)

    def remove_buffer(self, tool_id: str) -> None:
        """Drop an open buffer; unknown ids are ignored."""
        buffer = self._open_tools.pop(tool_id, None)
        if buffer is not None and self._index_to_tool.get(buffer.block_index) == tool_id:
            del self._index_to_tool[buffer.block_index]

    def discard(self) -> None:
        """Drop every partially built block (abandoned stream)."""
        if self._open_tools:
            log.info("Discarding partial tool calls", tool_ids=list(self._open_tools))
        for tool_id in list(self._open_tools):
            self.remove_buffer(tool_id)
        self._open_blocks.clear()

    def result(self) -> AssembledResponse:
        """Collected blocks and ready tool calls, in stream order."""
        closed = sorted(self._closed_blocks, key=lambda b: b.block_index)
        return AssembledResponse(
            text_blocks=[b for b in closed if b.type == BLOCK_TEXT],
            thinking_blocks=[b for b in closed if b.type == BLOCK_THINKING],
            tool_calls=sorted(self._ready_calls, key=lambda c: c.index),
            failed_tool_ids=list(self._failed),
            stop_reason=self.stop_reason,
            usage=dict(self.usage),
            model=self.model,
        )

    # Event handlers

    def _on_message_start(self, message: dict[str, Any]) -> None:
        self.model = str(message.get("model") or "")
        self._merge_usage(message.get("usage"))

    def _on_message_delta(self, payload: dict[str, Any]) -> None:
        delta = payload.get("delta")
        if isinstance(delta, dict) and delta.get("stop_reason"):
            self.stop_reason = str(delta["stop_reason"])
        self._merge_usage(payload.get("usage"))

    def _merge_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            return
        for key, value in usage.items():
            if isinstance(value, int) and not isinstance(value, bool):
                self.usage[key] = value

    def _on_block_start(self, index: int | None, block: dict[str, Any]) -> None:
        if index is None:
            return
        if index in self._index_to_tool or index in self._open_blocks:
            log.warning("Dropping block start for an index that is still open", index=index)
            return

        block_type = block.get("type")
        if block_type == BLOCK_TOOL_USE:
            self._start_tool(index, block)
        elif block_type in (BLOCK_TEXT, BLOCK_THINKING):
            initial = block.get("text") if block_type == BLOCK_TEXT else block.get("thinking")
            self._descriptors.append(ContentBlockDescriptor(block_index=index, type=block_type))
            self._open_blocks[index] = TextBuffer(
                block_index=index,
                type=block_type,
                text=initial if isinstance(initial, str) else "",
                signature=block.get("signature") if isinstance(block.get("signature"), str) else None,
            )
            if block_type == BLOCK_TEXT and self._open_blocks[index].text and self.on_text:
                self.on_text(index, self._open_blocks[index].text)
        else:
            log.debug("Ignoring unsupported content block", index=index, type=block_type)

    def _start_tool(self, index: int, block: dict[str, Any]) -> None:
        tool_id = block.get("id")
        tool_name = block.get("name")
        if not tool_id or not tool_name:
            log.error("Dropping tool_use block without id or name", index=index, id=tool_id, name=tool_name)
            return
        tool_id = str(tool_id)
        if tool_id in self._open_tools or tool_id in self._finished:
            log.error("Dropping duplicate tool_use block", index=index, tool_id=tool_id)
            return

        buffer = ToolCallBuffer(
            tool_id=tool_id,
            tool_name=str(tool_name),
            block_index=index,
            sequence_index=self._sequence,
        )
        self._sequence += 1
        self._open_tools[tool_id] = buffer
        self._descriptors.append(
            ContentBlockDescriptor(block_index=index, type=BLOCK_TOOL_USE, tool_id=tool_id, tool_name=buffer.tool_name)
        )
        self._index_to_tool[index] = tool_id

        log.info("Tool detected", tool=buffer.tool_name, tool_id=tool_id, index=index, sequence=buffer.sequence_index)
        if self.on_tool_detected:
            self.on_tool_detected(buffer)

    def _on_block_delta(self, index: int | None, delta: dict[str, Any]) -> None:
        if index is None:
            return
        delta_type = delta.get("type")

        if delta_type == "input_json_delta":
            tool_id = self._index_to_tool.get(index)
            if tool_id is None:
                log.warning("No tool buffer for input_json_delta", index=index)
                return
            fragment = delta.get("partial_json")
            if not isinstance(fragment, str):
                fragment = ""
            self._open_tools[tool_id].accumulated_payload += fragment
            return

        block = self._open_blocks.get(index)
        if block is None:
            log.warning("No open block for delta", index=index, type=delta_type)
            return
        if delta_type == "text_delta" and block.type == BLOCK_TEXT:
            text = delta.get("text")
            text = text if isinstance(text, str) else ""
            block.text += text
            if text and self.on_text:
                self.on_text(index, text)
        elif delta_type == "thinking_delta" and block.type == BLOCK_THINKING:
            chunk = delta.get("thinking")
            block.text += chunk if isinstance(chunk, str) else ""
        elif delta_type == "signature_delta" and block.type == BLOCK_THINKING:
            signature = delta.get("signature")
            if isinstance(signature, str):
                block.signature = (block.signature or "") + signature
        else:
            log.warning("Dropping delta that does not match its block", index=index, type=delta_type, block=block.type)

    def _on_block_stop(self, index: int | None) -> None:
        if index is None:
            return
        tool_id = self._index_to_tool.get(index)
        if tool_id is not None:
            self._finish_tool(tool_id)
            return

        block = self._open_blocks.pop(index, None)
        if block is None:
            log.warning("Block stop for unknown index", index=index)
            return
        block.closed = True
        self._closed_blocks.append(block)

    def _finish_tool(self, tool_id: str) -> None:
        buffer = self._open_tools[tool_id]
        if not buffer.accumulated_payload.strip():
            log.warning("Tool input is empty, using empty arguments", tool=buffer.tool_name, tool_id=tool_id)
        arguments, error = decode_tool_payload(buffer.accumulated_payload)
        self.remove_buffer(tool_id)
        self._finished[tool_id] = buffer

        if error is not None:
            buffer.advance(ToolCallStatus.ERROR)
            self._failed.append(tool_id)
            log.error("Failed to parse tool input", tool=buffer.tool_name, tool_id=tool_id, error=error)
            if self.on_tool_error:
                self.on_tool_error(tool_id, error)
            return

        buffer.advance(ToolCallStatus.READY)
        call = ToolCall(
            id=buffer.tool_id,
            name=buffer.tool_name,
            arguments=arguments or {},
            index=buffer.sequence_index,
        )
        self._ready_calls.append(call)
        log.info("Tool ready", tool=call.name, tool_id=call.id, sequence=call.index)
        if self.on_tool_ready:
            self.on_tool_ready(call)
