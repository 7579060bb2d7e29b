"""Server-sent event decoding for streamed model responses.

Raw bytes arrive in arbitrary chunks. ``SSEDecoder`` buffers them until a
blank-line-terminated frame is complete, parses its ``event:``/``data:``
fields and turns the JSON payload into a typed ``StreamEvent``.

Frames that cannot be decoded are logged and dropped one at a time; the
stream itself keeps going. A ``data: [DONE]`` frame ends the stream.
"""

import codecs
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from streamloop.exceptions import LLMAPIError
from streamloop.logging import get_logger

log = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


class StreamEventKind(str, Enum):
    """Kinds of events in one streamed model response."""

    MESSAGE_START = "message_start"
    BLOCK_START = "block_start"
    BLOCK_DELTA = "block_delta"
    BLOCK_STOP = "block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"


_WIRE_KINDS: dict[str, StreamEventKind] = {
    "message_start": StreamEventKind.MESSAGE_START,
    "content_block_start": StreamEventKind.BLOCK_START,
    "content_block_delta": StreamEventKind.BLOCK_DELTA,
    "content_block_stop": StreamEventKind.BLOCK_STOP,
    "message_delta": StreamEventKind.MESSAGE_DELTA,
    "message_stop": StreamEventKind.MESSAGE_STOP,
}

_INDEXED_KINDS = {
    StreamEventKind.BLOCK_START,
    StreamEventKind.BLOCK_DELTA,
    StreamEventKind.BLOCK_STOP,
}

_IGNORED_WIRE_TYPES = {"ping"}


@dataclass(frozen=True)
class StreamEvent:
    """A decoded stream event."""

    kind: StreamEventKind
    index: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SSEFrame:
    """One raw SSE frame."""

    event: str | None
    data: str | None


def parse_frame(raw: str) -> SSEFrame:
    """Parse ``event:``/``data:`` fields from one frame body."""
    event_name: str | None = None
    data_lines: list[str] = []
    for line in raw.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value.strip()
        elif name == "data":
            data_lines.append(value)
    data = "\n".join(data_lines) if data_lines else None
    return SSEFrame(event=event_name, data=data)


def _block_payload(kind: StreamEventKind, body: dict[str, Any]) -> dict[str, Any] | None:
    """Extract the payload for block events, or None when the shape is wrong."""
    if kind == StreamEventKind.BLOCK_START:
        block = body.get("content_block")
        if not isinstance(block, dict) or not block.get("type"):
            return None
        return dict(block)
    if kind == StreamEventKind.BLOCK_DELTA:
        delta = body.get("delta")
        if not isinstance(delta, dict) or not delta.get("type"):
            return None
        return dict(delta)
    return {}


def decode_frame(frame: SSEFrame) -> StreamEvent | None:
    """Decode one frame into a StreamEvent.

    Returns None for frames that carry no event (comments, pings) and for
    malformed frames, which are logged. Raises LLMAPIError for a well-formed
    provider ``error`` event.
    """
    if frame.data is None:
        return None
    try:
        body = json.loads(frame.data)
    except json.JSONDecodeError as e:
        log.warning("Dropping undecodable stream frame", sse_event=frame.event, error=str(e))
        return None
    if not isinstance(body, dict):
        log.warning("Dropping stream frame with non-object payload", sse_event=frame.event)
        return None

    wire_type = str(body.get("type") or frame.event or "").strip()
    if wire_type in _IGNORED_WIRE_TYPES:
        return None
    if wire_type == "error":
        error = body.get("error") if isinstance(body.get("error"), dict) else {}
        raise LLMAPIError(
            f"Stream error: {error.get('message') or 'unknown error'}",
            error_type=error.get("type"),
        )

    kind = _WIRE_KINDS.get(wire_type)
    if kind is None:
        log.warning("Dropping stream frame with unknown type", type=wire_type)
        return None

    index: int | None = None
    if kind in _INDEXED_KINDS:
        raw_index = body.get("index")
        if not isinstance(raw_index, int) or isinstance(raw_index, bool):
            log.warning("Dropping block event without integer index", type=wire_type, index=raw_index)
            return None
        index = raw_index
        payload = _block_payload(kind, body)
        if payload is None:
            log.warning("Dropping block event with malformed body", type=wire_type, index=index)
            return None
    elif kind == StreamEventKind.MESSAGE_START:
        message = body.get("message")
        payload = dict(message) if isinstance(message, dict) else {}
    else:
        payload = {key: value for key, value in body.items() if key != "type"}

    return StreamEvent(kind=kind, index=index, payload=payload)


class SSEDecoder:
    """Incremental SSE decoder producing StreamEvents."""

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.dropped_frames = 0
        self.frame_count = 0

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Consume one chunk and return every event completed by it."""
        if self.done:
            return []
        text = self._utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        self._buffer += text
        # CRLF/CR normalisation may leave a trailing \r split from its \n
        self._buffer = self._buffer.replace("\r\n", "\n")
        if self._buffer.endswith("\r"):
            head, tail = self._buffer[:-1], "\r"
        else:
            head, tail = self._buffer, ""
        self._buffer = head.replace("\r", "\n") + tail

        events: list[StreamEvent] = []
        while not self.done:
            frame_end = self._buffer.find("\n\n")
            if frame_end < 0:
                break
            raw = self._buffer[:frame_end]
            self._buffer = self._buffer[frame_end + 2:]
            event = self._process(raw)
            if event is not None:
                events.append(event)
        if self.done:
            self._buffer = ""
        return events

    def flush(self) -> list[StreamEvent]:
        """Finish the input; an unterminated trailing frame is dropped."""
        tail = self._utf8.decode(b"", final=True)
        if tail and not self.done:
            self._buffer += tail
        leftover = self._buffer.strip()
        self._buffer = ""
        if leftover and not self.done:
            self.dropped_frames += 1
            log.warning("Dropping unterminated trailing stream frame", size=len(leftover))
        return []

    def _process(self, raw: str) -> StreamEvent | None:
        if not raw.strip():
            return None
        self.frame_count += 1
        frame = parse_frame(raw)
        if frame.data is not None and frame.data.strip() == DONE_SENTINEL:
            log.debug("Stream done sentinel received", frames=self.frame_count)
            self.done = True
            return None
        event = decode_frame(frame)
        if event is None and frame.data is not None and not self._is_benign(frame):
            self.dropped_frames += 1
        return event

    @staticmethod
    def _is_benign(frame: SSEFrame) -> bool:
        """Frames that legitimately produce no event."""
        if frame.event in _IGNORED_WIRE_TYPES:
            return True
        try:
            body = json.loads(frame.data or "")
        except json.JSONDecodeError:
            return False
        return isinstance(body, dict) and body.get("type") in _IGNORED_WIRE_TYPES
