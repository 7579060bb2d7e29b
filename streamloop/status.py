"""Progress notifications forwarded to an external status sink."""

from dataclasses import dataclass, field
from typing import Any, Callable

from streamloop.logging import get_logger

log = get_logger(__name__)

TOOL_DETECTED = "tool_detected"
TOOL_READY = "tool_ready"
TOOL_ERROR = "tool_error"
TOOL_COMPLETED = "tool_completed"
TEXT_DELTA = "text_delta"
ITERATION_START = "iteration_start"
TERMINAL = "terminal"


@dataclass(frozen=True)
class StatusEvent:
    """One progress notification."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


StatusSink = Callable[[StatusEvent], None]


class StatusEmitter:
    """Forward status events to the configured sink, if any."""

    def __init__(self, sink: StatusSink | None = None):
        self.sink = sink

    def emit(self, kind: str, /, **payload: Any) -> None:
        if self.sink is None:
            return
        try:
            self.sink(StatusEvent(kind=kind, payload=payload))
        except Exception as e:
            # A broken display must never stop the loop
            log.warning("Status sink failed", kind=kind, error=str(e))
