from streamloop.status import TERMINAL, StatusEmitter, StatusEvent


def test_emit_accepts_kind_inside_the_payload():
    events: list[StatusEvent] = []
    emitter = StatusEmitter(events.append)

    emitter.emit(TERMINAL, kind="natural_end", detail="done")

    assert events == [StatusEvent(kind=TERMINAL, payload={"kind": "natural_end", "detail": "done"})]


def test_emit_without_sink_is_a_no_op():
    StatusEmitter().emit(TERMINAL, kind="iteration_cap")


def test_failing_sink_is_swallowed():
    def sink(event: StatusEvent) -> None:
        raise RuntimeError("boom")

    StatusEmitter(sink).emit("tool_ready", tool="write")
