import asyncio
import json
from pathlib import Path

import pytest

from streamloop.agent import Agent
from streamloop.config import Config
from streamloop.exceptions import StreamTimeoutError, ToolBackendUnavailableError
from streamloop.llm import StreamingClient
from streamloop.state import AgentIterationState, TerminationKind
from streamloop.status import (
    ITERATION_START,
    TERMINAL,
    TOOL_COMPLETED,
    TOOL_DETECTED,
    TOOL_READY,
    StatusEvent,
)
from streamloop.stream_decoder import StreamEvent, StreamEventKind
from streamloop.tools.registry import Tool, ToolRegistry, ToolResult


def message(*blocks: list[StreamEvent], stop_reason: str = "tool_use") -> list[StreamEvent]:
    events = [StreamEvent(StreamEventKind.MESSAGE_START, None, {"model": "fake", "usage": {"input_tokens": 10}})]
    for block in blocks:
        events.extend(block)
    events.append(StreamEvent(
        StreamEventKind.MESSAGE_DELTA,
        None,
        {"delta": {"stop_reason": stop_reason}, "usage": {"output_tokens": 5}},
    ))
    events.append(StreamEvent(StreamEventKind.MESSAGE_STOP))
    return events


def text_block(text: str, index: int = 0) -> list[StreamEvent]:
    return [
        StreamEvent(StreamEventKind.BLOCK_START, index, {"type": "text", "text": ""}),
        StreamEvent(StreamEventKind.BLOCK_DELTA, index, {"type": "text_delta", "text": text}),
        StreamEvent(StreamEventKind.BLOCK_STOP, index, {}),
    ]


def tool_block(tool_id: str, name: str, fragments: list[str], index: int = 0) -> list[StreamEvent]:
    events = [StreamEvent(StreamEventKind.BLOCK_START, index, {"type": "tool_use", "id": tool_id, "name": name})]
    for fragment in fragments:
        events.append(StreamEvent(StreamEventKind.BLOCK_DELTA, index, {"type": "input_json_delta", "partial_json": fragment}))
    events.append(StreamEvent(StreamEventKind.BLOCK_STOP, index, {}))
    return events


def tool_call_block(tool_id: str, name: str, arguments: dict, index: int = 0) -> list[StreamEvent]:
    return tool_block(tool_id, name, [json.dumps(arguments)], index)


class ScriptedClient(StreamingClient):
    """Replays one scripted response per call."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls: list[list[dict]] = []
        self.systems: list[str | None] = []

    async def stream(self, messages, tools=None, options=None):
        self.calls.append(json.loads(json.dumps(messages)))
        self.systems.append(options.system if options else None)
        script = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        events = script(len(self.calls)) if callable(script) else script
        for event in events:
            await asyncio.sleep(0)
            yield event


class RecordingTool(Tool):
    name = "record"
    description = "Record arguments"
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string"}, "value": {"type": "string"}},
        "required": ["path"],
    }

    def __init__(self):
        self.seen: list[dict] = []

    async def execute(self, **kwargs) -> ToolResult:
        arguments = {k: v for k, v in kwargs.items() if not k.startswith("_")}
        self.seen.append(arguments)
        return ToolResult(success=True, content=f"recorded {arguments.get('path')}")


class FailingTool(Tool):
    name = "fail"
    description = "Always fails"
    parameters = {"type": "object", "properties": {"path": {"type": "string"}}, "required": []}

    async def execute(self, **kwargs) -> ToolResult:
        return ToolResult(success=False, error="nope")


class OfflineTool(Tool):
    name = "offline"
    description = "Backend is down"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs) -> ToolResult:
        raise ToolBackendUnavailableError(self.name, "connection refused")


def make_config(tmp_path: Path, enabled: list[str], **loop) -> Config:
    cfg = Config()
    cfg.workspace.path = str(tmp_path)
    cfg.tools.enabled = enabled
    cfg.tools.batch_timeout = 5.0
    cfg.model.stream_timeout = 5.0
    for key, value in loop.items():
        setattr(cfg.loop, key, value)
    return cfg


def make_agent(tmp_path: Path, client: StreamingClient, *tools: Tool, events=None, **loop) -> Agent:
    registry = ToolRegistry(base_path=tmp_path, default_timeout=5.0)
    for tool in tools:
        registry.register(tool)
    cfg = make_config(tmp_path, [tool.name for tool in tools], **loop)
    sink = events.append if events is not None else None
    return Agent(client=client, tools=registry, config=cfg, status_sink=sink)


@pytest.mark.asyncio
async def test_single_tool_call_end_to_end(tmp_path: Path):
    tool = RecordingTool()
    client = ScriptedClient([
        message(tool_block("t1", "record", ['{"path": "notes.txt", ', '"value": "v"}'])),
        message(text_block("All done."), stop_reason="end_turn"),
    ])
    agent = make_agent(tmp_path, client, tool)

    outcome = await agent.run("write the notes")

    assert tool.seen == [{"path": "notes.txt", "value": "v"}]
    assert outcome.signal.kind == TerminationKind.NATURAL_END
    assert outcome.final_text == "All done."
    history = outcome.state.history
    assert [turn.role for turn in history] == ["user", "assistant", "user", "assistant"]
    assert history[1].tool_use_ids == ["t1"]
    assert history[2].tool_result_ids == ["t1"]
    assert history[2].blocks[0].content == "recorded notes.txt"
    # second call sees the tool exchange
    assert client.calls[1][1]["content"][0]["type"] == "tool_use"
    assert client.calls[1][2]["content"][0] == {
        "type": "tool_result",
        "tool_use_id": "t1",
        "content": "recorded notes.txt",
    }
    assert outcome.state.usage == {"input_tokens": 20, "output_tokens": 10}


@pytest.mark.asyncio
async def test_iteration_cap_stops_after_exactly_max_cycles(tmp_path: Path):
    tool = RecordingTool()
    client = ScriptedClient([
        lambda n: message(tool_call_block(f"t{n}", "record", {"path": f"file{n}.txt"})),
    ])
    agent = make_agent(tmp_path, client, tool, max_tool_cycles=3)

    outcome = await agent.run("loop forever")

    assert len(client.calls) == 3
    assert len(tool.seen) == 3
    assert outcome.signal.kind == TerminationKind.ITERATION_CAP
    assert outcome.state.tool_cycles == 3
    assert outcome.final_text == agent.config.loop.cap_message
    assert outcome.state.history[-1].role == "assistant"
    assert outcome.recommended_action


@pytest.mark.asyncio
async def test_tools_start_before_the_stream_finishes(tmp_path: Path):
    started = asyncio.Event()
    observed: dict[str, bool] = {}

    class SignalTool(RecordingTool):
        async def execute(self, **kwargs) -> ToolResult:
            started.set()
            return await super().execute(**kwargs)

    class SlowTailClient(ScriptedClient):
        async def stream(self, messages, tools=None, options=None):
            self.calls.append(messages)
            if len(self.calls) == 1:
                for event in message(tool_call_block("t1", "record", {"path": "a"}))[:-2]:
                    yield event
                # the rest of the response is still pending here
                await asyncio.wait_for(started.wait(), timeout=2.0)
                observed["started_mid_stream"] = True
                yield StreamEvent(StreamEventKind.MESSAGE_STOP)
            else:
                for event in message(text_block("done"), stop_reason="end_turn"):
                    yield event

    client = SlowTailClient([])
    agent = make_agent(tmp_path, client, SignalTool())

    outcome = await agent.run("go")

    assert observed == {"started_mid_stream": True}
    assert outcome.signal.kind == TerminationKind.NATURAL_END


@pytest.mark.asyncio
async def test_multiple_tools_in_one_response_are_paired_in_order(tmp_path: Path):
    tool = RecordingTool()
    client = ScriptedClient([
        message(
            text_block("Doing two things", index=0),
            tool_call_block("t1", "record", {"path": "a"}, index=1),
            tool_call_block("t2", "record", {"path": "b"}, index=2),
        ),
        message(text_block("ok"), stop_reason="end_turn"),
    ])
    agent = make_agent(tmp_path, client, tool)

    outcome = await agent.run("go")

    assistant, results = outcome.state.history[1], outcome.state.history[2]
    assert [block.type for block in assistant.blocks] == ["text", "tool_use", "tool_use"]
    assert results.tool_result_ids == ["t1", "t2"]


@pytest.mark.asyncio
async def test_completion_phrase_terminates(tmp_path: Path):
    client = ScriptedClient([
        message(text_block("Finished. TASK_COMPLETE"), tool_call_block("t1", "record", {"path": "a"}, index=1)),
    ])
    agent = make_agent(tmp_path, client, RecordingTool())

    outcome = await agent.run("go")

    assert outcome.signal.kind == TerminationKind.EXPLICIT_COMPLETE
    assert len(client.calls) == 1
    # the tool exchange is still recorded in full
    assert outcome.state.history[-1].tool_result_ids == ["t1"]


@pytest.mark.asyncio
async def test_ask_user_pauses_for_input(tmp_path: Path):
    from streamloop.tools.ask_user import AskUserTool

    client = ScriptedClient([
        message(tool_call_block("t1", "ask_user", {"question": "Which file?"})),
    ])
    agent = make_agent(tmp_path, client, AskUserTool())

    outcome = await agent.run("edit it")

    assert outcome.signal.kind == TerminationKind.AWAITING_INPUT
    assert outcome.signal.detail == "Which file?"
    assert outcome.state.pending_action == {"tool": "ask_user", "arguments": {"question": "Which file?"}}


@pytest.mark.asyncio
async def test_repeating_the_same_operation_is_stagnation(tmp_path: Path):
    client = ScriptedClient([
        lambda n: message(tool_call_block(f"t{n}", "record", {"path": "same.txt"})),
    ])
    agent = make_agent(tmp_path, client, RecordingTool(), max_tool_cycles=10)

    outcome = await agent.run("go")

    assert outcome.signal.kind == TerminationKind.STAGNATION
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_error_budget(tmp_path: Path):
    client = ScriptedClient([
        message(
            tool_call_block("t1", "fail", {"path": "a"}, index=0),
            tool_call_block("t2", "fail", {"path": "b"}, index=1),
        ),
    ])
    agent = make_agent(tmp_path, client, FailingTool(), max_errors=1)

    outcome = await agent.run("go")

    assert outcome.signal.kind == TerminationKind.ERROR_BUDGET_EXCEEDED
    assert [error.message for error in outcome.state.errors] == ["nope", "nope"]
    assert outcome.state.history[-1].blocks[0].is_error is True


@pytest.mark.asyncio
async def test_artifact_cap(tmp_path: Path):
    from streamloop.tools.write import WriteTool

    client = ScriptedClient([
        message(
            tool_call_block("t1", "write", {"path": "a.txt", "content": "1"}, index=0),
            tool_call_block("t2", "write", {"path": "b.txt", "content": "2"}, index=1),
        ),
    ])
    agent = make_agent(tmp_path, client, WriteTool(), max_artifacts=1)

    outcome = await agent.run("go")

    assert outcome.signal.kind == TerminationKind.ARTIFACT_CAP_EXCEEDED
    assert outcome.state.generated_artifacts == ["a.txt", "b.txt"]
    assert set(outcome.state.modified_targets) == {"a.txt", "b.txt"}
    assert (tmp_path / "b.txt").read_text(encoding="utf-8") == "2"


@pytest.mark.asyncio
async def test_backend_unavailable_stops_the_loop(tmp_path: Path):
    client = ScriptedClient([message(tool_call_block("t1", "offline", {}))])
    agent = make_agent(tmp_path, client, OfflineTool())

    outcome = await agent.run("go")

    assert outcome.signal.kind == TerminationKind.BACKEND_UNAVAILABLE
    assert "offline" in outcome.signal.detail


@pytest.mark.asyncio
async def test_verifier_confidence_and_external_completion(tmp_path: Path):
    client = ScriptedClient([
        lambda n: message(tool_call_block(f"t{n}", "record", {"path": f"f{n}"})),
    ])
    scores = iter([0.5, 0.95])
    agent = make_agent(tmp_path, client, RecordingTool())
    agent.verifier = lambda state: next(scores)

    outcome = await agent.run("go")

    assert outcome.signal.kind == TerminationKind.CONFIDENCE_THRESHOLD
    assert [r.confidence for r in outcome.state.verification_results] == [0.5, 0.95]

    async def mark_done(state: AgentIterationState):
        state.mark_complete()
        return None

    agent.verifier = mark_done
    outcome = await agent.run("again")
    assert outcome.signal.kind == TerminationKind.EXPLICIT_COMPLETE
    assert outcome.signal.detail == "Status was set to complete"


@pytest.mark.asyncio
async def test_invalid_tool_json_is_reported_back_to_the_model(tmp_path: Path):
    tool = RecordingTool()
    client = ScriptedClient([
        message(tool_block("t1", "record", ['{"path": '])),
        message(tool_call_block("t2", "record", {"path": "fixed"})),
        message(text_block("ok"), stop_reason="end_turn"),
    ])
    agent = make_agent(tmp_path, client, tool)

    outcome = await agent.run("go")

    assert outcome.signal.kind == TerminationKind.NATURAL_END
    assert tool.seen == [{"path": "fixed"}]
    retry_prompt = outcome.state.history[2]
    assert retry_prompt.role == "user"
    assert "t1" in retry_prompt.text
    assert len(outcome.state.errors) == 1


@pytest.mark.asyncio
async def test_iteration_regression_aborts_without_calling_the_model(tmp_path: Path):
    client = ScriptedClient([message(text_block("hi"), stop_reason="end_turn")])
    agent = make_agent(tmp_path, client, RecordingTool())
    state = AgentIterationState(last_observed_iteration=5)

    outcome = await agent.run("go", state=state)

    assert outcome.signal.kind == TerminationKind.STAGNATION
    assert "decreased" in outcome.signal.detail
    assert client.calls == []


@pytest.mark.asyncio
async def test_stream_timeout_discards_turn_and_cancels_tools(tmp_path: Path):
    cancelled = asyncio.Event()

    class HangingTool(RecordingTool):
        async def execute(self, **kwargs) -> ToolResult:
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return ToolResult(success=True)

    class StallingClient(ScriptedClient):
        async def stream(self, messages, tools=None, options=None):
            for event in message(tool_call_block("t1", "record", {"path": "a"}))[:-2]:
                yield event
            await asyncio.sleep(30)

    agent = make_agent(tmp_path, StallingClient([]), HangingTool())
    agent.config.model.stream_timeout = 0.2

    with pytest.raises(StreamTimeoutError):
        await agent.run("go")

    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_status_sink_sees_progress_in_order(tmp_path: Path):
    events: list[StatusEvent] = []
    client = ScriptedClient([
        message(tool_call_block("t1", "record", {"path": "a"})),
        message(text_block("done"), stop_reason="end_turn"),
    ])
    agent = make_agent(tmp_path, client, RecordingTool(), events=events)

    await agent.run("go")

    kinds = [event.kind for event in events if event.kind != "text_delta"]
    assert kinds == [ITERATION_START, TOOL_DETECTED, TOOL_READY, TOOL_COMPLETED, ITERATION_START, TERMINAL]
    assert events[-1].payload["kind"] == "natural_end"


@pytest.mark.asyncio
async def test_broken_status_sink_does_not_stop_the_loop(tmp_path: Path):
    def sink(event: StatusEvent) -> None:
        raise RuntimeError("display crashed")

    client = ScriptedClient([message(text_block("done"), stop_reason="end_turn")])
    registry = ToolRegistry(base_path=tmp_path)
    agent = Agent(client=client, tools=registry, config=make_config(tmp_path, []), status_sink=sink)

    outcome = await agent.run("go")

    assert outcome.signal.kind == TerminationKind.NATURAL_END


def test_agent_rejects_unknown_enabled_tools(tmp_path: Path):
    from streamloop.exceptions import ConfigurationError

    cfg = make_config(tmp_path, ["record", "ghost"])
    registry = ToolRegistry(base_path=tmp_path)
    registry.register(RecordingTool())

    with pytest.raises(ConfigurationError):
        Agent(client=ScriptedClient([]), tools=registry, config=cfg)


def test_agent_builds_builtin_registry_from_config(tmp_path: Path):
    cfg = make_config(tmp_path, ["write", "read", "ask_user"])

    agent = Agent(client=ScriptedClient([]), config=cfg)

    assert agent.tools.list_tools() == ["write", "read", "ask_user"]
    assert agent.tools.runtime_base_path == tmp_path.resolve()


@pytest.mark.asyncio
async def test_agent_falls_back_to_global_client_and_closes_it(tmp_path: Path):
    from streamloop.llm import set_client

    closed: list[bool] = []

    class ClosingClient(ScriptedClient):
        async def aclose(self) -> None:
            closed.append(True)

    client = ClosingClient([message(text_block("hi"), stop_reason="end_turn")])
    set_client(client)
    try:
        agent = Agent(tools=ToolRegistry(base_path=tmp_path), config=make_config(tmp_path, []))

        outcome = await agent.run("hello")
        await agent.aclose()
    finally:
        set_client(None)

    assert agent.client is client
    assert outcome.final_text == "hi"
    assert closed == [True]


@pytest.mark.asyncio
async def test_completion_phrase_must_appear_as_a_whole_phrase(tmp_path: Path):
    client = ScriptedClient([
        message(
            text_block("I will keep going until the task completes.", index=0),
            tool_call_block("t1", "record", {"path": "a"}, index=1),
        ),
        message(text_block("Stopping here."), stop_reason="end_turn"),
    ])
    agent = make_agent(tmp_path, client, RecordingTool())

    outcome = await agent.run("go")

    assert outcome.signal.kind == TerminationKind.NATURAL_END
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_completion_phrase_matches_case_insensitively(tmp_path: Path):
    client = ScriptedClient([message(text_block("All files written. task_complete"), stop_reason="end_turn")])
    agent = make_agent(tmp_path, client, RecordingTool())

    outcome = await agent.run("go")

    assert outcome.signal.kind == TerminationKind.EXPLICIT_COMPLETE


@pytest.mark.asyncio
async def test_resuming_after_a_question_starts_a_fresh_request(tmp_path: Path):
    from streamloop.tools.ask_user import AskUserTool

    tool = RecordingTool()
    client = ScriptedClient([
        message(tool_call_block("q1", "ask_user", {"question": "Which file?"})),
        message(tool_call_block("t2", "record", {"path": "first.txt"})),
        message(tool_call_block("t3", "record", {"path": "second.txt"})),
    ])
    agent = make_agent(tmp_path, client, tool, AskUserTool(), max_tool_cycles=2)

    paused = await agent.run("edit it")
    assert paused.signal.kind == TerminationKind.AWAITING_INPUT

    resumed = await agent.run("notes.txt", state=paused.state)

    assert resumed.signal.kind == TerminationKind.ITERATION_CAP
    assert len(client.calls) == 3
    assert [seen["path"] for seen in tool.seen] == ["first.txt", "second.txt"]
    assert resumed.state.pending_action is None
    assert resumed.state.tool_cycles == 3
    roles = [turn.role for turn in resumed.state.history]
    assert all(a != b for a, b in zip(roles, roles[1:]))
    answer_turn = resumed.state.history[2]
    assert answer_turn.tool_result_ids == ["q1"]
    assert answer_turn.text == "notes.txt"
    # the model sees the answer after the tool result, in one user message
    assert client.calls[1][2]["content"][-1] == {"type": "text", "text": "notes.txt"}
