"""Agent loop for streamloop."""

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from streamloop.agent_stream_mixin import AgentStreamMixin
from streamloop.agent_termination_mixin import AgentTerminationMixin
from streamloop.config import Config, get_config
from streamloop.context import ContextComposer
from streamloop.exceptions import LoopAbortError
from streamloop.llm import StreamingClient, get_client
from streamloop.logging import bind_run_context, clear_run_context, get_logger
from streamloop.loop_detector import StagnationDetector
from streamloop.state import AgentIterationState, TerminationKind, TerminationSignal
from streamloop.status import ITERATION_START, TERMINAL, StatusEmitter, StatusSink
from streamloop.tool_assembler import AssembledResponse
from streamloop.tools import ToolDispatcher, ToolExecutionRecord, ToolRegistry, build_registry
from streamloop.turns import ConversationTurn, TextBlock, TurnBuilder, user_text_turn

log = get_logger(__name__)

Verifier = Callable[[AgentIterationState], Any]

DEFAULT_SYSTEM_PROMPT = (
    "You are an assistant that completes tasks by calling the available tools. "
    "Call tools whenever they help; several tools may be called in one response. "
    "When the task is finished, summarise what you did and end with TASK_COMPLETE."
)


@dataclass
class LoopOutcome:
    """What a finished run hands back to the caller."""

    signal: TerminationSignal
    state: AgentIterationState
    final_text: str = ""

    @property
    def recommended_action(self) -> str:
        return self.signal.recommended_action


class Agent(AgentStreamMixin, AgentTerminationMixin):
    """Drive a tool-calling conversation with a streaming model."""

    def __init__(
        self,
        client: StreamingClient | None = None,
        tools: ToolRegistry | None = None,
        config: Config | None = None,
        status_sink: StatusSink | None = None,
        verifier: Verifier | None = None,
        context: ContextComposer | None = None,
        system_prompt: str | None = None,
    ):
        """Initialize the agent.

        Args:
            client: Streaming model client (defaults to the global client)
            tools: Tool registry (defaults to the enabled built-in tools)
            config: Configuration (defaults to the global config)
            status_sink: Optional callback receiving progress events
            verifier: Optional confidence scorer called after each tool batch
            context: Optional context composer
            system_prompt: System prompt override
        """
        self.config = config or get_config()
        cfg = self.config
        self._client = client
        if tools is None:
            tools = build_registry(
                cfg.tools.enabled,
                base_path=cfg.resolved_workspace_path(),
                default_timeout=cfg.tools.default_timeout,
            )
        tools.validate_enabled(cfg.tools.enabled)
        self.tools = tools
        self.status = StatusEmitter(status_sink)
        self.dispatcher = ToolDispatcher(
            tools,
            mode=cfg.tools.dispatch_mode,
            batch_timeout=cfg.tools.batch_timeout,
            serialize_same_target=cfg.tools.serialize_same_target,
            verify_success=cfg.tools.verify_success,
            status=self.status,
        )
        self.detector = StagnationDetector(cfg.loop_detection)
        self.turns = TurnBuilder()
        self.context = context or ContextComposer(
            profile_overrides=cfg.budget.profiles,
            warning_ratio=cfg.budget.warning_ratio,
        )
        self.verifier = verifier
        self.system_prompt = DEFAULT_SYSTEM_PROMPT if system_prompt is None else system_prompt
        self.last_usage: dict[str, int] = {}

    @property
    def client(self) -> StreamingClient:
        if self._client is None:
            self._client = get_client()
        return self._client

    async def run(
        self,
        user_input: str,
        operation: str | None = None,
        state: AgentIterationState | None = None,
    ) -> LoopOutcome:
        """Run the loop for one request until a termination signal fires.

        Transport failures propagate; every other stop reason is returned
        as a TerminationSignal with the progress made so far.
        """
        state = state or AgentIterationState()
        operation = operation or self.config.budget.default_profile
        bind_run_context(operation=operation)
        try:
            return await self._run_loop(user_input, operation, state)
        finally:
            clear_run_context()

    async def _run_loop(self, user_input: str, operation: str, state: AgentIterationState) -> LoopOutcome:
        self._start_request(state, user_input)
        cycles_before = state.tool_cycles
        tool_defs = self.tools.get_definitions(self.config.tools.enabled)
        max_cycles = self.config.loop.max_tool_cycles
        final_text = ""

        log.info("Agent run started", operation=operation, tools=len(tool_defs), max_tool_cycles=max_cycles)
        while True:
            try:
                iteration = state.advance_iteration()
                bind_run_context(iteration=iteration)
                self.detector.observe_iteration(state, iteration)
            except LoopAbortError as e:
                signal = e.signal or TerminationSignal(TerminationKind.STAGNATION, str(e))
                return self._finish(state, signal, final_text)

            self.status.emit(ITERATION_START, iteration=iteration, tool_cycles=state.tool_cycles)
            composed = self.context.compose(state, self.system_prompt, operation)
            response, records = await self._stream_turn(composed, tool_defs)
            self.last_usage = self._usage_fields(response.usage)
            state.add_usage(self.last_usage)
            if response.text:
                final_text = response.text

            assistant_turn = self.turns.build_assistant_turn(response)
            had_tools = bool(assistant_turn.tool_use_ids or response.failed_tool_ids)
            if had_tools:
                self._append_tool_exchange(state, assistant_turn, response, records)
                self._record_operations(state, iteration, records)
                try:
                    await self._run_verifier(state)
                except LoopAbortError as e:
                    signal = e.signal or TerminationSignal(TerminationKind.STAGNATION, str(e))
                    return self._finish(state, signal, final_text)
            elif assistant_turn.blocks:
                state.history.append(assistant_turn)

            signal = self._evaluate_termination(state, response.text, records)
            if signal is not None:
                return self._finish(state, signal, final_text)
            if not had_tools:
                return self._finish(
                    state,
                    TerminationSignal(TerminationKind.NATURAL_END, "Model finished without calling tools"),
                    final_text,
                )
            if state.tool_cycles - cycles_before >= max_cycles:
                final_text = self.config.loop.cap_message
                state.history.append(ConversationTurn(role="assistant", blocks=[TextBlock(text=final_text)]))
                return self._finish(
                    state,
                    TerminationSignal(TerminationKind.ITERATION_CAP, f"Reached {max_cycles} tool cycles"),
                    final_text,
                )

    def _start_request(self, state: AgentIterationState, user_input: str) -> None:
        """Open a request on fresh or resumed state.

        Resuming after a pause answers the pending action. The answer joins a
        trailing user turn (the tool results of the pause) so roles keep
        alternating.
        """
        if state.pending_action is not None:
            log.info("Resuming after pending action", tool=state.pending_action.get("tool"))
            state.pending_action = None
        if not state.is_complete:
            state.status = "running"
        if state.history and state.history[-1].role == "user":
            state.history[-1].blocks.append(TextBlock(text=user_input))
        else:
            state.history.append(user_text_turn(user_input))

    def _append_tool_exchange(
        self,
        state: AgentIterationState,
        assistant_turn: ConversationTurn,
        response: AssembledResponse,
        records: Sequence[ToolExecutionRecord],
    ) -> None:
        """Append the assistant turn and its paired tool-result turn."""
        note = None
        if response.failed_tool_ids:
            note = (
                "These tool calls could not be run because their input was not valid JSON: "
                f"{', '.join(response.failed_tool_ids)}. Send them again with a valid JSON object."
            )
            for tool_id in response.failed_tool_ids:
                state.record_error("unknown", f"Invalid tool input for {tool_id}")
        if not assistant_turn.blocks:
            # Only undecodable tool calls; keep roles alternating
            assistant_turn.blocks.append(TextBlock(text="(tool call could not be decoded)"))

        state.history.append(assistant_turn)
        if assistant_turn.tool_use_ids:
            state.history.append(self.turns.build_tool_result_turn(assistant_turn, records, trailing_text=note))
        else:
            state.history.append(user_text_turn(note or ""))
        state.tool_cycles += 1

    def _record_operations(
        self,
        state: AgentIterationState,
        iteration: int,
        records: Sequence[ToolExecutionRecord],
    ) -> None:
        """Feed tool outcomes into the loop detector, error list and artifacts."""
        for record in records:
            call = record.call
            key, target, kind = self.tools.operation_key(call.name, call.arguments)
            self.detector.record(state, key, iteration, record.result.success, kind, target)
            if not record.result.success:
                state.record_error(call.name, record.result.error or "Tool execution failed")
                continue
            tool = self.tools.find(call.name)
            if tool is not None and tool.produces_artifact:
                state.record_artifact(target)

    async def _run_verifier(self, state: AgentIterationState) -> None:
        if self.verifier is None:
            return
        score: Any = self.verifier(state)
        if inspect.isawaitable(score):
            score = await score
        if score is None:
            return
        result = state.record_verification(float(score))
        log.debug("Verification recorded", iteration=result.iteration, confidence=result.confidence)

    def _finish(self, state: AgentIterationState, signal: TerminationSignal, final_text: str) -> LoopOutcome:
        state.status = signal.kind.value
        self.status.emit(
            TERMINAL,
            kind=signal.kind.value,
            detail=signal.detail,
            recommended_action=signal.recommended_action,
            iterations=state.iteration_no,
            tool_cycles=state.tool_cycles,
        )
        log.info(
            "Agent run finished",
            kind=signal.kind.value,
            detail=signal.detail,
            iterations=state.iteration_no,
            tool_cycles=state.tool_cycles,
            errors=len(state.errors),
            artifacts=len(state.generated_artifacts),
            usage=state.usage,
        )
        return LoopOutcome(signal=signal, state=state, final_text=final_text)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
