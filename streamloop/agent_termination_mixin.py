"""Termination checks evaluated after every agent iteration."""

import re
from typing import Callable, Sequence

from streamloop.logging import get_logger
from streamloop.state import AgentIterationState, TerminationKind, TerminationSignal
from streamloop.tools.dispatcher import ToolExecutionRecord

log = get_logger(__name__)


class AgentTerminationMixin:
    """Decide whether the loop should stop, and why."""

    def _completion_phrase(self, text: str) -> str | None:
        if not text:
            return None
        for phrase in self.config.loop.completion_phrases:
            # Whole-phrase match only
            if phrase and re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text, re.IGNORECASE):
                return phrase
        return None

    def _check_explicit_complete(
        self,
        state: AgentIterationState,
        text: str,
        records: Sequence[ToolExecutionRecord],
    ) -> TerminationSignal | None:
        phrase = self._completion_phrase(text)
        if phrase:
            return TerminationSignal(TerminationKind.EXPLICIT_COMPLETE, f"Model declared completion ({phrase})")
        return None

    def _check_status_complete(
        self,
        state: AgentIterationState,
        text: str,
        records: Sequence[ToolExecutionRecord],
    ) -> TerminationSignal | None:
        if state.is_complete:
            return TerminationSignal(TerminationKind.EXPLICIT_COMPLETE, "Status was set to complete")
        return None

    def _check_awaiting_input(
        self,
        state: AgentIterationState,
        text: str,
        records: Sequence[ToolExecutionRecord],
    ) -> TerminationSignal | None:
        waiting_tools = set(self.config.tools.awaiting_input_tools)
        for record in records:
            if record.call.name in waiting_tools and record.result.success:
                state.pending_action = {"tool": record.call.name, "arguments": dict(record.call.arguments)}
                question = record.call.arguments.get("question")
                detail = str(question) if question else f"Model called {record.call.name}"
                return TerminationSignal(TerminationKind.AWAITING_INPUT, detail)
        return None

    def _check_confidence(
        self,
        state: AgentIterationState,
        text: str,
        records: Sequence[ToolExecutionRecord],
    ) -> TerminationSignal | None:
        confidence = state.latest_confidence
        threshold = self.config.loop.confidence_threshold
        if confidence is not None and confidence >= threshold:
            return TerminationSignal(
                TerminationKind.CONFIDENCE_THRESHOLD,
                f"Verification confidence {confidence:.2f} reached {threshold:.2f}",
            )
        return None

    def _check_stagnation(
        self,
        state: AgentIterationState,
        text: str,
        records: Sequence[ToolExecutionRecord],
    ) -> TerminationSignal | None:
        return self.detector.check(state)

    def _check_error_budget(
        self,
        state: AgentIterationState,
        text: str,
        records: Sequence[ToolExecutionRecord],
    ) -> TerminationSignal | None:
        limit = self.config.loop.max_errors
        if len(state.errors) > limit:
            return TerminationSignal(
                TerminationKind.ERROR_BUDGET_EXCEEDED,
                f"{len(state.errors)} tool errors exceeded the budget of {limit}",
            )
        return None

    def _check_artifact_cap(
        self,
        state: AgentIterationState,
        text: str,
        records: Sequence[ToolExecutionRecord],
    ) -> TerminationSignal | None:
        limit = self.config.loop.max_artifacts
        if len(state.generated_artifacts) > limit:
            return TerminationSignal(
                TerminationKind.ARTIFACT_CAP_EXCEEDED,
                f"{len(state.generated_artifacts)} artifacts exceeded the cap of {limit}",
            )
        return None

    def _check_backend(
        self,
        state: AgentIterationState,
        text: str,
        records: Sequence[ToolExecutionRecord],
    ) -> TerminationSignal | None:
        unavailable = [record.call.name for record in records if record.backend_unavailable]
        if unavailable:
            return TerminationSignal(
                TerminationKind.BACKEND_UNAVAILABLE,
                f"Tool backend unavailable for: {', '.join(unavailable)}",
            )
        return None

    def _termination_checks(self) -> list[Callable[..., TerminationSignal | None]]:
        return [
            self._check_explicit_complete,
            self._check_status_complete,
            self._check_awaiting_input,
            self._check_confidence,
            self._check_stagnation,
            self._check_error_budget,
            self._check_artifact_cap,
            self._check_backend,
        ]

    def _evaluate_termination(
        self,
        state: AgentIterationState,
        text: str,
        records: Sequence[ToolExecutionRecord],
    ) -> TerminationSignal | None:
        """Run every check; the first signal raised wins."""
        fired: list[TerminationSignal] = []
        for check in self._termination_checks():
            signal = check(state, text, records)
            if signal is not None:
                fired.append(signal)

        if not fired:
            return None
        for signal in fired:
            log.info("Termination signal", kind=signal.kind.value, detail=signal.detail, iteration=state.iteration_no)
        return fired[0]
