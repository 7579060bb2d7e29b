"""Per-request agent state and termination signals."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from streamloop.turns import ConversationTurn


class TerminationKind(str, Enum):
    """Why an agent run stopped."""

    EXPLICIT_COMPLETE = "explicit_complete"
    CONFIDENCE_THRESHOLD = "confidence_threshold"
    STAGNATION = "stagnation"
    ERROR_BUDGET_EXCEEDED = "error_budget_exceeded"
    ARTIFACT_CAP_EXCEEDED = "artifact_cap_exceeded"
    AWAITING_INPUT = "awaiting_input"
    NATURAL_END = "natural_end"
    ITERATION_CAP = "iteration_cap"
    BACKEND_UNAVAILABLE = "backend_unavailable"


_RECOMMENDED_ACTIONS: dict[TerminationKind, str] = {
    TerminationKind.EXPLICIT_COMPLETE: "Present the result to the user.",
    TerminationKind.CONFIDENCE_THRESHOLD: "Present the result to the user.",
    TerminationKind.STAGNATION: "Rephrase the request or break it into smaller steps.",
    TerminationKind.ERROR_BUDGET_EXCEEDED: "Review the tool errors before retrying.",
    TerminationKind.ARTIFACT_CAP_EXCEEDED: "Review the generated artifacts before continuing.",
    TerminationKind.AWAITING_INPUT: "Answer the pending question to continue.",
    TerminationKind.NATURAL_END: "Present the result to the user.",
    TerminationKind.ITERATION_CAP: "Continue with a follow-up request if more work is needed.",
    TerminationKind.BACKEND_UNAVAILABLE: "Retry once the tool backend is reachable again.",
}


@dataclass(frozen=True)
class TerminationSignal:
    """A reason to stop the agent loop."""

    kind: TerminationKind
    detail: str = ""

    @property
    def recommended_action(self) -> str:
        return _RECOMMENDED_ACTIONS[self.kind]


@dataclass(frozen=True)
class OperationRecord:
    """One tool operation as seen by the loop detector."""

    key: str
    iteration: int
    success: bool
    action_type: str
    target: str = ""


@dataclass(frozen=True)
class VerificationResult:
    """Confidence reported by a verifier after a tool batch."""

    iteration: int
    confidence: float
    detail: str = ""


@dataclass
class ErrorRecord:
    iteration: int
    tool: str
    message: str


@dataclass
class AgentIterationState:
    """Everything one ``Agent.run`` call accumulates."""

    iteration_no: int = 0
    history: list[ConversationTurn] = field(default_factory=list)
    generated_artifacts: list[str] = field(default_factory=list)
    errors: list[ErrorRecord] = field(default_factory=list)
    modified_targets: dict[str, datetime] = field(default_factory=dict)
    verification_results: list[VerificationResult] = field(default_factory=list)
    recent_operations: list[OperationRecord] = field(default_factory=list)
    failed_operation_counts: dict[str, int] = field(default_factory=dict)
    last_observed_iteration: int = 0
    status: str = "running"
    pending_action: dict[str, Any] | None = None
    tool_cycles: int = 0
    usage: dict[str, int] = field(default_factory=dict)

    def advance_iteration(self) -> int:
        self.iteration_no += 1
        return self.iteration_no

    def mark_complete(self) -> None:
        """Externally request a stop; honored at the next termination check."""
        self.status = "complete"

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"

    def record_error(self, tool: str, message: str) -> None:
        self.errors.append(ErrorRecord(iteration=self.iteration_no, tool=tool, message=message))

    def record_artifact(self, target: str) -> None:
        if target not in self.generated_artifacts:
            self.generated_artifacts.append(target)
        self.modified_targets[target] = datetime.now(UTC)

    def record_verification(self, confidence: float, detail: str = "") -> VerificationResult:
        result = VerificationResult(iteration=self.iteration_no, confidence=float(confidence), detail=detail)
        self.verification_results.append(result)
        return result

    def add_usage(self, usage: dict[str, int]) -> None:
        """Accumulate provider token usage across responses."""
        for key, value in usage.items():
            self.usage[key] = self.usage.get(key, 0) + int(value)

    @property
    def latest_confidence(self) -> float | None:
        if not self.verification_results:
            return None
        return self.verification_results[-1].confidence

    def messages(self) -> list[dict[str, Any]]:
        """History in model wire format."""
        return [turn.to_message() for turn in self.history]
