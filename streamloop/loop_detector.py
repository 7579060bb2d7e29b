"""Repetition and stagnation detection across agent iterations."""

from streamloop.config import LoopDetectionConfig
from streamloop.exceptions import IterationRegressionError
from streamloop.logging import get_logger
from streamloop.state import AgentIterationState, OperationRecord, TerminationKind, TerminationSignal

log = get_logger(__name__)


class StagnationDetector:
    """Watch recorded operations for loops and unproductive streaks.

    All counters live on the ``AgentIterationState`` passed in, so one
    detector can serve any number of runs.
    """

    def __init__(self, config: LoopDetectionConfig | None = None):
        self.config = config or LoopDetectionConfig()

    def observe_iteration(self, state: AgentIterationState, iteration: int) -> None:
        """Record the iteration counter; it must never go backwards."""
        previous = state.last_observed_iteration
        if iteration < previous:
            log.error("Iteration counter regressed", previous=previous, current=iteration)
            raise IterationRegressionError(previous, iteration)
        state.last_observed_iteration = iteration

    def record(
        self,
        state: AgentIterationState,
        key: str,
        iteration: int,
        success: bool,
        action_type: str,
        target: str = "",
    ) -> OperationRecord:
        """Add one operation to the rolling window."""
        record = OperationRecord(
            key=key,
            iteration=iteration,
            success=success,
            action_type=action_type,
            target=target,
        )
        state.recent_operations.append(record)
        if not success:
            state.failed_operation_counts[key] = state.failed_operation_counts.get(key, 0) + 1

        oldest = iteration - self.config.window_iterations + 1
        state.recent_operations = [op for op in state.recent_operations if op.iteration >= oldest]
        return record

    def check(self, state: AgentIterationState) -> TerminationSignal | None:
        """Return a stagnation signal when any flag is raised."""
        reason = (
            self._repeated_operation(state)
            or self._repeated_failure(state)
            or self._failure_streak(state)
            or self._low_confidence(state)
        )
        if reason is None:
            return None
        log.warning("Stagnation detected", reason=reason, iteration=state.iteration_no)
        return TerminationSignal(kind=TerminationKind.STAGNATION, detail=reason)

    def _repeated_operation(self, state: AgentIterationState) -> str | None:
        counts: dict[str, int] = {}
        for op in state.recent_operations:
            counts[op.key] = counts.get(op.key, 0) + 1
        for key, count in counts.items():
            if count >= self.config.repeat_threshold:
                return (
                    f"Operation {key} repeated {count} times in the last "
                    f"{self.config.window_iterations} iterations"
                )
        return None

    def _repeated_failure(self, state: AgentIterationState) -> str | None:
        for key, count in state.failed_operation_counts.items():
            if count >= self.config.failure_threshold:
                return f"Operation {key} failed {count} times"
        return None

    def _failure_streak(self, state: AgentIterationState) -> str | None:
        streak = self.config.failure_streak
        by_iteration: dict[int, list[OperationRecord]] = {}
        for op in state.recent_operations:
            by_iteration.setdefault(op.iteration, []).append(op)
        if len(by_iteration) < streak:
            return None

        last = [by_iteration[i] for i in sorted(by_iteration)[-streak:]]
        ops = [op for ops in last for op in ops]
        action_types = {op.action_type for op in ops}
        if len(action_types) == 1 and not any(op.success for op in ops):
            return f"Last {streak} iterations all failed with {action_types.pop()}"
        return None

    def _low_confidence(self, state: AgentIterationState) -> str | None:
        window = self.config.low_confidence_window
        results = state.verification_results[-window:]
        if len(results) < window:
            return None
        average = sum(r.confidence for r in results) / len(results)
        if average < self.config.low_confidence_threshold:
            return f"Average confidence {average:.2f} over the last {window} checks"
        return None
