"""Tool-call fan-out and fan-in.

Calls can be dispatched as a complete list (``dispatch``) or one by one while
the model response is still streaming (``start_batch`` / ``submit``). Either
way every call resolves to exactly one ``ToolExecutionRecord``; tool problems
become error results and never escape as exceptions.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Literal, Sequence

from streamloop.exceptions import ToolBackendUnavailableError, ToolError
from streamloop.llm import ToolCall
from streamloop.logging import get_logger
from streamloop.status import TOOL_COMPLETED, StatusEmitter
from streamloop.tools.registry import ToolExecutor, ToolResult, cancel_task

log = get_logger(__name__)

DispatchMode = Literal["sequential", "concurrent"]


@dataclass
class ToolExecutionRecord:
    """Outcome of one tool call."""

    call: ToolCall
    result: ToolResult
    duration: float = 0.0
    verified: bool | None = None
    backend_unavailable: bool = False


class ToolDispatcher:
    """Execute decoded tool calls through a tool executor."""

    def __init__(
        self,
        executor: ToolExecutor,
        mode: DispatchMode = "concurrent",
        batch_timeout: float = 180.0,
        serialize_same_target: bool = True,
        verify_success: bool = True,
        status: StatusEmitter | None = None,
    ):
        self.executor = executor
        self.mode = mode
        self.batch_timeout = batch_timeout
        self.serialize_same_target = serialize_same_target
        self.verify_success = verify_success
        self.status = status or StatusEmitter()

    def target_of(self, call: ToolCall) -> str | None:
        """Resource targeted by a call, when the executor can tell."""
        target_of = getattr(self.executor, "target_of", None)
        if not callable(target_of):
            return None
        return target_of(call.name, call.arguments)

    async def execute_one(self, call: ToolCall) -> ToolExecutionRecord:
        """Run one call. Tool failures come back as error results."""
        started = time.monotonic()
        backend_unavailable = False
        verified: bool | None = None
        try:
            result = await self.executor.execute(call.name, call.arguments)
        except ToolBackendUnavailableError as e:
            log.error("Tool backend unavailable", tool=call.name, tool_id=call.id, error=str(e))
            result = ToolResult(success=False, error=str(e))
            backend_unavailable = True
        except ToolError as e:
            log.warning("Tool call failed", tool=call.name, tool_id=call.id, error=str(e))
            result = ToolResult(success=False, error=str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Tool executor raised unexpectedly", tool=call.name, tool_id=call.id, error=str(e))
            result = ToolResult(success=False, error=f"Tool '{call.name}' failed: {e}")

        if result.success and self.verify_success:
            verify = getattr(self.executor, "verify", None)
            if callable(verify):
                verified = await verify(call.name, call.arguments, result)
                if verified is False:
                    log.warning("Tool result failed verification", tool=call.name, tool_id=call.id)
                    result = ToolResult(
                        success=False,
                        content=result.content,
                        error=f"Tool '{call.name}' reported success but verification failed",
                    )

        record = ToolExecutionRecord(
            call=call,
            result=result,
            duration=time.monotonic() - started,
            verified=verified,
            backend_unavailable=backend_unavailable,
        )
        self.status.emit(
            TOOL_COMPLETED,
            tool=call.name,
            tool_id=call.id,
            success=result.success,
            duration=round(record.duration, 3),
        )
        return record

    def start_batch(self) -> "DispatchBatch":
        """Begin an incremental batch for one model response."""
        return DispatchBatch(self)

    async def dispatch(self, calls: Sequence[ToolCall]) -> list[ToolExecutionRecord]:
        """Dispatch a complete list of calls using the configured mode."""
        if self.mode == "sequential":
            return await self.dispatch_sequential(calls)
        return await self.dispatch_concurrent(calls)

    async def dispatch_sequential(self, calls: Sequence[ToolCall]) -> list[ToolExecutionRecord]:
        """Execute calls one after another in the given order."""
        records: list[ToolExecutionRecord] = []
        for call in calls:
            records.append(await self.execute_one(call))
        return records

    async def dispatch_concurrent(
        self,
        calls: Sequence[ToolCall],
        timeout: float | None = None,
    ) -> list[ToolExecutionRecord]:
        """Launch every call at once and wait for the whole batch."""
        batch = DispatchBatch(self, sequential=False)
        for call in calls:
            batch.submit(call)
        return await batch.wait(timeout)


class DispatchBatch:
    """Calls submitted while one model response streams."""

    def __init__(self, dispatcher: ToolDispatcher, sequential: bool | None = None):
        self.dispatcher = dispatcher
        if sequential is None:
            sequential = dispatcher.mode == "sequential"
        self.sequential = sequential
        self._calls: list[ToolCall] = []
        self._tasks: dict[str, asyncio.Task[ToolExecutionRecord]] = {}
        self._target_locks: dict[str, asyncio.Lock] = {}
        self._batch_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._calls)

    @property
    def calls(self) -> list[ToolCall]:
        return list(self._calls)

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def _lock_for(self, call: ToolCall) -> asyncio.Lock | None:
        if self.sequential:
            return self._batch_lock
        if not self.dispatcher.serialize_same_target:
            return None
        target = self.dispatcher.target_of(call)
        if target is None:
            return None
        return self._target_locks.setdefault(target, asyncio.Lock())

    def submit(self, call: ToolCall) -> None:
        """Start executing a call now."""
        if call.id in self._tasks:
            log.warning("Ignoring duplicate tool submission", tool=call.name, tool_id=call.id)
            return
        lock = self._lock_for(call)
        self._calls.append(call)
        self._tasks[call.id] = asyncio.create_task(self._run(call, lock))
        log.debug("Tool submitted", tool=call.name, tool_id=call.id, serialized=lock is not None)

    async def _run(self, call: ToolCall, lock: asyncio.Lock | None) -> ToolExecutionRecord:
        if lock is None:
            return await self.dispatcher.execute_one(call)
        # asyncio.Lock wakes waiters in FIFO order, which keeps submission order
        async with lock:
            return await self.dispatcher.execute_one(call)

    async def wait(self, timeout: float | None = None) -> list[ToolExecutionRecord]:
        """Wait for every submitted call; records come back in submission order.

        Calls still running when ``timeout`` (default: the dispatcher's batch
        timeout) expires are cancelled and reported as errors.
        """
        if not self._tasks:
            return []
        limit = self.dispatcher.batch_timeout if timeout is None else timeout
        done, pending = await asyncio.wait(set(self._tasks.values()), timeout=limit)
        if pending:
            log.warning("Tool batch timed out, cancelling remaining calls", pending=len(pending), timeout=limit)
            for task in pending:
                await cancel_task(task)

        records: list[ToolExecutionRecord] = []
        for call in self._calls:
            task = self._tasks[call.id]
            records.append(self._record_for(call, task, limit))
        return records

    def _record_for(self, call: ToolCall, task: asyncio.Task[Any], limit: float) -> ToolExecutionRecord:
        if task.cancelled():
            return ToolExecutionRecord(
                call=call,
                result=ToolResult(success=False, error=f"Tool '{call.name}' timed out after {limit:g}s"),
                duration=limit,
            )
        error = task.exception()
        if error is not None:
            log.error("Tool task raised", tool=call.name, tool_id=call.id, error=str(error))
            return ToolExecutionRecord(
                call=call,
                result=ToolResult(success=False, error=f"Tool '{call.name}' failed: {error}"),
            )
        return task.result()

    async def cancel(self) -> None:
        """Abandon every call that has not finished."""
        running = [task for task in self._tasks.values() if not task.done()]
        if running:
            log.info("Cancelling in-flight tool calls", count=len(running))
        for task in running:
            await cancel_task(task)
