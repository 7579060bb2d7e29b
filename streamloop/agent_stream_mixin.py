"""Streaming one model turn while dispatching tools as they complete."""

import asyncio
from typing import Any

from streamloop.context import ComposedContext
from streamloop.exceptions import StreamTimeoutError
from streamloop.llm import StreamOptions, ToolCall, ToolDefinition
from streamloop.logging import get_logger
from streamloop.status import TEXT_DELTA, TOOL_DETECTED, TOOL_ERROR, TOOL_READY
from streamloop.tool_assembler import AssembledResponse, ToolCallAssembler, ToolCallBuffer, ToolCallStatus
from streamloop.tools.dispatcher import DispatchBatch, ToolExecutionRecord

log = get_logger(__name__)


class AgentStreamMixin:
    """Consume the model stream and fan tool calls out as soon as they are ready."""

    def _build_assembler(self, batch: DispatchBatch) -> ToolCallAssembler:
        assembler: ToolCallAssembler

        def on_detected(buffer: ToolCallBuffer) -> None:
            self.status.emit(
                TOOL_DETECTED,
                tool=buffer.tool_name,
                tool_id=buffer.tool_id,
                sequence=buffer.sequence_index,
            )

        def on_ready(call: ToolCall) -> None:
            self.status.emit(TOOL_READY, tool=call.name, tool_id=call.id, arguments=call.arguments)
            assembler.mark(call.id, ToolCallStatus.DISPATCHED)
            batch.submit(call)

        def on_error(tool_id: str, message: str) -> None:
            self.status.emit(TOOL_ERROR, tool_id=tool_id, error=message)

        def on_text(index: int, text: str) -> None:
            self.status.emit(TEXT_DELTA, index=index, text=text)

        assembler = ToolCallAssembler(
            on_tool_detected=on_detected,
            on_tool_ready=on_ready,
            on_tool_error=on_error,
            on_text=on_text,
        )
        return assembler

    async def _consume_stream(
        self,
        assembler: ToolCallAssembler,
        composed: ComposedContext,
        tool_defs: list[ToolDefinition],
    ) -> None:
        options = StreamOptions(system=composed.system or None)
        stream = self.client.stream(composed.messages, tool_defs or None, options)
        try:
            async for event in stream:
                assembler.handle(event)
                if assembler.message_stopped:
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if not assembler.message_stopped:
            log.warning("Model stream ended without message_stop", open_tools=len(assembler.open_buffers))
            assembler.discard()

    async def _stream_turn(
        self,
        composed: ComposedContext,
        tool_defs: list[ToolDefinition],
    ) -> tuple[AssembledResponse, list[ToolExecutionRecord]]:
        """Stream one response and wait for every tool it dispatched.

        Raises:
            TransportError (including StreamTimeoutError) when the stream
            fails; partial blocks are discarded and in-flight tools cancelled.
        """
        batch = self.dispatcher.start_batch()
        assembler = self._build_assembler(batch)
        timeout = self.config.model.stream_timeout

        try:
            await asyncio.wait_for(self._consume_stream(assembler, composed, tool_defs), timeout=timeout)
        except asyncio.TimeoutError as e:
            log.error("Model stream timed out", timeout=timeout)
            assembler.discard()
            await batch.cancel()
            raise StreamTimeoutError(timeout) from e
        except BaseException:
            assembler.discard()
            await batch.cancel()
            raise

        if batch.pending:
            log.info("Waiting for tool batch", pending=batch.pending, total=len(batch))
        records = await batch.wait(self.config.tools.batch_timeout)
        for record in records:
            status = ToolCallStatus.COMPLETE if record.result.success else ToolCallStatus.ERROR
            assembler.mark(record.call.id, status)

        response = assembler.result()
        log.info(
            "Model turn finished",
            stop_reason=response.stop_reason,
            tool_calls=len(response.tool_calls),
            failed_tool_calls=len(response.failed_tool_ids),
            text_chars=len(response.text),
        )
        return response, records

    @staticmethod
    def _usage_fields(usage: dict[str, Any]) -> dict[str, int]:
        return {
            "input_tokens": int(usage.get("input_tokens", 0) or 0),
            "output_tokens": int(usage.get("output_tokens", 0) or 0),
        }
