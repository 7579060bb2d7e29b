"""Custom exceptions for streamloop."""

from typing import Any


class StreamLoopError(Exception):
    """Base exception for streamloop."""

    pass


class ConfigurationError(StreamLoopError):
    """Configuration-related errors."""

    pass


class LLMError(StreamLoopError):
    """LLM-related errors."""

    pass


class TransportError(LLMError):
    """Stream connection failure. Partial response state is discarded."""

    pass


class LLMAPIError(TransportError):
    """LLM API errors (rate limit, auth, overloaded, etc.)."""

    def __init__(self, message: str, status_code: int | None = None, error_type: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


class StreamTimeoutError(TransportError):
    """Streamed model call exceeded its timeout."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Model stream timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class ProtocolError(LLMError):
    """Malformed or unexpected stream/turn shape."""

    pass


class ToolError(StreamLoopError):
    """Tool execution errors."""

    pass


class ToolArgumentError(ToolError):
    """Tool arguments missing or invalid."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' arguments invalid: {message}")
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolBackendUnavailableError(ToolExecutionError):
    """The capability behind a tool could not be reached."""

    pass


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class LoopAbortError(StreamLoopError):
    """Agent loop must stop (stagnation, iteration cap, error budget)."""

    def __init__(self, message: str, signal: Any = None):
        super().__init__(message)
        self.signal = signal


class IterationRegressionError(LoopAbortError):
    """Iteration counter moved backwards."""

    def __init__(self, previous: int, current: int):
        super().__init__(f"Iteration counter decreased from {previous} to {current}")
        self.previous = previous
        self.current = current
