"""Anthropic streaming provider - direct HTTP calls to the Messages API."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from streamloop.exceptions import LLMAPIError, TransportError
from streamloop.logging import get_logger
from streamloop.stream_decoder import SSEDecoder, StreamEvent

log = get_logger(__name__)


ANTHROPIC_BASE_URL = "https://api.anthropic.com"


@dataclass
class ToolCall:
    """A decoded tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]
    index: int = 0


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class StreamOptions:
    """Per-call options for a streamed completion."""

    system: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class StreamingClient(ABC):
    """Abstract base class for streaming model clients."""

    @abstractmethod
    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
        options: StreamOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield decoded stream events for one model response.

        Raises TransportError on connection/protocol failure. Closing the
        iterator early abandons the response.
        """

    async def aclose(self) -> None:
        return None


def _describe_error_body(status_code: int, body: str) -> tuple[str, str]:
    """Turn an error response body into (message, error_type)."""
    lowered = body.lower()
    if "<html" in lowered or "<!doctype" in lowered:
        if "worker exceeded resource limits" in lowered:
            return (
                "The model service temporarily exceeded resource limits. Please try again in a moment.",
                "service_error",
            )
        if "cloudflare" in lowered:
            return "Service temporarily unavailable. Please try again.", "service_error"
        return "An unexpected error occurred. Please try again.", "service_error"
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return f"HTTP {status_code}: {body[:500]}", "api_error"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or "Unknown error"), str(error.get("type") or "api_error")
    return f"HTTP {status_code}: {body[:500]}", "api_error"


class AnthropicStreamingClient(StreamingClient):
    """Streaming client for the Anthropic Messages API."""

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        base_url: str = ANTHROPIC_BASE_URL,
        api_key: str | None = None,
        anthropic_version: str = "2023-06-01",
        temperature: float = 0.7,
        max_tokens: int = 16000,
        timeout: float = 500.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            model: Model id
            base_url: API base URL
            api_key: API key sent as x-api-key
            anthropic_version: Value for the anthropic-version header
            temperature: Default sampling temperature
            max_tokens: Default max tokens to generate
            timeout: Read timeout for the streamed response
            transport: Optional httpx transport (tests)
        """
        self.model = model
        self.base_url = (base_url or ANTHROPIC_BASE_URL).rstrip("/")
        self.api_key = api_key
        self.anthropic_version = anthropic_version
        self.temperature = temperature
        self.max_tokens = max_tokens

        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30.0),
            follow_redirects=True,
            transport=transport,
        )

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Anthropic format."""
        result = []
        for tool in tools:
            if not tool.name:
                continue
            result.append({
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": tool.parameters or {
                    "type": "object",
                    "properties": {},
                    "required": [],
                },
            })
        return result

    def build_request_body(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None,
        options: StreamOptions,
    ) -> dict[str, Any]:
        """Build the streaming request body."""
        system_parts: list[str] = []
        if options.system:
            system_parts.append(options.system)
        api_messages: list[dict[str, Any]] = []
        for msg in messages:
            if msg.get("role") == "system":
                content = msg.get("content")
                if isinstance(content, str) and content:
                    system_parts.append(content)
                continue
            api_messages.append(msg)

        body: dict[str, Any] = {
            "model": options.model or self.model,
            "messages": api_messages,
            "temperature": options.temperature if options.temperature is not None else self.temperature,
            "max_tokens": options.max_tokens or self.max_tokens,
            "stream": True,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
            body["tool_choice"] = {"type": "auto"}
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        body.update(options.extra)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {
            "content-type": "application/json",
            "anthropic-version": self.anthropic_version,
            "accept": "text/event-stream",
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
        options: StreamOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one response as decoded events."""
        url = f"{self.base_url}/v1/messages"
        body = self.build_request_body(messages, tools, options or StreamOptions())
        decoder = SSEDecoder()

        log.debug("Starting model stream", model=body["model"], url=url, msg_count=len(body["messages"]))
        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    message, error_type = _describe_error_body(response.status_code, error_text)
                    raise LLMAPIError(
                        f"Model API error {response.status_code}: {message}",
                        status_code=response.status_code,
                        error_type=error_type,
                    )

                async for chunk in response.aiter_bytes():
                    for event in decoder.feed(chunk):
                        yield event
                    if decoder.done:
                        break
                decoder.flush()
        except httpx.HTTPError as e:
            raise TransportError(f"Model stream transport error: {e}") from e

        if decoder.dropped_frames:
            log.warning("Stream finished with dropped frames", dropped=decoder.dropped_frames)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_client(
    provider: str = "anthropic",
    model: str = "claude-sonnet-4-20250514",
    api_key: str | None = None,
    base_url: str | None = None,
    anthropic_version: str = "2023-06-01",
    temperature: float = 0.7,
    max_tokens: int = 16000,
    timeout: float = 500.0,
) -> StreamingClient:
    """Create a streaming client.

    Args:
        provider: Provider name (anthropic)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        anthropic_version: API version header
        temperature: Default temperature
        max_tokens: Default max tokens
        timeout: Stream read timeout

    Returns:
        Configured StreamingClient instance
    """
    if provider == "anthropic":
        return AnthropicStreamingClient(
            model=model,
            base_url=base_url or ANTHROPIC_BASE_URL,
            api_key=api_key,
            anthropic_version=anthropic_version,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'anthropic' or inject a client.")


# Global client instance
_client: StreamingClient | None = None


def get_client() -> StreamingClient:
    """Get the global streaming client instance."""
    global _client
    if _client is None:
        from streamloop.config import get_config
        cfg = get_config()
        _client = create_client(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
            anthropic_version=cfg.model.anthropic_version,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            timeout=cfg.model.stream_timeout,
        )
    return _client


def set_client(client: StreamingClient | None) -> None:
    """Set the global streaming client instance."""
    global _client
    _client = client
