"""Tool registry and base tool class."""

import asyncio
import hashlib
import json
import posixpath
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, model_validator

from streamloop.config import get_config
from streamloop.exceptions import (
    ConfigurationError,
    ToolArgumentError,
    ToolExecutionError,
    ToolNotFoundError,
)
from streamloop.llm import ToolDefinition
from streamloop.logging import get_logger

log = get_logger(__name__)

_TARGET_ARGUMENT_KEYS = ("path", "file_path", "target", "url")
_PATH_ARGUMENT_KEYS = ("path", "file_path")


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.debug("Cancelled task raised", error=str(e))


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for lookups."""
    return str(value or "").strip().lower()


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


class ToolExecutor(Protocol):
    """Capability that runs a named tool with arguments."""

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult: ...


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = None
    # Successful calls produce an artifact (file, image, ...)
    produces_artifact: bool = False

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    @property
    def operation_kind(self) -> str:
        return self.name

    def target_of(self, arguments: dict[str, Any], base_path: Path | None = None) -> str | None:
        """Resource the call operates on, used for loop detection and conflicts.

        Path arguments are normalised so that spellings of one file share a target.
        """
        for key in _TARGET_ARGUMENT_KEYS:
            value = arguments.get(key)
            if isinstance(value, str) and value.strip():
                value = value.strip()
                if key in _PATH_ARGUMENT_KEYS:
                    return posixpath.normpath(value.replace("\\", "/"))
                return value
        return None

    async def verify(self, arguments: dict[str, Any], result: ToolResult, **kwargs: Any) -> bool | None:
        """Cross-check a successful result against observable state.

        Returns None when no check is possible.
        """
        return None

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for the LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolArgumentError if a required argument is missing or has the wrong type
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments or arguments[field] is None:
                raise ToolArgumentError(self.name, f"Missing required argument: {field}")

        properties = self.parameters.get("properties", {})
        type_checks = {
            "string": str,
            "boolean": bool,
            "object": dict,
            "array": list,
        }
        for field, value in arguments.items():
            expected = properties.get(field, {}).get("type")
            python_type = type_checks.get(expected)
            if python_type is not None and value is not None and not isinstance(value, python_type):
                raise ToolArgumentError(
                    self.name,
                    f"Argument '{field}' must be of type {expected}",
                )


def operation_key(
    tool: Tool | None,
    name: str,
    arguments: dict[str, Any],
    base_path: Path | None = None,
) -> tuple[str, str, str]:
    """Return (key, target, kind) identifying an operation for loop detection."""
    kind = tool.operation_kind if tool is not None else _normalize_tool_name(name)
    target = tool.target_of(arguments, base_path) if tool is not None else None
    if not target:
        digest = hashlib.sha1(
            json.dumps(arguments, sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()[:12]
        target = f"args:{digest}"
    return f"{target}:{kind}", target, kind


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, base_path: Path | str | None = None, default_timeout: float | None = None):
        self._tools: dict[str, Tool] = {}
        self._tool_metadata: dict[str, dict[str, Any]] = {}
        self._runtime_base_path = Path.cwd()
        self.default_timeout = default_timeout
        self.set_runtime_base_path(base_path or Path.cwd())

    def set_runtime_base_path(self, base_path: Path | str) -> None:
        """Set the workspace root handed to tools."""
        self._runtime_base_path = Path(base_path).expanduser().resolve()

    @property
    def runtime_base_path(self) -> Path:
        """Workspace root that tools operate in."""
        return self._runtime_base_path

    def register(self, tool: Tool, metadata: dict[str, Any] | None = None) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool
        if isinstance(metadata, dict):
            self._tool_metadata[tool.name] = dict(metadata)
        elif tool.name not in self._tool_metadata:
            self._tool_metadata[tool.name] = {}

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        self._tools.pop(name, None)
        self._tool_metadata.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get_tool_metadata(self, name: str) -> dict[str, Any]:
        """Return metadata associated with a registered tool."""
        return dict(self._tool_metadata.get(name, {}))

    def validate_enabled(self, enabled: list[str]) -> None:
        """Fail fast when configuration enables tools that are not registered.

        Raises:
            ConfigurationError listing every unknown name
        """
        unknown = [name for name in enabled if name not in self._tools]
        if unknown:
            raise ConfigurationError(f"Enabled tools are not registered: {', '.join(sorted(unknown))}")

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def find(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_definitions(self, names: list[str] | None = None) -> list[ToolDefinition]:
        """Get tool definitions for the LLM, optionally limited to names."""
        return [
            tool.get_definition()
            for tool in self._tools.values()
            if names is None or tool.name in names
        ]

    def target_of(self, name: str, arguments: dict[str, Any]) -> str | None:
        tool = self.find(name)
        if tool is None:
            return None
        return tool.target_of(arguments, self.runtime_base_path)

    def operation_key(self, name: str, arguments: dict[str, Any]) -> tuple[str, str, str]:
        return operation_key(self.find(name), name, arguments, self.runtime_base_path)

    def _timeout_for(self, tool: Tool) -> float:
        timeout = tool.timeout_seconds
        if timeout is None:
            timeout = self.default_timeout
        if timeout is None:
            timeout = get_config().tools.default_timeout
        return max(1.0, float(timeout))

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolArgumentError if arguments are missing or invalid
            ToolExecutionError if execution fails or times out
        """
        tool = self.get(name)
        if not isinstance(arguments, dict):
            raise ToolArgumentError(name, "Arguments must be an object")
        tool.validate_arguments(arguments)

        timeout_seconds = self._timeout_for(tool)
        execute_task: asyncio.Task[ToolResult] | None = None
        try:
            log.info("Executing tool", tool=name, args=list(arguments))
            execute_task = asyncio.create_task(
                tool.execute(**arguments, _runtime_base_path=self.runtime_base_path)
            )
            done, _ = await asyncio.wait({execute_task}, timeout=timeout_seconds)

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            await cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await cancel_task(execute_task)
            raise
        except (ToolExecutionError, ToolArgumentError):
            raise
        except TypeError as e:
            # Unexpected keyword from the model
            raise ToolArgumentError(name, str(e)) from e
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e

    async def verify(self, name: str, arguments: dict[str, Any], result: ToolResult) -> bool | None:
        """Ask the tool to confirm a successful result; None when not checkable."""
        tool = self.find(name)
        if tool is None or not result.success:
            return None
        try:
            return await tool.verify(arguments, result, _runtime_base_path=self.runtime_base_path)
        except Exception as e:
            log.warning("Tool verification raised", tool=name, error=str(e))
            return False
