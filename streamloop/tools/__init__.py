"""Tools package for streamloop."""

from streamloop.tools.registry import (
    Tool,
    ToolExecutor,
    ToolRegistry,
    ToolResult,
)
from streamloop.tools.dispatcher import DispatchBatch, ToolDispatcher, ToolExecutionRecord
from streamloop.tools.read import ReadTool
from streamloop.tools.write import WriteTool
from streamloop.tools.ask_user import AskUserTool

BUILTIN_TOOLS: dict[str, type[Tool]] = {
    WriteTool.name: WriteTool,
    ReadTool.name: ReadTool,
    AskUserTool.name: AskUserTool,
}


def build_registry(
    enabled: list[str],
    base_path=None,
    default_timeout: float | None = None,
) -> ToolRegistry:
    """Register the enabled built-in tools and reject unknown names."""
    registry = ToolRegistry(base_path=base_path, default_timeout=default_timeout)
    for name in enabled:
        tool_cls = BUILTIN_TOOLS.get(name)
        if tool_cls is not None:
            registry.register(tool_cls())
    registry.validate_enabled(enabled)
    return registry


__all__ = [
    "Tool",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    "DispatchBatch",
    "ToolDispatcher",
    "ToolExecutionRecord",
    "ReadTool",
    "WriteTool",
    "AskUserTool",
    "BUILTIN_TOOLS",
    "build_registry",
]
