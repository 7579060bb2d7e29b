"""Read tool for reading file contents."""

from pathlib import Path
from typing import Any

from streamloop.logging import get_logger
from streamloop.tools.registry import Tool, ToolResult
from streamloop.tools.write import normalize_under_root, resolve_workspace_root, workspace_target_of

log = get_logger(__name__)

MAX_READ_BYTES = 100_000


class ReadTool(Tool):
    """Read file contents from the workspace."""

    name = "read"
    description = "Read the contents of a file."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read, relative to the workspace",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of lines to read",
            },
            "offset": {
                "type": "number",
                "description": "Line number to start reading from (1-indexed)",
            },
        },
        "required": ["path"],
    }

    def target_of(self, arguments: dict[str, Any], base_path: Path | None = None) -> str | None:
        return workspace_target_of(arguments, base_path) or super().target_of(arguments, base_path)

    async def execute(self, path: str, limit: int | None = None, offset: int | None = None, **kwargs: Any) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            limit: Optional line limit
            offset: Optional line offset

        Returns:
            ToolResult with file contents
        """
        try:
            file_path = normalize_under_root(path, resolve_workspace_root(kwargs))

            if not file_path.exists():
                return ToolResult(success=False, error=f"File not found: {path}")
            if not file_path.is_file():
                return ToolResult(success=False, error=f"Not a file: {path}")

            file_size = file_path.stat().st_size
            if file_size > MAX_READ_BYTES:
                return ToolResult(
                    success=False,
                    error=f"File too large: {file_size} bytes (max {MAX_READ_BYTES})",
                )

            lines = file_path.read_text(encoding="utf-8").splitlines()
            start = max(int(offset or 1), 1)
            lines = lines[start - 1:]
            if limit:
                lines = lines[: int(limit)]
            content = "\n".join(lines)

            info = f"[{file_path} {len(content)} chars]"
            if offset or limit:
                info += f" [lines {start}-{start + len(lines) - 1}]"

            return ToolResult(success=True, content=f"{info}\n{content}")

        except (OSError, UnicodeDecodeError) as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))
