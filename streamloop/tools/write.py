"""Write tool for writing file contents."""

from pathlib import Path
from typing import Any

from streamloop.logging import get_logger
from streamloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def resolve_workspace_root(kwargs: dict[str, Any]) -> Path:
    """Workspace root handed in by the registry, or the current directory."""
    runtime_base_raw = kwargs.get("_runtime_base_path")
    if runtime_base_raw is not None:
        return Path(runtime_base_raw).expanduser().resolve()
    return Path.cwd().resolve()


def normalize_under_root(path: str, root: Path, fallback_name: str = "output.txt") -> Path:
    """Map any requested path to a location inside ``root``."""
    requested = Path(path).expanduser()
    if requested.is_absolute():
        absolute = requested.resolve()
        try:
            relative_hint = absolute.relative_to(root)
        except ValueError:
            relative_hint = Path(*absolute.parts[1:])
    else:
        relative_hint = requested

    safe_parts = [part for part in relative_hint.parts if part not in ("", ".", "..")]
    if not safe_parts:
        safe_parts = [fallback_name]

    candidate = root.joinpath(*safe_parts).resolve()
    try:
        candidate.relative_to(root)
        return candidate
    except ValueError:
        # Symlink escaping the root
        return (root / safe_parts[-1]).resolve()


def workspace_target_of(arguments: dict[str, Any], base_path: Path | None) -> str | None:
    """Workspace-relative path a call resolves to, or None without a root."""
    path = arguments.get("path")
    if base_path is None or not isinstance(path, str) or not path.strip():
        return None
    root = Path(base_path).expanduser().resolve()
    return normalize_under_root(path.strip(), root).relative_to(root).as_posix()


class WriteTool(Tool):
    """Write content to files inside the workspace."""

    name = "write"
    description = "Create or overwrite a file with content."
    produces_artifact = True
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to write, relative to the workspace",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
            "append": {
                "type": "boolean",
                "description": "Append to file instead of overwriting",
            },
        },
        "required": ["path", "content"],
    }

    def target_of(self, arguments: dict[str, Any], base_path: Path | None = None) -> str | None:
        return workspace_target_of(arguments, base_path) or super().target_of(arguments, base_path)

    async def execute(self, path: str, content: str, append: bool = False, **kwargs: Any) -> ToolResult:
        """Write content to a file.

        Args:
            path: Path to file
            content: Content to write
            append: Whether to append instead of overwrite

        Returns:
            ToolResult with status
        """
        try:
            root = resolve_workspace_root(kwargs)
            file_path = normalize_under_root(path, root)

            file_path.parent.mkdir(parents=True, exist_ok=True)

            mode = "a" if append else "w"
            with open(file_path, mode, encoding="utf-8", newline="") as f:
                f.write(content)

            redirect_note = ""
            if str(Path(path).expanduser()) != str(file_path.relative_to(root)):
                redirect_note = f" (requested: {path})"

            return ToolResult(
                success=True,
                content=f"Written {len(content)} chars to {file_path}{redirect_note}",
            )

        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(
                success=False,
                error=str(e),
            )

    async def verify(self, arguments: dict[str, Any], result: ToolResult, **kwargs: Any) -> bool | None:
        """Read the file back and compare it with what was written."""
        path = arguments.get("path")
        content = arguments.get("content")
        if not isinstance(path, str) or not isinstance(content, str):
            return None
        file_path = normalize_under_root(path, resolve_workspace_root(kwargs))
        if not file_path.is_file():
            log.warning("Written file is missing", path=str(file_path))
            return False
        on_disk = file_path.read_bytes().decode("utf-8")
        if arguments.get("append"):
            return on_disk.endswith(content)
        return on_disk == content
