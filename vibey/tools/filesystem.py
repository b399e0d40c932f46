"""Filesystem tools scoped to the workspace root."""

from pathlib import Path
from typing import Any

from vibey.logging import get_logger
from vibey.tools.registry import Tool, ToolResult

log = get_logger(__name__)

MAX_READ_BYTES = 200_000
MAX_LIST_ENTRIES = 2000
EXCLUDED_NAMES = {".git", "node_modules", ".DS_Store", "__pycache__", ".venv", "dist", "out"}


class WorkspaceTool(Tool):
    """Base for tools that resolve paths against a workspace root."""

    def __init__(self, workspace_root: Path | str | None = None):
        self.workspace_root = Path(workspace_root or Path.cwd()).expanduser().resolve()

    def resolve_path(self, path: str) -> Path:
        """Resolve ``path`` under the workspace root.

        Raises:
            PermissionError if the path escapes the workspace
        """
        requested = Path(path).expanduser()
        if not requested.is_absolute():
            requested = self.workspace_root / requested
        resolved = requested.resolve()
        try:
            resolved.relative_to(self.workspace_root)
        except ValueError as e:
            raise PermissionError(f"Access denied: {path} is outside the workspace") from e
        return resolved


class ReadFileTool(WorkspaceTool):
    """Read file contents."""

    name = "read_file"
    description = "Read file content. Relative paths are resolved against the workspace root."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read",
            },
            "offset": {
                "type": "integer",
                "description": "Line number to start reading from (1-indexed)",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines to read",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str, offset: int | None = None, limit: int | None = None, **kwargs: Any) -> ToolResult:
        try:
            file_path = self.resolve_path(path)
        except PermissionError as e:
            return ToolResult(success=False, error=str(e))

        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"Not a file: {path}")

        file_size = file_path.stat().st_size
        if file_size > MAX_READ_BYTES and not (offset or limit):
            return ToolResult(
                success=False,
                error=f"File too large: {file_size} bytes (max {MAX_READ_BYTES}); use offset/limit",
            )

        try:
            content = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.error("Read failed", path=str(file_path), error=str(e))
            return ToolResult(success=False, error=str(e))

        if offset or limit:
            lines = content.splitlines()
            start = max((offset or 1) - 1, 0)
            end = start + limit if limit else len(lines)
            content = "\n".join(lines[start:end])
        return ToolResult(success=True, content=content)


class WriteFileTool(WorkspaceTool):
    """Create or overwrite a file."""

    name = "write_file"
    description = "Write file content. Relative paths are resolved against the workspace root."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to write",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        try:
            file_path = self.resolve_path(path)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
        except (PermissionError, OSError) as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        log.info("Wrote file", path=str(file_path), chars=len(content))
        return ToolResult(success=True, content=f"Successfully wrote to {file_path}")


class ListDirectoryTool(WorkspaceTool):
    """List directory entries, optionally recursively."""

    name = "list_directory"
    description = (
        "List files in a workspace directory (excluding .git, node_modules, etc). "
        "Set recursive to walk the whole tree."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Directory to list (default: workspace root)",
            },
            "recursive": {
                "type": "boolean",
                "description": "Include nested files",
            },
        },
    }

    def _walk(self, directory: Path, recursive: bool, entries: list[str]) -> None:
        for child in sorted(directory.iterdir(), key=lambda p: p.name):
            if child.name in EXCLUDED_NAMES:
                continue
            if len(entries) >= MAX_LIST_ENTRIES:
                return
            relative = child.relative_to(self.workspace_root).as_posix()
            if child.is_dir():
                entries.append(f"{relative}/")
                if recursive:
                    self._walk(child, recursive, entries)
            else:
                entries.append(relative)

    async def execute(self, path: str = ".", recursive: bool = False, **kwargs: Any) -> ToolResult:
        try:
            directory = self.resolve_path(path)
        except PermissionError as e:
            return ToolResult(success=False, error=str(e))
        if not directory.is_dir():
            return ToolResult(success=False, error=f"Not a directory: {path}")

        entries: list[str] = []
        try:
            self._walk(directory, recursive, entries)
        except OSError as e:
            return ToolResult(success=False, error=str(e))

        if not entries:
            return ToolResult(success=True, content="[empty directory]")
        content = "\n".join(entries)
        if len(entries) >= MAX_LIST_ENTRIES:
            content += f"\n... [truncated at {MAX_LIST_ENTRIES} entries]"
        return ToolResult(success=True, content=content)
