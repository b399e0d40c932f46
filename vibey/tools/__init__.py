"""Tools package for Vibey."""

from pathlib import Path
from typing import TYPE_CHECKING

from vibey.config import Config
from vibey.logging import get_logger
from vibey.tools.filesystem import ListDirectoryTool, ReadFileTool, WriteFileTool
from vibey.tools.mcp import create_mcp_tools
from vibey.tools.registry import (
    FunctionTool,
    Tool,
    ToolCall,
    ToolOutcome,
    ToolRegistry,
    ToolResult,
    error_envelope,
)
from vibey.tools.schema import ParameterValidator, ValidationResult, build_validator
from vibey.tools.shell import RunCommandTool

if TYPE_CHECKING:
    from vibey.mcp.client import McpClient

log = get_logger(__name__)


def register_default_tools(
    registry: ToolRegistry,
    config: Config,
    workspace_root: Path | str | None = None,
    mcp_client: "McpClient | None" = None,
) -> list[str]:
    """Register the enabled local tools, plus MCP introspection tools when a client is given."""
    root = Path(workspace_root) if workspace_root is not None else config.resolved_workspace_path()
    local: dict[str, Tool] = {
        "read_file": ReadFileTool(root),
        "write_file": WriteFileTool(root),
        "list_directory": ListDirectoryTool(root),
        "run_command": RunCommandTool(config.tools.shell, root),
    }

    registered: list[str] = []
    for name in config.tools.enabled:
        tool = local.get(name)
        if tool is None:
            log.warning("Unknown tool in config", tool=name)
            continue
        registry.register(tool)
        registered.append(tool.name)

    if mcp_client is not None:
        for tool in create_mcp_tools(mcp_client):
            registry.register(tool)
            registered.append(tool.name)

    log.info("Registered default tools", tools=registered)
    return registered


__all__ = [
    "FunctionTool",
    "ListDirectoryTool",
    "ParameterValidator",
    "ReadFileTool",
    "RunCommandTool",
    "Tool",
    "ToolCall",
    "ToolOutcome",
    "ToolRegistry",
    "ToolResult",
    "ValidationResult",
    "WriteFileTool",
    "build_validator",
    "error_envelope",
    "register_default_tools",
]
