"""MCP capability-server client."""

from vibey.mcp.client import McpClient, McpRemoteTool
from vibey.mcp.models import (
    McpEvent,
    McpEventListener,
    McpEventType,
    McpPrompt,
    McpResource,
    McpServerState,
    ServerStatus,
)
from vibey.mcp.transport import CapabilityTransport, StdioTransport, stdio_transport_factory

__all__ = [
    "CapabilityTransport",
    "McpClient",
    "McpEvent",
    "McpEventListener",
    "McpEventType",
    "McpPrompt",
    "McpRemoteTool",
    "McpResource",
    "McpServerState",
    "ServerStatus",
    "StdioTransport",
    "stdio_transport_factory",
]
