"""Data model for capability (MCP) server connections."""

import time
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field

from vibey.config import McpServerConfig


class ServerStatus(str, Enum):
    """Connection status of a capability server."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class McpServerState(BaseModel):
    """Runtime state of one server connection.

    Instances are replaced wholesale on every transition; readers holding a
    reference never observe a half-updated state.
    """

    name: str
    config: McpServerConfig
    status: ServerStatus = ServerStatus.DISCONNECTED
    error: str | None = None
    connected_at: float | None = None
    tool_count: int = 0
    resource_count: int = 0
    prompt_count: int = 0
    registered_tools: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def to_summary(self) -> dict[str, Any]:
        """JSON-friendly view used by the introspection tools and CLI."""
        summary: dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "toolCount": self.tool_count,
            "resourceCount": self.resource_count,
            "promptCount": self.prompt_count,
            "registeredTools": list(self.registered_tools),
        }
        if self.error:
            summary["error"] = self.error
        if self.connected_at is not None:
            summary["connectedAt"] = time.strftime(
                "%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.connected_at)
            )
        if self.warnings:
            summary["warnings"] = list(self.warnings)
        return summary


class McpResource(BaseModel):
    """Read-only, URI-addressed data source exposed by a server."""

    uri: str
    name: str = ""
    description: str | None = None
    mime_type: str | None = None
    server: str = ""


class McpPromptArgument(BaseModel):
    name: str
    description: str | None = None
    required: bool = False


class McpPrompt(BaseModel):
    """Parameterized prompt template exposed by a server."""

    name: str
    description: str | None = None
    arguments: list[McpPromptArgument] = Field(default_factory=list)
    server: str = ""


class McpEventType(str, Enum):
    SERVER_CONNECTING = "server-connecting"
    SERVER_CONNECTED = "server-connected"
    SERVER_DISCONNECTED = "server-disconnected"
    SERVER_ERROR = "server-error"
    TOOLS_UPDATED = "tools-updated"
    RESOURCES_UPDATED = "resources-updated"
    PROMPTS_UPDATED = "prompts-updated"


class McpEvent(BaseModel):
    """Notification sent to client listeners on state changes."""

    type: McpEventType
    server_name: str
    data: dict[str, Any] | None = None


McpEventListener = Callable[[McpEvent], None]
