"""Custom exceptions for Vibey."""

from typing import Any


class VibeyError(Exception):
    """Base exception for Vibey."""

    pass


class ConfigurationError(VibeyError):
    """Configuration-related errors."""

    pass


class LLMError(VibeyError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (HTTP status, timeout, unreachable endpoint)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(VibeyError):
    """Tool errors."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class DuplicateNameError(ToolError):
    """A tool with the same name is already registered."""

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Tool already registered: {tool_name}")


class UnknownToolError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Tool {tool_name} not found")


class InvalidParametersError(ToolError):
    """Tool call parameters do not match the tool schema."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(tool_name, f"Invalid parameters for tool '{tool_name}': {message}")
        self.detail = message


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, cause: BaseException | str):
        message = str(cause) if not isinstance(cause, str) else cause
        super().__init__(tool_name, f"Tool '{tool_name}' failed: {message or type(cause).__name__}")
        self.cause = cause


class RemoteToolError(ToolError):
    """A capability server reported failure for a tool call."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(tool_name, message or "Tool execution failed")


class TransportError(VibeyError):
    """Capability server connection or process failure."""

    def __init__(self, server_name: str, message: str):
        super().__init__(f"MCP server '{server_name}': {message}")
        self.server_name = server_name


class MalformedDirectiveError(VibeyError):
    """Structured model output could not be decoded."""

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message)
        self.raw = raw


class Cancelled(VibeyError):
    """Control-flow signal for a user-initiated stop."""

    pass


class CapabilityNotFoundError(VibeyError):
    """No connected server exposes the requested resource or prompt."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind.capitalize()} not found: {name}")
        self.kind = kind
        self.name = name
