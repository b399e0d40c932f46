"""Tool registry and base tool class."""

import asyncio
import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field, model_validator

from vibey.exceptions import (
    DuplicateNameError,
    InvalidParametersError,
    ToolExecutionError,
    UnknownToolError,
)
from vibey.logging import get_logger
from vibey.tools.schema import ParameterValidator, build_validator

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Result from a local tool execution."""

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


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any, index: int = 0) -> "ToolCall":
        """Build a call from one entry of a directive's ``tool_calls`` array.

        Accepts ``arguments`` as an alias of ``parameters`` and JSON-encoded
        argument strings. Entries without a usable name keep an empty name so
        execution reports an unknown tool instead of dropping the call.
        """
        if not isinstance(payload, dict):
            return cls(id=f"call_{index}", name="", parameters={"raw": payload})

        call_id = str(payload.get("id") or f"call_{index}")
        name = str(payload.get("name") or payload.get("tool") or "").strip()
        arguments = payload.get("parameters")
        if arguments is None:
            arguments = payload.get("arguments", {})
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                arguments = {"raw": arguments}
        if not isinstance(arguments, dict):
            arguments = {"raw": arguments}
        return cls(id=call_id, name=name, parameters=arguments)


class ToolOutcome(BaseModel):
    """Successful tool execution, as appended to the conversation."""

    tool_call_id: str
    tool_name: str
    output: str = ""

    def to_envelope(self) -> dict[str, Any]:
        return {
            "role": "tool_result",
            "tool_call_id": self.tool_call_id,
            "status": "success",
            "output": self.output,
        }


def error_envelope(tool_call_id: str, error: str) -> dict[str, Any]:
    """Tool-result payload describing a failed call."""
    return {
        "role": "tool_result",
        "tool_call_id": tool_call_id,
        "status": "error",
        "error": error,
    }


def _stringify_output(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = 60.0

    _validator: ParameterValidator | None = None

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Execute the tool.

        Args:
            **kwargs: Validated tool parameters

        Returns:
            ToolResult, text, or any JSON-serializable value
        """
        pass

    @property
    def validator(self) -> ParameterValidator:
        """Parameter validator compiled once from ``parameters``."""
        if self._validator is None:
            self._validator = build_validator(self.parameters)
        return self._validator

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition rendered into the system prompt."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class FunctionTool(Tool):
    """Tool backed by a plain async callable."""

    def __init__(
        self,
        name: str,
        description: str,
        func: Callable[..., Awaitable[Any]],
        parameters: dict[str, Any] | None = None,
        timeout_seconds: float | None = 60.0,
    ):
        self.name = name
        self.description = description
        self.parameters = dict(parameters or {"type": "object", "properties": {}})
        self.timeout_seconds = timeout_seconds
        self._func = func

    async def execute(self, **kwargs: Any) -> Any:
        return await self._func(**kwargs)


class ToolRegistry:
    """Registry for managing available tools.

    Lookups and mutations are serialized by a lock. ``execute`` resolves the
    tool object under the lock and runs it outside of it, so a concurrent
    ``unregister`` either happens before the lookup (unknown tool) or after
    it (the in-flight call finishes against the resolved tool).
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._lock = threading.RLock()

    def register(self, tool: Tool, replace: bool = False) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
            replace: Swap out an existing tool with the same name (reconnect path)

        Raises:
            DuplicateNameError if the name is taken and ``replace`` is false
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        with self._lock:
            if tool.name in self._tools and not replace:
                raise DuplicateNameError(tool.name)
            self._tools[tool.name] = tool
        log.debug("Registered tool", tool=tool.name, replace=replace)

    def unregister(self, name: str) -> bool:
        """Unregister a tool; returns whether anything was removed."""
        with self._lock:
            removed = self._tools.pop(name, None) is not None
        if removed:
            log.debug("Unregistered tool", tool=name)
        return removed

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        with self._lock:
            return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            UnknownToolError if not found
        """
        with self._lock:
            tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool

    def list_tools(self) -> list[str]:
        """List all registered tool names in registration order."""
        with self._lock:
            return list(self._tools.keys())

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions."""
        with self._lock:
            tools = list(self._tools.values())
        return [tool.get_definition() for tool in tools]

    async def execute(self, call: ToolCall) -> ToolOutcome:
        """Validate and execute one tool call.

        Raises:
            UnknownToolError if the tool is not registered
            InvalidParametersError if parameters fail schema validation
            ToolExecutionError for any failure raised by the tool itself
        """
        tool = self.get(call.name)

        checked = tool.validator.validate(call.parameters)
        if not checked.success:
            raise InvalidParametersError(call.name, checked.error or "validation failed")
        params = checked.value if isinstance(checked.value, dict) else dict(call.parameters)

        timeout_seconds = tool.timeout_seconds
        log.info("Executing tool", tool=call.name, call_id=call.id)
        try:
            if timeout_seconds:
                result = await asyncio.wait_for(tool.execute(**params), timeout=timeout_seconds)
            else:
                result = await tool.execute(**params)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as e:
            label = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
            log.warning("Tool timed out", tool=call.name, timeout=timeout_seconds)
            raise ToolExecutionError(call.name, f"Execution timed out after {label}s") from e
        except Exception as e:
            log.error("Tool execution failed", tool=call.name, error=str(e))
            raise ToolExecutionError(call.name, e) from e

        if isinstance(result, ToolResult):
            if not result.success:
                log.info("Tool reported failure", tool=call.name, error=result.error)
                raise ToolExecutionError(call.name, result.error or "Tool execution failed")
            output = result.content
        else:
            output = _stringify_output(result)

        log.info("Tool executed", tool=call.name, call_id=call.id, chars=len(output))
        return ToolOutcome(tool_call_id=call.id, tool_name=call.name, output=output)
