"""Capability (MCP) server client.

Discovers and connects to the configured servers, registers the tools they
expose with the :class:`ToolRegistry`, keeps their resource and prompt
catalogs, and tears everything down again on disconnect or config removal.

Each server moves through ``disconnected -> connecting -> connected | error``.
State for a server is written before any I/O for it starts, so observers
always find an entry for a configured server. Every connect attempt carries
an attempt number; an attempt superseded by a disconnect, reconnect or reload
discards its own work instead of committing it.
"""

import asyncio
import threading
import time
from collections import Counter
from typing import Any, Mapping

from vibey.config import McpConfig, McpServerConfig
from vibey.exceptions import (
    CapabilityNotFoundError,
    ConfigurationError,
    DuplicateNameError,
    RemoteToolError,
    TransportError,
)
from vibey.logging import get_logger
from vibey.mcp.content import extract_content, extract_prompt_messages, extract_resource_contents
from vibey.mcp.models import (
    McpEvent,
    McpEventListener,
    McpEventType,
    McpPrompt,
    McpPromptArgument,
    McpResource,
    McpServerState,
    ServerStatus,
)
from vibey.mcp.transport import CapabilityTransport, TransportFactory, stdio_transport_factory
from vibey.tools.registry import Tool, ToolRegistry

log = get_logger(__name__)


class McpRemoteTool(Tool):
    """Tool whose execution is a round trip to a capability server."""

    def __init__(self, server_name: str, transport: CapabilityTransport, descriptor: Mapping[str, Any]):
        self.server_name = server_name
        self.name = str(descriptor.get("name") or "").strip()
        self.description = str(descriptor.get("description") or f"Tool from MCP server: {server_name}")
        schema = descriptor.get("inputSchema")
        self.parameters = dict(schema) if isinstance(schema, dict) else {}
        # The transport enforces the per-request timeout.
        self.timeout_seconds = None
        self._transport = transport

    async def execute(self, **kwargs: Any) -> str:
        result = await self._transport.call_tool(self.name, kwargs)
        text = extract_content(result.get("content"))
        if result.get("isError"):
            raise RemoteToolError(self.name, text or "Tool execution failed")
        return text


class _Superseded(Exception):
    """A newer attempt or a disconnect replaced this connect attempt."""


def _parse_resources(server_name: str, items: list[dict[str, Any]]) -> list[McpResource]:
    return [
        McpResource(
            uri=str(item.get("uri") or ""),
            name=str(item.get("name") or ""),
            description=item.get("description"),
            mime_type=item.get("mimeType"),
            server=server_name,
        )
        for item in items
        if isinstance(item, dict) and item.get("uri")
    ]


def _parse_prompts(server_name: str, items: list[dict[str, Any]]) -> list[McpPrompt]:
    prompts: list[McpPrompt] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        arguments = [
            McpPromptArgument(
                name=str(arg.get("name")),
                description=arg.get("description"),
                required=bool(arg.get("required", False)),
            )
            for arg in item.get("arguments") or []
            if isinstance(arg, dict) and arg.get("name")
        ]
        prompts.append(
            McpPrompt(
                name=str(item["name"]),
                description=item.get("description"),
                arguments=arguments,
                server=server_name,
            )
        )
    return prompts


class McpClient:
    """Manages connections to capability servers."""

    def __init__(
        self,
        registry: ToolRegistry,
        config: McpConfig | None = None,
        transport_factory: TransportFactory = stdio_transport_factory,
    ):
        self._registry = registry
        self._config = config or McpConfig()
        self._transport_factory = transport_factory

        self._lock = threading.RLock()
        self._states: dict[str, McpServerState] = {}
        self._transports: dict[str, CapabilityTransport] = {}
        self._resources: dict[str, list[McpResource]] = {}
        self._prompts: dict[str, list[McpPrompt]] = {}
        self._attempts: dict[str, int] = {}
        self._retry_counts: dict[str, int] = {}

        self._connect_tasks: dict[str, asyncio.Task[bool]] = {}
        self._retry_tasks: dict[str, asyncio.Task[None]] = {}
        self._listeners: list[McpEventListener] = []

    @property
    def config(self) -> McpConfig:
        return self._config

    # Events

    def add_listener(self, listener: McpEventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: McpEventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event_type: McpEventType, server_name: str, data: dict[str, Any] | None = None) -> None:
        event = McpEvent(type=event_type, server_name=server_name, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.error("MCP event listener failed", event_type=event_type.value, server=server_name, error=str(e))

    # Queries

    def get_server_states(self) -> list[McpServerState]:
        with self._lock:
            return list(self._states.values())

    def get_server_state(self, name: str) -> McpServerState | None:
        with self._lock:
            return self._states.get(name)

    def summary(self) -> dict[str, int]:
        """Server counts by status, taken from one consistent snapshot."""
        states = self.get_server_states()
        counts = Counter(state.status for state in states)
        return {
            "total": len(states),
            "connected": counts[ServerStatus.CONNECTED],
            "connecting": counts[ServerStatus.CONNECTING],
            "error": counts[ServerStatus.ERROR],
        }

    def get_resources(self, server_name: str | None = None) -> list[McpResource]:
        with self._lock:
            if server_name:
                return list(self._resources.get(server_name, []))
            return [resource for items in self._resources.values() for resource in items]

    def get_prompts(self, server_name: str | None = None) -> list[McpPrompt]:
        with self._lock:
            if server_name:
                return list(self._prompts.get(server_name, []))
            return [prompt for items in self._prompts.values() for prompt in items]

    def _transport_for(self, server_name: str) -> CapabilityTransport:
        with self._lock:
            transport = self._transports.get(server_name)
        if transport is None:
            raise TransportError(server_name, "not connected")
        return transport

    async def read_resource(self, uri: str) -> str:
        """Read a resource from whichever connected server lists it."""
        owner = next((r.server for r in self.get_resources() if r.uri == uri), None)
        if owner is None:
            raise CapabilityNotFoundError("resource", uri)
        contents = await self._transport_for(owner).read_resource(uri)
        return extract_resource_contents(contents)

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> str:
        """Render a prompt from whichever connected server lists it."""
        owner = next((p.server for p in self.get_prompts() if p.name == name), None)
        if owner is None:
            raise CapabilityNotFoundError("prompt", name)
        messages = await self._transport_for(owner).get_prompt(name, arguments)
        return extract_prompt_messages(messages)

    # Lifecycle

    async def initialize(self) -> None:
        """Connect to every configured server."""
        await self.reload()

    def start_reload(self, servers: Mapping[str, McpServerConfig] | None = None) -> "asyncio.Task[None]":
        """Plan a reload and run it in the background.

        Servers about to be (re)connected are marked ``connecting`` before this
        method returns.
        """
        target = dict(servers) if servers is not None else self._config.target_servers()
        removed, to_connect = self._plan_reload(target)
        return asyncio.create_task(self._apply_reload(removed, to_connect))

    async def reload(self, servers: Mapping[str, McpServerConfig] | None = None) -> None:
        """Reconcile live connections with the target server set."""
        await self.start_reload(servers)

    async def apply_config(self, config: McpConfig) -> None:
        """Adopt a changed ``mcp`` config section and reload against it."""
        self._config = config
        log.info("MCP configuration changed", servers=list(config.target_servers()))
        await self.reload()

    def _plan_reload(
        self, target: dict[str, McpServerConfig]
    ) -> tuple[list[str], dict[str, tuple[McpServerConfig, int, McpServerState | None]]]:
        to_connect: dict[str, tuple[McpServerConfig, int, McpServerState | None]] = {}
        with self._lock:
            removed = [name for name in self._states if name not in target]
            for name, server_config in target.items():
                existing = self._states.get(name)
                if existing is not None and existing.config == server_config:
                    continue
                attempt = self._next_attempt(name)
                self._states[name] = McpServerState(
                    name=name, config=server_config, status=ServerStatus.CONNECTING
                )
                to_connect[name] = (server_config, attempt, existing)
        log.info("Reloading MCP servers", remove=removed, connect=list(to_connect))
        return removed, to_connect

    async def _apply_reload(
        self,
        removed: list[str],
        to_connect: dict[str, tuple[McpServerConfig, int, McpServerState | None]],
    ) -> None:
        for name in removed:
            await self.disconnect(name)

        tasks = []
        for name, (server_config, attempt, previous) in to_connect.items():
            if previous is not None:
                await self._release(name, previous.registered_tools)
                self._emit(McpEventType.SERVER_DISCONNECTED, name)
            tasks.append(self._spawn_connect(name, server_config, attempt))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for name, result in zip(to_connect, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                log.error("MCP connect task crashed", server=name, error=str(result))

    async def reconnect(self, name: str) -> bool:
        """Explicitly reconnect a configured server (also clears ``error``)."""
        with self._lock:
            state = self._states.get(name)
            if state is None:
                raise ConfigurationError(f"Server {name} not configured")
            attempt = self._next_attempt(name)
            self._states[name] = McpServerState(
                name=name, config=state.config, status=ServerStatus.CONNECTING
            )
        self._cancel_retry(name)
        self._retry_counts.pop(name, None)
        await self._release(name, state.registered_tools)
        self._emit(McpEventType.SERVER_DISCONNECTED, name)
        return await self._spawn_connect(name, state.config, attempt)

    async def disconnect(self, name: str) -> None:
        """Disconnect a server and drop its state, tools and catalogs."""
        self._cancel_retry(name)
        self._retry_counts.pop(name, None)
        with self._lock:
            self._next_attempt(name)
            state = self._states.pop(name, None)
        await self._release(name, state.registered_tools if state else [])
        if state is not None:
            log.info("Disconnected from MCP server", server=name)
            self._emit(McpEventType.SERVER_DISCONNECTED, name)

    async def dispose(self) -> None:
        """Disconnect every server."""
        for name in list(self._retry_tasks):
            self._cancel_retry(name)
        with self._lock:
            names = set(self._states) | set(self._transports) | set(self._connect_tasks)
        for name in names:
            await self.disconnect(name)

    # Internals

    def _next_attempt(self, name: str) -> int:
        attempt = self._attempts.get(name, 0) + 1
        self._attempts[name] = attempt
        return attempt

    def _is_current(self, name: str, attempt: int) -> bool:
        return self._attempts.get(name) == attempt

    def _set_state(self, name: str, attempt: int, state: McpServerState) -> bool:
        with self._lock:
            if not self._is_current(name, attempt):
                return False
            self._states[name] = state
            return True

    async def _release(self, name: str, registered_tools: list[str]) -> None:
        """Unregister tools, drop catalogs and close the committed transport."""
        task = self._connect_tasks.get(name)
        current = asyncio.current_task()
        if task is not None and task is not current and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.warning("MCP connect task failed during release", server=name, error=str(e))

        with self._lock:
            for tool_name in registered_tools:
                self._registry.unregister(tool_name)
            transport = self._transports.pop(name, None)
            self._resources.pop(name, None)
            self._prompts.pop(name, None)

        if transport is not None:
            await self._close_transport(name, transport)

    async def _close_transport(self, name: str, transport: CapabilityTransport) -> None:
        try:
            await transport.close()
        except Exception as e:
            log.error("Error closing MCP transport", server=name, error=str(e))

    def _spawn_connect(self, name: str, server_config: McpServerConfig, attempt: int) -> "asyncio.Task[bool]":
        task = asyncio.create_task(self._connect(name, server_config, attempt))
        self._connect_tasks[name] = task

        def _forget(done: "asyncio.Task[bool]") -> None:
            if self._connect_tasks.get(name) is done:
                self._connect_tasks.pop(name, None)

        task.add_done_callback(_forget)
        return task

    async def _discover_optional(self, name: str, kind: str, call: Any) -> list[dict[str, Any]] | None:
        """Resource/prompt discovery; failure means "not supported", not an error."""
        try:
            return await call()
        except Exception as e:
            log.info("MCP server does not support capability", server=name, capability=kind, error=str(e))
            return None

    async def _connect(self, name: str, server_config: McpServerConfig, attempt: int) -> bool:
        """Open, discover, register and commit one server connection."""
        transport: CapabilityTransport | None = None
        registered: list[str] = []
        committed = False
        try:
            self._emit(McpEventType.SERVER_CONNECTING, name)
            log.info("Connecting to MCP server", server=name, command=server_config.command)
            transport = self._transport_factory(name, server_config, self._config.default_timeout)
            await transport.open()
            if not self._is_current(name, attempt):
                raise _Superseded()

            tool_descriptors = await transport.list_tools()
            resource_items = await self._discover_optional(name, "resources", transport.list_resources)
            prompt_items = await self._discover_optional(name, "prompts", transport.list_prompts)

            resources = _parse_resources(name, resource_items or [])
            prompts = _parse_prompts(name, prompt_items or [])
            warnings: list[str] = []

            with self._lock:
                if not self._is_current(name, attempt):
                    raise _Superseded()
                for descriptor in tool_descriptors:
                    tool = McpRemoteTool(name, transport, descriptor)
                    if not tool.name:
                        warnings.append("Skipped tool without a name")
                        continue
                    try:
                        self._registry.register(tool)
                    except DuplicateNameError:
                        warnings.append(f"Tool name '{tool.name}' already registered; skipped")
                        log.warning("Skipping duplicate MCP tool", server=name, tool=tool.name)
                        continue
                    registered.append(tool.name)
                    log.debug("Registered MCP tool", server=name, tool=tool.name)

                self._transports[name] = transport
                if resource_items is not None:
                    self._resources[name] = resources
                if prompt_items is not None:
                    self._prompts[name] = prompts
                self._states[name] = McpServerState(
                    name=name,
                    config=server_config,
                    status=ServerStatus.CONNECTED,
                    connected_at=time.time(),
                    tool_count=len(registered),
                    resource_count=len(resources),
                    prompt_count=len(prompts),
                    registered_tools=list(registered),
                    warnings=warnings,
                )
                committed = True
        except asyncio.CancelledError:
            if not committed:
                await self._discard_attempt(name, transport, registered)
            raise
        except _Superseded:
            log.info("MCP connect attempt superseded", server=name)
            await self._discard_attempt(name, transport, registered)
            return False
        except Exception as e:
            message = str(e) or type(e).__name__
            log.error("Failed to connect to MCP server", server=name, error=message)
            await self._discard_attempt(name, transport, registered)
            failed = McpServerState(
                name=name, config=server_config, status=ServerStatus.ERROR, error=message
            )
            if self._set_state(name, attempt, failed):
                self._emit(McpEventType.SERVER_ERROR, name, {"error": message})
                self._schedule_retry(name, server_config, attempt)
            return False

        self._retry_counts.pop(name, None)
        log.info(
            "Connected to MCP server",
            server=name,
            tools=len(registered),
            resources=len(resources),
            prompts=len(prompts),
        )
        self._emit(
            McpEventType.SERVER_CONNECTED,
            name,
            {"toolCount": len(registered), "resourceCount": len(resources), "promptCount": len(prompts)},
        )
        self._emit(McpEventType.TOOLS_UPDATED, name, {"count": len(registered), "tools": list(registered)})
        if resources:
            self._emit(McpEventType.RESOURCES_UPDATED, name, {"count": len(resources)})
        if prompts:
            self._emit(McpEventType.PROMPTS_UPDATED, name, {"count": len(prompts)})
        return True

    async def _discard_attempt(self, name: str, transport: CapabilityTransport | None, registered: list[str]) -> None:
        with self._lock:
            for tool_name in registered:
                self._registry.unregister(tool_name)
        registered.clear()
        if transport is not None:
            await self._close_transport(name, transport)

    # Auto-reconnect

    def _schedule_retry(self, name: str, server_config: McpServerConfig, attempt: int) -> None:
        if not server_config.auto_reconnect:
            return
        count = self._retry_counts.get(name, 0)
        if count >= self._config.max_reconnect_attempts:
            log.warning("Giving up reconnecting to MCP server", server=name, attempts=count)
            return
        self._retry_counts[name] = count + 1
        self._cancel_retry(name)
        self._retry_tasks[name] = asyncio.create_task(self._retry_later(name, server_config, attempt))

    async def _retry_later(self, name: str, server_config: McpServerConfig, attempt: int) -> None:
        await asyncio.sleep(self._config.reconnect_delay)
        with self._lock:
            if not self._is_current(name, attempt):
                return
            next_attempt = self._next_attempt(name)
            self._states[name] = McpServerState(
                name=name, config=server_config, status=ServerStatus.CONNECTING
            )
        self._retry_tasks.pop(name, None)
        log.info("Retrying MCP server connection", server=name, retry=self._retry_counts.get(name, 0))
        await self._spawn_connect(name, server_config, next_attempt)

    def _cancel_retry(self, name: str) -> None:
        task = self._retry_tasks.pop(name, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
