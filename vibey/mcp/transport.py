"""Request/response channels to capability servers."""

import asyncio
import os
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import Implementation

from vibey import __version__
from vibey.config import McpServerConfig
from vibey.exceptions import TransportError
from vibey.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

_CLOSE_GRACE_SECONDS = 5.0


class CapabilityTransport(ABC):
    """Bidirectional channel to one capability server.

    Results are plain dicts using the wire (camelCase) field names, so the
    client never depends on SDK model classes.
    """

    @abstractmethod
    async def open(self) -> None:
        """Start the server connection and complete the protocol handshake."""

    @abstractmethod
    async def list_tools(self) -> list[dict[str, Any]]:
        """Return tool descriptors: name, description, inputSchema."""

    @abstractmethod
    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Invoke a tool; returns ``{"content": [...], "isError": bool}``."""

    @abstractmethod
    async def list_resources(self) -> list[dict[str, Any]]:
        """Return resource descriptors: uri, name, description, mimeType."""

    @abstractmethod
    async def read_resource(self, uri: str) -> list[dict[str, Any]]:
        """Return the content entries of one resource."""

    @abstractmethod
    async def list_prompts(self) -> list[dict[str, Any]]:
        """Return prompt descriptors: name, description, arguments."""

    @abstractmethod
    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> list[dict[str, Any]]:
        """Return the rendered prompt messages."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel and release the server process."""


TransportFactory = Callable[[str, McpServerConfig, float], CapabilityTransport]


def _dump(model: Any) -> dict[str, Any]:
    if hasattr(model, "model_dump"):
        return model.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(model)


class StdioTransport(CapabilityTransport):
    """Capability server spawned as a subprocess, spoken to over stdio.

    The SDK's ``stdio_client`` and ``ClientSession`` contexts must be entered
    and exited by the same task, so a dedicated runner task owns them for the
    lifetime of the connection and ``close`` only signals it.
    """

    def __init__(self, server_name: str, config: McpServerConfig, timeout: float = 30.0):
        self.server_name = server_name
        self.config = config
        self.timeout = float(config.timeout or timeout)
        self._session: ClientSession | None = None
        self._runner: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._closing: asyncio.Event | None = None

    def _server_parameters(self) -> StdioServerParameters:
        env = {**os.environ, **self.config.env} if self.config.env else None
        return StdioServerParameters(
            command=self.config.command,
            args=list(self.config.args),
            env=env,
        )

    async def _run(self) -> None:
        assert self._ready is not None and self._closing is not None
        try:
            async with stdio_client(self._server_parameters()) as (read_stream, write_stream):
                async with ClientSession(
                    read_stream,
                    write_stream,
                    client_info=Implementation(name="vibey", version=__version__),
                ) as session:
                    await session.initialize()
                    self._session = session
                    if not self._ready.done():
                        self._ready.set_result(None)
                    await self._closing.wait()
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(e)
            else:
                log.warning("MCP session ended", server=self.server_name, error=str(e))
        finally:
            self._session = None
            if not self._ready.done():
                self._ready.set_exception(TransportError(self.server_name, "connection closed"))

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._closing = asyncio.Event()
        log.info(
            "Starting MCP server",
            server=self.server_name,
            command=self.config.command,
            args=list(self.config.args),
        )
        self._runner = asyncio.create_task(self._run(), name=f"mcp-{self.server_name}")
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise TransportError(self.server_name, f"startup timed out after {self.timeout}s") from e
        except TransportError:
            await self.close()
            raise
        except Exception as e:
            await self.close()
            raise TransportError(self.server_name, str(e) or type(e).__name__) from e

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise TransportError(self.server_name, "not connected")
        return self._session

    async def _request(self, label: str, call: Callable[[ClientSession], Awaitable[T]]) -> T:
        session = self._require_session()
        try:
            return await asyncio.wait_for(call(session), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(self.server_name, f"{label} timed out after {self.timeout}s") from e
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(self.server_name, f"{label} failed: {e}") from e

    async def list_tools(self) -> list[dict[str, Any]]:
        result = await self._request("tools/list", lambda s: s.list_tools())
        return [_dump(tool) for tool in result.tools]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        result = await self._request("tools/call", lambda s: s.call_tool(name, arguments=arguments))
        return _dump(result)

    async def list_resources(self) -> list[dict[str, Any]]:
        result = await self._request("resources/list", lambda s: s.list_resources())
        return [_dump(resource) for resource in result.resources]

    async def read_resource(self, uri: str) -> list[dict[str, Any]]:
        result = await self._request("resources/read", lambda s: s.read_resource(uri))  # type: ignore[arg-type]
        return [_dump(entry) for entry in result.contents]

    async def list_prompts(self) -> list[dict[str, Any]]:
        result = await self._request("prompts/list", lambda s: s.list_prompts())
        return [_dump(prompt) for prompt in result.prompts]

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> list[dict[str, Any]]:
        result = await self._request("prompts/get", lambda s: s.get_prompt(name, arguments=arguments))
        return [_dump(message) for message in result.messages]

    async def close(self) -> None:
        runner = self._runner
        self._runner = None
        if self._closing is not None:
            self._closing.set()
        if runner is None or runner.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(runner), timeout=_CLOSE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            log.warning("MCP server did not shut down in time; cancelling", server=self.server_name)
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        log.info("MCP server closed", server=self.server_name)


def stdio_transport_factory(server_name: str, config: McpServerConfig, timeout: float) -> CapabilityTransport:
    """Default transport factory used by the client."""
    return StdioTransport(server_name, config, timeout=timeout)
