"""Tools that let the model inspect connected MCP servers."""

import json
from typing import TYPE_CHECKING, Any

from vibey.mcp.models import McpServerState
from vibey.tools.registry import Tool

if TYPE_CHECKING:
    from vibey.mcp.client import McpClient

_SERVER_NAME_PARAMETERS = {
    "type": "object",
    "properties": {
        "serverName": {
            "type": "string",
            "description": "Optional: restrict the answer to one server",
        },
    },
}


def _dumps(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


class McpIntrospectionTool(Tool):
    """Base for tools answering from the client's catalogs."""

    def __init__(self, client: "McpClient"):
        self.client = client

    def _find_server(self, server_name: str) -> tuple[McpServerState | None, str | None]:
        state = self.client.get_server_state(server_name)
        if state is not None:
            return state, None
        return None, _dumps({
            "error": f"Server '{server_name}' not found",
            "availableServers": [s.name for s in self.client.get_server_states()],
        })


class GetMcpServersTool(McpIntrospectionTool):
    name = "get_mcp_servers"
    description = (
        "Get information about available MCP servers, their connection status, and "
        "registered tools. Use this to check what MCP servers are available to you."
    )
    parameters = _SERVER_NAME_PARAMETERS

    async def execute(self, serverName: str | None = None, **kwargs: Any) -> str:
        states = self.client.get_server_states()
        if not states:
            return _dumps({"message": "No MCP servers configured or available", "servers": []})

        if serverName:
            state, missing = self._find_server(serverName)
            if state is None:
                return missing or ""
            return _dumps({"server": state.to_summary()})

        counts = self.client.summary()
        return _dumps({
            "totalServers": counts["total"],
            "connectedServers": counts["connected"],
            "connectingServers": counts["connecting"],
            "errorServers": counts["error"],
            "servers": [state.to_summary() for state in states],
        })


class ListMcpToolsTool(McpIntrospectionTool):
    name = "list_mcp_tools"
    description = "List all tools registered from MCP servers. Optionally filter by server name."
    parameters = _SERVER_NAME_PARAMETERS

    async def execute(self, serverName: str | None = None, **kwargs: Any) -> str:
        if serverName:
            state, missing = self._find_server(serverName)
            if state is None:
                return missing or ""
            return _dumps({
                "server": state.name,
                "toolCount": state.tool_count,
                "tools": list(state.registered_tools),
            })

        states = self.client.get_server_states()
        return _dumps({
            "totalServers": len(states),
            "toolsByServer": [
                {
                    "server": state.name,
                    "status": state.status.value,
                    "toolCount": state.tool_count,
                    "tools": list(state.registered_tools),
                }
                for state in states
            ],
        })


class GetMcpResourcesTool(McpIntrospectionTool):
    name = "get_mcp_resources"
    description = "Get resources available from MCP servers. Resources are data sources that servers expose."
    parameters = _SERVER_NAME_PARAMETERS

    async def execute(self, serverName: str | None = None, **kwargs: Any) -> str:
        resources = self.client.get_resources(serverName)
        if not resources:
            where = f"server '{serverName}'" if serverName else "any MCP server"
            return _dumps({"message": f"No resources available from {where}", "resources": []})
        return _dumps({
            "resourceCount": len(resources),
            "resources": [
                {
                    "uri": resource.uri,
                    "name": resource.name,
                    "description": resource.description,
                    "mimeType": resource.mime_type,
                    "server": resource.server,
                }
                for resource in resources
            ],
        })


class GetMcpPromptsTool(McpIntrospectionTool):
    name = "get_mcp_prompts"
    description = "Get prompts available from MCP servers. Prompts are pre-defined templates that servers expose."
    parameters = _SERVER_NAME_PARAMETERS

    async def execute(self, serverName: str | None = None, **kwargs: Any) -> str:
        prompts = self.client.get_prompts(serverName)
        if not prompts:
            where = f"server '{serverName}'" if serverName else "any MCP server"
            return _dumps({"message": f"No prompts available from {where}", "prompts": []})
        return _dumps({
            "promptCount": len(prompts),
            "prompts": [
                prompt.model_dump(exclude_none=True)
                for prompt in prompts
            ],
        })


class ReadMcpResourceTool(McpIntrospectionTool):
    name = "read_mcp_resource"
    description = "Read the contents of an MCP resource by URI (see get_mcp_resources)."
    parameters = {
        "type": "object",
        "properties": {
            "uri": {"type": "string", "description": "Resource URI"},
        },
        "required": ["uri"],
        "additionalProperties": False,
    }

    async def execute(self, uri: str, **kwargs: Any) -> str:
        return await self.client.read_resource(uri)


class GetMcpPromptTool(McpIntrospectionTool):
    name = "get_mcp_prompt"
    description = "Render an MCP prompt by name with optional string arguments (see get_mcp_prompts)."
    parameters = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Prompt name"},
            "arguments": {
                "type": "object",
                "description": "Prompt arguments as string values",
            },
        },
        "required": ["name"],
    }

    async def execute(self, name: str, arguments: dict[str, Any] | None = None, **kwargs: Any) -> str:
        args = {key: str(value) for key, value in (arguments or {}).items()}
        return await self.client.get_prompt(name, args or None)


def create_mcp_tools(client: "McpClient") -> list[Tool]:
    return [
        GetMcpServersTool(client),
        ListMcpToolsTool(client),
        GetMcpResourcesTool(client),
        GetMcpPromptsTool(client),
        ReadMcpResourceTool(client),
        GetMcpPromptTool(client),
    ]
