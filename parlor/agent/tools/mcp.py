"""Tools served by external tool-protocol (MCP) servers over stdio."""

from contextlib import AsyncExitStack
from typing import Any

from loguru import logger
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from parlor.agent.tools.base import Tool
from parlor.agent.tools.registry import ToolRegistry
from parlor.config.schema import MCPServerConfig
from parlor.errors import ToolError


class MCPToolServer:
    """A running tool-protocol server process and its client session."""

    def __init__(self, config: MCPServerConfig):
        self.config = config
        self.session: ClientSession | None = None
        self.tools: list["MCPTool"] = []
        self._stack: AsyncExitStack | None = None

    @property
    def name(self) -> str:
        return self.config.name

    async def start(self) -> list["MCPTool"]:
        """Launch the server, perform the handshake and list its tools."""
        logger.info(f"Starting MCP server {self.name}: {self.config.command} {' '.join(self.config.args)}")
        params = StdioServerParameters(
            command=self.config.command,
            args=list(self.config.args),
            env=dict(self.config.env) or None,
        )
        self._stack = AsyncExitStack()
        try:
            read, write = await self._stack.enter_async_context(stdio_client(params))
            self.session = await self._stack.enter_async_context(ClientSession(read, write))
            await self.session.initialize()
            response = await self.session.list_tools()
        except Exception:
            await self.close()
            raise
        self.tools = [
            MCPTool(
                server=self,
                tool_name=t.name,
                tool_description=t.description or "",
                input_schema=dict(t.inputSchema or {"type": "object", "properties": {}}),
            )
            for t in response.tools
        ]
        logger.info(f"MCP server {self.name} ready with {len(self.tools)} tools")
        return self.tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """
        Invoke a tool and return its text content.

        Raises:
            ToolError: If the server is not running or reports an error.
        """
        if self.session is None:
            raise ToolError(f"MCP server {self.name} is not running", details={"tool": name})
        result = await self.session.call_tool(name, arguments=arguments)
        text = "\n".join(
            getattr(block, "text", "") for block in result.content if getattr(block, "type", "") == "text"
        )
        if result.isError:
            raise ToolError(text or f"{name} failed on {self.name}", details={"server": self.name, "tool": name})
        return text

    async def close(self) -> None:
        if self._stack is not None:
            try:
                await self._stack.aclose()
            except Exception as e:
                logger.warning(f"Error closing MCP server {self.name}: {e}")
        self._stack = None
        self.session = None


class MCPTool(Tool):
    """Adapter exposing one server tool through the Tool interface."""

    def __init__(self, server: MCPToolServer, tool_name: str, tool_description: str, input_schema: dict[str, Any]):
        super().__init__()
        self._server = server
        self._name = tool_name
        self._description = tool_description
        self._schema = input_schema

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._schema

    async def execute(self, **kwargs: Any) -> str:
        return await self._server.call_tool(self._name, kwargs)


class MCPServerPool:
    """Starts configured servers once and registers their tools."""

    def __init__(self):
        self.servers: dict[str, MCPToolServer] = {}

    async def initialize(self, configs: list[MCPServerConfig], registry: ToolRegistry) -> int:
        """Start servers not yet running. A failing server is logged and skipped. Returns tools added."""
        added = 0
        for config in configs:
            if config.name in self.servers:
                continue
            server = MCPToolServer(config)
            try:
                tools = await server.start()
            except Exception as e:
                logger.error(f"Failed to initialize MCP server {config.name}: {e}")
                continue
            self.servers[config.name] = server
            for tool in tools:
                registry.register(tool, source=f"mcp:{config.name}")
            added += len(tools)
        return added

    async def close(self) -> None:
        for server in self.servers.values():
            await server.close()
        self.servers.clear()
