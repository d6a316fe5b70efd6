"""Tool registry: one name-keyed lookup for plugin and tool-server tools."""

import re
import time
from typing import Any

from loguru import logger

from parlor.agent.tools.base import Tool, ToolCall, ToolContext, ToolDefinition, ToolResult
from parlor.errors import ToolError


class ToolRegistry:
    """
    Registry for agent tools.

    Plugins and tool-protocol servers both register Tool objects here, so
    execution is a single lookup by name.
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._sources: dict[str, str] = {}
        self._context: ToolContext | None = None

    def set_context(self, context: ToolContext) -> None:
        """Hand the per-activation context to every registered tool."""
        self._context = context
        for tool in self._tools.values():
            tool.set_context(context)

    def register(self, tool: Tool, source: str = "local") -> None:
        """Register a tool. A later registration under the same name wins."""
        if tool.name in self._tools:
            logger.warning(f"Tool {tool.name} from {source} replaces one from {self._sources.get(tool.name)}")
        self._tools[tool.name] = tool
        self._sources[tool.name] = source
        if self._context is not None:
            tool.set_context(self._context)

    def unregister(self, name: str) -> None:
        """Unregister a tool by name."""
        self._tools.pop(name, None)
        self._sources.pop(name, None)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def source_of(self, name: str) -> str | None:
        return self._sources.get(name)

    def get_definitions(self) -> list[ToolDefinition]:
        """Vendor-neutral definitions for every registered tool."""
        return [tool.to_definition() for tool in self._tools.values()]

    def get_schemas(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute_tool(self, call: ToolCall) -> ToolResult:
        """
        Execute a tool call.

        Tool failures never raise: they come back as a ToolResult with
        ``error`` set so the model can react to them.

        Raises:
            ToolError: If no tools are registered at all.
        """
        if not self._tools:
            raise ToolError("No tools initialized", details={"tool": call.name})

        tool = self._tools.get(call.name)
        if tool is None:
            return ToolResult(call_id=call.id, error=f"Tool '{call.name}' not found")

        start = time.monotonic()
        try:
            errors = tool.validate_params(call.input)
            if errors:
                return ToolResult(
                    call_id=call.id,
                    error=f"Invalid parameters for tool '{call.name}': " + "; ".join(errors),
                )
            output = await tool.execute(**call.input)
        except Exception as e:
            logger.error(f"Tool {call.name} ({self._sources.get(call.name)}) failed: {e}")
            return ToolResult(call_id=call.id, error=str(e) or type(e).__name__)
        duration = (time.monotonic() - start) * 1000
        logger.debug(
            f"Tool {call.name} finished in {duration:.1f}ms with params {self._sanitize(call.input)}"
        )
        return ToolResult(call_id=call.id, output=output)

    @staticmethod
    def _sanitize(value: Any, max_str_len: int = 200) -> Any:
        sensitive_key_re = re.compile(
            r"(token|secret|password|passwd|api[_-]?key|access[_-]?key|private[_-]?key|authorization|bearer)",
            re.IGNORECASE,
        )
        if isinstance(value, dict):
            return {
                str(k): "<redacted>" if sensitive_key_re.search(str(k)) else ToolRegistry._sanitize(v, max_str_len)
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [ToolRegistry._sanitize(v, max_str_len) for v in value]
        if isinstance(value, str) and len(value) > max_str_len:
            return value[:max_str_len] + f"... ({len(value) - max_str_len} more chars)"
        return value

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
