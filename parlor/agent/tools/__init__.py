"""Agent tools module."""

from parlor.agent.tools.base import Tool, ToolCall, ToolContext, ToolDefinition, ToolResult
from parlor.agent.tools.registry import ToolRegistry

__all__ = ["Tool", "ToolCall", "ToolContext", "ToolDefinition", "ToolResult", "ToolRegistry"]
