"""Tool sources and the bridge that merges them into one toolset."""

from .base import RegistryState, Tool, ToolParameter, ToolSource, validate_arguments
from .bridge import ToolBridge, sanitize_tool_name
from .decorators import tool
from .local import LocalToolRegistry
from .registry import MCPToolRegistry, ToolServerConfig, open_mcp_session

__all__ = [
    "RegistryState",
    "ToolSource",
    "Tool",
    "ToolParameter",
    "tool",
    "validate_arguments",
    "LocalToolRegistry",
    "MCPToolRegistry",
    "ToolServerConfig",
    "open_mcp_session",
    "ToolBridge",
    "sanitize_tool_name",
]
