"""Tool registry and remote invocation client."""

from toolflow.tools.client import McpClient, ToolClient
from toolflow.tools.registry import ToolRegistry, ToolRepository, ToolStatus, ToolView

__all__ = [
    "McpClient",
    "ToolClient",
    "ToolRegistry",
    "ToolRepository",
    "ToolStatus",
    "ToolView",
]
