"""Tool contracts for threadpilot."""

from threadpilot.tools.registry import (
    APPROVAL_TYPES,
    EDITS,
    MCP_TOOLS,
    TERMINAL,
    Tool,
    ToolRegistry,
    read_cache_key,
)

__all__ = [
    "APPROVAL_TYPES",
    "EDITS",
    "MCP_TOOLS",
    "TERMINAL",
    "Tool",
    "ToolRegistry",
    "read_cache_key",
]
