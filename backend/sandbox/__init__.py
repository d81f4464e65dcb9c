"""Sandboxed tool-calling boundary.

This package holds the closed tool registry, argument validation, project
authorization, and the per-run ``ToolExecutionContext`` that executes tool
calls without ever raising.
"""

from sandbox.calls import ToolCall, ToolResult, summarize_tool_results
from sandbox.context import ToolExecutionContext
from sandbox.registry import get_default_tool_names, get_tool_guide, is_tool_allowed

__all__ = [
    "ToolCall",
    "ToolExecutionContext",
    "ToolResult",
    "get_default_tool_names",
    "get_tool_guide",
    "is_tool_allowed",
    "summarize_tool_results",
]
