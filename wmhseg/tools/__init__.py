"""External tool invocation layer."""

from wmhseg.tools.runner import ToolInvocation, ToolResult, ToolRunner

__all__ = [
    "ToolInvocation",
    "ToolResult",
    "ToolRunner",
]
