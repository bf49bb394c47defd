"""
Tool discovery, execution and routing.
"""

from .registry import (
    ToolRegistry,
    ToolCallLog,
    HttpToolRegistry,
    HttpToolCallLog,
    InMemoryToolRegistry,
    InMemoryToolCallLog,
)
from .executor import ToolExecutor
from .router import ToolRouter, validate_arguments, summarize_tool_results

__all__ = [
    "ToolRegistry",
    "ToolCallLog",
    "HttpToolRegistry",
    "HttpToolCallLog",
    "InMemoryToolRegistry",
    "InMemoryToolCallLog",
    "ToolExecutor",
    "ToolRouter",
    "validate_arguments",
    "summarize_tool_results",
]
