"""
Unified models for requests, streams, billing and tools.
"""

from .request import ChatRequest, Message, ProviderConfig
from .response import Usage, TextDelta, ToolCallsDetected, StreamFinished, StreamEvent
from .billing import SpendRequest, SpendResult, SpendStatus, SpendTransaction, QueuedSpend
from .tools import Tool, ToolCallLogEntry, CanonicalToolCall, ToolResult, ToolBatchResult

__all__ = [
    "ChatRequest",
    "Message",
    "ProviderConfig",
    "Usage",
    "TextDelta",
    "ToolCallsDetected",
    "StreamFinished",
    "StreamEvent",
    "SpendRequest",
    "SpendResult",
    "SpendStatus",
    "SpendTransaction",
    "QueuedSpend",
    "Tool",
    "ToolCallLogEntry",
    "CanonicalToolCall",
    "ToolResult",
    "ToolBatchResult",
]
