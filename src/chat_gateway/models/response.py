"""
Unified response models for the chat gateway.

Upstream adapters yield provider stream events; the orchestrator turns them
into the server-sent event frames the client consumes.
"""

import json
from typing import Optional, List, Dict, Any, Union, Literal
from pydantic import BaseModel, Field


class Usage(BaseModel):
    """Token usage and credit cost of one chat request."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_cost: int = 0

    # Credits charged for tool executions, when any
    tool_cost: Optional[int] = None


# Provider stream events

class TextDelta(BaseModel):
    """A chunk of generated text."""
    kind: Literal["text"] = "text"
    text: str


class ToolCallsDetected(BaseModel):
    """Tool calls requested by the model, in the provider's own shape."""
    kind: Literal["tool_calls"] = "tool_calls"
    calls: List[Dict[str, Any]] = Field(default_factory=list)


class StreamFinished(BaseModel):
    """End of the upstream stream."""
    kind: Literal["finished"] = "finished"
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


StreamEvent = Union[TextDelta, ToolCallsDetected, StreamFinished]


# Client frames

def sse_frame(payload: Dict[str, Any]) -> str:
    """Encode one server-sent event frame."""
    return f"data: {json.dumps(payload)}\n\n"


def token_frame(token: str) -> str:
    return sse_frame({"token": token})


def error_frame(error: str) -> str:
    return sse_frame({"error": error})


def tool_result_frame(result: Dict[str, Any]) -> str:
    return sse_frame({
        "role": "tool",
        "tool_call_id": result.get("tool_call_id"),
        "name": result.get("name"),
        "content": result.get("content"),
    })


def done_frame(usage: Usage) -> str:
    return sse_frame({"done": True, "usage": usage.model_dump(exclude_none=True)})
