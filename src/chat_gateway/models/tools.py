"""
Tool models and tool-call normalization.

Providers describe tool calls in different shapes:

- OpenAI: {"id", "type": "function", "function": {"name", "arguments": "<json>"}}
- Anthropic: {"id", "type": "tool_use", "name", "input": {...}}
- Gemini and others: {"name", "args": {...}}

Every shape is parsed into its own model and normalized into a single
CanonicalToolCall before any routing logic looks at it.
"""

import json
import uuid
from typing import Optional, Dict, Any, Union, List, Tuple
from pydantic import BaseModel, Field, ValidationError

from ..core.errors import ToolExecutionError


class Tool(BaseModel):
    """Tool definition as stored in the tool registry."""
    id: str
    name: str
    description: str = ""
    json_schema: Dict[str, Any] = Field(default_factory=dict)
    endpoint: str
    cost_tokens: int = Field(default=0, ge=0)
    requires_premium: bool = False


class ToolCallLogEntry(BaseModel):
    """Record of an executed tool call, unique per (user_id, call_id)."""
    user_id: str
    tool_id: str
    call_id: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    tokens_spent: int = 0


class FunctionCall(BaseModel):
    name: str
    arguments: Optional[Union[str, Dict[str, Any]]] = None


class OpenAIToolCall(BaseModel):
    """OpenAI-style tool call with JSON-encoded arguments."""
    id: Optional[str] = None
    type: str = "function"
    function: FunctionCall

    def call_name(self) -> str:
        return self.function.name

    def parse_args(self) -> Dict[str, Any]:
        arguments = self.function.arguments
        if arguments is None or arguments == "":
            return {}
        if isinstance(arguments, dict):
            return arguments
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            raise ToolExecutionError("Invalid tool arguments")
        if not isinstance(parsed, dict):
            raise ToolExecutionError("Invalid tool arguments")
        return parsed


class FlatToolCall(BaseModel):
    """Tool call carrying the arguments as an object."""
    id: Optional[str] = None
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)

    def call_name(self) -> str:
        return self.name

    def parse_args(self) -> Dict[str, Any]:
        return self.args


class AnthropicToolUse(BaseModel):
    """Anthropic tool_use content block."""
    id: Optional[str] = None
    type: str = "tool_use"
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)

    def call_name(self) -> str:
        return self.name

    def parse_args(self) -> Dict[str, Any]:
        return self.input


ProviderToolCall = Union[OpenAIToolCall, FlatToolCall, AnthropicToolUse]


class CanonicalToolCall(BaseModel):
    """Provider-independent tool call."""
    id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


def parse_tool_call(raw: Dict[str, Any]) -> ProviderToolCall:
    """
    Parse a raw provider tool call into its tagged shape.

    Raises:
        ToolExecutionError: If the payload matches no known shape
    """
    try:
        if "function" in raw:
            return OpenAIToolCall.model_validate(raw)
        if "input" in raw:
            return AnthropicToolUse.model_validate(raw)
        if "name" in raw:
            return FlatToolCall.model_validate(raw)
    except ValidationError as e:
        raise ToolExecutionError(f"Malformed tool call: {e.errors()[0].get('msg')}")
    raise ToolExecutionError("Malformed tool call")


def normalize_tool_call(raw: Dict[str, Any]) -> CanonicalToolCall:
    """Normalize any supported tool call shape into a CanonicalToolCall."""
    call = parse_tool_call(raw)
    return CanonicalToolCall(
        id=call.id or f"call_{uuid.uuid4().hex[:24]}",
        name=call.call_name(),
        args=call.parse_args(),
    )


def describe_tool_call(raw: Dict[str, Any]) -> Tuple[str, str]:
    """Best-effort (call id, tool name) of a raw call, for error results."""
    function = raw.get("function")
    name = raw.get("name")
    if isinstance(function, dict):
        name = function.get("name", name)
    return str(raw.get("id") or ""), str(name or "unknown")


class ToolResult(BaseModel):
    """Result of one tool call, in the shape re-injected into the stream."""
    role: str = "tool"
    tool_call_id: str
    name: str
    content: str
    tokens_spent: int = 0
    is_error: bool = False

    @classmethod
    def success(cls, call_id: str, name: str, result: Any, tokens_spent: int = 0) -> "ToolResult":
        return cls(
            tool_call_id=call_id,
            name=name,
            content=json.dumps(result),
            tokens_spent=tokens_spent,
        )

    @classmethod
    def failure(cls, call_id: str, name: str, error: str) -> "ToolResult":
        return cls(
            tool_call_id=call_id,
            name=name,
            content=json.dumps({"error": error}),
            is_error=True,
        )

    def to_message(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "content": self.content,
        }


class ToolBatchResult(BaseModel):
    """Results of one batch of tool calls, in input order."""
    results: List[ToolResult] = Field(default_factory=list)
    total_tokens_spent: int = 0
