"""
Unified request models for the chat gateway.
"""

from typing import Optional, List, Dict, Any, Union, Literal
from pydantic import BaseModel, Field


class Message(BaseModel):
    """
    Unified message format.

    Supports:
    - System messages
    - User messages (text or multimodal)
    - Assistant messages
    - Tool messages (results)
    """
    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None

    class Config:
        extra = "allow"
        frozen = True

    def text(self) -> str:
        """Plain text of the message, joining multimodal text parts."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return " ".join(
            part.get("text", "") for part in self.content
            if isinstance(part, dict) and part.get("type", "text") == "text"
        )


class ChatRequest(BaseModel):
    """
    Inbound chat request.

    Field names follow the mobile client's camelCase wire format through
    aliases; snake_case names are accepted as well.
    """
    model: str = Field(..., min_length=1, description="Model identifier")
    messages: List[Message] = Field(..., description="Conversation messages")
    persona_id: Optional[str] = Field(default=None, alias="personaId")
    custom_api_key: Optional[str] = Field(default=None, alias="customApiKey")
    has_custom_key: bool = Field(default=False, alias="hasCustomKey")
    stream: bool = True

    class Config:
        extra = "ignore"
        frozen = True
        populate_by_name = True

    def prompt_text(self) -> str:
        """All message contents joined, used for prompt token estimation."""
        return " ".join(m.text() for m in self.messages)


class ProviderConfig(BaseModel):
    """
    Upstream provider configuration resolved once per request.
    """
    family: Literal["openai", "anthropic", "google"]
    base_url: str
    api_key: str = Field(repr=False)
    model: str = Field(..., description="Upstream model name")
    max_tokens: int = 2000
    temperature: float = 0.7
    streaming: bool = True

    class Config:
        frozen = True


def tool_definitions_openai(tools: List[Any]) -> List[Dict[str, Any]]:
    """Render registry tools as OpenAI function definitions."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.json_schema or {"type": "object", "properties": {}},
            },
        }
        for t in tools
    ]


def to_openai_format(
    request: ChatRequest,
    config: ProviderConfig,
    tools: Optional[List[Any]] = None,
) -> Dict[str, Any]:
    """Convert to OpenAI API format."""
    data = {
        "model": config.model,
        "messages": [
            {k: v for k, v in m.model_dump(include={"role", "content", "name", "tool_call_id"}).items()
             if v is not None}
            for m in request.messages
        ],
        "max_tokens": config.max_tokens,
        "temperature": config.temperature,
        "stream": config.streaming,
    }

    if tools:
        data["tools"] = tool_definitions_openai(tools)

    return data


def to_anthropic_format(
    request: ChatRequest,
    config: ProviderConfig,
    tools: Optional[List[Any]] = None,
) -> Dict[str, Any]:
    """Convert to Anthropic API format."""
    # Extract system message
    system = None
    messages = []

    for m in request.messages:
        if m.role == "system":
            system = m.text()
        elif m.role == "tool":
            messages.append({
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": m.tool_call_id,
                    "content": m.text(),
                }],
            })
        else:
            messages.append({"role": m.role, "content": m.content})

    data = {
        "model": config.model,
        "messages": messages,
        "max_tokens": config.max_tokens,
        "temperature": config.temperature,
    }

    if system:
        data["system"] = system

    if config.streaming:
        data["stream"] = True

    if tools:
        data["tools"] = [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.json_schema or {"type": "object", "properties": {}},
            }
            for t in tools
        ]

    return data


def to_gemini_format(
    request: ChatRequest,
    config: ProviderConfig,
    tools: Optional[List[Any]] = None,
) -> Dict[str, Any]:
    """Convert to Gemini generateContent format."""
    contents = []
    system_parts = []

    for m in request.messages:
        if m.role == "system":
            system_parts.append({"text": m.text()})
            continue
        role = "model" if m.role == "assistant" else "user"
        contents.append({"role": role, "parts": [{"text": m.text()}]})

    data: Dict[str, Any] = {
        "contents": contents,
        "generationConfig": {
            "temperature": config.temperature,
            "maxOutputTokens": config.max_tokens,
        },
    }

    if system_parts:
        data["systemInstruction"] = {"parts": system_parts}

    if tools:
        data["tools"] = [{
            "functionDeclarations": [
                {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.json_schema or {"type": "object", "properties": {}},
                }
                for t in tools
            ]
        }]

    return data
