"""
Provider adapters for the upstream LLM families.
"""

from .openai_adapter import OpenAIAdapter
from .anthropic_adapter import AnthropicAdapter
from .google_adapter import GoogleAdapter

__all__ = [
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GoogleAdapter",
]
