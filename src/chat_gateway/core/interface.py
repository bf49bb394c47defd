"""
Abstract provider interface definition.

Defines the contract that all upstream provider adapters must implement.
"""

from abc import ABC, abstractmethod
from typing import List, AsyncIterator, Optional, Set, TYPE_CHECKING
from enum import Enum

from ..models.request import ChatRequest, ProviderConfig
from ..models.response import StreamEvent

if TYPE_CHECKING:
    from ..models.tools import Tool


class ProviderCapability(str, Enum):
    """Capabilities that a provider may support."""
    CHAT_COMPLETION = "chat_completion"
    STREAMING = "streaming"
    TOOL_USE = "tool_use"
    VISION = "vision"


class AbstractProvider(ABC):
    """
    Abstract base class for upstream LLM providers.

    An adapter is built from one resolved ProviderConfig and serves a single
    chat request. Streaming is exposed as an async iterator of provider
    stream events; closing the iterator cancels the upstream read.
    """

    def __init__(self, config: ProviderConfig, timeout: float = 60.0):
        self._config = config
        self._timeout = timeout

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    @abstractmethod
    def family(self) -> str:
        """
        Provider family (e.g., "openai", "anthropic", "google").

        Returns:
            Family identifier
        """
        pass

    @property
    @abstractmethod
    def capabilities(self) -> Set[ProviderCapability]:
        """
        Set of capabilities this provider supports.

        Returns:
            Set of ProviderCapability values
        """
        pass

    @abstractmethod
    def stream_chat(
        self,
        request: ChatRequest,
        tools: Optional[List["Tool"]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a chat completion.

        Args:
            request: Inbound chat request
            tools: Tools offered to the model

        Yields:
            TextDelta for generated text, ToolCallsDetected once the model
            has finished requesting tools, and a final StreamFinished
        """
        pass

    @abstractmethod
    async def aclose(self) -> None:
        """Release the underlying HTTP client."""
        pass

    def supports(self, capability: ProviderCapability) -> bool:
        """
        Check if provider supports a capability.

        Args:
            capability: Capability to check

        Returns:
            True if supported
        """
        return capability in self.capabilities

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(family={self.family!r}, model={self._config.model!r})"
