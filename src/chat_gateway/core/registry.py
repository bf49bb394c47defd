"""
Provider registry for managing upstream adapter classes.
"""

import logging
from typing import Dict, List, Type
from .interface import AbstractProvider
from .errors import GatewayNotFoundError
from ..models.request import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Registry for provider adapters.

    Maps a provider family to the adapter class that speaks its wire
    protocol, and builds per-request streaming clients.
    """

    def __init__(self, timeout: float = 60.0):
        """
        Initialize the registry.

        Args:
            timeout: Upstream request timeout in seconds
        """
        self._adapters: Dict[str, Type[AbstractProvider]] = {}
        self._timeout = timeout

    def register_adapter(
        self,
        family: str,
        adapter_class: Type[AbstractProvider]
    ) -> None:
        """
        Register a provider adapter class.

        Args:
            family: Family identifier (e.g., "openai", "anthropic")
            adapter_class: Adapter class to register
        """
        self._adapters[family] = adapter_class
        logger.info(f"Registered provider adapter: {family}")

    def create_client(self, config: ProviderConfig) -> AbstractProvider:
        """
        Create a streaming client for a resolved provider configuration.

        Args:
            config: Resolved provider configuration

        Returns:
            Adapter instance bound to the configuration

        Raises:
            GatewayNotFoundError: If no adapter handles the family
        """
        if config.family not in self._adapters:
            raise GatewayNotFoundError(f"Unknown provider family: {config.family}")

        adapter_class = self._adapters[config.family]
        return adapter_class(config, timeout=self._timeout)

    def list_families(self) -> List[str]:
        """List registered provider families."""
        return sorted(self._adapters)


def default_registry(timeout: float = 60.0) -> ProviderRegistry:
    """Registry with the built-in OpenAI, Anthropic and Google adapters."""
    from ..adapters import OpenAIAdapter, AnthropicAdapter, GoogleAdapter

    registry = ProviderRegistry(timeout=timeout)
    registry.register_adapter("openai", OpenAIAdapter)
    registry.register_adapter("anthropic", AnthropicAdapter)
    registry.register_adapter("google", GoogleAdapter)
    return registry
