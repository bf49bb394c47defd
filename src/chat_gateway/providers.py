"""
Provider dispatch.

Maps a public model id to the upstream provider configuration that serves
it, and builds the streaming client for that configuration.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .core.config import ProviderSettings
from .core.errors import ProviderCredentialsError
from .core.interface import AbstractProvider
from .core.registry import ProviderRegistry, default_registry
from .models.request import ProviderConfig

logger = logging.getLogger(__name__)

BASE_MAX_TOKENS = 2000
BASE_TEMPERATURE = 0.7


@dataclass(frozen=True)
class ModelRoute:
    """Upstream model name and per-model overrides for a public model id."""
    upstream: str
    max_tokens: int = BASE_MAX_TOKENS
    streaming: bool = True


MODEL_ROUTES: Dict[str, ModelRoute] = {
    # OpenAI
    "gpt-3.5-turbo": ModelRoute("gpt-3.5-turbo"),
    "gpt-3.5": ModelRoute("gpt-3.5-turbo"),
    "gpt-4o": ModelRoute("gpt-4o", max_tokens=4000),
    "gpt-4": ModelRoute("gpt-4", max_tokens=8000),
    # Anthropic
    "claude-3-sonnet": ModelRoute("claude-3-sonnet-20240229", max_tokens=4000),
    "claude-sonnet": ModelRoute("claude-3-sonnet-20240229", max_tokens=4000),
    "claude-3-haiku": ModelRoute("claude-3-haiku-20240307"),
    # Google
    "gemini-pro": ModelRoute("gemini-2.0-flash"),
    "gemini-1.5-pro": ModelRoute("gemini-1.5-pro"),
    "gemini-flash": ModelRoute("gemini-1.5-flash"),
    "gemini-1.5-flash": ModelRoute("gemini-1.5-flash"),
    "gemini-1.5-flash-8b": ModelRoute("gemini-1.5-flash-8b"),
    "gemini-2.0-flash": ModelRoute("gemini-2.0-flash"),
    "gemini-2.0-flash-lite": ModelRoute("gemini-2.0-flash-lite"),
    "gemini-2.5-flash-preview": ModelRoute("gemini-2.5-flash-preview-05-20"),
    "gemini-2.5-flash-preview-05-20": ModelRoute("gemini-2.5-flash-preview-05-20"),
    "gemini-2.5-pro-preview": ModelRoute("gemini-2.5-pro-preview-06-05", max_tokens=8000),
    "gemini-2.5-pro-preview-06-05": ModelRoute("gemini-2.5-pro-preview-06-05", max_tokens=8000),
    "gemma-3": ModelRoute("gemma-2-27b-it"),
    "gemma-3n": ModelRoute("gemma-2-9b-it"),
    "aqa": ModelRoute("models/aqa", streaming=False),
}


def model_family(model_id: str) -> Optional[str]:
    """Provider family of a model id, by prefix."""
    if model_id.startswith("gpt-") or model_id.startswith("o1") or "openai" in model_id:
        return "openai"
    if model_id.startswith("claude-"):
        return "anthropic"
    if model_id.startswith(("gemini-", "gemma-")) or model_id == "aqa":
        return "google"
    return None


class ProviderDispatcher:
    """
    Resolves models to provider configurations.

    Credentials prefer the user's own key when one is supplied and allowed,
    then fall back to the server key for the family.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        registry: Optional[ProviderRegistry] = None,
    ):
        self.settings = settings
        self.registry = registry or default_registry(timeout=settings.timeout)

    def _server_credentials(self, family: str) -> Tuple[str, str]:
        settings = self.settings
        if family == "openai":
            return settings.openai_base_url, settings.openai_api_key
        if family == "anthropic":
            return settings.anthropic_base_url, settings.anthropic_api_key
        return settings.google_base_url, settings.google_api_key

    def resolve(
        self,
        model_id: str,
        has_custom_key: bool,
        custom_api_key: Optional[str] = None,
    ) -> Optional[ProviderConfig]:
        """
        Resolve a model id.

        Args:
            model_id: Public model identifier
            has_custom_key: Caller may use its own provider key
            custom_api_key: The caller's provider key

        Returns:
            Provider configuration, or None for an unsupported model

        Raises:
            ProviderCredentialsError: No usable key for a supported model
        """
        route = MODEL_ROUTES.get(model_id)
        family = model_family(model_id)
        if route is None or family is None:
            return None

        base_url, server_key = self._server_credentials(family)
        if has_custom_key and custom_api_key and custom_api_key.strip():
            api_key = custom_api_key.strip()
        else:
            api_key = (server_key or "").strip()

        if not api_key:
            logger.error(f"No API key configured for model {model_id}")
            raise ProviderCredentialsError(
                "API key not configured for this model", model=model_id
            )

        return ProviderConfig(
            family=family,
            base_url=base_url,
            api_key=api_key,
            model=route.upstream,
            max_tokens=route.max_tokens,
            temperature=BASE_TEMPERATURE,
            streaming=route.streaming,
        )

    def create_client(self, config: ProviderConfig) -> AbstractProvider:
        """Build the streaming client for a resolved configuration."""
        return self.registry.create_client(config)
