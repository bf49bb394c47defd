"""
Core gateway components.
"""

from .errors import (
    GatewayError,
    GatewayNotFoundError,
    GatewayConnectionError,
    GatewayAuthenticationError,
    GatewayRateLimitError,
    ProviderCredentialsError,
    AuthenticationError,
    ChatRequestError,
    LedgerError,
    InsufficientCreditsError,
    LedgerUnavailableError,
    UserNotFoundError,
    ToolExecutionError,
)
from .config import GatewaySettings, load_config
from .interface import AbstractProvider, ProviderCapability
from .registry import ProviderRegistry, default_registry

__all__ = [
    "AbstractProvider",
    "ProviderCapability",
    "ProviderRegistry",
    "default_registry",
    "GatewaySettings",
    "load_config",
    "GatewayError",
    "GatewayNotFoundError",
    "GatewayConnectionError",
    "GatewayAuthenticationError",
    "GatewayRateLimitError",
    "ProviderCredentialsError",
    "AuthenticationError",
    "ChatRequestError",
    "LedgerError",
    "InsufficientCreditsError",
    "LedgerUnavailableError",
    "UserNotFoundError",
    "ToolExecutionError",
]
