"""
Chat gateway error types.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(self, message: str, gateway: str = None):
        self.message = message
        self.gateway = gateway
        super().__init__(message)


class GatewayNotFoundError(GatewayError):
    """Raised when no adapter is registered for a provider family."""
    pass


class GatewayConnectionError(GatewayError):
    """Raised when connection to an upstream provider fails."""
    pass


class GatewayAuthenticationError(GatewayError):
    """Raised when the upstream provider rejects our credentials."""
    pass


class GatewayRateLimitError(GatewayError):
    """Raised when rate limit is exceeded."""

    def __init__(self, message: str, gateway: str = None, retry_after: float = None):
        super().__init__(message, gateway)
        self.retry_after = retry_after


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Seconds to wait from a Retry-After header.

    Accepts delay-seconds or an HTTP-date; anything else yields None.
    """
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class ProviderCredentialsError(GatewayError):
    """Raised when neither a server key nor a custom key is available for a model."""

    def __init__(self, message: str, model: str = None):
        super().__init__(message)
        self.model = model


class AuthenticationError(GatewayError):
    """Raised when an inbound request cannot be authenticated."""
    pass


class ChatRequestError(GatewayError):
    """
    Raised before streaming starts when a chat request must be refused.

    Carries the HTTP status the surface should answer with and, for
    entitlement denials, a machine-readable reason.
    """

    def __init__(self, message: str, status_code: int = 400, reason: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class LedgerError(GatewayError):
    """Base exception for credit ledger failures."""
    pass


class InsufficientCreditsError(LedgerError):
    """Raised when the ledger refuses a spend for lack of credits."""

    code = "insufficient_credits"

    def __init__(self, message: str = "insufficient_credits", remaining: int = None):
        super().__init__(message)
        self.remaining = remaining


class LedgerUnavailableError(LedgerError):
    """Raised when the ledger could not be reached or did not acknowledge a spend."""

    code = "billing_unavailable"


class UserNotFoundError(LedgerError):
    """Raised when the ledger has no credit account for the user."""

    code = "user_not_found"


class ToolExecutionError(GatewayError):
    """Raised when a single tool call cannot be completed."""
    pass
