"""
Credit ledger clients.

The ledger is the store of record for credit balances. The gateway only
needs one operation from it, an idempotent spend, reachable either over
HTTP (the spend RPC) or in-process through a LedgerStore.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from opentelemetry import trace

from ..core.errors import (
    InsufficientCreditsError,
    LedgerUnavailableError,
    UserNotFoundError,
)
from ..models.billing import SpendRequest, SpendResult
from .store import LedgerStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class LedgerClient(ABC):
    """Spend credits on behalf of one user."""

    @abstractmethod
    async def spend(self, request: SpendRequest) -> SpendResult:
        """
        Debit credits.

        Args:
            request: Spend request carrying the idempotency key

        Returns:
            Acknowledged spend outcome

        Raises:
            InsufficientCreditsError: Balance too low, nothing debited
            UserNotFoundError: No credit account for the user
            LedgerUnavailableError: Outcome unknown; safe to retry with the same key
        """
        pass

    async def aclose(self) -> None:
        """Release transport resources."""
        return None


class HttpLedgerClient(LedgerClient):
    """
    Ledger spend RPC over HTTP.

    Authenticates with the end user's bearer token so the ledger debits
    the account the token belongs to.
    """

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client.

        Args:
            url: Spend endpoint URL
            token: Bearer token of the user being charged
            timeout: Request timeout in seconds
            client: Shared HTTP client; one is created when omitted
        """
        self.url = url
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def spend(self, request: SpendRequest) -> SpendResult:
        with tracer.start_as_current_span("ledger_spend") as span:
            span.set_attribute("amount", request.amount)
            span.set_attribute("idempotency_key", request.idempotency_key)

            try:
                response = await self._client.post(
                    self.url,
                    headers={
                        "Authorization": f"Bearer {self._token}",
                        "Content-Type": "application/json",
                    },
                    json=request.model_dump(exclude_none=True),
                )
            except httpx.RequestError as e:
                logger.error(f"Ledger unreachable for {request.idempotency_key}: {e}")
                raise LedgerUnavailableError(f"Ledger unreachable: {e}")

            if response.status_code == 200:
                data = response.json()
                return SpendResult(
                    remaining=data.get("remaining", 0),
                    transaction_id=data.get("transaction_id", request.idempotency_key),
                    amount=data.get("amount", request.amount),
                    replayed=data.get("replayed", False),
                )

            body = response.text
            if response.status_code == 402 or "insufficient_credits" in body:
                raise InsufficientCreditsError()

            if response.status_code == 404 and "user_not_found" in body:
                raise UserNotFoundError("User credits not found")

            logger.error(f"Ledger spend failed: {response.status_code} - {body[:200]}")
            raise LedgerUnavailableError(f"Ledger spend failed: {response.status_code}")


class LocalLedgerClient(LedgerClient):
    """Spend directly against a LedgerStore in this process."""

    def __init__(self, store: LedgerStore, user_id: str):
        self._store = store
        self._user_id = user_id

    async def spend(self, request: SpendRequest) -> SpendResult:
        with tracer.start_as_current_span("ledger_spend") as span:
            span.set_attribute("amount", request.amount)
            span.set_attribute("idempotency_key", request.idempotency_key)
            return await self._store.spend(self._user_id, request)
