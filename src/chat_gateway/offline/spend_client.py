"""
Spend client used to replay queued spends.
"""

from typing import Optional

import httpx

from ..billing.ledger import HttpLedgerClient
from ..models.billing import SpendRequest, SpendResult

SPEND_PATH = "/v1/credits/spend"


class SpendClient:
    """Calls the gateway's credit spend endpoint as the signed-in user."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._ledger = HttpLedgerClient(
            base_url.rstrip("/") + SPEND_PATH,
            token,
            timeout=timeout,
            client=client,
        )

    async def spend(self, amount: int, idempotency_key: str) -> SpendResult:
        """
        Raises:
            LedgerError: The spend was refused or not acknowledged
        """
        return await self._ledger.spend(SpendRequest(
            amount=amount,
            idempotency_key=idempotency_key,
            description="Offline spend replay",
        ))

    async def aclose(self) -> None:
        await self._ledger.aclose()
