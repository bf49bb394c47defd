"""
Shared fixtures for chat gateway tests.
"""
import asyncio
from typing import Dict, List, Optional

import pytest

from chat_gateway.auth import Authenticator, Principal
from chat_gateway.billing.ledger import LedgerClient
from chat_gateway.billing.store import InMemoryLedgerStore
from chat_gateway.core.errors import AuthenticationError
from chat_gateway.core.interface import AbstractProvider, ProviderCapability
from chat_gateway.models.billing import SpendRequest, SpendResult
from chat_gateway.models.response import StreamEvent


class StaticAuthenticator(Authenticator):
    """Resolves a fixed set of tokens without calling the identity provider."""

    def __init__(self, principals: Dict[str, Principal]):
        super().__init__("http://identity.test")
        self.principals = principals

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("Missing authorization header")
        principal = self.principals.get(authorization[7:])
        if principal is None:
            raise AuthenticationError("Unauthorized")
        return principal


class ScriptedProvider(AbstractProvider):
    """Provider that replays a fixed list of stream events."""

    # Exceptions in the list are raised at that point of the stream
    events: List[StreamEvent] = []
    instances: List["ScriptedProvider"] = []

    def __init__(self, config, timeout: float = 60.0):
        super().__init__(config, timeout)
        self.closed = False
        self.requests = []
        ScriptedProvider.instances.append(self)

    @property
    def family(self) -> str:
        return self._config.family

    @property
    def capabilities(self):
        return {ProviderCapability.CHAT_COMPLETION, ProviderCapability.STREAMING, ProviderCapability.TOOL_USE}

    async def stream_chat(self, request, tools=None):
        self.requests.append((request, tools))
        for event in list(self.events):
            # Let background billing tasks run between events
            await asyncio.sleep(0)
            if isinstance(event, Exception):
                raise event
            yield event

    async def aclose(self) -> None:
        self.closed = True


class RecordingLedger(LedgerClient):
    """
    Ledger client that records every spend attempt.

    Failures are consumed in order, one per call; keys that were already
    applied are replayed without a second debit.
    """

    def __init__(self, balance: int = 1_000_000, failures: Optional[List[Exception]] = None):
        self.balance = balance
        self.failures = list(failures or [])
        self.calls: List[SpendRequest] = []
        self.applied: Dict[str, int] = {}

    @property
    def debited(self) -> int:
        return sum(self.applied.values())

    async def spend(self, request: SpendRequest) -> SpendResult:
        self.calls.append(request)
        if self.failures:
            raise self.failures.pop(0)
        if request.idempotency_key not in self.applied:
            self.applied[request.idempotency_key] = request.amount
            self.balance -= request.amount
        return SpendResult(
            remaining=self.balance,
            transaction_id=request.idempotency_key,
            amount=request.amount,
        )


@pytest.fixture
def user() -> Principal:
    return Principal(user_id="user-1", token="user-token")


@pytest.fixture
def subscriber() -> Principal:
    return Principal(user_id="user-2", is_subscriber=True, token="sub-token")


@pytest.fixture
def ledger_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore({"user-1": 1000, "user-2": 1000})


@pytest.fixture(autouse=True)
def reset_scripted_provider():
    ScriptedProvider.events = []
    ScriptedProvider.instances = []
    yield
    ScriptedProvider.events = []
    ScriptedProvider.instances = []
