"""
Credit billing: cost model, ledger access and streaming metering.
"""

from .costs import (
    TOKEN_COSTS,
    calculate_token_cost,
    calculate_streaming_cost,
    estimate_tokens,
    estimate_request_cost,
    streaming_estimate_per_char,
)
from .store import LedgerStore, InMemoryLedgerStore, PostgresLedgerStore
from .ledger import LedgerClient, HttpLedgerClient, LocalLedgerClient
from .middleware import BillingState, StreamSession, StreamingBillingMiddleware

__all__ = [
    "TOKEN_COSTS",
    "calculate_token_cost",
    "calculate_streaming_cost",
    "estimate_tokens",
    "estimate_request_cost",
    "streaming_estimate_per_char",
    "LedgerStore",
    "InMemoryLedgerStore",
    "PostgresLedgerStore",
    "LedgerClient",
    "HttpLedgerClient",
    "LocalLedgerClient",
    "BillingState",
    "StreamSession",
    "StreamingBillingMiddleware",
]
