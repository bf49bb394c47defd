"""
Credit ledger models.
"""

from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from pydantic import BaseModel, Field


class SpendStatus(str, Enum):
    """Lifecycle of a spend transaction."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SpendRequest(BaseModel):
    """Body of the ledger spend RPC."""
    amount: int = Field(..., gt=0, description="Credits to debit")
    idempotency_key: str = Field(..., min_length=1)
    model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SpendResult(BaseModel):
    """Acknowledged outcome of a spend."""
    remaining: int
    transaction_id: str
    amount: int
    replayed: bool = False


class SpendTransaction(BaseModel):
    """
    One logical spend attempt as recorded by the ledger.

    Created pending, then completed or failed; never modified afterwards.
    """
    id: str
    idempotency_key: str
    user_id: str
    amount: int
    model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    status: SpendStatus = SpendStatus.PENDING
    error: Optional[str] = None
    remaining: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QueuedSpend(BaseModel):
    """A spend deferred by the client while the ledger was unreachable."""
    id: str
    amount: int
    timestamp_created: float
    retry_count: int = 0
