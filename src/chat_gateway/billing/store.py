"""
Ledger stores backing the spend RPC.

Both stores give the two guarantees the gateway relies on: a spend never
takes a balance below zero (atomic decrement with a floor check), and a
repeated idempotency key replays the recorded outcome instead of debiting
again. Keys are scoped per user.
"""

import json
import uuid
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import asyncpg

from ..core.errors import InsufficientCreditsError, UserNotFoundError
from ..models.billing import SpendRequest, SpendResult, SpendStatus, SpendTransaction

logger = logging.getLogger(__name__)


class LedgerStore(ABC):
    """Transactional credit balances."""

    @abstractmethod
    async def spend(self, user_id: str, request: SpendRequest) -> SpendResult:
        pass

    @abstractmethod
    async def balance(self, user_id: str) -> Optional[int]:
        pass


def _replay(transaction: SpendTransaction) -> SpendResult:
    """Outcome of a transaction already recorded under the same key."""
    if transaction.status == SpendStatus.COMPLETED:
        return SpendResult(
            remaining=transaction.remaining or 0,
            transaction_id=transaction.id,
            amount=transaction.amount,
            replayed=True,
        )
    if transaction.error == UserNotFoundError.code:
        raise UserNotFoundError("User credits not found")
    raise InsufficientCreditsError(remaining=transaction.remaining)


class InMemoryLedgerStore(LedgerStore):
    """
    Process-local ledger.

    Used for tests and single-node development; one asyncio lock
    serializes every spend.
    """

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._balances: Dict[str, int] = dict(balances or {})
        self._transactions: Dict[Tuple[str, str], SpendTransaction] = {}
        self._log: List[SpendTransaction] = []
        self._lock = asyncio.Lock()

    async def deposit(self, user_id: str, amount: int) -> int:
        """Add credits to an account, creating it when needed."""
        async with self._lock:
            self._balances[user_id] = self._balances.get(user_id, 0) + amount
            return self._balances[user_id]

    async def balance(self, user_id: str) -> Optional[int]:
        return self._balances.get(user_id)

    def transactions(self, user_id: Optional[str] = None) -> List[SpendTransaction]:
        """Recorded transactions in submission order."""
        return [
            self._transactions[(t.user_id, t.idempotency_key)]
            for t in self._log
            if user_id is None or t.user_id == user_id
        ]

    def total_spent(self, user_id: str) -> int:
        """Sum of completed debits for a user."""
        return sum(
            t.amount for t in self.transactions(user_id)
            if t.status == SpendStatus.COMPLETED
        )

    async def spend(self, user_id: str, request: SpendRequest) -> SpendResult:
        async with self._lock:
            key = (user_id, request.idempotency_key)
            existing = self._transactions.get(key)
            if existing is not None:
                logger.info(f"Replaying spend {request.idempotency_key} for user {user_id}")
                return _replay(existing)

            pending = SpendTransaction(
                id=str(uuid.uuid4()),
                idempotency_key=request.idempotency_key,
                user_id=user_id,
                amount=request.amount,
                model=request.model,
                prompt_tokens=request.prompt_tokens,
                completion_tokens=request.completion_tokens,
                metadata=request.metadata or {},
            )
            self._log.append(pending)

            current = self._balances.get(user_id)
            if current is None:
                self._transactions[key] = pending.model_copy(update={
                    "status": SpendStatus.FAILED,
                    "error": UserNotFoundError.code,
                })
                raise UserNotFoundError("User credits not found")

            if current < request.amount:
                self._transactions[key] = pending.model_copy(update={
                    "status": SpendStatus.FAILED,
                    "error": InsufficientCreditsError.code,
                    "remaining": current,
                })
                raise InsufficientCreditsError(remaining=current)

            self._balances[user_id] = current - request.amount
            completed = pending.model_copy(update={
                "status": SpendStatus.COMPLETED,
                "remaining": self._balances[user_id],
            })
            self._transactions[key] = completed

            return SpendResult(
                remaining=completed.remaining,
                transaction_id=completed.id,
                amount=completed.amount,
            )


class PostgresLedgerStore(LedgerStore):
    """
    Ledger backed by PostgreSQL.

    A spend is one database transaction: the pending row is inserted first
    so a concurrent spend with the same key blocks on the unique index and
    then replays; the balance decrement only matches rows that stay
    non-negative.
    """

    def __init__(self, pool: asyncpg.Pool):
        """
        Initialize store.

        Args:
            pool: Database connection pool
        """
        self.pool = pool

    async def init_tables(self):
        """Initialize database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS user_credits (
                    user_id VARCHAR(255) PRIMARY KEY,
                    balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS spend_transactions (
                    id UUID PRIMARY KEY,
                    idempotency_key VARCHAR(255) NOT NULL,
                    user_id VARCHAR(255) NOT NULL,
                    amount BIGINT NOT NULL,
                    model VARCHAR(255),
                    prompt_tokens BIGINT,
                    completion_tokens BIGINT,
                    status VARCHAR(20) NOT NULL DEFAULT 'pending',
                    error VARCHAR(100),
                    remaining BIGINT,
                    metadata JSONB,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (user_id, idempotency_key)
                )
            """)

            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_spend_transactions_user ON spend_transactions(user_id)"
            )

    async def balance(self, user_id: str) -> Optional[int]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT balance FROM user_credits WHERE user_id = $1", user_id
            )

    async def spend(self, user_id: str, request: SpendRequest) -> SpendResult:
        transaction_id = uuid.uuid4()
        failure: Optional[str] = None
        remaining: Optional[int] = None

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                inserted = await conn.fetchval("""
                    INSERT INTO spend_transactions
                    (id, idempotency_key, user_id, amount, model, prompt_tokens, completion_tokens, metadata)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
                    ON CONFLICT (user_id, idempotency_key) DO NOTHING
                    RETURNING id
                """, transaction_id, request.idempotency_key, user_id, request.amount,
                    request.model, request.prompt_tokens, request.completion_tokens,
                    json.dumps(request.metadata or {}))

                if inserted is None:
                    row = await conn.fetchrow("""
                        SELECT * FROM spend_transactions
                        WHERE user_id = $1 AND idempotency_key = $2
                    """, user_id, request.idempotency_key)
                    logger.info(f"Replaying spend {request.idempotency_key} for user {user_id}")
                    return _replay(self._row_to_transaction(row))

                remaining = await conn.fetchval("""
                    UPDATE user_credits
                    SET balance = balance - $2, updated_at = CURRENT_TIMESTAMP
                    WHERE user_id = $1 AND balance >= $2
                    RETURNING balance
                """, user_id, request.amount)

                if remaining is None:
                    remaining = await conn.fetchval(
                        "SELECT balance FROM user_credits WHERE user_id = $1", user_id
                    )
                    failure = UserNotFoundError.code if remaining is None else InsufficientCreditsError.code
                    await conn.execute("""
                        UPDATE spend_transactions SET status = 'failed', error = $2, remaining = $3
                        WHERE id = $1
                    """, transaction_id, failure, remaining)
                else:
                    await conn.execute("""
                        UPDATE spend_transactions SET status = 'completed', remaining = $2
                        WHERE id = $1
                    """, transaction_id, remaining)

        if failure == UserNotFoundError.code:
            raise UserNotFoundError("User credits not found")
        if failure is not None:
            raise InsufficientCreditsError(remaining=remaining)

        return SpendResult(
            remaining=remaining,
            transaction_id=str(transaction_id),
            amount=request.amount,
        )

    @staticmethod
    def _row_to_transaction(row: asyncpg.Record) -> SpendTransaction:
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return SpendTransaction(
            id=str(row["id"]),
            idempotency_key=row["idempotency_key"],
            user_id=row["user_id"],
            amount=row["amount"],
            model=row["model"],
            prompt_tokens=row["prompt_tokens"],
            completion_tokens=row["completion_tokens"],
            status=SpendStatus(row["status"]),
            error=row["error"],
            remaining=row["remaining"],
            metadata=metadata or {},
            created_at=row["created_at"],
        )
