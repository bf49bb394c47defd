"""
Streaming billing middleware.

Charges a user while a response streams instead of once at the end, so a
dropped connection cannot leave a long completion unbilled. Generated text
is priced per character as it arrives; the running estimate is spent in
batches once it reaches a threshold or the stream goes quiet, and the
session is reconciled against the true cost when the stream ends.

Ledger calls never run on the token path: accumulate_text only schedules
flushes as background tasks, and their failures surface through
``failure`` for the caller to act on between tokens.
"""

import time
import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Set

from ..core.errors import InsufficientCreditsError, LedgerError
from ..models.billing import SpendRequest
from .costs import (
    calculate_streaming_cost,
    credits,
    estimate_tokens,
    streaming_estimate_per_char,
)
from .ledger import LedgerClient

logger = logging.getLogger(__name__)


class BillingState(str, Enum):
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class StreamSession:
    """Billing context of one streamed completion."""
    user_id: str
    model_id: str
    prompt_tokens: int
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    completion_text: str = ""
    started_at: float = field(default_factory=time.time)

    @property
    def completion_tokens(self) -> int:
        return estimate_tokens(self.completion_text, self.model_id)


@dataclass
class SpendBatch:
    """A spend submitted (or to be resubmitted) under a fixed key."""
    amount: int
    idempotency_key: str


class StreamingBillingMiddleware:
    """
    Incremental biller for one stream session.

    Totals debited for a session are max(true cost, attributed estimate):
    reconciliation only ever adds a shortfall, never refunds.
    """

    def __init__(
        self,
        session: StreamSession,
        ledger: LedgerClient,
        batch_threshold: float = 5.0,
        flush_delay: float = 2.0,
    ):
        """
        Initialize the middleware.

        Args:
            session: Session being billed
            ledger: Ledger client charging the session's user
            batch_threshold: Estimated credits that trigger an immediate flush
            flush_delay: Seconds of stream inactivity before a flush
        """
        self.session = session
        self.state = BillingState.ACCUMULATING
        self._ledger = ledger
        self._threshold = Decimal(str(batch_threshold))
        self._flush_delay = flush_delay
        self._per_char = streaming_estimate_per_char(session.model_id)

        # Fractional estimate not yet submitted; negative after rounding a batch up
        self._pending = Decimal(0)
        self._unacknowledged: List[SpendBatch] = []
        self._total_spent = 0
        self._timer: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._failure: Optional[BaseException] = None
        self._finalize_lock = asyncio.Lock()
        self._closed = False

    @property
    def pending_cost(self) -> float:
        """Estimated credits not yet acknowledged by the ledger."""
        unacknowledged = sum(batch.amount for batch in self._unacknowledged)
        return float(max(self._pending, Decimal(0)) + unacknowledged)

    @property
    def total_spent(self) -> int:
        """Credits the ledger has acknowledged for this session."""
        return self._total_spent

    @property
    def failure(self) -> Optional[BaseException]:
        """First error raised by a background flush, if any."""
        return self._failure

    def accumulate_text(self, text: str) -> None:
        """
        Record generated text and schedule billing for it.

        Never blocks: the flush itself runs as a background task.
        """
        if self._closed or self.state in (BillingState.FINALIZING, BillingState.DONE):
            return

        self.session.completion_text += text
        self._pending += len(text) * self._per_char

        if self._pending >= self._threshold:
            self._cancel_timer()
            self._spawn(self.flush_cost())
        else:
            self._restart_timer()

    async def flush_cost(self) -> None:
        """
        Spend the pending estimate, plus any batch the ledger has not acknowledged.

        A new batch gets a fresh idempotency key; an unacknowledged batch is
        resubmitted under its original key.

        Raises:
            InsufficientCreditsError: The ledger refused the spend
            LedgerUnavailableError: A batch was not acknowledged and is kept for retry
        """
        self._cancel_timer()

        batches = self._unacknowledged
        self._unacknowledged = []

        amount = credits(self._pending)
        if amount > 0:
            self._pending -= amount
            batches.append(SpendBatch(amount=amount, idempotency_key=self._new_key()))

        if not batches:
            return

        if self.state is BillingState.ACCUMULATING:
            self.state = BillingState.FLUSHING
        try:
            await self._submit_all(batches)
        finally:
            if self.state is BillingState.FLUSHING and not self._inflight_flushes():
                self.state = BillingState.ACCUMULATING

    async def drain(self) -> None:
        """Wait for every in-flight flush to settle."""
        while self._inflight:
            await asyncio.wait(list(self._inflight))

    async def finalize(self) -> int:
        """
        Reconcile the session against its true cost.

        Retries unacknowledged batches with their original keys, then
        charges the shortfall between the true cost and everything already
        attributed. Leftover fractional estimate is discarded. Calling it
        again after success returns the same total without debiting.

        Returns:
            Total credits debited for the session
        """
        async with self._finalize_lock:
            if self.state is BillingState.DONE:
                return self._total_spent

            self.state = BillingState.FINALIZING
            self._cancel_timer()
            await self.drain()

            session = self.session
            true_cost = 0
            if session.completion_text:
                true_cost = calculate_streaming_cost(
                    session.model_id, session.prompt_tokens, session.completion_text
                )

            batches = self._unacknowledged
            self._unacknowledged = []
            self._pending = Decimal(0)

            final_key = f"{session.session_id}-final"
            attributed = self._total_spent + sum(batch.amount for batch in batches)
            shortfall = true_cost - attributed
            if shortfall > 0 and not any(b.idempotency_key == final_key for b in batches):
                batches.append(SpendBatch(amount=shortfall, idempotency_key=final_key))

            await self._submit_all(batches)

            self.state = BillingState.DONE
            logger.info(
                f"Finalized billing for session {session.session_id}: "
                f"true cost {true_cost}, debited {self._total_spent}"
            )
            return self._total_spent

    def close(self) -> None:
        """Stop scheduling flushes. In-flight flushes are left to finish."""
        self._closed = True
        self._cancel_timer()

    async def _submit_all(self, batches: List[SpendBatch]) -> None:
        for index, batch in enumerate(batches):
            try:
                await self._submit(batch)
            except InsufficientCreditsError:
                # The refused batch is recorded as failed; later ones stay owed
                self._unacknowledged.extend(batches[index + 1:])
                raise
            except LedgerError:
                self._unacknowledged.extend(batches[index:])
                raise

    async def _submit(self, batch: SpendBatch) -> None:
        session = self.session
        request = SpendRequest(
            amount=batch.amount,
            idempotency_key=batch.idempotency_key,
            model=session.model_id,
            prompt_tokens=session.prompt_tokens,
            completion_tokens=session.completion_tokens,
            description=f"Streaming usage for {session.model_id}",
            metadata={"session_id": session.session_id},
        )
        result = await self._ledger.spend(request)
        self._total_spent += batch.amount
        logger.info(
            f"Charged {batch.amount} credits to {session.user_id} "
            f"(key {batch.idempotency_key}, remaining {result.remaining})"
        )

    def _new_key(self) -> str:
        session = self.session
        timestamp = int(time.time() * 1000)
        return f"{session.user_id}-{session.model_id}-{session.session_id}-{timestamp}-{secrets.token_hex(4)}"

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._on_flush_done)

    def _on_flush_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        logger.error(f"Background billing flush failed for session {self.session.session_id}: {error}")
        if self._failure is None:
            self._failure = error

    def _inflight_flushes(self) -> bool:
        current = asyncio.current_task()
        return any(task is not current for task in self._inflight)

    def _restart_timer(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._flush_after_delay())

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _flush_after_delay(self) -> None:
        await asyncio.sleep(self._flush_delay)
        self._timer = None
        self._spawn(self.flush_cost())
