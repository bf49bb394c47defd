"""
Offline spend queue.

A spend is written to durable storage before any network attempt, then
replayed in strict FIFO order. An item that keeps failing blocks the items
behind it until it has been tried ``max_retries`` times, after which it is
dropped and logged.
"""

import time
import uuid
import asyncio
import logging
from typing import List, Protocol, Set

from ..core.errors import GatewayError
from ..models.billing import QueuedSpend, SpendResult
from .connectivity import ConnectivityMonitor
from ..core.config import OfflineQueueSettings
from .storage import QueueStore, create_queue_store

logger = logging.getLogger(__name__)


class Spender(Protocol):
    async def spend(self, amount: int, idempotency_key: str) -> SpendResult:
        ...


class OfflineSpendQueue:
    """
    Durable FIFO of spends awaiting the ledger.

    Replays are single-flight: a trigger arriving while a pass is running
    is ignored. Each item's id is its idempotency key, so an item that was
    applied but not acknowledged is never charged twice.
    """

    def __init__(
        self,
        store: QueueStore,
        spender: Spender,
        connectivity: ConnectivityMonitor,
        max_retries: int = 3,
    ):
        """
        Initialize the queue.

        Args:
            store: Durable storage for queued items
            spender: Ledger spend client
            connectivity: Source of online/offline state
            max_retries: Attempts per item before it is dropped
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.store = store
        self.spender = spender
        self.connectivity = connectivity
        self.max_retries = max_retries

        self._items: List[QueuedSpend] = []
        self._lock = asyncio.Lock()
        self._processing = False
        self._unsubscribe = None
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: OfflineQueueSettings,
        spender: Spender,
        connectivity: ConnectivityMonitor,
    ) -> "OfflineSpendQueue":
        return cls(create_queue_store(settings), spender, connectivity, max_retries=settings.max_retries)

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def open(self) -> None:
        """Load persisted items and replay on every transition to connected."""
        self._items = await self.store.load()
        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity)
        logger.info(f"Offline queue opened with {len(self._items)} pending spends")

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        while self._background:
            await asyncio.wait(list(self._background))
        await self.store.close()

    async def queue_spend(self, amount: int) -> QueuedSpend:
        """
        Persist a spend, then replay the queue if online.

        Replay failures are retried on a later pass, never raised here.

        Raises:
            ValueError: amount is not a positive integer
            OSError: The spend could not be persisted
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"Invalid spend amount: {amount}")

        item = QueuedSpend(
            id=f"offline-{uuid.uuid4().hex}",
            amount=amount,
            timestamp_created=time.time(),
        )
        async with self._lock:
            self._items.append(item)
            await self.store.save(self._items)

        logger.info(f"Queued offline spend {item.id} of {amount} credits")

        if await self.connectivity.is_connected():
            await self.process_queue()
        return item

    async def process_queue(self) -> int:
        """
        Replay queued spends, oldest first.

        Returns:
            Number of spends acknowledged in this pass
        """
        if self._processing:
            return 0

        self._processing = True
        replayed = 0
        try:
            if not self._items or not await self.connectivity.is_connected():
                return 0

            while self._items:
                item = self._items[0]
                try:
                    await self.spender.spend(item.amount, item.id)
                except GatewayError as e:
                    if not await self._record_failure(item, e):
                        break
                    continue

                async with self._lock:
                    self._remove(item.id)
                    await self.store.save(self._items)
                replayed += 1
                logger.info(f"Replayed offline spend {item.id} ({item.amount} credits)")
        finally:
            self._processing = False

        return replayed

    async def get_queued_amount(self) -> int:
        """Total credits waiting in durable storage."""
        items = await self.store.load()
        return sum(item.amount for item in items)

    async def get_queued(self) -> List[QueuedSpend]:
        return await self.store.load()

    async def clear_queue(self) -> None:
        async with self._lock:
            dropped = len(self._items)
            self._items = []
            await self.store.save(self._items)
        logger.warning(f"Offline queue cleared, {dropped} pending spends discarded")

    async def _record_failure(self, item: QueuedSpend, error: GatewayError) -> bool:
        """Count a failed attempt. True when the item was dropped."""
        attempts = item.retry_count + 1
        async with self._lock:
            if attempts >= self.max_retries:
                self._remove(item.id)
                await self.store.save(self._items)
                logger.error(
                    f"Dropping offline spend {item.id} ({item.amount} credits) "
                    f"after {attempts} failed attempts: {error}"
                )
                return True

            self._replace(item.model_copy(update={"retry_count": attempts}))
            await self.store.save(self._items)

        logger.warning(
            f"Offline spend {item.id} failed (attempt {attempts}/{self.max_retries}), "
            f"will retry: {error}"
        )
        return False

    def _remove(self, item_id: str) -> None:
        self._items = [i for i in self._items if i.id != item_id]

    def _replace(self, item: QueuedSpend) -> None:
        self._items = [item if i.id == item.id else i for i in self._items]

    def _on_connectivity(self, connected: bool) -> None:
        if not connected:
            return
        task = asyncio.create_task(self.process_queue())
        self._background.add(task)

        def done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Offline queue replay failed: {t.exception()}")

        task.add_done_callback(done)
