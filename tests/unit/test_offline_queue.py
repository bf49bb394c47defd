"""
Unit tests for the offline spend queue.
"""
import asyncio
import json

import httpx
import pytest
import respx

from chat_gateway.core.errors import InsufficientCreditsError, LedgerUnavailableError
from chat_gateway.models.billing import SpendResult
from chat_gateway.offline import (
    ConnectivityMonitor,
    HttpConnectivityMonitor,
    JsonFileQueueStore,
    OfflineSpendQueue,
    RedisQueueStore,
    SpendClient,
)
from chat_gateway.core.config import OfflineQueueSettings


class ManualConnectivity(ConnectivityMonitor):
    """Connectivity whose state changes without notifying listeners."""

    def __init__(self):
        super().__init__(connected=False)
        self.online = False

    async def is_connected(self) -> bool:
        return self.online


class FakeSpender:
    """Spender recording (amount, key) pairs; failures are consumed per call."""

    def __init__(self, failures=None, delay: float = 0):
        self.failures = list(failures or [])
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def spend(self, amount, idempotency_key):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.calls.append((amount, idempotency_key))
            if self.failures:
                raise self.failures.pop(0)
            return SpendResult(remaining=0, transaction_id=idempotency_key, amount=amount)
        finally:
            self.active -= 1


@pytest.fixture
def store(tmp_path):
    return JsonFileQueueStore(str(tmp_path / "queue.json"))


async def open_queue(store, spender, connected=False, max_retries=3, connectivity=None):
    connectivity = connectivity or ConnectivityMonitor(connected=connected)
    queue = OfflineSpendQueue(store, spender, connectivity, max_retries=max_retries)
    await queue.open()
    return queue, connectivity


class TestQueueSpend:
    """Test persisting spends."""

    @pytest.mark.asyncio
    async def test_offline_spends_are_persisted(self, store):
        """Test spends made offline are stored and summed from storage."""
        spender = FakeSpender()
        queue, _ = await open_queue(store, spender)

        await queue.queue_spend(100)
        await queue.queue_spend(200)

        assert await queue.get_queued_amount() == 300
        assert spender.calls == []
        assert [i.amount for i in await store.load()] == [100, 200]

    @pytest.mark.asyncio
    async def test_queue_survives_restart(self, store):
        """Test a new queue over the same storage sees earlier spends."""
        queue, _ = await open_queue(store, FakeSpender())
        await queue.queue_spend(40)
        await queue.close()

        spender = FakeSpender()
        reopened, connectivity = await open_queue(store, spender)
        assert await reopened.get_queued_amount() == 40

        connectivity.set_connected(True)
        await reopened.close()
        assert spender.calls[0][0] == 40

    @pytest.mark.asyncio
    async def test_online_spend_replays_immediately(self, store):
        """Test a spend made online is sent at once and removed."""
        spender = FakeSpender()
        queue, _ = await open_queue(store, spender, connected=True)

        item = await queue.queue_spend(25)

        assert spender.calls == [(25, item.id)]
        assert await queue.get_queued_amount() == 0

    @pytest.mark.asyncio
    async def test_online_failure_does_not_raise(self, store):
        """Test a failed immediate replay leaves the spend queued."""
        spender = FakeSpender(failures=[LedgerUnavailableError("down")])
        queue, _ = await open_queue(store, spender, connected=True)

        await queue.queue_spend(25)

        assert await queue.get_queued_amount() == 25
        assert (await store.load())[0].retry_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    async def test_invalid_amount(self, store, amount):
        """Test only positive whole credits can be queued."""
        queue, _ = await open_queue(store, FakeSpender())
        with pytest.raises(ValueError):
            await queue.queue_spend(amount)
        assert await queue.get_queued_amount() == 0


class TestProcessQueue:
    """Test replaying queued spends."""

    @pytest.mark.asyncio
    async def test_fifo_replay_on_reconnect(self, store):
        """Test reconnecting replays spends oldest first with their ids as keys."""
        spender = FakeSpender()
        queue, connectivity = await open_queue(store, spender)
        first = await queue.queue_spend(100)
        second = await queue.queue_spend(200)
        assert await queue.get_queued_amount() == 300

        connectivity.set_connected(True)
        await queue.close()

        assert spender.calls == [(100, first.id), (200, second.id)]
        assert await store.load() == []

    @pytest.mark.asyncio
    async def test_stops_pass_at_first_failure(self, store):
        """Test nothing after a failed item is attempted in that pass."""
        spender = FakeSpender(failures=[LedgerUnavailableError("down")])
        queue, connectivity = await open_queue(store, spender, connectivity=ManualConnectivity())
        await queue.queue_spend(100)
        await queue.queue_spend(200)
        connectivity.online = True

        assert await queue.process_queue() == 0
        assert [amount for amount, _ in spender.calls] == [100]
        assert [i.retry_count for i in await store.load()] == [1, 0]

        assert await queue.process_queue() == 2
        assert [amount for amount, _ in spender.calls] == [100, 100, 200]
        assert spender.calls[0][1] == spender.calls[1][1]

    @pytest.mark.asyncio
    async def test_dropped_after_max_retries(self, store):
        """Test an item is tried exactly max_retries times, then dropped."""
        failures = [InsufficientCreditsError()] * 3
        spender = FakeSpender(failures=failures)
        queue, connectivity = await open_queue(store, spender, max_retries=3, connectivity=ManualConnectivity())
        stuck = await queue.queue_spend(100)
        after = await queue.queue_spend(5)
        connectivity.online = True

        assert await queue.process_queue() == 0
        assert await queue.process_queue() == 0
        assert await queue.process_queue() == 1

        assert spender.calls == [(100, stuck.id)] * 3 + [(5, after.id)]
        assert await queue.get_queued_amount() == 0

    @pytest.mark.asyncio
    async def test_single_flight(self, store):
        """Test concurrent triggers never run two passes at once."""
        spender = FakeSpender(delay=0.01)
        queue, connectivity = await open_queue(store, spender, connectivity=ManualConnectivity())
        for amount in (1, 2, 3):
            await queue.queue_spend(amount)
        connectivity.online = True

        results = await asyncio.gather(*(queue.process_queue() for _ in range(5)))

        assert spender.max_active == 1
        assert sorted(results) == [0, 0, 0, 0, 3]
        assert [amount for amount, _ in spender.calls] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_offline_pass_does_nothing(self, store):
        """Test no spend is attempted while disconnected."""
        spender = FakeSpender()
        queue, _ = await open_queue(store, spender)
        await queue.queue_spend(10)

        assert await queue.process_queue() == 0
        assert spender.calls == []

    @pytest.mark.asyncio
    async def test_clear_queue(self, store):
        """Test clearing empties durable storage."""
        queue, _ = await open_queue(store, FakeSpender())
        await queue.queue_spend(10)
        await queue.clear_queue()

        assert await queue.get_queued_amount() == 0


class TestJsonFileQueueStore:
    """Test the JSON file store."""

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        """Test a store without a file holds no items."""
        assert await JsonFileQueueStore(str(tmp_path / "none.json")).load() == []

    @pytest.mark.asyncio
    async def test_corrupt_file_is_reported(self, tmp_path):
        """Test corrupt data raises instead of being discarded."""
        path = tmp_path / "queue.json"
        path.write_text("{not json")
        with pytest.raises(ValueError):
            await JsonFileQueueStore(str(path)).load()

    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, tmp_path):
        """Test saving creates the storage directory."""
        nested = JsonFileQueueStore(str(tmp_path / "a" / "b" / "queue.json"))
        await nested.save([])
        assert json.loads((tmp_path / "a" / "b" / "queue.json").read_text()) == []


class TestConnectivity:
    """Test connectivity monitors."""

    def test_listeners_fire_on_transitions_only(self):
        """Test listeners see changes, not repeated states."""
        monitor = ConnectivityMonitor()
        seen = []
        unsubscribe = monitor.subscribe(seen.append)

        monitor.set_connected(True)
        monitor.set_connected(True)
        monitor.set_connected(False)
        unsubscribe()
        monitor.set_connected(True)

        assert seen == [True, False]

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_probe(self):
        """Test the health probe drives the connected state."""
        route = respx.get("http://gateway.test/health")
        monitor = HttpConnectivityMonitor("http://gateway.test/health", probe_interval=60)

        route.mock(return_value=httpx.Response(200, json={"status": "healthy"}))
        assert await monitor.probe()
        assert await monitor.is_connected()

        route.mock(side_effect=httpx.ConnectError("offline"))
        assert not await monitor.probe()
        assert not await monitor.is_connected()
        await monitor.stop()


class TestSpendClient:
    """Test the spend endpoint client."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_posts_amount_and_key(self):
        """Test replays carry the queued item's id as the idempotency key."""
        route = respx.post("http://gateway.test/v1/credits/spend").mock(
            return_value=httpx.Response(200, json={"remaining": 90, "transaction_id": "t", "amount": 10})
        )
        client = SpendClient("http://gateway.test/", "user-token")
        result = await client.spend(10, "offline-abc")
        await client.aclose()

        assert result.remaining == 90
        body = json.loads(route.calls.last.request.content)
        assert body["amount"] == 10
        assert body["idempotency_key"] == "offline-abc"


class FakeRedis:
    """The subset of the redis.asyncio client the queue store uses."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)


class TestRedisQueueStore:
    """Test the Redis-backed store."""

    @pytest.mark.asyncio
    async def test_round_trip_under_queue_key(self):
        """Test items are kept under the credits_offline_queue key."""
        redis = FakeRedis()
        store = RedisQueueStore(client=redis)
        queue, _ = await open_queue(store, FakeSpender())

        await queue.queue_spend(7)

        assert "credits_offline_queue" in redis.data
        assert await RedisQueueStore(client=redis).load() == await store.load()

        await queue.clear_queue()
        assert redis.data == {}

    def test_requires_url_or_client(self):
        """Test a store cannot be built without a connection."""
        with pytest.raises(ValueError):
            RedisQueueStore()


class TestFromSettings:
    """Test building a queue from configuration."""

    @pytest.mark.asyncio
    async def test_file_store_from_settings(self, tmp_path):
        """Test settings choose the JSON file store and the retry bound."""
        settings = OfflineQueueSettings(storage_path=str(tmp_path / "q.json"), max_retries=5)
        queue = OfflineSpendQueue.from_settings(settings, FakeSpender(), ConnectivityMonitor())

        assert isinstance(queue.store, JsonFileQueueStore)
        assert queue.max_retries == 5
