"""
Client-side offline spend queue.

Spends made while the ledger is unreachable are persisted locally and
replayed in order once connectivity returns.
"""

from .connectivity import ConnectivityMonitor, HttpConnectivityMonitor
from .queue import OfflineSpendQueue
from .spend_client import SpendClient
from .storage import QueueStore, JsonFileQueueStore, RedisQueueStore, create_queue_store

__all__ = [
    "ConnectivityMonitor",
    "HttpConnectivityMonitor",
    "OfflineSpendQueue",
    "SpendClient",
    "QueueStore",
    "JsonFileQueueStore",
    "RedisQueueStore",
    "create_queue_store",
]
