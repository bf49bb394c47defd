"""
Durable storage for queued spends.

The whole queue is stored as one JSON document, read and written as a unit.
"""

import os
import json
import asyncio
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from ..core.config import OfflineQueueSettings
from ..models.billing import QueuedSpend

logger = logging.getLogger(__name__)

QUEUE_KEY = "credits_offline_queue"


def _decode(raw: Optional[str]) -> List[QueuedSpend]:
    if not raw:
        return []
    try:
        return [QueuedSpend.model_validate(item) for item in json.loads(raw)]
    except (ValueError, TypeError, ValidationError) as e:
        # Corrupt data is reported, not silently replaced
        raise ValueError(f"Corrupt offline queue data: {e}") from e


def _encode(items: List[QueuedSpend]) -> str:
    return json.dumps([item.model_dump() for item in items])


class QueueStore(ABC):
    """Persistence for the offline queue."""

    @abstractmethod
    async def load(self) -> List[QueuedSpend]:
        """Queued spends, oldest first."""
        pass

    @abstractmethod
    async def save(self, items: List[QueuedSpend]) -> None:
        """Replace the stored queue."""
        pass

    async def close(self) -> None:
        return None


class JsonFileQueueStore(QueueStore):
    """Queue kept in a JSON file, replaced atomically on every save."""

    def __init__(self, path: str):
        self.path = Path(os.path.expanduser(path))

    async def load(self) -> List[QueuedSpend]:
        return await asyncio.to_thread(self._read)

    async def save(self, items: List[QueuedSpend]) -> None:
        await asyncio.to_thread(self._write, _encode(items))

    def _read(self) -> List[QueuedSpend]:
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            return []
        return _decode(raw)

    def _write(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".queue-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class RedisQueueStore(QueueStore):
    """Queue kept under a single Redis key."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key: str = QUEUE_KEY,
        client: Optional[redis.Redis] = None,
    ):
        if client is None and not redis_url:
            raise ValueError("RedisQueueStore needs a redis_url or a client")
        self.key = key
        self._owns_client = client is None
        self._client = client or redis.from_url(redis_url, decode_responses=True)

    async def load(self) -> List[QueuedSpend]:
        raw = await self._client.get(self.key)
        if isinstance(raw, bytes):
            raw = raw.decode()
        return _decode(raw)

    async def save(self, items: List[QueuedSpend]) -> None:
        if items:
            await self._client.set(self.key, _encode(items))
        else:
            await self._client.delete(self.key)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_queue_store(settings: OfflineQueueSettings) -> QueueStore:
    """Redis store when a Redis URL is configured, otherwise the JSON file."""
    if settings.redis_url:
        return RedisQueueStore(settings.redis_url)
    return JsonFileQueueStore(settings.storage_path)
