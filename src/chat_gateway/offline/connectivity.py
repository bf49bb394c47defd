"""
Network connectivity tracking for the offline queue.
"""

import asyncio
import logging
from typing import Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """
    Connectivity state with change notifications.

    Listeners are called synchronously on every transition.
    """

    def __init__(self, connected: bool = False):
        self._connected = connected
        self._listeners: List[Listener] = []

    async def is_connected(self) -> bool:
        return self._connected

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(f"Connectivity changed: {'online' if connected else 'offline'}")
        for listener in list(self._listeners):
            listener(connected)


class HttpConnectivityMonitor(ConnectivityMonitor):
    """Treats the network as connected while a health URL answers 2xx."""

    def __init__(
        self,
        health_url: str,
        probe_interval: float = 15.0,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(connected=False)
        self.health_url = health_url
        self.probe_interval = probe_interval
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._task: Optional[asyncio.Task] = None

    async def probe(self) -> bool:
        """Check the health URL once and update the state."""
        try:
            response = await self._client.get(self.health_url)
            connected = response.is_success
        except httpx.RequestError as e:
            logger.debug(f"Health probe failed: {e}")
            connected = False
        self.set_connected(connected)
        return connected

    async def start(self) -> None:
        if self._task is not None:
            return
        await self.probe()
        self._task = asyncio.create_task(self._probe_loop())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client:
            await self._client.aclose()

    async def _probe_loop(self) -> None:
        while True:
            await asyncio.sleep(self.probe_interval)
            await self.probe()
