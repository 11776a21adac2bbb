"""Connectivity monitor: edge-triggered online/offline transitions.

Platform code (or the optional probe loop) calls :meth:`ConnectivityMonitor.report`
with the raw reachability signal. Only real changes are forwarded, so repeated
"online" notifications never produce a second ``BECAME_ONLINE``.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)


class ConnectivityEvent(str, Enum):
    BECAME_ONLINE = "became_online"
    BECAME_OFFLINE = "became_offline"


class ConnectivitySubscription:
    """Infinite async iterator of transitions seen after it was created."""

    def __init__(self, monitor: "ConnectivityMonitor") -> None:
        self._monitor = monitor
        self._queue: asyncio.Queue[ConnectivityEvent] = asyncio.Queue()
        monitor._subscribers.add(self._queue)

    def __aiter__(self) -> "ConnectivitySubscription":
        return self

    async def __anext__(self) -> ConnectivityEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._monitor._subscribers.discard(self._queue)

    def __enter__(self) -> "ConnectivitySubscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ConnectivityMonitor:
    def __init__(self, initial_online: bool = False) -> None:
        self._online = initial_online
        self._subscribers: set[asyncio.Queue[ConnectivityEvent]] = set()

    @property
    def online(self) -> bool:
        return self._online

    def report(self, online: bool) -> bool:
        """Feed a reachability signal; returns True if it was a transition."""
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        ev = ConnectivityEvent.BECAME_ONLINE if online else ConnectivityEvent.BECAME_OFFLINE
        logger.info("Connectivity changed: %s", ev.value)
        for q in list(self._subscribers):
            q.put_nowait(ev)
        return True

    def events(self) -> ConnectivitySubscription:
        """Start a fresh subscription. Call again to restart after closing one."""
        return ConnectivitySubscription(self)

    async def run(self, probe: Callable[[], Awaitable[bool]], interval: float) -> None:
        """Poll ``probe`` forever, reporting what it sees."""
        logger.info("Connectivity probe loop started (interval=%.0fs)", interval)
        while True:
            try:
                online = await probe()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Connectivity probe raised: %s", e)
                online = False
            self.report(online)
            await asyncio.sleep(interval)


class HttpHealthProbe:
    """Considers the service reachable when ``GET /health`` answers 200."""

    def __init__(self, client: httpx.AsyncClient, path: str = "/health", timeout: float = 5.0) -> None:
        self.client = client
        self.path = path
        self.timeout = timeout

    async def __call__(self) -> bool:
        try:
            resp = await self.client.get(self.path, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.debug("Health probe failed: %s", e)
            return False
        return resp.status_code == 200
