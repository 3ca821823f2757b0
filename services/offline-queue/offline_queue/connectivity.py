"""Connectivity detection.

The monitor owns the online/offline signal fed to the queue manager. It can
be driven externally (``set_online``) or by probing a URL periodically.
Listeners only hear about transitions, never about repeated identical states.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable

import httpx

from offline_queue.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class ConnectionQuality(str, Enum):
    GOOD = "good"
    POOR = "poor"
    OFFLINE = "offline"


class ConnectivityMonitor:
    def __init__(
        self,
        probe_url: str | None = None,
        *,
        interval: float = 30.0,
        timeout: float = 5.0,
        slow_threshold: float = 2.0,
        initial: bool = False,
        client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.probe_url = probe_url
        self.interval = interval
        self.timeout = timeout
        self.slow_threshold = slow_threshold
        self.clock = clock or SystemClock()
        self._client = client
        self._owns_client = client is None
        self._online = initial
        self._quality = ConnectionQuality.GOOD if initial else ConnectionQuality.OFFLINE
        self._last_offline_at: datetime | None = None if initial else self.clock.now()
        self._listeners: list[Callable[[bool], Any]] = []
        self._task: asyncio.Task | None = None

    @property
    def online(self) -> bool:
        return self._online

    @property
    def quality(self) -> ConnectionQuality:
        return self._quality

    @property
    def last_offline_at(self) -> datetime | None:
        """When the current offline period began; ``None`` while online."""
        return None if self._online else self._last_offline_at

    @property
    def offline_duration(self) -> float | None:
        """Seconds spent offline so far; ``None`` while online."""
        if self._online or self._last_offline_at is None:
            return None
        return (self.clock.now() - self._last_offline_at).total_seconds()

    def on_change(self, callback: Callable[[bool], Any]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def set_online(self, online: bool, quality: ConnectionQuality | None = None) -> bool:
        """Record the connectivity state. Returns True when it changed."""
        if quality is None:
            quality = ConnectionQuality.GOOD if online else ConnectionQuality.OFFLINE
        self._quality = quality
        if online == self._online:
            return False

        if not online:
            self._last_offline_at = self.clock.now()
            logger.warning("Connection lost")
        else:
            duration = self.offline_duration
            if duration is not None:
                logger.info(f"Connection restored after {duration:.1f}s offline")
            else:
                logger.info("Connection restored")
        self._online = online

        for callback in list(self._listeners):
            try:
                result = callback(online)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception(f"Connectivity listener {callback!r} failed")
        return True

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True
        return self._client

    async def probe(self) -> ConnectionQuality:
        """Ping ``probe_url`` once. Any HTTP answer below 500 counts as reachable."""
        if not self.probe_url:
            return self._quality
        client = await self._get_client()
        started = time.perf_counter()
        try:
            response = await client.get(self.probe_url)
        except httpx.RequestError as e:
            logger.debug(f"Connectivity probe failed: {type(e).__name__}")
            return ConnectionQuality.OFFLINE
        if response.status_code >= 500:
            return ConnectionQuality.OFFLINE
        if time.perf_counter() - started > self.slow_threshold:
            return ConnectionQuality.POOR
        return ConnectionQuality.GOOD

    async def check(self) -> bool:
        """Probe and record the result. Returns the online state."""
        quality = await self.probe()
        self.set_online(quality is not ConnectionQuality.OFFLINE, quality)
        return self._online

    async def _run(self) -> None:
        while True:
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Connectivity check failed: {e}", exc_info=True)
            await self.clock.sleep(self.interval)

    def start(self) -> None:
        if not self.probe_url:
            logger.info("No connectivity probe URL configured; waiting for explicit signals")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(f"Connectivity monitor probing {self.probe_url} every {self.interval}s")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
