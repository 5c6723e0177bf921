"""
Periodic ticks for the relay.

Drives the extension keepalive (ping every 30s by default) and, when a
pending-request timeout is configured, the expiry sweep. The tick callback
only enqueues work for the dispatcher; it never touches relay state itself.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RelayHeartbeat:
    """
    Run an async callback every `interval` seconds until stopped.

    Usage:
        heartbeat = RelayHeartbeat(30.0, on_tick, name="ping")
        await heartbeat.start()

        # Later...
        await heartbeat.stop()
    """

    def __init__(
        self,
        interval: float,
        on_tick: Callable[[], Awaitable[None]],
        name: str = "heartbeat",
    ):
        self._interval = interval
        self._on_tick = on_tick
        self._name = name
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def interval(self) -> float:
        return self._interval

    async def start(self) -> None:
        """Start tick loop"""
        if self._running:
            logger.warning(f"{self._name} already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.debug(f"{self._name} started: interval={self._interval}s")

    async def stop(self) -> None:
        """Stop tick loop"""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.debug(f"{self._name} stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                await self._on_tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{self._name} tick error: {e}", exc_info=True)

    def is_running(self) -> bool:
        return self._running


__all__ = [
    "RelayHeartbeat",
]
