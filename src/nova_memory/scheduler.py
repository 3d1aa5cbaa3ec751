"""Cancellable periodic background tasks."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger

TickCallback = Callable[[], Awaitable[None]]


class PeriodicTask:
    """Runs an async callback every ``interval`` seconds.

    Ticks are single-flight: a tick that would overlap one still in
    progress is skipped. An optional shared lock serializes this task
    against others using the same lock. Errors raised by the callback are
    logged and the timer keeps going.
    """

    def __init__(
        self,
        name: str,
        callback: TickCallback,
        interval: float,
        lock: asyncio.Lock | None = None,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._lock = lock or asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._in_flight = False
        self._ticking = False
        self._stopping = False
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info(f"Periodic task '{self.name}' started (interval: {self.interval}s)")

    async def stop(self) -> None:
        """Stop further ticks and wait for the loop to exit.

        A tick already running is allowed to finish; only the sleep between
        ticks is cancelled.
        """
        task, self._task = self._task, None
        if task is None or task.done():
            return
        self._stopping = True
        if not self._ticking:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        finally:
            self._stopping = False
        logger.info(f"Periodic task '{self.name}' stopped")

    async def run_once(self) -> bool:
        """Run one tick now. Returns False if a tick was already in flight."""
        if self._in_flight:
            logger.debug(f"Periodic task '{self.name}' tick skipped, previous still running")
            return False

        self._in_flight = True
        try:
            async with self._lock:
                await self._callback()
            self.tick_count += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Periodic task '{self.name}' failed: {e}")
        finally:
            self._in_flight = False
        return True

    async def _loop(self) -> None:
        while not self._stopping:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break

            self._ticking = True
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            finally:
                self._ticking = False
