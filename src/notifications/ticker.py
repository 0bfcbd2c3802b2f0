"""Cancellable periodic async task."""

from typing import Awaitable, Callable, Optional
import asyncio
import logging

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs an async callable every `interval` seconds.

    A tick always runs to completion before the next interval starts, so
    ticks of one task never overlap. stop() is idempotent and waits for an
    in-flight tick instead of cancelling it.
    """

    def __init__(self, name: str, fn: Callable[[], Awaitable], interval: float):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._fn = fn
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.ticks = 0
        self.errors = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the loop. No-op if already running."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        logger.info("Started %s loop (every %.1fs)", self.name, self.interval)

    async def stop(self) -> None:
        """Stop the loop, waiting for any in-flight tick to finish."""
        task = self._task
        if task is None:
            return
        self._stop_event.set()
        # Concurrent callers all wait on the same task
        await asyncio.shield(task)
        if self._task is task:
            self._task = None
            logger.info("Stopped %s loop after %d ticks", self.name, self.ticks)

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._fn()
                self.ticks += 1
            except Exception as e:
                self.errors += 1
                logger.error("%s tick failed: %s", self.name, e, exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
