"""Periodic background sweep for expired in-memory state."""

import asyncio
import inspect
import threading
from typing import Awaitable, Callable, Optional, Union

from apiguard.app.core.logging import get_logger

logger = get_logger(__name__)

SweepCallback = Callable[[], Union[int, Awaitable[int]]]


class PeriodicSweeper:
    """Runs a purge callback on a fixed interval until stopped.

    - One background task per sweeper; ``start`` is idempotent
    - A run that starts while another is still in progress is skipped,
      never queued
    - ``stop`` signals the loop and waits briefly before cancelling

    Usage:
        sweeper = PeriodicSweeper("cache", cache.cleanup_expired, interval=60)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(self, name: str, callback: SweepCallback, interval: float = 60.0):
        """Initialize the sweeper.

        Args:
            name: Label used in log messages
            callback: Purge function returning the number of removed entries
            interval: Seconds between runs (default: 60.0)
        """
        if interval <= 0:
            raise ValueError("Sweep interval must be positive")
        self.name = name
        self._callback = callback
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = threading.Lock()
        self.runs = 0
        self.skipped = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        """True while the background task is alive."""
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Optional[int]:
        """Run the callback once unless a run is already in progress.

        Returns:
            Number of entries removed, or None if the run was skipped
        """
        if not self._running.acquire(blocking=False):
            self.skipped += 1
            logger.debug(f"Sweep '{self.name}' already running, skipping")
            return None
        try:
            removed = self._callback()
            if inspect.isawaitable(removed):
                removed = await removed
            self.runs += 1
            if removed:
                logger.debug(f"Sweep '{self.name}' removed {removed} expired entries")
            return removed
        finally:
            self._running.release()

    async def start(self) -> None:
        """Start the background sweep task."""
        if self.is_running:
            logger.debug(f"Sweep '{self.name}' already started")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Started sweep '{self.name}' (interval: {self._interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning(f"Sweep '{self.name}' did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info(f"Stopped sweep '{self.name}'")

    async def _loop(self) -> None:
        """Background loop: wait one interval, sweep, repeat."""
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error during sweep '{self.name}': {e}")
