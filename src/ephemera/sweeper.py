"""Background sweep of expired entries.

A single asyncio task calls ``BlobEngine.evict_expired`` every
``interval`` seconds. Stopping is cooperative: the stop signal is honoured
between sweeps, and ``stop()`` only returns once an in-flight sweep has
finished, so callers may dispose the database engine right after it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ephemera.engine import BlobEngine

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECS = 60.0


class Sweeper:
    """Periodic eviction task.

    Usage:
        sweeper = Sweeper(engine, interval=60)
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(self, engine: BlobEngine, interval: float = DEFAULT_INTERVAL_SECS) -> None:
        if interval <= 0:
            raise ValueError("Sweep interval must be positive")
        self.engine = engine
        self.interval = interval
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop. Calling it again while running is a no-op."""
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="ephemera-sweeper")
        logger.info("Sweeper started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to exit."""
        if self._task is None:
            return
        self._stopping.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("Sweeper stopped")

    async def run_once(self) -> list[str]:
        """Run a single sweep now."""
        return await self.engine.evict_expired()

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            else:
                break

            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep failed")
