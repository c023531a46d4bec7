"""Background reaper for expired cache records.

Follows the periodic sweeper pattern: one asyncio task, a sweep right away
and then one per interval. A failed sweep is logged and retried on the next
tick; it never stops the loop.
"""
import asyncio
from typing import Optional, TYPE_CHECKING

from .logging import get_logger

if TYPE_CHECKING:
    from .cache import CacheEngine

logger = get_logger(__name__)


class Reaper:
    """Periodically deletes expired records through ``CacheEngine.flush_expired``."""

    def __init__(self, cache: "CacheEngine", interval: float):
        self.cache = cache
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.sweeps = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the reaper background task."""
        if self._running:
            logger.warning("Reaper already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._reap_loop(), name="sqlcache-reaper")
        logger.info("Reaper started", interval=self.interval)

    async def stop(self) -> None:
        """Cancel the loop, interrupting an in-flight sweep."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reaper stopped", sweeps=self.sweeps, failures=self.failures)

    async def _reap_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                self.failures += 1
                logger.error("Expired sweep failed", error=str(e))
            await asyncio.sleep(self.interval)

    async def run_once(self) -> int:
        """Run one sweep and return the number of records removed."""
        removed = await self.cache.flush_expired()
        self.sweeps += 1
        return removed
