"""
Periodic expiry sweep for a :class:`TieredCache`.

Runs ``clear_expired()`` on a fixed cadence in an asyncio task owned by
the cache instance.  The task is created by :meth:`CacheSweeper.start`
and cancelled by :meth:`CacheSweeper.stop`; nothing runs at import time.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from tieredcache.exceptions import SweeperError

logger = logging.getLogger(__name__)

SweepFn = Callable[[], Awaitable[int]]


class CacheSweeper:
    """Background task that periodically removes expired entries.

    Args:
        sweep: Coroutine function performing one sweep and returning the
            number of entries removed.
        interval_seconds: Delay between sweeps.
    """

    def __init__(self, sweep: SweepFn, interval_seconds: float = 600.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._sweep = sweep
        self._interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

        self._runs: int = 0
        self._entries_removed: int = 0
        self._errors: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the sweep loop on the running event loop.

        Raises:
            SweeperError: If the sweeper is already running.
        """
        if self.is_running:
            raise SweeperError("CacheSweeper is already running")
        self._task = asyncio.get_running_loop().create_task(
            self._run_loop(), name="tieredcache-sweeper"
        )
        logger.info(
            "CacheSweeper started",
            extra={"interval_seconds": self._interval_seconds},
        )

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish.  Idempotent."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("CacheSweeper stopped", extra={"runs": self._runs})

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_seconds": self._interval_seconds,
            "runs": self._runs,
            "entries_removed": self._entries_removed,
            "errors": self._errors,
        }

    # ------------------------------------------------------------------
    # Internal loop
    # ------------------------------------------------------------------

    async def run_once(self) -> int:
        """Perform a single sweep, recording the outcome."""
        try:
            removed = await self._sweep()
        except Exception as exc:
            self._errors += 1
            logger.error(
                "Cache sweep failed",
                extra={"error": str(exc)},
                exc_info=True,
            )
            return 0
        self._runs += 1
        self._entries_removed += removed
        return removed

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            await self.run_once()
