"""
Background prune scheduling for the Cache Engine.

Runs ``CacheEngine.prune`` on a fixed interval in a worker thread so the
event loop keeps serving requests while the stores are walked.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from swarm_gateway.cache.engine import CacheEngine, PruneResult
from swarm_gateway.utils.logging_config import log_duration

logger = logging.getLogger(__name__)


class PruneScheduler:
    """
    Periodic cache pruning.

    Example:
        scheduler = PruneScheduler(engine, interval_seconds=86400)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: CacheEngine,
        interval_seconds: float,
        prune_on_start: bool = True,
        error_backoff_seconds: float = 60.0,
    ):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.prune_on_start = prune_on_start
        self.error_backoff_seconds = error_backoff_seconds

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._run_lock = asyncio.Lock()

        self.runs = 0
        self.failures = 0
        self.last_run_at: Optional[float] = None
        self.last_result: Optional[PruneResult] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"[Cache] Prune scheduler started (every {self.interval_seconds:.0f}s)")

    async def stop(self) -> None:
        """Stop the scheduler and persist pending metadata."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        try:
            await asyncio.to_thread(self.engine.flush)
        except OSError as e:
            logger.warning(f"[Cache] Could not flush cache metadata: {e}")

        logger.info("[Cache] Prune scheduler stopped")

    @log_duration(logger, message="[Cache] Prune pass")
    async def run_once(self) -> PruneResult:
        """Prune now, serialised against the scheduled runs."""
        async with self._run_lock:
            result = await asyncio.to_thread(self.engine.prune)
            self.runs += 1
            self.last_run_at = time.time()
            self.last_result = result
            return result

    async def _scheduler_loop(self) -> None:
        """Main scheduler loop."""
        if not self.prune_on_start:
            await asyncio.sleep(self.interval_seconds)

        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[Cache] Scheduled prune failed: {e}")
                self.failures += 1
                await asyncio.sleep(self.error_backoff_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }
