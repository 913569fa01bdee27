"""Recovery sweeper for crash recovery.

Runs as background task to:
- Detect abandoned jobs (``running`` in storage but no run lock held)
- Hand them back to the worker, which resumes them through the step log
"""

import asyncio
import time
from typing import Awaitable, Callable, List, Optional

from core.logging import get_logger
from .cache import ExecutionCache
from .models import JobStatus
from .repository import ExecutionRepository

logger = get_logger(__name__)

RecoveryCallback = Callable[[str], Awaitable[None]]


class RecoverySweeper:
    """Background task that recovers abandoned jobs.

    A job left ``running`` by a crashed process has no live run lock. Once
    it has been idle for ``stale_after`` seconds it is handed to the
    recovery callback. Resuming is safe: completed steps replay from the
    step log instead of running again.
    """

    def __init__(self, repository: ExecutionRepository, execution_cache: ExecutionCache,
                 stale_after: float = 30.0,
                 sweep_interval: float = 60.0,
                 batch_size: int = 100):
        """Initialize recovery sweeper.

        Args:
            repository: Job storage
            execution_cache: Run lock holder
            stale_after: Seconds since the job's last update before it counts
                as abandoned
            sweep_interval: Seconds between sweep runs
            batch_size: Max running jobs inspected per sweep
        """
        self.repository = repository
        self.execution_cache = execution_cache
        self.stale_after = stale_after
        self.sweep_interval = sweep_interval
        self.batch_size = batch_size
        self._running = False
        self._task: Optional[asyncio.Task] = None

        # Recovery callback (set by the worker)
        self._on_recovery: Optional[RecoveryCallback] = None

    def set_recovery_callback(self, callback: RecoveryCallback) -> None:
        """Set callback to invoke when a job needs recovery.

        Args:
            callback: Async function that takes job_id
        """
        self._on_recovery = callback

    async def start(self) -> None:
        """Start the recovery sweeper background task."""
        if self._running:
            logger.warning("Recovery sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="recovery_sweeper")
        logger.info("Recovery sweeper started",
                    stale_after=self.stale_after,
                    sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the recovery sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Recovery sweeper stopped")

    async def _sweep_loop(self) -> None:
        """Main sweep loop - runs continuously."""
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))

    async def find_abandoned(self, stale_after: Optional[float] = None) -> List[str]:
        """Ids of running jobs that no process is working on.

        Args:
            stale_after: Override for the idle threshold (0 at startup)
        """
        threshold = self.stale_after if stale_after is None else stale_after
        now = time.time()
        abandoned = []

        jobs = await self.repository.list_jobs(status=JobStatus.RUNNING, limit=self.batch_size)
        for job in jobs:
            if now - job.updated_at < threshold:
                continue
            if await self.execution_cache.is_run_locked(job.job_id):
                continue
            logger.warning("Found abandoned job", job_id=job.job_id,
                           workflow_id=job.workflow_id, idle_seconds=round(now - job.updated_at, 1))
            abandoned.append(job.job_id)
        return abandoned

    async def sweep_once(self, stale_after: Optional[float] = None) -> List[str]:
        """Single sweep iteration; returns the ids handed to the callback."""
        abandoned = await self.find_abandoned(stale_after)
        if not abandoned or self._on_recovery is None:
            return abandoned

        for job_id in abandoned:
            logger.info("Triggering recovery", job_id=job_id)
            await self._on_recovery(job_id)
        return abandoned

    async def scan_on_startup(self) -> List[str]:
        """Recover every running job without a lock, regardless of age.

        Returns:
            Job ids that were handed to the recovery callback
        """
        recovered = await self.sweep_once(stale_after=0)
        logger.info("Startup scan for interrupted jobs", recovered=len(recovered))
        return recovered
