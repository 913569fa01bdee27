"""Background worker that drains the execution queue.

The worker polls for queued jobs, claims them one at a time and runs each
through the orchestrator, with at most ``concurrency`` jobs in flight.
Abandoned jobs found by the recovery sweeper are resumed through the same
slots.
"""

import asyncio
from typing import Optional, Set

from core.logging import get_logger
from .exceptions import ExecutionEngineError, JobAlreadyRunning
from .executor import RunOrchestrator
from .models import RunResult
from .queue import ExecutionQueue
from .recovery import RecoverySweeper

logger = get_logger(__name__)


class ExecutionWorker:
    """Manages the poll loop and the in-flight job tasks."""

    def __init__(
        self,
        queue: ExecutionQueue,
        orchestrator: RunOrchestrator,
        sweeper: Optional[RecoverySweeper] = None,
        concurrency: int = 2,
        poll_interval: float = 1.0,
        recover_on_startup: bool = True,
    ):
        """Initialize the worker.

        Args:
            queue: Job intake to claim from
            orchestrator: Runs claimed jobs
            sweeper: Optional recovery sweeper; its callback resumes jobs here
            concurrency: Max jobs running at once
            poll_interval: Seconds to wait when the queue is empty
            recover_on_startup: Resume interrupted jobs when starting
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.orchestrator = orchestrator
        self.sweeper = sweeper
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.recover_on_startup = recover_on_startup

        self._slots = asyncio.Semaphore(concurrency)
        self._poll_task: Optional[asyncio.Task] = None
        self._jobs: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        """Check if the poll loop is running."""
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def in_flight(self) -> int:
        return len(self._jobs)

    async def start(self) -> None:
        """Start polling in the background."""
        if self.is_running:
            logger.warning("Execution worker already running")
            return

        if self.sweeper is not None:
            self.sweeper.set_recovery_callback(self.submit)
            if self.recover_on_startup:
                await self.sweeper.scan_on_startup()
            await self.sweeper.start()

        self._poll_task = asyncio.create_task(self._poll_loop(), name="execution-worker")
        logger.info("Execution worker started", concurrency=self.concurrency,
                    poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop polling and cancel in-flight jobs.

        Canceled jobs stay ``running`` in storage and are resumed by the
        next startup scan.
        """
        if self.sweeper is not None:
            await self.sweeper.stop()

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        for task in list(self._jobs):
            task.cancel()
        if self._jobs:
            await asyncio.gather(*self._jobs, return_exceptions=True)
        logger.info("Execution worker stopped")

    async def submit(self, job_id: str) -> None:
        """Run ``job_id`` in the next free slot (used for recovery)."""
        await self._slots.acquire()
        self._spawn(job_id)

    async def process_next(self) -> Optional[RunResult]:
        """Claim one queued job and run it inline.

        Returns:
            The run result, or None when the queue is empty
        """
        job = await self.queue.claim_next()
        if job is None:
            return None
        return await self.orchestrator.run_job(job.job_id)

    async def _poll_loop(self) -> None:
        while True:
            await self._slots.acquire()
            try:
                job = await self.queue.claim_next()
            except asyncio.CancelledError:
                self._slots.release()
                raise
            except Exception as e:
                self._slots.release()
                logger.error("Claiming next job failed", error=str(e))
                await asyncio.sleep(self.poll_interval)
                continue

            if job is None:
                self._slots.release()
                await asyncio.sleep(self.poll_interval)
                continue
            self._spawn(job.job_id)

    def _spawn(self, job_id: str) -> None:
        task = asyncio.create_task(self._run(job_id), name=f"job_{job_id}")
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)

    async def _run(self, job_id: str) -> None:
        try:
            result = await self.orchestrator.run_job(job_id)
            logger.info("Job run finished", job_id=job_id, status=result.status.value)
        except JobAlreadyRunning:
            logger.debug("Job already running elsewhere", job_id=job_id)
        except ExecutionEngineError as e:
            logger.warning("Job run ended with engine error", job_id=job_id,
                           error_type=type(e).__name__, error=str(e))
        except asyncio.CancelledError:
            logger.info("Job run cancelled", job_id=job_id)
            raise
        except Exception:
            logger.exception("Job run crashed", job_id=job_id)
        finally:
            self._slots.release()
