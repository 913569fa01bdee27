"""Execution cache: per-job run locks and cache-backed step results.

Key schema:
    lock:job:{job_id}          -> JSON token (run lock, renewed while held, expires
                                  RUN_LOCK_TIMEOUT after the last renewal)
    step:{job_id}:{step_name}  -> JSON {"result": ...} (memoized step result)
"""

import asyncio
import uuid
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Tuple

from core.cache import CacheError, CacheService
from core.logging import get_logger
from .exceptions import JobAlreadyRunning, StepPersistenceError

logger = get_logger(__name__)

Heartbeat = Callable[[], Awaitable[None]]


def run_lock_key(job_id: str) -> str:
    return f"lock:job:{job_id}"


def step_key(job_id: str, step_name: str) -> str:
    return f"step:{job_id}:{step_name}"


class ExecutionCache:
    """Cache-side state shared by orchestrator runs."""

    def __init__(self, cache_service: CacheService, lock_timeout: int = 3600,
                 step_ttl: int = 604800):
        self.cache = cache_service
        self.lock_timeout = lock_timeout
        self.step_ttl = step_ttl

    # =========================================================================
    # RUN LOCK
    # =========================================================================

    @asynccontextmanager
    async def run_lock(self, job_id: str,
                       heartbeat: Optional[Heartbeat] = None) -> AsyncIterator[str]:
        """Hold the single-run lock for ``job_id``.

        Non-blocking: a second caller gets ``JobAlreadyRunning`` immediately.
        While held, a keep-alive task renews the lock every third of
        ``lock_timeout`` and calls ``heartbeat``, so a long run never loses
        its lock. A crashed process stops renewing and the lock expires.

        Yields:
            Lock token
        """
        key = run_lock_key(job_id)
        token = str(uuid.uuid4())

        acquired = await self.cache.set_if_absent(key, token, ttl=self.lock_timeout)
        if not acquired:
            raise JobAlreadyRunning(job_id)

        logger.debug("Run lock acquired", job_id=job_id, token=token[:8])
        keep_alive = asyncio.create_task(self._keep_alive(job_id, key, token, heartbeat),
                                         name=f"run_lock_{job_id}")
        try:
            yield token
        finally:
            keep_alive.cancel()
            with suppress(asyncio.CancelledError):
                await keep_alive
            try:
                released = await self.cache.delete_if_equals(key, token)
            except CacheError as e:
                # Lock expires by TTL
                logger.warning("Run lock release failed", job_id=job_id, error=str(e))
            else:
                logger.debug("Run lock released", job_id=job_id, released=released)

    @property
    def renew_interval(self) -> float:
        return self.lock_timeout / 3

    async def _keep_alive(self, job_id: str, key: str, token: str,
                          heartbeat: Optional[Heartbeat]) -> None:
        """Renew the run lock and report liveness until canceled."""
        while True:
            await asyncio.sleep(self.renew_interval)
            try:
                renewed = await self.cache.expire_if_equals(key, token, self.lock_timeout)
                if not renewed:
                    logger.error("Run lock lost", job_id=job_id)
                if heartbeat is not None:
                    await heartbeat()
            except Exception as e:
                logger.warning("Run lock heartbeat failed", job_id=job_id, error=str(e))

    async def is_run_locked(self, job_id: str) -> bool:
        return await self.cache.exists(run_lock_key(job_id))

    # =========================================================================
    # STEP RESULTS
    # =========================================================================

    async def get_step_result(self, job_id: str, step_name: str) -> Tuple[bool, Any]:
        """Return ``(found, result)`` for a memoized step."""
        try:
            entry: Optional[dict] = await self.cache.get(step_key(job_id, step_name))
        except CacheError as e:
            raise StepPersistenceError(job_id, step_name, str(e)) from e
        if entry is None:
            return False, None
        return True, entry.get("result")

    async def put_step_result(self, job_id: str, step_name: str, result: Any) -> bool:
        """Store a step result once. False if a result was already recorded."""
        try:
            return await self.cache.set_if_absent(
                step_key(job_id, step_name), {"result": result}, ttl=self.step_ttl
            )
        except CacheError as e:
            raise StepPersistenceError(job_id, step_name, str(e)) from e
