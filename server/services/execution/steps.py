"""Durable, memoized steps.

A step is a named unit of work inside an executor. ``StepRunner.run`` looks
the ``(job_id, step_name)`` key up in the step log before invoking the work
function and records the result after it succeeds. A key that already has a
result is never run again, in this process or after a restart, so external
side effects happen at most once per step per job.
"""

import asyncio
import weakref
from typing import Any, Awaitable, Callable, Optional, Protocol, Tuple, Union

import orjson
from sqlalchemy.exc import SQLAlchemyError

from core.logging import get_logger, log_step_operation
from .cache import ExecutionCache
from .exceptions import ExecutorError, StepPersistenceError

logger = get_logger(__name__)

StepFn = Callable[[], Union[Awaitable[Any], Any]]


class StepLogProtocol(Protocol):
    """Write-ahead step log keyed by ``(job_id, step_name)``."""

    backend: str

    async def lookup(self, job_id: str, step_name: str) -> Tuple[bool, Any]:
        """Return ``(found, result)``."""
        ...

    async def record(self, job_id: str, step_name: str, result: Any) -> bool:
        """Persist a successful step result; False if one already existed."""
        ...


class RepositoryStepLog:
    """Step log backed by the execution repository (database or memory)."""

    backend = "database"

    def __init__(self, repository):
        self.repository = repository

    async def lookup(self, job_id: str, step_name: str) -> Tuple[bool, Any]:
        try:
            record = await self.repository.lookup_step_result(job_id, step_name)
        except SQLAlchemyError as e:
            raise StepPersistenceError(job_id, step_name, str(e)) from e
        if record is None:
            return False, None
        return True, record.result

    async def record(self, job_id: str, step_name: str, result: Any) -> bool:
        try:
            return await self.repository.record_step_result(job_id, step_name, result)
        except SQLAlchemyError as e:
            raise StepPersistenceError(job_id, step_name, str(e)) from e


class CacheStepLog:
    """Step log backed by the cache service (Redis in production)."""

    backend = "cache"

    def __init__(self, execution_cache: ExecutionCache):
        self.execution_cache = execution_cache

    async def lookup(self, job_id: str, step_name: str) -> Tuple[bool, Any]:
        return await self.execution_cache.get_step_result(job_id, step_name)

    async def record(self, job_id: str, step_name: str, result: Any) -> bool:
        return await self.execution_cache.put_step_result(job_id, step_name, result)


def _normalize(step_name: str, result: Any) -> Any:
    """Round-trip a result through JSON so first runs and replays agree."""
    try:
        return orjson.loads(orjson.dumps(result))
    except TypeError as e:
        raise ExecutorError(
            f"Step '{step_name}' returned a result that is not JSON-serializable: {e}"
        ) from e


class StepRunner:
    """Runs named steps for one job.

    Bound to a job id; executors only see ``run``. Concurrent calls for the
    same key in this process are serialized through a shared lock table, so
    the second caller observes the first caller's recorded result.
    """

    def __init__(self, job_id: str, step_log: StepLogProtocol,
                 locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]"):
        self.job_id = job_id
        self.step_log = step_log
        self._locks = locks

    def _lock_for(self, step_name: str) -> asyncio.Lock:
        key = (self.job_id, step_name)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def run(self, step_name: str, fn: StepFn) -> Any:
        """Return the memoized result of ``step_name``, running ``fn`` at most once.

        Args:
            step_name: Stable name of the step within the job
            fn: Zero-argument callable, sync or async, producing a JSON value

        Raises:
            StepPersistenceError: The step log is unreachable
            Exception: Whatever ``fn`` raises; nothing is recorded then
        """
        lock = self._lock_for(step_name)
        async with lock:
            found, result = await self.step_log.lookup(self.job_id, step_name)
            if found:
                log_step_operation(logger, self.job_id, step_name, replayed=True,
                                   backend=self.step_log.backend)
                return result

            value = fn()
            if asyncio.iscoroutine(value) or isinstance(value, asyncio.Future):
                value = await value

            value = _normalize(step_name, value)
            if not await self.step_log.record(self.job_id, step_name, value):
                # Another process recorded this step first; its result wins
                found, stored = await self.step_log.lookup(self.job_id, step_name)
                if found:
                    value = stored
            log_step_operation(logger, self.job_id, step_name, replayed=False,
                               backend=self.step_log.backend)
            return value


class StepRunnerFactory:
    """Builds job-bound StepRunners that share one lock table per process."""

    def __init__(self, step_log: StepLogProtocol):
        self.step_log = step_log
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def for_job(self, job_id: str) -> StepRunner:
        return StepRunner(job_id, self.step_log, self._locks)


def create_step_log(backend: str, repository=None,
                    execution_cache: Optional[ExecutionCache] = None) -> StepLogProtocol:
    """Pick the step log implementation named by STEP_LOG_BACKEND."""
    if backend == "cache":
        if execution_cache is None:
            raise ValueError("cache step log requires an ExecutionCache")
        return CacheStepLog(execution_cache)
    if repository is None:
        raise ValueError("database step log requires a repository")
    return RepositoryStepLog(repository)
