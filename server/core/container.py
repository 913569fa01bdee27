"""Dependency injection container for the application."""

import httpx
from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.execution.cache import ExecutionCache
from services.execution.executor import RunOrchestrator
from services.execution.queue import ExecutionQueue
from services.execution.recovery import RecoverySweeper
from services.execution.steps import StepRunnerFactory, create_step_log
from services.execution.worker import ExecutionWorker
from services.node_executor import build_executor_registry
from services.scheduler import CronScheduler
from services.status_broadcaster import StatusChannel


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database (durable ExecutionRepository)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (uses Redis when available, in-process dict otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    execution_cache = providers.Singleton(
        ExecutionCache,
        cache_service=cache,
        lock_timeout=settings.provided.run_lock_timeout,
        step_ttl=settings.provided.step_result_ttl,
    )

    # Step log (database or cache backed, by STEP_LOG_BACKEND)
    step_log = providers.Singleton(
        create_step_log,
        backend=settings.provided.step_log_backend,
        repository=database,
        execution_cache=execution_cache,
    )

    step_runners = providers.Singleton(
        StepRunnerFactory,
        step_log=step_log,
    )

    # Status events
    status_channel = providers.Singleton(
        StatusChannel,
        buffer_size=settings.provided.status_buffer_size,
    )

    # Executors
    http_client = providers.Singleton(
        httpx.AsyncClient,
        timeout=settings.provided.http_timeout,
        follow_redirects=True,
    )

    executor_registry = providers.Singleton(
        build_executor_registry,
        settings=settings,
        http_client=http_client,
    )

    # Engine
    execution_queue = providers.Singleton(
        ExecutionQueue,
        repository=database,
    )

    orchestrator = providers.Singleton(
        RunOrchestrator,
        repository=database,
        registry=executor_registry,
        step_runners=step_runners,
        channel=status_channel,
        execution_cache=execution_cache,
        max_parallel_nodes=settings.provided.max_parallel_nodes,
    )

    recovery_sweeper = providers.Singleton(
        RecoverySweeper,
        repository=database,
        execution_cache=execution_cache,
        stale_after=settings.provided.recovery_stale_after,
        sweep_interval=settings.provided.recovery_sweep_interval,
    )

    worker = providers.Singleton(
        ExecutionWorker,
        queue=execution_queue,
        orchestrator=orchestrator,
        sweeper=recovery_sweeper,
        concurrency=settings.provided.worker_concurrency,
        poll_interval=settings.provided.worker_poll_interval,
        recover_on_startup=settings.provided.recovery_on_startup,
    )

    cron_scheduler = providers.Singleton(
        CronScheduler,
        queue=execution_queue,
        repository=database,
        timezone=settings.provided.scheduler_timezone,
    )


# Global container instance
container = Container()
