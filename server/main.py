"""
FastAPI service for the durable workflow execution engine.

Trigger ingress (manual, webhook, schedule) enqueues jobs; a background
worker runs them; node status streams over WebSocket.
"""

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from core.container import container
from core.config import Settings
from core.logging import configure_logging, get_logger
from routers import webhook, websocket, workflow
from services.execution.exceptions import (
    ExecutionEngineError,
    JobAlreadyRunning,
    JobNotFound,
    JobStateError,
    QueueIntakeError,
    WorkflowAccessDenied,
    WorkflowNotFound,
)

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting workflow execution engine")

    await container.database().startup()
    await container.cache().startup()

    worker = container.worker()
    scheduler = container.cron_scheduler()

    if settings.worker_enabled:
        await worker.start()
    if settings.scheduler_enabled:
        scheduled = await scheduler.start()
        logger.info("Schedules registered", count=scheduled)

    logger.info("Services started successfully",
                cache_backend=container.cache().backend,
                step_log=settings.step_log_backend)
    yield

    # Shutdown
    scheduler.shutdown()
    await worker.stop()
    await container.http_client().aclose()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Workflow Execution Engine",
    version="1.0.0",
    description="Durable queue-backed workflow execution with real-time node status",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


def _error_response(status_code: int, exc: ExecutionEngineError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status_code,
        content={"success": False, "error": str(exc), "type": type(exc).__name__},
    )


@app.exception_handler(QueueIntakeError)
async def queue_intake_error_handler(request: Request, exc: QueueIntakeError):
    if isinstance(exc, WorkflowNotFound):
        return _error_response(status.HTTP_404_NOT_FOUND, exc)
    if isinstance(exc, WorkflowAccessDenied):
        return _error_response(status.HTTP_403_FORBIDDEN, exc)
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, exc)


@app.exception_handler(JobNotFound)
async def job_not_found_handler(request: Request, exc: JobNotFound):
    return _error_response(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(JobStateError)
async def job_state_error_handler(request: Request, exc: JobStateError):
    return _error_response(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(JobAlreadyRunning)
async def job_already_running_handler(request: Request, exc: JobAlreadyRunning):
    return _error_response(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(ExecutionEngineError)
async def engine_error_handler(request: Request, exc: ExecutionEngineError):
    logger.warning("Engine error", path=request.url.path, error_type=type(exc).__name__,
                   error=str(exc))
    return _error_response(status.HTTP_400_BAD_REQUEST, exc)


# Add CORS middleware
logger.info("Configuring CORS middleware",
            origins_count=len(settings.cors_origins),
            origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(workflow.router)
app.include_router(webhook.router)
app.include_router(websocket.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    worker = container.worker()
    return {
        "status": "OK",
        "service": "execution-engine",
        "version": "1.0.0",
        "environment": "development" if settings.debug else "production",
        "cache_backend": container.cache().backend,
        "step_log_backend": settings.step_log_backend,
        "worker": {
            "running": worker.is_running,
            "in_flight": worker.in_flight,
            "concurrency": worker.concurrency,
            "active_jobs": container.orchestrator().active_jobs(),
        },
        "status_subscribers": container.status_channel().subscriber_count(),
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting workflow execution engine",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
    )
