"""Workflow and job routes."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from core.container import container
from core.logging import get_logger
from models.nodes import (
    EnqueueResponse,
    ExecuteWorkflowRequest,
    JobResponse,
    ManualPayload,
    NodeRunResponse,
)
from services.execution.exceptions import JobNotFound
from services.execution.models import ExecutionJob, JobStatus, TriggerType
from services.execution.queue import ExecutionQueue
from services.execution.repository import ExecutionRepository

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["workflow"])


class WorkflowSaveRequest(BaseModel):
    name: str = ""
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    connections: List[Any] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


def _job_response(job: ExecutionJob) -> JobResponse:
    return JobResponse(
        job_id=job.job_id,
        workflow_id=job.workflow_id,
        user_id=job.user_id,
        trigger_type=job.trigger_type.value,
        status=job.status.value,
        error=job.error,
        cancel_requested=job.cancel_requested,
        scheduled_at=job.scheduled_at,
        created_at=job.created_at,
        updated_at=job.updated_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


# =============================================================================
# Workflows
# =============================================================================

@router.put("/workflows/{workflow_id}")
async def save_workflow(
    workflow_id: str,
    request: WorkflowSaveRequest,
    repository: ExecutionRepository = Depends(lambda: container.database()),
):
    """Create or replace a workflow graph and refresh its schedules."""
    record = await repository.save_workflow(
        workflow_id, request.nodes, request.connections,
        name=request.name, owner_id=request.owner_id,
    )
    settings = container.settings()
    if settings.scheduler_enabled:
        scheduler = container.cron_scheduler()
        if scheduler.running:
            await scheduler.sync_workflow(workflow_id)
    return {"success": True, "workflow": record.to_dict()}


@router.get("/workflows")
async def list_workflows(
    repository: ExecutionRepository = Depends(lambda: container.database()),
):
    workflows = await repository.list_workflows()
    return {"success": True, "workflows": [w.to_dict() for w in workflows]}


@router.get("/schedules")
async def list_schedules():
    """Registered cron schedules with their next fire time."""
    scheduler = container.cron_scheduler()
    return {"success": True, "running": scheduler.running, "schedules": scheduler.get_all_jobs()}


@router.post(
    "/workflows/{workflow_id}/execute",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=EnqueueResponse,
)
async def execute_workflow(
    workflow_id: str,
    request: ExecuteWorkflowRequest,
    queue: ExecutionQueue = Depends(lambda: container.execution_queue()),
):
    """Enqueue a manual run; the worker executes it in the background.

    With ``scheduledAt`` the job waits in the queue until that time.
    """
    payload = ManualPayload(data=request.data, initiated_by=request.user_id)
    scheduled_at = request.scheduled_at.timestamp() if request.scheduled_at else None
    job_id = await queue.enqueue_job(workflow_id, request.user_id,
                                     TriggerType.MANUAL.value, payload,
                                     scheduled_at=scheduled_at)
    return EnqueueResponse(job_id=job_id, workflow_id=workflow_id, status=JobStatus.QUEUED.value)


@router.get("/workflows/{workflow_id}/jobs", response_model=List[JobResponse])
async def list_workflow_jobs(
    workflow_id: str,
    job_status: Optional[JobStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    queue: ExecutionQueue = Depends(lambda: container.execution_queue()),
):
    jobs = await queue.list_jobs(workflow_id=workflow_id, status=job_status, limit=limit)
    return [_job_response(job) for job in jobs]


# =============================================================================
# Jobs
# =============================================================================

@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    queue: ExecutionQueue = Depends(lambda: container.execution_queue()),
):
    return _job_response(await queue.get_job(job_id))


@router.get("/jobs/{job_id}/nodes", response_model=List[NodeRunResponse])
async def get_job_nodes(
    job_id: str,
    repository: ExecutionRepository = Depends(lambda: container.database()),
):
    """Per-node terminal states of a job."""
    if await repository.get_job(job_id) is None:
        raise JobNotFound(job_id)
    runs = await repository.list_node_runs(job_id)
    return [
        NodeRunResponse(
            node_id=run.node_id,
            node_type=run.node_type,
            state=run.state.value,
            error=run.error,
            started_at=run.started_at,
            completed_at=run.completed_at,
            output=run.output,
        )
        for run in runs
    ]


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    queue: ExecutionQueue = Depends(lambda: container.execution_queue()),
):
    """Cancel a queued job, or ask a running one to stop at the next node."""
    job = await queue.cancel_job(job_id)
    logger.info("Cancel requested via API", job_id=job_id, status=job.status.value)
    return _job_response(job)
