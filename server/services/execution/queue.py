"""Execution queue: durable job intake.

Enqueue validates and persists a ``queued`` job and returns at once; the
worker claims jobs later and hands them to the orchestrator.
"""

from typing import Any, List, Optional

from core.logging import get_logger
from models.nodes import dump_trigger_payload
from .exceptions import (
    JobNotFound,
    JobStateError,
    QueueIntakeError,
    WorkflowAccessDenied,
    WorkflowNotFound,
)
from .models import ExecutionJob, JobStatus, TriggerType
from .repository import ExecutionRepository

logger = get_logger(__name__)


class ExecutionQueue:
    """Single entry point for trigger ingress."""

    def __init__(self, repository: ExecutionRepository):
        self.repository = repository

    async def enqueue_job(self, workflow_id: str, user_id: Optional[str],
                          trigger_type: str, payload: Any = None,
                          scheduled_at: Optional[float] = None) -> str:
        """Persist a new ``queued`` job for ``workflow_id``.

        Args:
            workflow_id: Workflow to run
            user_id: Triggering user; when given it must own the workflow
            trigger_type: manual, webhook or scheduled
            payload: Raw trigger payload; wrapped into its tagged variant
            scheduled_at: Epoch seconds before which no worker claims the
                job; None makes it claimable at once

        Returns:
            The new job id

        Raises:
            QueueIntakeError: Unknown trigger type, missing or inactive
                workflow, or a user that does not own it. No job is created.
        """
        try:
            kind = TriggerType(trigger_type)
        except ValueError:
            raise QueueIntakeError(
                f"Unknown trigger type '{trigger_type}'", workflow_id=workflow_id
            ) from None

        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            logger.warning("Enqueue rejected: workflow not found", workflow_id=workflow_id)
            raise WorkflowNotFound(workflow_id)
        if user_id is not None and workflow.owner_id is not None and workflow.owner_id != user_id:
            logger.warning("Enqueue rejected: not owner", workflow_id=workflow_id, user_id=user_id)
            raise WorkflowAccessDenied(workflow_id, user_id)
        if not workflow.active:
            raise QueueIntakeError(f"Workflow '{workflow_id}' is inactive", workflow_id=workflow_id)

        job = ExecutionJob.create(
            workflow_id=workflow_id,
            trigger_type=kind,
            trigger_payload=dump_trigger_payload(kind.value, payload),
            user_id=user_id,
            scheduled_at=scheduled_at,
        )
        job_id = await self.repository.create_job(job)
        logger.info("Job enqueued", job_id=job_id, workflow_id=workflow_id,
                    trigger_type=kind.value, scheduled_at=scheduled_at)
        return job_id

    async def claim_next(self) -> Optional[ExecutionJob]:
        """Atomically move the oldest due queued job to ``running`` and return it."""
        job = await self.repository.claim_next_job()
        if job is not None:
            logger.info("Job claimed", job_id=job.job_id, workflow_id=job.workflow_id)
        return job

    async def get_job(self, job_id: str) -> ExecutionJob:
        job = await self.repository.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def cancel_job(self, job_id: str) -> ExecutionJob:
        """Cancel a queued job outright or flag a running one.

        A running job stops at its next node boundary.

        Raises:
            JobNotFound: No such job
            JobStateError: The job is already terminal
        """
        job = await self.get_job(job_id)
        if job.status == JobStatus.QUEUED:
            try:
                job = await self.repository.update_job_status(
                    job_id, JobStatus.CANCELED, error="Canceled before start",
                    expected=JobStatus.QUEUED,
                )
            except JobStateError:
                # Claimed by a worker in the meantime
                job = await self.get_job(job_id)
            else:
                logger.info("Queued job canceled", job_id=job_id)
                return job
        if job.status == JobStatus.RUNNING:
            job = await self.repository.request_cancel(job_id)
            logger.info("Cancellation requested", job_id=job_id)
            return job
        raise JobStateError(job_id, job.status.value, JobStatus.CANCELED.value)

    async def list_jobs(self, workflow_id: Optional[str] = None,
                        status: Optional[JobStatus] = None, limit: int = 100) -> List[ExecutionJob]:
        return await self.repository.list_jobs(workflow_id=workflow_id, status=status, limit=limit)
