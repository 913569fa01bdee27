"""
Cron Scheduler Service using APScheduler.
Registers scheduleTrigger nodes and enqueues ``scheduled`` jobs when they fire.
"""
from datetime import datetime, timezone as dt_timezone
from typing import Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from constants import SCHEDULE_TRIGGER
from core.logging import get_logger
from models.nodes import ScheduledPayload
from services.execution.exceptions import QueueIntakeError
from services.execution.models import TriggerType
from services.execution.queue import ExecutionQueue
from services.execution.repository import ExecutionRepository

logger = get_logger(__name__)


def build_cron_trigger(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    """
    Parse a cron expression into an APScheduler trigger.

    Args:
        cron_expression: 6-field cron expression (second minute hour day month weekday)
                        or 5-field (minute hour day month weekday)
        timezone: Timezone for schedule (default: UTC)

    Raises:
        ValueError: The expression has too few fields or an invalid value
    """
    parts = cron_expression.split()

    if len(parts) >= 6:
        # 6-field format: second minute hour day month weekday
        return CronTrigger(
            second=parts[0],
            minute=parts[1],
            hour=parts[2],
            day=parts[3],
            month=parts[4],
            day_of_week=parts[5],
            timezone=timezone
        )
    if len(parts) < 5:
        raise ValueError(f"Cron expression needs 5 or 6 fields: '{cron_expression}'")
    # 5-field format: minute hour day month weekday (default second=0)
    return CronTrigger(
        second='0',
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone
    )


def schedule_id(workflow_id: str, node_id: str) -> str:
    return f"{workflow_id}:{node_id}"


class CronScheduler:
    """Owns the AsyncIOScheduler and one cron job per scheduleTrigger node."""

    def __init__(self, queue: ExecutionQueue, repository: ExecutionRepository,
                 timezone: str = "UTC", scheduler: Optional[AsyncIOScheduler] = None):
        self.queue = queue
        self.repository = repository
        self.timezone = timezone
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def start(self) -> int:
        """Start the scheduler and register every enabled schedule.

        Returns:
            Number of schedules registered
        """
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("[Scheduler] Started", timezone=self.timezone)
        return await self.sync_all()

    def shutdown(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("[Scheduler] Shutdown")

    async def sync_all(self) -> int:
        count = 0
        for workflow in await self.repository.list_workflows():
            count += await self.sync_workflow(workflow.workflow_id)
        return count

    async def sync_workflow(self, workflow_id: str) -> int:
        """Replace the schedules of one workflow with its current trigger nodes.

        Inactive workflows and disabled triggers get no schedule.
        """
        self.remove_workflow(workflow_id)
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None or not workflow.active:
            return 0

        graph = await self.repository.load_graph(workflow_id)
        count = 0
        for node in graph.nodes:
            if node.type != SCHEDULE_TRIGGER or not node.data.get("enabled", True):
                continue
            cron = node.data.get("cron") or "*/5 * * * *"
            try:
                self.register(workflow_id, node.id, cron, node.data.get("timezone") or self.timezone)
            except ValueError as e:
                logger.warning("[Scheduler] Invalid cron expression", workflow_id=workflow_id,
                               node_id=node.id, cron=cron, error=str(e))
                continue
            count += 1
        return count

    def register(self, workflow_id: str, node_id: str, cron_expression: str,
                 timezone: Optional[str] = None) -> str:
        """
        Register a cron job that enqueues ``workflow_id`` on every fire.

        Returns:
            The scheduler job id

        Raises:
            ValueError: Invalid cron expression
        """
        trigger = build_cron_trigger(cron_expression, timezone or self.timezone)
        job_id = schedule_id(workflow_id, node_id)
        self.scheduler.add_job(
            self.fire,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            kwargs={"workflow_id": workflow_id, "cron": cron_expression},
        )
        logger.info("[Scheduler] Registered cron job", job_id=job_id, cron=cron_expression)
        return job_id

    def remove(self, job_id: str) -> bool:
        """
        Remove a cron job from the scheduler.

        Returns:
            True if job was removed, False if not found
        """
        try:
            self.scheduler.remove_job(job_id)
            logger.info("[Scheduler] Removed cron job", job_id=job_id)
            return True
        except JobLookupError:
            logger.warning("[Scheduler] Job not found", job_id=job_id)
            return False

    def remove_workflow(self, workflow_id: str) -> int:
        prefix = f"{workflow_id}:"
        removed = 0
        for job in self.scheduler.get_jobs():
            if job.id.startswith(prefix) and self.remove(job.id):
                removed += 1
        return removed

    async def fire(self, workflow_id: str, cron: str) -> Optional[str]:
        """Enqueue a scheduled job; intake rejections are logged, not raised."""
        payload = ScheduledPayload(scheduled_at=datetime.now(dt_timezone.utc), cron=cron)
        try:
            return await self.queue.enqueue_job(workflow_id, None, TriggerType.SCHEDULED.value,
                                                payload)
        except QueueIntakeError as e:
            logger.warning("[Scheduler] Scheduled run rejected", workflow_id=workflow_id,
                           error=str(e))
            return None

    def get_job_info(self, job_id: str) -> Optional[Dict]:
        """Information about a scheduled job, None if not found."""
        job = self.scheduler.get_job(job_id)
        if job:
            return {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger)
            }
        return None

    def get_all_jobs(self) -> List[Dict]:
        """Get list of all scheduled jobs."""
        return [
            {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger)
            }
            for job in self.scheduler.get_jobs()
        ]
