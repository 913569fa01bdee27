"""Modern async database service with SQLModel and SQLAlchemy 2.0.

``Database`` is the durable ``ExecutionRepository``: workflows and their
graphs, execution jobs, the step log and per-node run records.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, select

from core.config import Settings
from core.logging import get_logger
from models.database import Job, NodeRunRecord, StepResult, Workflow, WorkflowConnection, WorkflowNode
from services.execution.exceptions import JobNotFound, JobStateError, WorkflowNotFound
from services.execution.models import (
    Connection,
    ExecutionJob,
    Graph,
    JobStatus,
    Node,
    NodeRun,
    NodeRunState,
    StepRecord,
    TriggerType,
    WorkflowRecord,
)

logger = get_logger(__name__)

# Lost compare-and-set races before claim_next_job gives up for this poll
_CLAIM_ATTEMPTS = 5


def _to_workflow_record(row: Workflow) -> WorkflowRecord:
    return WorkflowRecord(
        workflow_id=row.id,
        name=row.name,
        owner_id=row.owner_id,
        active=row.active,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_job(row: Job) -> ExecutionJob:
    return ExecutionJob(
        job_id=row.id,
        workflow_id=row.workflow_id,
        user_id=row.user_id,
        trigger_type=TriggerType(row.trigger_type),
        trigger_payload=dict(row.trigger_payload or {}),
        status=JobStatus(row.status),
        error=row.error,
        cancel_requested=row.cancel_requested,
        attempts=row.attempts,
        scheduled_at=row.scheduled_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _to_node_run(row: NodeRunRecord) -> NodeRun:
    return NodeRun(
        job_id=row.job_id,
        node_id=row.node_id,
        node_type=row.node_type,
        state=NodeRunState(row.state),
        error=row.error,
        started_at=row.started_at,
        completed_at=row.completed_at,
        output=row.output,
    )


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    def _engine_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"echo": self.settings.database_echo, "future": True}
        if not self.settings.is_sqlite:
            options["pool_size"] = self.settings.database_pool_size
            options["max_overflow"] = self.settings.database_max_overflow
        elif ":memory:" in self.settings.database_url:
            # One shared connection, otherwise every session sees an empty database
            options["poolclass"] = StaticPool
            options["connect_args"] = {"check_same_thread": False}
        return options

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            self.engine = create_async_engine(self.settings.database_url, **self._engine_options())

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Workflows
    # ============================================================================

    async def save_workflow(self, workflow_id: str, nodes: Iterable[Dict[str, Any]],
                            connections: Iterable[Any], name: str = "",
                            owner_id: Optional[str] = None) -> WorkflowRecord:
        """Create or replace a workflow and its graph."""
        node_list = [Node.from_dict(n) for n in nodes]
        connection_list = [Connection.from_raw(c) for c in connections]
        now = time.time()

        async with self.get_session() as session:
            workflow = await session.get(Workflow, workflow_id)
            if workflow:
                workflow.name = name or workflow.name
                workflow.owner_id = owner_id
                workflow.updated_at = now
            else:
                workflow = Workflow(id=workflow_id, name=name or workflow_id, owner_id=owner_id,
                                    created_at=now, updated_at=now)
                session.add(workflow)

            await session.execute(delete(WorkflowNode).where(WorkflowNode.workflow_id == workflow_id))
            await session.execute(
                delete(WorkflowConnection).where(WorkflowConnection.workflow_id == workflow_id)
            )
            for position, node in enumerate(node_list):
                session.add(WorkflowNode(workflow_id=workflow_id, node_id=node.id, position=position,
                                         type=node.type, data=dict(node.data)))
            for position, conn in enumerate(connection_list):
                session.add(WorkflowConnection(workflow_id=workflow_id, position=position,
                                               source=conn.source, target=conn.target))

            await session.commit()
            await session.refresh(workflow)
            logger.info("Workflow saved", workflow_id=workflow_id, nodes=len(node_list),
                        connections=len(connection_list))
            return _to_workflow_record(workflow)

    async def set_workflow_active(self, workflow_id: str, active: bool) -> WorkflowRecord:
        async with self.get_session() as session:
            workflow = await session.get(Workflow, workflow_id)
            if workflow is None:
                raise WorkflowNotFound(workflow_id)
            workflow.active = active
            workflow.updated_at = time.time()
            await session.commit()
            return _to_workflow_record(workflow)

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        async with self.get_session() as session:
            workflow = await session.get(Workflow, workflow_id)
            return _to_workflow_record(workflow) if workflow else None

    async def list_workflows(self) -> List[WorkflowRecord]:
        async with self.get_session() as session:
            result = await session.execute(select(Workflow).order_by(Workflow.created_at))
            return [_to_workflow_record(w) for w in result.scalars().all()]

    async def load_graph(self, workflow_id: str) -> Graph:
        """Graph snapshot in authored node and connection order.

        Raises:
            WorkflowNotFound: No such workflow
        """
        async with self.get_session() as session:
            if await session.get(Workflow, workflow_id) is None:
                raise WorkflowNotFound(workflow_id)

            node_rows = await session.execute(
                select(WorkflowNode)
                .where(WorkflowNode.workflow_id == workflow_id)
                .order_by(WorkflowNode.position)
            )
            conn_rows = await session.execute(
                select(WorkflowConnection)
                .where(WorkflowConnection.workflow_id == workflow_id)
                .order_by(WorkflowConnection.position)
            )
            return Graph(
                workflow_id=workflow_id,
                nodes=tuple(Node(id=n.node_id, type=n.type, data=dict(n.data or {}))
                            for n in node_rows.scalars().all()),
                connections=tuple(Connection(source=c.source, target=c.target)
                                  for c in conn_rows.scalars().all()),
            )

    # ============================================================================
    # Execution Jobs
    # ============================================================================

    async def create_job(self, job: ExecutionJob) -> str:
        async with self.get_session() as session:
            session.add(Job(
                id=job.job_id,
                workflow_id=job.workflow_id,
                user_id=job.user_id,
                trigger_type=job.trigger_type.value,
                trigger_payload=job.trigger_payload,
                status=job.status.value,
                error=job.error,
                cancel_requested=job.cancel_requested,
                attempts=job.attempts,
                scheduled_at=job.scheduled_at,
                created_at=job.created_at,
                updated_at=job.updated_at,
                started_at=job.started_at,
                completed_at=job.completed_at,
            ))
            await session.commit()
            return job.job_id

    async def get_job(self, job_id: str) -> Optional[ExecutionJob]:
        async with self.get_session() as session:
            row = await session.get(Job, job_id)
            return _to_job(row) if row else None

    async def update_job_status(self, job_id: str, status: JobStatus,
                                error: Optional[str] = None,
                                expected: Optional[JobStatus] = None) -> ExecutionJob:
        """Move a job to ``status`` with a compare-and-set on its current status.

        Raises:
            JobNotFound: No such job
            JobStateError: Illegal transition, or the status is not ``expected``
        """
        status = JobStatus(status)
        async with self.get_session() as session:
            row = await session.get(Job, job_id)
            if row is None:
                raise JobNotFound(job_id)
            current = JobStatus(row.status)
            if expected is not None and current != expected:
                raise JobStateError(job_id, current.value, status.value)

            job = _to_job(row)
            job.apply_status(status, error)
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == current.value)
                .values(
                    status=job.status.value,
                    error=job.error,
                    attempts=job.attempts,
                    updated_at=job.updated_at,
                    started_at=job.started_at,
                    completed_at=job.completed_at,
                )
            )
            await session.commit()
            if result.rowcount != 1:
                fresh = await self.get_job(job_id)
                raise JobStateError(job_id, fresh.status.value if fresh else "missing", status.value)
            return job

    async def request_cancel(self, job_id: str) -> ExecutionJob:
        async with self.get_session() as session:
            row = await session.get(Job, job_id)
            if row is None:
                raise JobNotFound(job_id)
            row.cancel_requested = True
            row.updated_at = time.time()
            await session.commit()
            return _to_job(row)

    async def touch_job(self, job_id: str) -> None:
        """Refresh ``updated_at`` of a running job (liveness for recovery)."""
        async with self.get_session() as session:
            await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value)
                .values(updated_at=time.time())
            )
            await session.commit()

    async def claim_next_job(self) -> Optional[ExecutionJob]:
        """Atomically move the oldest due queued job to ``running``.

        A job is due once its ``scheduled_at`` has passed, or right away
        when it has none. Due jobs are taken by due time, then creation time.

        A conditional UPDATE on ``status = 'queued'`` decides the winner when
        several workers poll the same database.
        """
        for _ in range(_CLAIM_ATTEMPTS):
            async with self.get_session() as session:
                now = time.time()
                result = await session.execute(
                    select(Job)
                    .where(
                        Job.status == JobStatus.QUEUED.value,
                        or_(Job.scheduled_at.is_(None), Job.scheduled_at <= now),
                    )
                    .order_by(func.coalesce(Job.scheduled_at, Job.created_at), Job.created_at)
                    .limit(1)
                )
                row = result.scalars().first()
                if row is None:
                    return None

                job = _to_job(row)
                job.apply_status(JobStatus.RUNNING)
                claimed = await session.execute(
                    update(Job)
                    .where(Job.id == job.job_id, Job.status == JobStatus.QUEUED.value)
                    .values(
                        status=job.status.value,
                        attempts=job.attempts,
                        started_at=job.started_at,
                        updated_at=job.updated_at,
                    )
                )
                await session.commit()
                if claimed.rowcount == 1:
                    return job
            logger.debug("Claim lost to another worker", job_id=job.job_id)
        return None

    async def list_jobs(self, workflow_id: Optional[str] = None,
                        status: Optional[JobStatus] = None,
                        limit: int = 100) -> List[ExecutionJob]:
        async with self.get_session() as session:
            stmt = select(Job)
            if workflow_id is not None:
                stmt = stmt.where(Job.workflow_id == workflow_id)
            if status is not None:
                stmt = stmt.where(Job.status == JobStatus(status).value)
            stmt = stmt.order_by(Job.created_at).limit(limit)
            result = await session.execute(stmt)
            return [_to_job(row) for row in result.scalars().all()]

    # ============================================================================
    # Step Log
    # ============================================================================

    async def record_step_result(self, job_id: str, step_name: str, result: Any) -> bool:
        """Store a step result unless one already exists (first writer wins)."""
        try:
            async with self.get_session() as session:
                session.add(StepResult(job_id=job_id, step_name=step_name, result=result))
                await session.commit()
                return True
        except IntegrityError:
            logger.debug("Step result already recorded", job_id=job_id, step_name=step_name)
            return False
        except SQLAlchemyError as e:
            logger.error("Failed to record step result", job_id=job_id, step_name=step_name,
                         error=str(e))
            raise

    async def lookup_step_result(self, job_id: str, step_name: str) -> Optional[StepRecord]:
        async with self.get_session() as session:
            row = await session.get(StepResult, (job_id, step_name))
            if row is None:
                return None
            return StepRecord(job_id=row.job_id, step_name=row.step_name, result=row.result,
                              recorded_at=row.recorded_at)

    # ============================================================================
    # Node Runs
    # ============================================================================

    async def record_node_run(self, run: NodeRun) -> None:
        async with self.get_session() as session:
            await session.merge(NodeRunRecord(
                job_id=run.job_id,
                node_id=run.node_id,
                node_type=run.node_type,
                state=run.state.value,
                error=run.error,
                started_at=run.started_at,
                completed_at=run.completed_at,
                output=run.output,
            ))
            await session.commit()

    async def list_node_runs(self, job_id: str) -> List[NodeRun]:
        async with self.get_session() as session:
            result = await session.execute(
                select(NodeRunRecord)
                .where(NodeRunRecord.job_id == job_id)
                .order_by(NodeRunRecord.completed_at)
            )
            return [_to_node_run(row) for row in result.scalars().all()]
