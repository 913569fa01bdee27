"""Persistence collaborator contract and an in-process implementation.

``ExecutionRepository`` is everything the engine needs from storage. The
SQLModel implementation lives in ``core.database``; ``InMemoryRepository``
serves tests and single-process embedding.
"""

import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from core.logging import get_logger
from .exceptions import JobNotFound, JobStateError, WorkflowNotFound
from .models import (
    Connection,
    ExecutionJob,
    Graph,
    JobStatus,
    Node,
    NodeRun,
    StepRecord,
    WorkflowRecord,
)

logger = get_logger(__name__)


class ExecutionRepository(Protocol):
    """Storage operations used by the queue, orchestrator and step log."""

    async def save_workflow(self, workflow_id: str, nodes: Iterable[Dict[str, Any]],
                            connections: Iterable[Any], name: str = "",
                            owner_id: Optional[str] = None) -> WorkflowRecord: ...

    async def set_workflow_active(self, workflow_id: str, active: bool) -> WorkflowRecord: ...

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]: ...

    async def list_workflows(self) -> List[WorkflowRecord]: ...

    async def load_graph(self, workflow_id: str) -> Graph: ...

    async def create_job(self, job: ExecutionJob) -> str: ...

    async def get_job(self, job_id: str) -> Optional[ExecutionJob]: ...

    async def update_job_status(self, job_id: str, status: JobStatus,
                                error: Optional[str] = None,
                                expected: Optional[JobStatus] = None) -> ExecutionJob: ...

    async def request_cancel(self, job_id: str) -> ExecutionJob: ...

    async def touch_job(self, job_id: str) -> None: ...

    async def claim_next_job(self) -> Optional[ExecutionJob]: ...

    async def list_jobs(self, workflow_id: Optional[str] = None,
                        status: Optional[JobStatus] = None,
                        limit: int = 100) -> List[ExecutionJob]: ...

    async def record_step_result(self, job_id: str, step_name: str, result: Any) -> bool: ...

    async def lookup_step_result(self, job_id: str, step_name: str) -> Optional[StepRecord]: ...

    async def record_node_run(self, run: NodeRun) -> None: ...

    async def list_node_runs(self, job_id: str) -> List[NodeRun]: ...


def build_graph(workflow_id: str, nodes: Iterable[Dict[str, Any]],
                connections: Iterable[Any]) -> Graph:
    return Graph(
        workflow_id=workflow_id,
        nodes=tuple(Node.from_dict(n) for n in nodes),
        connections=tuple(Connection.from_raw(c) for c in connections),
    )


class InMemoryRepository:
    """Dict-backed ExecutionRepository for tests and embedded use."""

    def __init__(self):
        self._workflows: Dict[str, WorkflowRecord] = {}
        self._graphs: Dict[str, Graph] = {}
        self._jobs: Dict[str, ExecutionJob] = {}
        self._steps: Dict[Tuple[str, str], StepRecord] = {}
        self._node_runs: Dict[str, Dict[str, NodeRun]] = {}
        self._claim_lock = asyncio.Lock()

    # ------------------------------------------------------------- workflows

    async def save_workflow(self, workflow_id: str, nodes: Iterable[Dict[str, Any]],
                            connections: Iterable[Any], name: str = "",
                            owner_id: Optional[str] = None) -> WorkflowRecord:
        existing = self._workflows.get(workflow_id)
        record = WorkflowRecord(
            workflow_id=workflow_id,
            name=name or workflow_id,
            owner_id=owner_id,
            created_at=existing.created_at if existing else time.time(),
        )
        self._workflows[workflow_id] = record
        self._graphs[workflow_id] = build_graph(workflow_id, nodes, connections)
        return record

    async def set_workflow_active(self, workflow_id: str, active: bool) -> WorkflowRecord:
        record = self._workflows.get(workflow_id)
        if record is None:
            raise WorkflowNotFound(workflow_id)
        record.active = active
        record.updated_at = time.time()
        return record

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        return self._workflows.get(workflow_id)

    async def list_workflows(self) -> List[WorkflowRecord]:
        return list(self._workflows.values())

    async def load_graph(self, workflow_id: str) -> Graph:
        graph = self._graphs.get(workflow_id)
        if graph is None:
            raise WorkflowNotFound(workflow_id)
        return graph

    # ------------------------------------------------------------------ jobs

    async def create_job(self, job: ExecutionJob) -> str:
        self._jobs[job.job_id] = ExecutionJob.from_dict(job.to_dict())
        return job.job_id

    async def get_job(self, job_id: str) -> Optional[ExecutionJob]:
        job = self._jobs.get(job_id)
        # Callers get a copy so they cannot mutate stored state
        return ExecutionJob.from_dict(job.to_dict()) if job else None

    async def update_job_status(self, job_id: str, status: JobStatus,
                                error: Optional[str] = None,
                                expected: Optional[JobStatus] = None) -> ExecutionJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if expected is not None and job.status != expected:
            raise JobStateError(job_id, job.status.value, JobStatus(status).value)
        job.apply_status(JobStatus(status), error)
        return ExecutionJob.from_dict(job.to_dict())

    async def request_cancel(self, job_id: str) -> ExecutionJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        job.cancel_requested = True
        job.updated_at = time.time()
        return ExecutionJob.from_dict(job.to_dict())

    async def touch_job(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is not None and job.status == JobStatus.RUNNING:
            job.updated_at = time.time()

    async def claim_next_job(self) -> Optional[ExecutionJob]:
        async with self._claim_lock:
            now = time.time()
            queued = [j for j in self._jobs.values()
                      if j.status == JobStatus.QUEUED and j.is_due(now)]
            if not queued:
                return None
            job = min(queued, key=lambda j: (j.due_at, j.created_at))
            job.apply_status(JobStatus.RUNNING)
            return ExecutionJob.from_dict(job.to_dict())

    async def list_jobs(self, workflow_id: Optional[str] = None,
                        status: Optional[JobStatus] = None,
                        limit: int = 100) -> List[ExecutionJob]:
        jobs = [
            j for j in self._jobs.values()
            if (workflow_id is None or j.workflow_id == workflow_id)
            and (status is None or j.status == status)
        ]
        jobs.sort(key=lambda j: j.created_at)
        return [ExecutionJob.from_dict(j.to_dict()) for j in jobs[:limit]]

    # ----------------------------------------------------------------- steps

    async def record_step_result(self, job_id: str, step_name: str, result: Any) -> bool:
        key = (job_id, step_name)
        if key in self._steps:
            return False
        self._steps[key] = StepRecord(job_id=job_id, step_name=step_name, result=result)
        return True

    async def lookup_step_result(self, job_id: str, step_name: str) -> Optional[StepRecord]:
        return self._steps.get((job_id, step_name))

    # ------------------------------------------------------------- node runs

    async def record_node_run(self, run: NodeRun) -> None:
        self._node_runs.setdefault(run.job_id, {})[run.node_id] = run

    async def list_node_runs(self, job_id: str) -> List[NodeRun]:
        return list(self._node_runs.get(job_id, {}).values())
