"""Run orchestrator with dependency-driven continuous scheduling.

Implements:
- Per-job run lock, renewed while the run lasts, so a job never has two
  concurrent runs
- Pre-run validation and topological ordering (fails before any side effect)
- Continuous scheduling with asyncio.wait (FIRST_COMPLETED pattern): a node
  starts as soon as all of its direct predecessors succeeded
- Failure isolation: a failed node skips its transitive dependents while
  independent branches keep running
- Cancellation checked at node boundaries
"""

import asyncio
import functools
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from core.logging import get_logger, log_execution_time
from services.status_broadcaster import NodeStatusPublisher, StatusChannel
from .cache import ExecutionCache
from .exceptions import (
    ExecutionEngineError,
    GraphCycleError,
    InvalidGraphError,
    JobNotFound,
    JobStateError,
    StepPersistenceError,
    WorkflowNotFound,
)
from .graph import compute_layers, topological_sort
from .models import (
    ExecutionContext,
    ExecutionJob,
    Graph,
    JobStatus,
    Node,
    NodeRun,
    NodeRunState,
    NodeStatus,
    RunResult,
)
from .registry import ExecutorRegistry, ExecutorRequest
from .repository import ExecutionRepository
from .steps import StepRunnerFactory

logger = get_logger(__name__)

_BLOCKING_STATES = frozenset([NodeRunState.FAILED, NodeRunState.SKIPPED, NodeRunState.CANCELED])


def sanitize_error(error: BaseException) -> str:
    """User-facing message for a node failure.

    Engine errors carry messages written for users. Anything else is an
    internal fault and only its type is exposed.
    """
    if isinstance(error, ExecutionEngineError):
        return str(error)
    return f"Internal error in node executor ({type(error).__name__})"


@dataclass
class _NodeOutcome:
    node: Node
    state: NodeRunState
    started_at: float
    completed_at: float
    error: Optional[str] = None
    output: Any = None


class RunOrchestrator:
    """Drives one job from its graph to a terminal state.

    Features:
    - Isolated ExecutionContext per run
    - Parallel execution of independent nodes, bounded by max_parallel_nodes
      (1 gives strict sequential topological order)
    - Node-local errors never escape; they become ``error`` status events and
      ``failed`` node runs
    """

    def __init__(self, repository: ExecutionRepository, registry: ExecutorRegistry,
                 step_runners: StepRunnerFactory, channel: StatusChannel,
                 execution_cache: ExecutionCache, max_parallel_nodes: int = 4):
        if max_parallel_nodes < 1:
            raise ValueError("max_parallel_nodes must be >= 1")
        self.repository = repository
        self.registry = registry
        self.step_runners = step_runners
        self.channel = channel
        self.execution_cache = execution_cache
        self.max_parallel_nodes = max_parallel_nodes

        # job_id -> context of runs in this process
        self._active: Dict[str, ExecutionContext] = {}

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def run_job(self, job_id: str) -> RunResult:
        """Run ``job_id`` to a terminal state.

        Accepts a ``queued`` job (moved to ``running`` here) or a ``running``
        one (claimed by a worker, or left over by a crashed process).

        Raises:
            JobAlreadyRunning: Another run holds the lock for this job
            JobNotFound: No such job
            JobStateError: The job is already terminal
            GraphCycleError, InvalidGraphError, WorkflowNotFound: Pre-run
                check failed; the job is marked ``failed`` and no node ran
            StepPersistenceError: The step log became unreachable; the job
                stays ``running`` so it can be resumed
        """
        heartbeat = functools.partial(self.repository.touch_job, job_id)
        async with self.execution_cache.run_lock(job_id, heartbeat=heartbeat):
            job = await self._start_job(job_id)
            start_time = time.time()

            try:
                graph = await self.repository.load_graph(job.workflow_id)
                order = topological_sort(graph.nodes, graph.connections)
            except (GraphCycleError, InvalidGraphError, WorkflowNotFound) as e:
                logger.warning("Pre-run check failed", job_id=job_id,
                               workflow_id=job.workflow_id, error=str(e))
                await self.repository.update_job_status(job_id, JobStatus.FAILED, error=str(e))
                raise

            logger.info("Starting job", job_id=job_id, workflow_id=job.workflow_id,
                        node_count=len(order), layers=len(compute_layers(order, graph)),
                        attempt=job.attempts)

            ctx = ExecutionContext(job.job_id, job.workflow_id, job.trigger_type,
                                   job.trigger_payload)
            self._active[job_id] = ctx
            try:
                result = await self._execute(job, graph, order, ctx)
            finally:
                self._active.pop(job_id, None)

            await self.repository.update_job_status(job_id, result.status, error=result.error)
            log_execution_time(logger, "run_job", start_time, time.time(),
                               job_id=job_id, status=result.status.value)
            return result

    async def _start_job(self, job_id: str) -> ExecutionJob:
        job = await self.repository.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status.is_terminal:
            raise JobStateError(job_id, job.status.value, JobStatus.RUNNING.value)
        if job.status == JobStatus.QUEUED:
            job = await self.repository.update_job_status(job_id, JobStatus.RUNNING,
                                                          expected=JobStatus.QUEUED)
        return job

    def active_jobs(self) -> List[str]:
        return list(self._active)

    # =========================================================================
    # CONTINUOUS SCHEDULING
    # =========================================================================

    async def _execute(self, job: ExecutionJob, graph: Graph, order: List[Node],
                       ctx: ExecutionContext) -> RunResult:
        preds = graph.predecessors()
        states: Dict[str, NodeRunState] = {}
        running: Dict[asyncio.Task, Node] = {}
        started: Set[str] = set()
        canceled = False
        persistence_error: Optional[StepPersistenceError] = None

        try:
            while True:
                if not canceled and persistence_error is None:
                    canceled = await self._cancel_requested(job.job_id)
                    if canceled:
                        logger.info("Cancellation observed", job_id=job.job_id,
                                    in_flight=len(running))

                if not canceled and persistence_error is None:
                    await self._schedule_ready(job, order, preds, states, running, started, ctx)

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    node = running.pop(task)
                    try:
                        outcome: _NodeOutcome = task.result()
                    except StepPersistenceError as e:
                        logger.error("Step log unavailable", job_id=job.job_id,
                                     node_id=node.id, error=str(e))
                        persistence_error = e
                        continue
                    states[node.id] = outcome.state
                    await self._record_outcome(job, outcome)

        except asyncio.CancelledError:
            for task in running:
                task.cancel()
            if running:
                await asyncio.wait(running)
            logger.warning("Run interrupted", job_id=job.job_id)
            raise

        if persistence_error is not None:
            raise persistence_error

        # Whatever never got scheduled (cancellation) is skipped
        for node in order:
            if node.id not in states:
                states[node.id] = NodeRunState.SKIPPED
                await self._record_skip(job, node, "Job canceled")

        failed = [n.id for n in order if states[n.id] == NodeRunState.FAILED]
        if canceled:
            status, error = JobStatus.CANCELED, "Canceled"
        elif failed:
            status, error = JobStatus.FAILED, f"Node(s) failed: {', '.join(failed)}"
        else:
            status, error = JobStatus.SUCCEEDED, None

        logger.info("Job finished", job_id=job.job_id, status=status.value,
                    failed=failed,
                    skipped=[n for n, s in states.items() if s == NodeRunState.SKIPPED])

        return RunResult(
            job_id=job.job_id,
            workflow_id=job.workflow_id,
            status=status,
            node_states={n.id: states[n.id] for n in order},
            order=[n.id for n in order],
            error=error,
            outputs=dict(ctx.results),
        )

    async def _schedule_ready(self, job: ExecutionJob, order: List[Node],
                              preds: Dict[str, List[str]], states: Dict[str, NodeRunState],
                              running: Dict[asyncio.Task, Node], started: Set[str],
                              ctx: ExecutionContext) -> None:
        """Start every node whose direct predecessors all succeeded.

        Walks the topological order, so a skip propagates to all transitive
        dependents within a single pass.
        """
        for node in order:
            if node.id in started or node.id in states:
                continue
            upstream = preds.get(node.id, [])

            blocked_by = [p for p in upstream if states.get(p) in _BLOCKING_STATES]
            if blocked_by:
                states[node.id] = NodeRunState.SKIPPED
                await self._record_skip(job, node, f"Upstream did not succeed: {', '.join(blocked_by)}")
                continue

            if not all(states.get(p) == NodeRunState.SUCCEEDED for p in upstream):
                continue
            if len(running) >= self.max_parallel_nodes:
                continue

            started.add(node.id)
            inputs = {p: ctx.get(p) for p in upstream}
            task = asyncio.create_task(self._run_node(job, node, ctx, inputs),
                                       name=f"node_{node.id}")
            running[task] = node
            logger.debug("Scheduled node", job_id=job.job_id, node_id=node.id)

    async def _run_node(self, job: ExecutionJob, node: Node, ctx: ExecutionContext,
                        inputs: Dict[str, Any]) -> _NodeOutcome:
        """Invoke one executor; node-local failures become an outcome."""
        publish = NodeStatusPublisher(self.channel, job.job_id, job.workflow_id, node.id)
        started_at = time.time()
        publish(NodeStatus.LOADING)

        try:
            executor = self.registry.get(node.type)
            request = ExecutorRequest(
                node_id=node.id,
                node_type=node.type,
                data=node.data,
                context=ctx,
                step=self.step_runners.for_job(job.job_id),
                publish=publish,
                inputs=inputs,
            )
            result = await executor(request)
            ctx.record(node.id, result)
        except (asyncio.CancelledError, StepPersistenceError):
            raise
        except Exception as e:
            message = sanitize_error(e)
            if isinstance(e, ExecutionEngineError):
                logger.warning("Node failed", job_id=job.job_id, node_id=node.id,
                               node_type=node.type, error=message)
            else:
                logger.exception("Node raised unexpected error", job_id=job.job_id,
                                 node_id=node.id, node_type=node.type)
            publish(NodeStatus.ERROR, message)
            return _NodeOutcome(node, NodeRunState.FAILED, started_at, time.time(), message)

        publish(NodeStatus.SUCCESS)
        logger.info("Node completed", job_id=job.job_id, node_id=node.id, node_type=node.type)
        return _NodeOutcome(node, NodeRunState.SUCCEEDED, started_at, time.time(), output=result)

    # =========================================================================
    # BOOKKEEPING
    # =========================================================================

    async def _cancel_requested(self, job_id: str) -> bool:
        job = await self.repository.get_job(job_id)
        return bool(job and job.cancel_requested)

    async def _record_outcome(self, job: ExecutionJob, outcome: _NodeOutcome) -> None:
        await self.repository.record_node_run(NodeRun(
            job_id=job.job_id,
            node_id=outcome.node.id,
            node_type=outcome.node.type,
            state=outcome.state,
            error=outcome.error,
            started_at=outcome.started_at,
            completed_at=outcome.completed_at,
            output=outcome.output,
        ))

    async def _record_skip(self, job: ExecutionJob, node: Node, reason: str) -> None:
        logger.info("Node skipped", job_id=job.job_id, node_id=node.id, reason=reason)
        await self.repository.record_node_run(NodeRun(
            job_id=job.job_id,
            node_id=node.id,
            node_type=node.type,
            state=NodeRunState.SKIPPED,
            error=reason,
        ))
