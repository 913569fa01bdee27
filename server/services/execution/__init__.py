"""Execution engine package.

Durable, queue-backed workflow execution with:
- Topological ordering with cycle rejection before any side effect
- Dependency-driven continuous scheduling (asyncio.wait FIRST_COMPLETED)
- Step memoization keyed by (job_id, step_name) for safe resume
- Per-job run lock and recovery of abandoned jobs
- Pluggable node executors in a registry
"""

from .models import (
    TriggerType,
    JobStatus,
    NodeStatus,
    NodeRunState,
    Node,
    Connection,
    Graph,
    ExecutionJob,
    NodeRun,
    StatusEvent,
    ExecutionContext,
    RunResult,
    StepRecord,
    WorkflowRecord,
)
from .exceptions import (
    ExecutionEngineError,
    GraphCycleError,
    InvalidGraphError,
    UnknownNodeType,
    ExecutorError,
    StepPersistenceError,
    QueueIntakeError,
    WorkflowNotFound,
    WorkflowAccessDenied,
    JobNotFound,
    JobStateError,
    JobAlreadyRunning,
    ContextWriteError,
)
from .graph import validate_graph, topological_sort, sort_graph, compute_layers
from .cache import ExecutionCache
from .steps import (
    StepRunner,
    StepRunnerFactory,
    RepositoryStepLog,
    CacheStepLog,
    create_step_log,
)
from .registry import ExecutorRegistry, ExecutorRequest
from .repository import ExecutionRepository, InMemoryRepository
from .queue import ExecutionQueue
from .executor import RunOrchestrator, sanitize_error
from .recovery import RecoverySweeper
from .worker import ExecutionWorker
from .conditions import (
    evaluate_condition,
    evaluate_conditions,
    get_nested_value,
    OPERATORS,
)

__all__ = [
    # Models
    "TriggerType",
    "JobStatus",
    "NodeStatus",
    "NodeRunState",
    "Node",
    "Connection",
    "Graph",
    "ExecutionJob",
    "NodeRun",
    "StatusEvent",
    "ExecutionContext",
    "RunResult",
    "StepRecord",
    "WorkflowRecord",
    # Errors
    "ExecutionEngineError",
    "GraphCycleError",
    "InvalidGraphError",
    "UnknownNodeType",
    "ExecutorError",
    "StepPersistenceError",
    "QueueIntakeError",
    "WorkflowNotFound",
    "WorkflowAccessDenied",
    "JobNotFound",
    "JobStateError",
    "JobAlreadyRunning",
    "ContextWriteError",
    # Graph
    "validate_graph",
    "topological_sort",
    "sort_graph",
    "compute_layers",
    # Steps
    "ExecutionCache",
    "StepRunner",
    "StepRunnerFactory",
    "RepositoryStepLog",
    "CacheStepLog",
    "create_step_log",
    # Executors
    "ExecutorRegistry",
    "ExecutorRequest",
    # Storage and intake
    "ExecutionRepository",
    "InMemoryRepository",
    "ExecutionQueue",
    # Runtime
    "RunOrchestrator",
    "sanitize_error",
    "RecoverySweeper",
    "ExecutionWorker",
    # Conditions
    "evaluate_condition",
    "evaluate_conditions",
    "get_nested_value",
    "OPERATORS",
]
