"""Execution engine exception hierarchy."""

from typing import Iterable, List, Optional


class ExecutionEngineError(Exception):
    """Base exception for all execution engine errors."""


class GraphCycleError(ExecutionEngineError):
    """The workflow graph contains a dependency cycle."""

    def __init__(self, node_ids: Iterable[str]):
        self.node_ids: List[str] = list(node_ids)
        super().__init__(
            f"Workflow contains a cycle involving nodes: {', '.join(self.node_ids)}"
        )


class InvalidGraphError(ExecutionEngineError):
    """The graph is malformed: dangling connections, duplicate or reserved node ids."""

    def __init__(self, message: str, missing_ids: Optional[Iterable[str]] = None):
        self.missing_ids: List[str] = list(missing_ids or [])
        super().__init__(message)


class UnknownNodeType(ExecutionEngineError):
    """No executor is registered for a node's declared type."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No executor registered for node type '{node_type}'")


class ExecutorError(ExecutionEngineError):
    """Raised by a node executor body to fail its node."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


class StepPersistenceError(ExecutionEngineError):
    """The durable step log could not be read or written.

    Transient: the worker may retry the job, and step memoization makes
    the retry safe.
    """

    def __init__(self, job_id: str, step_name: str, message: str):
        self.job_id = job_id
        self.step_name = step_name
        super().__init__(f"Step log failure for {job_id}/{step_name}: {message}")


class QueueIntakeError(ExecutionEngineError):
    """Enqueue was rejected; no job record was created."""

    def __init__(self, message: str, workflow_id: Optional[str] = None):
        self.workflow_id = workflow_id
        super().__init__(message)


class WorkflowNotFound(QueueIntakeError):
    """The referenced workflow does not exist."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow '{workflow_id}' not found", workflow_id=workflow_id)


class WorkflowAccessDenied(QueueIntakeError):
    """The triggering user does not own the workflow."""

    def __init__(self, workflow_id: str, user_id: str):
        self.user_id = user_id
        super().__init__(
            f"User '{user_id}' may not trigger workflow '{workflow_id}'",
            workflow_id=workflow_id,
        )


class JobNotFound(ExecutionEngineError):
    """No job record exists for the given id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class JobStateError(ExecutionEngineError):
    """Illegal job lifecycle transition."""

    def __init__(self, job_id: str, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job '{job_id}' cannot move from {current} to {requested}")


class JobAlreadyRunning(ExecutionEngineError):
    """Another orchestrator run holds the lock for this job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' is already running")


class ContextWriteError(ExecutionEngineError):
    """A node result was recorded twice in one run."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Result for node '{node_id}' is already recorded")
