"""Execution engine state models.

Graph snapshots, job records, status events and the per-run context.
All records are JSON-serializable via ``to_dict``/``from_dict`` so they can
round-trip through the database, the cache and the status websocket.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from services.execution.exceptions import ContextWriteError, JobStateError


class TriggerType(str, Enum):
    """How a job was started."""
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"


class JobStatus(str, Enum):
    """Job lifecycle states.

    State transitions:
        QUEUED -> RUNNING -> SUCCEEDED
                          -> FAILED
                          -> CANCELED
        QUEUED -> CANCELED
        RUNNING -> RUNNING (resume after a crashed worker)
    """
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES


TERMINAL_JOB_STATES: FrozenSet[JobStatus] = frozenset([
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
    JobStatus.CANCELED,
])

_ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset([JobStatus.RUNNING, JobStatus.CANCELED, JobStatus.FAILED]),
    JobStatus.RUNNING: frozenset([JobStatus.RUNNING, JobStatus.SUCCEEDED,
                                  JobStatus.FAILED, JobStatus.CANCELED]),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}


def check_transition(job_id: str, current: JobStatus, requested: JobStatus) -> None:
    """Raise JobStateError if ``current -> requested`` is not a legal move."""
    if requested not in _ALLOWED_TRANSITIONS[current]:
        raise JobStateError(job_id, current.value, requested.value)


class NodeStatus(str, Enum):
    """Statuses carried by live StatusEvents."""
    QUEUED = "queued"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class NodeRunState(str, Enum):
    """Terminal per-node state recorded for a run."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"


# =============================================================================
# GRAPH
# =============================================================================

@dataclass(frozen=True)
class Node:
    """A unit of work in a workflow graph."""
    id: str
    type: str
    data: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Node":
        return cls(
            id=str(raw["id"]),
            type=str(raw.get("type", "unknown")),
            data=dict(raw.get("data") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type, "data": dict(self.data)}


@dataclass(frozen=True)
class Connection:
    """Directed dependency: ``target`` runs after ``source``."""
    source: str
    target: str

    @classmethod
    def from_raw(cls, raw: Any) -> "Connection":
        """Accept ``{"source", "target"}`` dicts or ``[source, target]`` pairs."""
        if isinstance(raw, dict):
            return cls(source=str(raw["source"]), target=str(raw["target"]))
        source, target = raw
        return cls(source=str(source), target=str(target))

    def to_dict(self) -> Dict[str, str]:
        return {"source": self.source, "target": self.target}


@dataclass(frozen=True)
class Graph:
    """Immutable snapshot of a workflow's nodes and connections."""
    workflow_id: str
    nodes: Tuple[Node, ...] = ()
    connections: Tuple[Connection, ...] = ()

    @classmethod
    def from_dict(cls, workflow_id: str, raw: Dict[str, Any]) -> "Graph":
        return cls(
            workflow_id=workflow_id,
            nodes=tuple(Node.from_dict(n) for n in raw.get("nodes", [])),
            connections=tuple(Connection.from_raw(c) for c in raw.get("connections", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "nodes": [n.to_dict() for n in self.nodes],
            "connections": [c.to_dict() for c in self.connections],
        }

    @property
    def node_map(self) -> Dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def predecessors(self) -> Dict[str, List[str]]:
        """Direct upstream node ids per node, in connection order, deduplicated."""
        preds: Dict[str, List[str]] = {n.id: [] for n in self.nodes}
        for conn in self.connections:
            bucket = preds.setdefault(conn.target, [])
            if conn.source not in bucket:
                bucket.append(conn.source)
        return preds

    def successors(self) -> Dict[str, List[str]]:
        """Direct downstream node ids per node, in connection order, deduplicated."""
        succs: Dict[str, List[str]] = {n.id: [] for n in self.nodes}
        for conn in self.connections:
            bucket = succs.setdefault(conn.source, [])
            if conn.target not in bucket:
                bucket.append(conn.target)
        return succs


# =============================================================================
# JOBS
# =============================================================================

@dataclass
class ExecutionJob:
    """One queued, trackable execution attempt of a workflow."""
    job_id: str
    workflow_id: str
    trigger_type: TriggerType
    trigger_payload: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    error: Optional[str] = None
    cancel_requested: bool = False
    attempts: int = 0
    scheduled_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @classmethod
    def create(cls, workflow_id: str, trigger_type: TriggerType,
               trigger_payload: Dict[str, Any], user_id: Optional[str] = None,
               scheduled_at: Optional[float] = None) -> "ExecutionJob":
        """Factory for a fresh ``queued`` job, claimable from ``scheduled_at`` on."""
        return cls(
            job_id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            trigger_type=TriggerType(trigger_type),
            trigger_payload=trigger_payload,
            user_id=user_id,
            scheduled_at=scheduled_at,
        )

    @property
    def due_at(self) -> float:
        """Earliest time a worker may claim the job."""
        return self.scheduled_at if self.scheduled_at is not None else self.created_at

    def is_due(self, now: float) -> bool:
        return self.scheduled_at is None or self.scheduled_at <= now

    def apply_status(self, status: JobStatus, error: Optional[str] = None) -> None:
        """Move to ``status`` in place, enforcing the lifecycle."""
        check_transition(self.job_id, self.status, status)
        now = time.time()
        if status == JobStatus.RUNNING:
            self.attempts += 1
            if self.started_at is None:
                self.started_at = now
        if status.is_terminal:
            self.completed_at = now
        if error is not None:
            self.error = error
        self.status = status
        self.updated_at = now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "workflow_id": self.workflow_id,
            "user_id": self.user_id,
            "trigger_type": self.trigger_type.value,
            "trigger_payload": self.trigger_payload,
            "status": self.status.value,
            "error": self.error,
            "cancel_requested": self.cancel_requested,
            "attempts": self.attempts,
            "scheduled_at": self.scheduled_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionJob":
        return cls(
            job_id=data["job_id"],
            workflow_id=data["workflow_id"],
            user_id=data.get("user_id"),
            trigger_type=TriggerType(data["trigger_type"]),
            trigger_payload=data.get("trigger_payload") or {},
            status=JobStatus(data.get("status", JobStatus.QUEUED.value)),
            error=data.get("error"),
            cancel_requested=data.get("cancel_requested", False),
            attempts=data.get("attempts", 0),
            scheduled_at=data.get("scheduled_at"),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class NodeRun:
    """Terminal record of one node within one job, with the value it produced."""
    job_id: str
    node_id: str
    node_type: str
    state: NodeRunState
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    output: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "state": self.state.value,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "output": self.output,
        }


# =============================================================================
# STATUS EVENTS
# =============================================================================

@dataclass(frozen=True)
class StatusEvent:
    """Real-time notification of a node's execution state."""
    node_id: str
    status: NodeStatus
    job_id: str
    workflow_id: str
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "node_status",
            "node_id": self.node_id,
            "status": self.status.value,
            "job_id": self.job_id,
            "workflow_id": self.workflow_id,
            "error": self.error,
            "timestamp": self.timestamp,
        }


# =============================================================================
# RUN CONTEXT
# =============================================================================

# Template scope names that node ids may not shadow
RESERVED_NODE_IDS: FrozenSet[str] = frozenset(["trigger", "variables"])


class ExecutionContext:
    """Per-run accumulator of node results plus the trigger payload.

    Append-only: each node id is written once, as a whole value. Readers get
    a read-only view so they can never observe a partially built result.
    All access happens on the event loop thread, so a write is atomic with
    respect to concurrently running node tasks.
    """

    def __init__(self, job_id: str, workflow_id: str, trigger_type: TriggerType,
                 trigger_payload: Optional[Dict[str, Any]] = None):
        self.job_id = job_id
        self.workflow_id = workflow_id
        self.trigger_type = trigger_type
        self.trigger_payload: Dict[str, Any] = dict(trigger_payload or {})
        self._results: Dict[str, Any] = {}
        self._variables: Dict[str, Any] = {}

    def record(self, node_id: str, result: Any) -> None:
        if node_id in self._results:
            raise ContextWriteError(node_id)
        self._results[node_id] = result
        if isinstance(result, dict):
            # Named variables produced by setVariable/httpRequest become
            # addressable by name in later templates.
            variables = result.get("variables")
            if isinstance(variables, dict):
                for name, value in variables.items():
                    self._variables.setdefault(name, value)

    def has_result(self, node_id: str) -> bool:
        return node_id in self._results

    def get(self, node_id: str, default: Any = None) -> Any:
        return self._results.get(node_id, default)

    @property
    def results(self) -> Mapping[str, Any]:
        return MappingProxyType(self._results)

    @property
    def variables(self) -> Mapping[str, Any]:
        return MappingProxyType(self._variables)

    def template_scope(self) -> Dict[str, Any]:
        """Lookup scope for ``{{...}}`` templates.

        Node results are addressable by node id, named variables by name and
        the trigger payload as ``trigger``.
        """
        scope: Dict[str, Any] = dict(self._variables)
        scope.update(self._results)
        scope["trigger"] = self.trigger_payload
        scope["variables"] = dict(self._variables)
        return scope


@dataclass
class RunResult:
    """Outcome of one orchestrator run."""
    job_id: str
    workflow_id: str
    status: JobStatus
    node_states: Dict[str, NodeRunState] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)
    error: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "node_states": {k: v.value for k, v in self.node_states.items()},
            "order": self.order,
            "error": self.error,
        }


@dataclass(frozen=True)
class StepRecord:
    """A committed entry of the step log."""
    job_id: str
    step_name: str
    result: Any
    recorded_at: float = field(default_factory=time.time)


@dataclass
class WorkflowRecord:
    """Workflow metadata the engine needs for intake and scheduling."""
    workflow_id: str
    name: str = ""
    owner_id: Optional[str] = None
    active: bool = True
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "name": self.name,
            "owner_id": self.owner_id,
            "active": self.active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
