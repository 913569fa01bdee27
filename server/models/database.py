"""SQLModel database models and tables."""

import time
from typing import Any, Dict, Optional

from sqlmodel import SQLModel, Field, Column, JSON


def _now() -> float:
    return time.time()


class Workflow(SQLModel, table=True):
    """Workflow metadata."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    name: str = Field(default="", max_length=255)
    owner_id: Optional[str] = Field(default=None, index=True, max_length=255)
    active: bool = Field(default=True)
    created_at: float = Field(default_factory=_now)
    updated_at: float = Field(default_factory=_now)


class WorkflowNode(SQLModel, table=True):
    """A node of a workflow graph. ``position`` keeps the authored order."""

    __tablename__ = "workflow_nodes"

    workflow_id: str = Field(foreign_key="workflows.id", primary_key=True, max_length=255)
    node_id: str = Field(primary_key=True, max_length=255)
    position: int = Field(default=0)
    type: str = Field(max_length=100)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class WorkflowConnection(SQLModel, table=True):
    """A directed edge between two nodes of one workflow."""

    __tablename__ = "workflow_connections"

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(foreign_key="workflows.id", index=True, max_length=255)
    position: int = Field(default=0)
    source: str = Field(max_length=255)
    target: str = Field(max_length=255)


class Job(SQLModel, table=True):
    """Execution jobs (one row per enqueued run)."""

    __tablename__ = "execution_jobs"

    id: str = Field(primary_key=True, max_length=36)
    workflow_id: str = Field(index=True, max_length=255)
    user_id: Optional[str] = Field(default=None, max_length=255)
    trigger_type: str = Field(max_length=20)
    trigger_payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default="queued", index=True, max_length=20)
    error: Optional[str] = Field(default=None, max_length=2000)
    cancel_requested: bool = Field(default=False)
    attempts: int = Field(default=0)
    scheduled_at: Optional[float] = Field(default=None, index=True)
    created_at: float = Field(default_factory=_now, index=True)
    updated_at: float = Field(default_factory=_now)
    started_at: Optional[float] = Field(default=None)
    completed_at: Optional[float] = Field(default=None)


class StepResult(SQLModel, table=True):
    """Memoized step results keyed by (job_id, step_name)."""

    __tablename__ = "step_results"

    job_id: str = Field(primary_key=True, max_length=36)
    step_name: str = Field(primary_key=True, max_length=255)
    result: Any = Field(default=None, sa_column=Column(JSON))
    recorded_at: float = Field(default_factory=_now)


class NodeRunRecord(SQLModel, table=True):
    """Terminal state of each node of a job."""

    __tablename__ = "node_runs"

    job_id: str = Field(primary_key=True, max_length=36)
    node_id: str = Field(primary_key=True, max_length=255)
    node_type: str = Field(max_length=100)
    state: str = Field(max_length=20)
    error: Optional[str] = Field(default=None, max_length=2000)
    started_at: Optional[float] = Field(default=None)
    completed_at: Optional[float] = Field(default=None)
    output: Any = Field(default=None, sa_column=Column(JSON))
