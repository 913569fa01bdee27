"""Node executor registry and invocation contract.

Each node type maps to exactly one async executor:

    async def executor(request: ExecutorRequest) -> Any

The returned value is recorded in the run's ExecutionContext under the
node id. Raising fails the node. New node types are added by registering a
new executor; the orchestrator never changes.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from core.logging import get_logger
from models.nodes import BaseNodeParams, validate_node_params
from services.parameter_resolver import ParameterResolver
from .exceptions import ExecutorError, UnknownNodeType
from .models import ExecutionContext, NodeStatus
from .steps import StepRunner

logger = get_logger(__name__)

PublishFn = Callable[..., bool]


@dataclass
class ExecutorRequest:
    """Everything an executor may use for one node invocation."""
    node_id: str
    node_type: str
    data: Mapping[str, Any]
    context: ExecutionContext
    step: StepRunner
    publish: PublishFn
    inputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def job_id(self) -> str:
        return self.context.job_id

    @property
    def workflow_id(self) -> str:
        return self.context.workflow_id

    @property
    def trigger_payload(self) -> Dict[str, Any]:
        return self.context.trigger_payload

    def step_key(self, name: str) -> str:
        """Step name scoped to this node, unique within the job."""
        return f"{self.node_id}:{name}"

    def params(self, resolve: bool = True) -> BaseNodeParams:
        """Validated parameters for this node type.

        With ``resolve`` the raw node data has its ``{{...}}`` templates
        resolved against the run context first.

        Raises:
            ExecutorError: The node configuration is invalid
        """
        try:
            data = dict(self.data)
            if resolve:
                data = ParameterResolver.for_context(self.context).resolve_parameters(data)
            return validate_node_params(self.node_type, data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ExecutorError(f"Invalid configuration: {problems}", node_id=self.node_id) from e

    def loading(self) -> bool:
        return self.publish(NodeStatus.LOADING)

    def success(self) -> bool:
        return self.publish(NodeStatus.SUCCESS)

    def error(self, message: Optional[str] = None) -> bool:
        return self.publish(NodeStatus.ERROR, message)


Executor = Callable[[ExecutorRequest], Awaitable[Any]]


class ExecutorRegistry:
    """Lookup table from node type to executor."""

    def __init__(self):
        self._executors: Dict[str, Executor] = {}

    def register(self, node_type: str, executor: Executor, replace: bool = False) -> None:
        """Register ``executor`` for ``node_type``.

        Raises:
            ValueError: A different executor is already registered and
                ``replace`` is False
        """
        if not node_type:
            raise ValueError("node_type must be a non-empty string")
        if node_type in self._executors and not replace:
            raise ValueError(f"Executor already registered for node type '{node_type}'")
        self._executors[node_type] = executor
        logger.debug("Executor registered", node_type=node_type)

    def get(self, node_type: str) -> Executor:
        """Executor for ``node_type``; raises UnknownNodeType if none."""
        try:
            return self._executors[node_type]
        except KeyError:
            raise UnknownNodeType(node_type) from None

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._executors

    def __len__(self) -> int:
        return len(self._executors)

    def node_types(self) -> List[str]:
        return sorted(self._executors)
