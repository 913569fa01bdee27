"""Shared fixtures for the execution engine tests."""

from typing import Any, Dict, List, Optional

import httpx
import pytest

from core.cache import CacheService
from core.config import Settings
from services.execution.cache import ExecutionCache
from services.execution.executor import RunOrchestrator
from services.execution.models import StatusEvent
from services.execution.queue import ExecutionQueue
from services.execution.registry import ExecutorRegistry, ExecutorRequest
from services.execution.repository import InMemoryRepository
from services.execution.steps import RepositoryStepLog, StepRunnerFactory
from services.node_executor import build_executor_registry
from services.status_broadcaster import StatusChannel, Subscription


# ============================================================
# Infrastructure
# ============================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_enabled=False,
        log_format="console",
        worker_enabled=False,
        scheduler_enabled=False,
        max_delay_seconds=5.0,
        http_timeout=5.0,
    )


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def cache_service(settings) -> CacheService:
    return CacheService(settings)


@pytest.fixture
def execution_cache(cache_service) -> ExecutionCache:
    return ExecutionCache(cache_service)


@pytest.fixture
def channel() -> StatusChannel:
    return StatusChannel(buffer_size=64)


@pytest.fixture
def step_runners(repository) -> StepRunnerFactory:
    return StepRunnerFactory(RepositoryStepLog(repository))


@pytest.fixture
def queue(repository) -> ExecutionQueue:
    return ExecutionQueue(repository)


# ============================================================
# Executors
# ============================================================

class CallLog:
    """Records executor invocations in call order."""

    def __init__(self):
        self.calls: List[str] = []

    def executor(self, result: Any = None, error: Optional[Exception] = None):
        async def run(request: ExecutorRequest) -> Any:
            self.calls.append(request.node_id)
            if error is not None:
                raise error
            return result if result is not None else {"node": request.node_id}
        return run


@pytest.fixture
def call_log() -> CallLog:
    return CallLog()


@pytest.fixture
def http_client() -> httpx.AsyncClient:
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})
    return httpx.AsyncClient(transport=httpx.MockTransport(respond))


@pytest.fixture
def registry(settings, http_client, call_log) -> ExecutorRegistry:
    """Built-in executors plus an ``action`` type that records its calls."""
    registry = build_executor_registry(settings, http_client)
    registry.register("action", call_log.executor())
    return registry


@pytest.fixture
def orchestrator(repository, registry, step_runners, channel, execution_cache) -> RunOrchestrator:
    return RunOrchestrator(repository, registry, step_runners, channel, execution_cache,
                           max_parallel_nodes=4)


# ============================================================
# Helpers
# ============================================================

async def drain(sub: Subscription) -> List[StatusEvent]:
    """Everything buffered for ``sub`` so far, without waiting."""
    events = []
    while sub.pending():
        events.append(await sub.get())
    return events


def event_pairs(events: List[StatusEvent]) -> List[str]:
    return [f"{e.node_id}:{e.status.value}" for e in events]


def linear_workflow(action_type: str = "action") -> Dict[str, Any]:
    """Trigger(T) -> Action(A) -> Action(B)."""
    return {
        "nodes": [
            {"id": "T", "type": "manualTrigger", "data": {}},
            {"id": "A", "type": action_type, "data": {}},
            {"id": "B", "type": action_type, "data": {}},
        ],
        "connections": [["T", "A"], ["A", "B"]],
    }
