"""Trigger node handlers - manual, webhook and schedule triggers."""

from typing import Any, Dict

from constants import STEP_TRIGGER
from core.logging import get_logger
from models.nodes import WebhookTriggerParams
from services.execution.exceptions import ExecutorError
from services.execution.registry import ExecutorRequest

logger = get_logger(__name__)


def _check_method_filter(request: ExecutorRequest, params: WebhookTriggerParams) -> None:
    method_filter = (params.method_filter or "all").upper()
    if method_filter == "ALL":
        return
    method = str(request.trigger_payload.get("method", "")).upper()
    if method and method != method_filter:
        raise ExecutorError(
            f"Webhook accepts {method_filter} requests, received {method}",
            node_id=request.node_id,
        )


async def handle_trigger(request: ExecutorRequest) -> Dict[str, Any]:
    """Handle trigger node execution.

    A trigger node has no upstream input. Its result is the payload the job
    was enqueued with, recorded as a step so every later read of the run
    sees the same value.

    Args:
        request: Executor request for a manualTrigger, webhookTrigger or
            scheduleTrigger node

    Returns:
        The trigger payload dict
    """
    params = request.params(resolve=False)
    if isinstance(params, WebhookTriggerParams):
        _check_method_filter(request, params)

    payload = await request.step.run(
        request.step_key(STEP_TRIGGER),
        lambda: dict(request.trigger_payload),
    )
    logger.info("Trigger fired", node_id=request.node_id, node_type=request.node_type,
                job_id=request.job_id, kind=payload.get("kind"))
    return payload
