"""Webhook trigger router for incoming HTTP requests.

Every request to ``/webhook/{workflow_id}`` enqueues a ``webhook`` job for
that workflow and returns at once with the job id.
"""
from fastapi import APIRouter, Depends, Request, status
import orjson

from core.container import container
from core.logging import get_logger
from models.nodes import EnqueueResponse, WebhookPayload
from services.execution.models import JobStatus, TriggerType
from services.execution.queue import ExecutionQueue

logger = get_logger(__name__)
router = APIRouter(prefix="/webhook", tags=["webhook"])


async def _read_body(request: Request):
    body = await request.body()
    if not body:
        return None
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError:
            logger.debug("[Webhook] Body declared JSON but did not parse")
    return body.decode("utf-8", errors="replace")


@router.api_route(
    "/{workflow_id}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    status_code=status.HTTP_202_ACCEPTED,
    response_model=EnqueueResponse,
)
async def handle_webhook(
    workflow_id: str,
    request: Request,
    queue: ExecutionQueue = Depends(lambda: container.execution_queue()),
):
    """Enqueue a webhook-triggered job for ``workflow_id``."""
    payload = WebhookPayload(
        method=request.method,
        path=request.url.path,
        headers=dict(request.headers),
        query=dict(request.query_params),
        body=await _read_body(request),
    )
    logger.info("[Webhook] Received", method=request.method, workflow_id=workflow_id)

    job_id = await queue.enqueue_job(workflow_id, None, TriggerType.WEBHOOK.value, payload)
    return EnqueueResponse(job_id=job_id, workflow_id=workflow_id, status=JobStatus.QUEUED.value)
