"""HTTP node handlers - HTTP Request, plus the shared request helper."""

from typing import Any, Dict, Optional

import httpx
import orjson

from constants import STEP_HTTP_REQUEST
from core.logging import get_logger
from models.nodes import HttpRequestParams
from services.execution.exceptions import ExecutorError
from services.execution.registry import ExecutorRequest

logger = get_logger(__name__)

_BODY_METHODS = frozenset(["POST", "PUT", "PATCH"])


def _request_body(method: str, body: Any) -> Optional[Any]:
    """JSON body for methods that carry one.

    A string body is parsed as JSON; text that is not JSON is sent as
    ``{"value": text}``. A missing body defaults to an empty object.
    """
    if method not in _BODY_METHODS:
        return None
    if body is None or body == "":
        return {}
    if isinstance(body, (bytes, str)):
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError:
            return {"value": body if isinstance(body, str) else body.decode(errors="replace")}
    return body


def _response_data(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError:
            logger.warning("Response declared JSON but did not parse", url=str(response.url))
    return response.text


async def send_request(
    http_client: httpx.AsyncClient,
    node_id: str,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Optional[Any] = None,
    timeout: float = 30.0,
) -> Dict[str, Any]:
    """Perform one HTTP call and summarize the response.

    Raises:
        ExecutorError: Transport failure, timeout or a 4xx/5xx response
    """
    try:
        response = await http_client.request(
            method,
            url,
            headers=headers,
            json=body,
            timeout=timeout,
        )
    except httpx.TimeoutException as e:
        logger.error("HTTP request timed out", node_id=node_id, url=url)
        raise ExecutorError(f"Request timed out after {timeout:g} seconds",
                            node_id=node_id) from e
    except httpx.HTTPError as e:
        logger.error("HTTP request failed", node_id=node_id, error=str(e))
        raise ExecutorError(f"Request failed: {e}", node_id=node_id) from e

    if response.status_code >= 400:
        raise ExecutorError(
            f"Request failed with status {response.status_code} {response.reason_phrase}",
            node_id=node_id,
        )
    return {
        "status": response.status_code,
        "statusText": response.reason_phrase,
        "data": _response_data(response),
    }


async def handle_http_request(
    request: ExecutorRequest,
    http_client: httpx.AsyncClient,
    default_timeout: float = 30.0,
) -> Dict[str, Any]:
    """Handle HTTP request node execution.

    The request runs inside a step, so a resumed job reuses the recorded
    response instead of calling the endpoint again.

    Args:
        request: Executor request for an httpRequest node
        http_client: Shared async client
        default_timeout: Seconds, used when the node sets no timeoutMs

    Returns:
        ``{"httpResponse": {...}}`` plus ``variables`` when variableName is set

    Raises:
        ExecutorError: Missing endpoint, transport failure, timeout or a
            4xx/5xx response
    """
    params: HttpRequestParams = request.params()
    endpoint = str(params.endpoint or "").strip()
    if not endpoint:
        raise ExecutorError("Endpoint is required", node_id=request.node_id)

    method = params.method.upper()
    if "timeout_ms" in params.model_fields_set:
        timeout = params.timeout_ms / 1000.0
    else:
        timeout = default_timeout
    body = _request_body(method, params.body)

    async def perform() -> Dict[str, Any]:
        logger.info("[HTTP Request] Executing", node_id=request.node_id, method=method,
                    url=endpoint, job_id=request.job_id)
        return await send_request(http_client, request.node_id, method, endpoint,
                                  headers=params.headers, body=body, timeout=timeout)

    http_response = await request.step.run(request.step_key(STEP_HTTP_REQUEST), perform)

    result: Dict[str, Any] = {"httpResponse": http_response}
    if params.variable_name:
        result["variables"] = {params.variable_name: {"httpResponse": http_response}}
    return result
