"""Messaging node handlers - Discord and Slack via incoming webhooks."""

from typing import Any, Dict, List, Optional

import httpx
import orjson

from constants import STEP_DISCORD_SEND, STEP_SLACK_SEND
from core.logging import get_logger
from models.nodes import DiscordSendParams, SlackSendParams
from services.execution.exceptions import ExecutorError
from services.execution.registry import ExecutorRequest
from .http import send_request

logger = get_logger(__name__)


def _json_list(value: Any) -> Optional[List[Any]]:
    """Decode a JSON string and wrap a single object in a list."""
    if value is None or value == "":
        return None
    if isinstance(value, (bytes, str)):
        value = orjson.loads(value)
    if isinstance(value, dict):
        return [value]
    return list(value)


async def handle_discord_send(
    request: ExecutorRequest,
    http_client: httpx.AsyncClient,
    default_timeout: float = 30.0,
) -> Dict[str, Any]:
    """Post a message to a Discord channel webhook.

    Invalid ``embedJson`` is logged and the message goes out without embeds.

    Raises:
        ExecutorError: Missing webhook URL, nothing to send, or the webhook
            call failed
    """
    params: DiscordSendParams = request.params()
    url = params.webhook_url.strip()
    if not url:
        raise ExecutorError("Discord webhook URL is required", node_id=request.node_id)

    payload: Dict[str, Any] = {"content": params.message_content}
    if params.username:
        payload["username"] = params.username
    if params.avatar_url:
        payload["avatar_url"] = params.avatar_url
    try:
        embeds = _json_list(params.embed_json)
    except (orjson.JSONDecodeError, TypeError) as e:
        logger.warning("[Discord] Ignoring invalid embeds", node_id=request.node_id, error=str(e))
        embeds = None
    if embeds:
        payload["embeds"] = embeds
    if not params.message_content and not embeds:
        raise ExecutorError("Discord message needs content or embeds", node_id=request.node_id)

    async def perform() -> Dict[str, Any]:
        logger.info("[Discord] Sending message", node_id=request.node_id, job_id=request.job_id)
        return await send_request(http_client, request.node_id, "POST", url,
                                  body=payload, timeout=default_timeout)

    response = await request.step.run(request.step_key(STEP_DISCORD_SEND), perform)
    return {"sent": True, "response": response}


async def handle_slack_send(
    request: ExecutorRequest,
    http_client: httpx.AsyncClient,
    default_timeout: float = 30.0,
) -> Dict[str, Any]:
    """Post a text or Block Kit message to a Slack incoming webhook.

    Raises:
        ExecutorError: Missing webhook URL, empty text, unparseable blocks,
            or the webhook call failed
    """
    params: SlackSendParams = request.params()
    url = params.webhook_url.strip()
    if not url:
        raise ExecutorError("Slack webhook URL is required", node_id=request.node_id)

    payload: Dict[str, Any] = {}
    if params.message_type == "blocks":
        try:
            blocks = _json_list(params.blocks_json)
        except (orjson.JSONDecodeError, TypeError) as e:
            raise ExecutorError(f"Invalid JSON in blocks: {e}", node_id=request.node_id) from e
        if not blocks:
            raise ExecutorError("Slack blocks message needs blocksJson", node_id=request.node_id)
        payload["blocks"] = blocks
        if params.message_text:
            payload["text"] = params.message_text
    else:
        if not params.message_text:
            raise ExecutorError("Slack message text is required", node_id=request.node_id)
        payload["text"] = params.message_text
    if params.channel:
        payload["channel"] = params.channel

    async def perform() -> Dict[str, Any]:
        logger.info("[Slack] Sending message", node_id=request.node_id, job_id=request.job_id,
                    channel=params.channel)
        return await send_request(http_client, request.node_id, "POST", url,
                                  body=payload, timeout=default_timeout)

    response = await request.step.run(request.step_key(STEP_SLACK_SEND), perform)
    return {"sent": True, "response": response}
