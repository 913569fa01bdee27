"""Node Executor - built-in executor registration.

Uses a registry pattern for clean handler dispatch without if-else chains.
Handler dependencies (HTTP client, limits from settings) are bound with
``functools.partial`` so every registered executor takes only the request.
"""

from functools import partial
from typing import TYPE_CHECKING, Optional

import httpx

from core.logging import get_logger
from constants import (
    DELAY,
    DISCORD_SEND,
    FILTER,
    HTTP_REQUEST,
    IF_CONDITION,
    JSON_PARSE,
    MERGE,
    SET_VARIABLE,
    SLACK_SEND,
    TRANSFORM,
    TRIGGER_NODE_TYPES,
)
from services.execution.registry import ExecutorRegistry
from services.handlers import (
    handle_trigger,
    handle_http_request,
    handle_discord_send, handle_slack_send,
    handle_set_variable, handle_json_parse, handle_filter,
    handle_if_condition, handle_delay, handle_merge,
)

if TYPE_CHECKING:
    from core.config import Settings

logger = get_logger(__name__)


def build_executor_registry(
    settings: "Settings",
    http_client: httpx.AsyncClient,
    registry: Optional[ExecutorRegistry] = None,
) -> ExecutorRegistry:
    """Register every built-in node executor.

    Args:
        settings: Application settings (HTTP timeout, delay cap)
        http_client: Shared client for httpRequest nodes
        registry: Existing registry to extend; a new one by default

    Returns:
        The populated registry
    """
    registry = registry if registry is not None else ExecutorRegistry()

    # Triggers
    for node_type in sorted(TRIGGER_NODE_TYPES):
        registry.register(node_type, handle_trigger)

    # HTTP
    registry.register(HTTP_REQUEST, partial(
        handle_http_request, http_client=http_client, default_timeout=settings.http_timeout,
    ))

    # Messaging
    for node_type, handler in ((DISCORD_SEND, handle_discord_send), (SLACK_SEND, handle_slack_send)):
        registry.register(node_type, partial(
            handler, http_client=http_client, default_timeout=settings.http_timeout,
        ))

    # Data
    registry.register(SET_VARIABLE, handle_set_variable)
    registry.register(TRANSFORM, handle_set_variable)
    registry.register(JSON_PARSE, handle_json_parse)
    registry.register(FILTER, handle_filter)

    # Utility
    registry.register(IF_CONDITION, handle_if_condition)
    registry.register(DELAY, partial(handle_delay, max_delay_seconds=settings.max_delay_seconds))
    registry.register(MERGE, handle_merge)

    logger.info("Executor registry built", node_types=len(registry))
    return registry
