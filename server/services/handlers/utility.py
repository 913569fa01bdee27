"""Utility node handlers - If Condition, Delay, Merge."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Dict, List

from constants import STEP_DELAY
from core.logging import get_logger
from models.nodes import DelayParams, IfConditionParams, MergeParams
from services.execution.conditions import evaluate_conditions
from services.execution.exceptions import ExecutorError
from services.execution.registry import ExecutorRequest

logger = get_logger(__name__)

_UNIT_SECONDS = {
    "milliseconds": 0.001,
    "seconds": 1.0,
    "minutes": 60.0,
    "hours": 3600.0,
}


# =============================================================================
# IF CONDITION
# =============================================================================

async def handle_if_condition(request: ExecutorRequest) -> Dict[str, Any]:
    """Handle ifCondition node execution.

    Condition fields are paths into the run's template scope, e.g.
    ``http1.httpResponse.status`` or ``trigger.body.amount``.

    Returns:
        ``{"result": bool, "branch": "true" | "false"}``
    """
    params: IfConditionParams = request.params()
    result = evaluate_conditions(params.conditions, request.context.template_scope(),
                                 params.combine)
    logger.info("Condition evaluated", node_id=request.node_id, result=result)
    return {"result": result, "branch": "true" if result else "false"}


# =============================================================================
# DELAY
# =============================================================================

def _delay_seconds(params: DelayParams) -> float:
    if params.delay_type == "specific_time":
        if params.specific_time is None:
            raise ExecutorError("specificTime is required for a specific_time delay")
        target = params.specific_time
        if target.tzinfo is None:
            target = target.replace(tzinfo=timezone.utc)
        return (target - datetime.now(timezone.utc)).total_seconds()
    return params.duration_value * _UNIT_SECONDS[params.duration_unit]


async def handle_delay(request: ExecutorRequest, max_delay_seconds: float = 3600.0) -> Dict[str, Any]:
    """Handle delay node execution.

    The wake-up time is recorded as a step before sleeping, so a job resumed
    after a crash only waits for what is left. Once the wait has completed
    the ``delay`` step is recorded and a replay does not wait at all.

    Args:
        request: Executor request for a delay node
        max_delay_seconds: Upper bound for a single delay

    Returns:
        ``{"delayed_ms": int, "completed_at": iso8601}``
    """
    params: DelayParams = request.params()

    def wake_at() -> float:
        seconds = _delay_seconds(params)
        if seconds > max_delay_seconds:
            logger.warning("Delay capped", node_id=request.node_id,
                           requested=seconds, cap=max_delay_seconds)
            seconds = max_delay_seconds
        return time.time() + max(0.0, seconds)

    async def wait() -> Dict[str, Any]:
        remaining = max(0.0, wake - time.time())
        logger.info("Delay waiting", node_id=request.node_id, seconds=round(remaining, 3))
        if remaining:
            await asyncio.sleep(remaining)
        return {
            "delayed_ms": int(round(remaining * 1000)),
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }

    wake = await request.step.run(request.step_key(f"{STEP_DELAY}-until"), wake_at)
    return await request.step.run(request.step_key(STEP_DELAY), wait)


# =============================================================================
# MERGE
# =============================================================================

async def handle_merge(request: ExecutorRequest) -> Dict[str, Any]:
    """Handle merge node execution.

    Combines the results of the node's direct predecessors in edge order.

    Modes:
        append: list results are concatenated, anything else is appended
        merge: dict results are shallow-merged, later keys win; a non-dict
            result is stored under its node id
    """
    params: MergeParams = request.params()

    if params.merge_mode == "merge":
        data: Dict[str, Any] = {}
        for node_id, value in request.inputs.items():
            if isinstance(value, dict):
                data.update(value)
            else:
                data[node_id] = value
        return {"data": data}

    items: List[Any] = []
    for value in request.inputs.values():
        if isinstance(value, list):
            items.extend(value)
        else:
            items.append(value)
    return {"items": items, "count": len(items)}
