"""Data operation node handlers - Set Variable, Transform, JSON Parse, Filter."""

from typing import Any, Dict, List

import orjson

from core.logging import get_logger
from models.nodes import FilterParams, JsonParseParams, SetVariableParams, VariableSpec
from services.execution.conditions import evaluate_conditions, get_nested_value
from services.execution.exceptions import ExecutorError
from services.execution.registry import ExecutorRequest

logger = get_logger(__name__)

_TRUE_STRINGS = frozenset(["true", "1", "yes", "on"])
_FALSE_STRINGS = frozenset(["false", "0", "no", "off", ""])


def _to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        return float(text)


def _to_boolean(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"'{value}' is not a boolean")
    return bool(value)


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return orjson.dumps(value).decode()
    return str(value)


def _parse_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return orjson.loads(value)
    return value


_COERCERS = {
    "string": _to_string,
    "number": _to_number,
    "boolean": _to_boolean,
    "json": _parse_json,
}


def coerce_variable(spec: VariableSpec) -> Any:
    """Convert a variable's (already resolved) value to its declared type."""
    coerce = _COERCERS.get(spec.type)
    if coerce is None:
        return spec.value
    try:
        return coerce(spec.value)
    except (ValueError, TypeError, orjson.JSONDecodeError) as e:
        raise ExecutorError(f"Variable '{spec.name}' is not a valid {spec.type}: {e}") from e


async def handle_set_variable(request: ExecutorRequest) -> Dict[str, Any]:
    """Handle setVariable and transform node execution.

    Args:
        request: Executor request; values may reference earlier results

    Returns:
        ``{"variables": {name: value}}``
    """
    params: SetVariableParams = request.params()
    variables: Dict[str, Any] = {}
    for spec in params.variables:
        variables[spec.name] = coerce_variable(spec)

    logger.info("Variables set", node_id=request.node_id, names=list(variables))
    return {"variables": variables}


async def handle_json_parse(request: ExecutorRequest) -> Dict[str, Any]:
    """Handle JSON parse node execution.

    Operations:
        parse: JSON text to a value
        stringify: value to JSON text
        extract: value at ``path`` (dot/bracket notation) of the input
    """
    params: JsonParseParams = request.params()
    try:
        if params.operation == "parse":
            result = _parse_json(params.input)
        elif params.operation == "stringify":
            result = orjson.dumps(params.input).decode()
        else:
            result = get_nested_value(_parse_json(params.input), params.path)
    except orjson.JSONDecodeError as e:
        raise ExecutorError(f"Invalid JSON input: {e}", node_id=request.node_id) from e
    except TypeError as e:
        raise ExecutorError(f"Value is not JSON serializable: {e}", node_id=request.node_id) from e

    output: Dict[str, Any] = {"result": result}
    if params.variable_name:
        output["variables"] = {params.variable_name: result}
    return output


def _filter_items(request: ExecutorRequest, items: Any) -> List[Any]:
    if isinstance(items, (str, bytes)):
        try:
            items = orjson.loads(items)
        except orjson.JSONDecodeError as e:
            raise ExecutorError(f"Filter items are not valid JSON: {e}",
                                node_id=request.node_id) from e
    if not isinstance(items, list):
        raise ExecutorError(
            f"Filter requires a list of items, got {type(items).__name__}",
            node_id=request.node_id,
        )
    return items


async def handle_filter(request: ExecutorRequest) -> Dict[str, Any]:
    """Handle filter node execution.

    Keeps (or removes, with ``mode="remove"``) the items for which the
    conditions hold. Condition fields are paths inside each item.

    Returns:
        ``{"items": [...], "count": int, "removed": int}``
    """
    params: FilterParams = request.params()
    items = _filter_items(request, params.items)
    keep = params.mode == "keep"

    kept = [
        item for item in items
        if evaluate_conditions(params.conditions, item, params.combine) == keep
    ]
    logger.debug("Filter applied", node_id=request.node_id, total=len(items), kept=len(kept))
    return {"items": kept, "count": len(kept), "removed": len(items) - len(kept)}
