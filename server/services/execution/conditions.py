"""Condition evaluation for ifCondition and filter nodes.

A condition is ``{"field": path, "operator": op, "value": target}``. The
field path uses dot and bracket notation (``items[0].name``,
``result.status``). Several conditions combine with ``and`` or ``or``.

Supported operators:
- eq, neq: Equality
- gt, lt, gte, lte: Ordering (numeric when both sides parse as numbers)
- contains, not_contains: Substring, list member or dict key
- exists, not_exists: Value present and not None
- is_empty, is_not_empty: None, "", [], {}
- matches: Regex search
- starts_with, ends_with: String prefix/suffix
- in, not_in: Membership in a target list
"""

import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel

from core.logging import get_logger
from .exceptions import ExecutorError

logger = get_logger(__name__)

ConditionLike = Union[Mapping[str, Any], BaseModel]

_PATH_TOKEN = re.compile(r'[^.\[\]]+|\[(\d+)\]')


def split_path(path: str) -> List[Union[str, int]]:
    """Split ``a.b[0].c`` into ``["a", "b", 0, "c"]``."""
    parts: List[Union[str, int]] = []
    for match in _PATH_TOKEN.finditer(path or ""):
        index = match.group(1)
        if index is not None:
            parts.append(int(index))
        else:
            token = match.group(0).strip()
            if token:
                parts.append(int(token) if token.isdigit() else token)
    return parts


def get_nested_value(data: Any, field_path: str) -> Any:
    """Get a nested value using dot/bracket notation, None if absent.

    Examples:
        >>> get_nested_value({"result": {"status": "ok"}}, "result.status")
        'ok'
        >>> get_nested_value({"items": [{"name": "a"}]}, "items[0].name")
        'a'
    """
    if data is None or not field_path:
        return data if not field_path else None

    current = data
    for part in split_path(field_path):
        if current is None:
            return None
        if isinstance(part, int):
            if isinstance(current, (list, tuple)) and -len(current) <= part < len(current):
                current = current[part]
            elif isinstance(current, Mapping):
                current = current.get(str(part))
            else:
                return None
        elif isinstance(current, Mapping):
            current = current.get(part)
        else:
            return None
    return current


def _safe_compare(actual: Any, target: Any, comparator: Callable[[Any, Any], bool]) -> bool:
    if actual is None or target is None:
        return False
    try:
        return comparator(float(actual), float(target))
    except (ValueError, TypeError):
        pass
    return comparator(str(actual), str(target))


def _contains(actual: Any, target: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        return str(target) in actual
    if isinstance(actual, (list, tuple, Mapping)):
        return target in actual
    return False


def _is_empty(actual: Any, _target: Any = None) -> bool:
    if actual is None:
        return True
    if isinstance(actual, (str, list, dict, tuple)):
        return len(actual) == 0
    return False


def _matches(actual: Any, target: Any) -> bool:
    if actual is None or target is None:
        return False
    try:
        return re.search(str(target), str(actual)) is not None
    except re.error as e:
        raise ExecutorError(f"Invalid regex pattern '{target}': {e}") from e


def _in(actual: Any, target: Any) -> bool:
    if isinstance(target, (list, tuple, set)):
        return actual in target
    return actual == target


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, t: a == t,
    "neq": lambda a, t: a != t,
    "gt": lambda a, t: _safe_compare(a, t, lambda x, y: x > y),
    "lt": lambda a, t: _safe_compare(a, t, lambda x, y: x < y),
    "gte": lambda a, t: _safe_compare(a, t, lambda x, y: x >= y),
    "lte": lambda a, t: _safe_compare(a, t, lambda x, y: x <= y),
    "contains": _contains,
    "not_contains": lambda a, t: not _contains(a, t),
    "exists": lambda a, t: a is not None,
    "not_exists": lambda a, t: a is None,
    "is_empty": _is_empty,
    "is_not_empty": lambda a, t: not _is_empty(a),
    "matches": _matches,
    "starts_with": lambda a, t: a is not None and t is not None and str(a).startswith(str(t)),
    "ends_with": lambda a, t: a is not None and t is not None and str(a).endswith(str(t)),
    "in": _in,
    "not_in": lambda a, t: not _in(a, t),
}


def _as_dict(condition: ConditionLike) -> Mapping[str, Any]:
    if isinstance(condition, BaseModel):
        return condition.model_dump()
    return condition


def evaluate_condition(condition: Optional[ConditionLike], data: Any) -> bool:
    """Evaluate one condition against ``data``.

    Raises:
        ExecutorError: Unknown operator or invalid regex
    """
    if not condition:
        return True
    spec = _as_dict(condition)
    operator = spec.get("operator", "eq")
    comparator = OPERATORS.get(operator)
    if comparator is None:
        raise ExecutorError(f"Unknown condition operator '{operator}'")

    actual = get_nested_value(data, spec.get("field", ""))
    result = comparator(actual, spec.get("value"))
    logger.debug("Condition evaluated", field=spec.get("field"), operator=operator, result=result)
    return bool(result)


def evaluate_conditions(conditions: List[ConditionLike], data: Any, combine: str = "and") -> bool:
    """Evaluate several conditions; ``combine`` is "and" or "or"."""
    if not conditions:
        return True
    results = (evaluate_condition(c, data) for c in conditions)
    if combine == "or":
        return any(results)
    return all(results)
