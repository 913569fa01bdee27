"""Parameter Resolver - Template variable resolution.

Resolves ``{{path}}`` and ``{{json path}}`` templates in node parameters
against the run's ExecutionContext. The first path segment names a node id,
a variable set by an upstream node, or ``trigger`` for the trigger payload.
"""

import re
from typing import Any, Dict, Mapping

import orjson

from core.logging import get_logger
from services.execution.conditions import get_nested_value, split_path
from services.execution.models import ExecutionContext

logger = get_logger(__name__)

# Compiled regex for template matching
TEMPLATE_PATTERN = re.compile(r'\{\{([^}]+)\}\}')

_JSON_PREFIX = "json "


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return orjson.dumps(value).decode()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ParameterResolver:
    """Resolves template variables against a lookup scope."""

    def __init__(self, scope: Mapping[str, Any]):
        self.scope = scope

    @classmethod
    def for_context(cls, ctx: ExecutionContext) -> "ParameterResolver":
        return cls(ctx.template_scope())

    def lookup(self, expression: str) -> Any:
        """Value of a template expression, None if it does not resolve."""
        parts = split_path(expression.strip())
        if not parts:
            return None
        root, rest = parts[0], parts[1:]
        value = self.scope.get(str(root))
        for part in rest:
            value = get_nested_value(value, f"[{part}]" if isinstance(part, int) else str(part))
            if value is None:
                return None
        return value

    def _evaluate(self, expression: str) -> Any:
        expression = expression.strip()
        if expression.startswith(_JSON_PREFIX):
            value = self.lookup(expression[len(_JSON_PREFIX):])
            return orjson.dumps(value).decode()
        return self.lookup(expression)

    def resolve_string(self, value: str) -> Any:
        """Resolve templates in one string.

        A string that is exactly one template keeps the resolved value's
        type; otherwise each template is rendered as text and unresolved
        templates render as an empty string.
        """
        whole = TEMPLATE_PATTERN.fullmatch(value.strip())
        if whole is not None:
            resolved = self._evaluate(whole.group(1))
            if resolved is None:
                logger.debug("Template unresolved", template=whole.group(0))
            return resolved

        def render(match: "re.Match[str]") -> str:
            resolved = self._evaluate(match.group(1))
            if resolved is None:
                logger.debug("Template unresolved", template=match.group(0))
                return ""
            return _to_text(resolved)

        return TEMPLATE_PATTERN.sub(render, value)

    def resolve(self, value: Any) -> Any:
        """Resolve templates recursively through dicts and lists."""
        if isinstance(value, str) and '{{' in value:
            return self.resolve_string(value)
        if isinstance(value, Mapping):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.resolve(item) for item in value]
        return value

    def resolve_parameters(self, parameters: Mapping[str, Any]) -> Dict[str, Any]:
        return {k: self.resolve(v) for k, v in parameters.items()}
