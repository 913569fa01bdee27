"""Tests for the executor registry and the built-in registrations."""

import pytest

from constants import BUILTIN_NODE_TYPES
from services.execution.exceptions import ExecutorError, UnknownNodeType
from services.execution.models import ExecutionContext, TriggerType
from services.execution.registry import ExecutorRegistry, ExecutorRequest


async def noop(request):
    return None


def make_request(node_type, data, ctx=None, step=None):
    ctx = ctx or ExecutionContext("job-1", "wf-1", TriggerType.MANUAL, {"kind": "manual"})
    return ExecutorRequest(node_id="n1", node_type=node_type, data=data, context=ctx,
                           step=step, publish=lambda *a: True)


class TestExecutorRegistry:

    def test_register_and_get(self):
        registry = ExecutorRegistry()
        registry.register("custom", noop)
        assert registry.get("custom") is noop
        assert "custom" in registry
        assert len(registry) == 1

    def test_unknown_type(self):
        with pytest.raises(UnknownNodeType) as exc_info:
            ExecutorRegistry().get("nope")
        assert exc_info.value.node_type == "nope"

    def test_duplicate_registration_rejected(self):
        registry = ExecutorRegistry()
        registry.register("custom", noop)
        with pytest.raises(ValueError):
            registry.register("custom", noop)

    def test_replace_is_explicit(self):
        async def other(request):
            return 1

        registry = ExecutorRegistry()
        registry.register("custom", noop)
        registry.register("custom", other, replace=True)
        assert registry.get("custom") is other

    def test_builtins_registered(self, registry):
        assert BUILTIN_NODE_TYPES <= set(registry.node_types())


class TestExecutorRequest:

    def test_step_key_is_node_scoped(self):
        assert make_request("action", {}).step_key("http-request") == "n1:http-request"

    def test_params_resolve_templates(self):
        ctx = ExecutionContext("job-1", "wf-1", TriggerType.MANUAL, {"kind": "manual"})
        ctx.record("prev", {"url": "https://example.com"})
        request = make_request("httpRequest", {"endpoint": "{{prev.url}}"}, ctx=ctx)
        assert request.params().endpoint == "https://example.com"

    def test_invalid_params_raise_executor_error(self):
        request = make_request("httpRequest", {"method": "TELEPORT"})
        with pytest.raises(ExecutorError) as exc_info:
            request.params()
        assert "Invalid configuration" in str(exc_info.value)
        assert exc_info.value.node_id == "n1"

    def test_custom_types_keep_extra_fields(self):
        params = make_request("custom", {"anything": 1}).params()
        assert params.model_extra["anything"] == 1
