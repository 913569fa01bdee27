"""Tests for template resolution in node parameters."""

import json

from services.execution.models import ExecutionContext, TriggerType
from services.parameter_resolver import ParameterResolver


def resolver():
    ctx = ExecutionContext("job-1", "wf-1", TriggerType.WEBHOOK,
                           {"kind": "webhook", "body": {"amount": 42, "items": ["x", "y"]}})
    ctx.record("http1", {"httpResponse": {"status": 200, "data": {"id": "abc"}}})
    ctx.record("vars", {"variables": {"region": "eu"}})
    return ParameterResolver.for_context(ctx)


class TestParameterResolver:

    def test_whole_template_keeps_type(self):
        assert resolver().resolve("{{trigger.body.amount}}") == 42
        assert resolver().resolve("{{trigger.body.items}}") == ["x", "y"]

    def test_embedded_templates_render_as_text(self):
        value = resolver().resolve("id={{http1.httpResponse.data.id}} status={{http1.httpResponse.status}}")
        assert value == "id=abc status=200"

    def test_variables_by_name(self):
        assert resolver().resolve("{{region}}") == "eu"
        assert resolver().resolve("{{variables.region}}") == "eu"

    def test_index_access(self):
        assert resolver().resolve("{{trigger.body.items[1]}}") == "y"

    def test_unresolved(self):
        assert resolver().resolve("{{nothing.here}}") is None
        assert resolver().resolve("a{{nothing}}b") == "ab"

    def test_json_prefix(self):
        assert json.loads(resolver().resolve("{{json trigger.body}}")) == {
            "amount": 42, "items": ["x", "y"],
        }

    def test_recurses_into_containers(self):
        resolved = resolver().resolve_parameters({
            "headers": {"X-Region": "{{region}}"},
            "list": ["{{http1.httpResponse.status}}", "literal"],
            "number": 5,
        })
        assert resolved == {
            "headers": {"X-Region": "eu"},
            "list": [200, "literal"],
            "number": 5,
        }
