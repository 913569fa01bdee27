"""Tests for condition evaluation and nested path lookup."""

import pytest

from models.nodes import ConditionSpec
from services.execution.conditions import (
    evaluate_condition,
    evaluate_conditions,
    get_nested_value,
    split_path,
)
from services.execution.exceptions import ExecutorError


DATA = {
    "status": "active",
    "count": "12",
    "tags": ["a", "b"],
    "user": {"name": "Ada Lovelace", "roles": [{"id": 1}]},
    "empty": [],
}


def cond(field, operator, value=None):
    return {"field": field, "operator": operator, "value": value}


class TestPaths:

    def test_split_path(self):
        assert split_path("user.roles[0].id") == ["user", "roles", 0, "id"]

    def test_nested_lookup(self):
        assert get_nested_value(DATA, "user.roles[0].id") == 1
        assert get_nested_value(DATA, "tags.1") == "b"

    def test_missing_path_is_none(self):
        assert get_nested_value(DATA, "user.address.city") is None
        assert get_nested_value(DATA, "tags[5]") is None


class TestOperators:

    @pytest.mark.parametrize("condition, expected", [
        (cond("status", "eq", "active"), True),
        (cond("status", "neq", "active"), False),
        (cond("count", "gt", 10), True),
        (cond("count", "lte", 11), False),
        (cond("user.name", "contains", "Love"), True),
        (cond("tags", "contains", "c"), False),
        (cond("tags", "not_contains", "c"), True),
        (cond("user.name", "exists"), True),
        (cond("user.email", "not_exists"), True),
        (cond("empty", "is_empty"), True),
        (cond("tags", "is_not_empty"), True),
        (cond("user.name", "matches", r"^Ada\s"), True),
        (cond("user.name", "starts_with", "Ada"), True),
        (cond("user.name", "ends_with", "Ada"), False),
        (cond("status", "in", ["active", "pending"]), True),
        (cond("status", "not_in", ["active"]), False),
    ])
    def test_operator(self, condition, expected):
        assert evaluate_condition(condition, DATA) is expected

    def test_ordering_on_missing_value_is_false(self):
        assert evaluate_condition(cond("nope", "gt", 1), DATA) is False

    def test_unknown_operator_raises(self):
        with pytest.raises(ExecutorError):
            evaluate_condition(cond("status", "approximately", "active"), DATA)

    def test_invalid_regex_raises(self):
        with pytest.raises(ExecutorError):
            evaluate_condition(cond("status", "matches", "(unclosed"), DATA)

    def test_accepts_pydantic_conditions(self):
        spec = ConditionSpec(field="status", operator="eq", value="active")
        assert evaluate_condition(spec, DATA) is True


class TestCombination:

    def test_empty_conditions_pass(self):
        assert evaluate_conditions([], DATA) is True

    def test_and(self):
        conditions = [cond("status", "eq", "active"), cond("count", "gt", 100)]
        assert evaluate_conditions(conditions, DATA, "and") is False

    def test_or(self):
        conditions = [cond("status", "eq", "active"), cond("count", "gt", 100)]
        assert evaluate_conditions(conditions, DATA, "or") is True
