"""Tests for graph validation and topological ordering."""

import pytest

from services.execution.exceptions import GraphCycleError, InvalidGraphError
from services.execution.graph import compute_layers, sort_graph, topological_sort
from services.execution.models import Connection, Graph, Node


def nodes(*ids):
    return [Node(id=i, type="action") for i in ids]


def conns(*pairs):
    return [Connection.from_raw(p) for p in pairs]


def ids(ordered):
    return [n.id for n in ordered]


class TestTopologicalSort:

    def test_linear_chain(self):
        ordered = topological_sort(nodes("c", "b", "a"), conns(("a", "b"), ("b", "c")))
        assert ids(ordered) == ["a", "b", "c"]

    def test_every_connection_source_precedes_target(self):
        graph_nodes = nodes("t", "x", "y", "z", "m")
        graph_conns = conns(("t", "x"), ("t", "y"), ("x", "m"), ("y", "m"), ("z", "m"))
        ordered = ids(topological_sort(graph_nodes, graph_conns))

        assert sorted(ordered) == sorted(["t", "x", "y", "z", "m"])
        for c in graph_conns:
            assert ordered.index(c.source) < ordered.index(c.target)

    def test_ties_follow_input_order(self):
        ordered = topological_sort(nodes("b", "a", "c"), [])
        assert ids(ordered) == ["b", "a", "c"]

    def test_isolated_node_is_included(self):
        ordered = topological_sort(nodes("a", "lonely", "b"), conns(("a", "b")))
        assert ids(ordered) == ["a", "lonely", "b"]

    def test_same_graph_same_order(self):
        graph_nodes = nodes("a", "b", "c", "d")
        graph_conns = conns(("a", "c"), ("b", "c"), ("c", "d"))
        first = ids(topological_sort(graph_nodes, graph_conns))
        assert all(ids(topological_sort(graph_nodes, graph_conns)) == first for _ in range(5))

    def test_duplicate_connections_are_harmless(self):
        ordered = topological_sort(nodes("a", "b"), conns(("a", "b"), ("a", "b")))
        assert ids(ordered) == ["a", "b"]

    def test_empty_graph(self):
        assert topological_sort([], []) == []


class TestCycleRejection:

    def test_two_node_cycle(self):
        with pytest.raises(GraphCycleError) as exc_info:
            topological_sort(nodes("x", "y"), conns(("x", "y"), ("y", "x")))
        assert set(exc_info.value.node_ids) == {"x", "y"}

    def test_cycle_members_exclude_downstream_nodes(self):
        graph_nodes = nodes("a", "b", "c", "tail")
        graph_conns = conns(("a", "b"), ("b", "c"), ("c", "b"), ("c", "tail"))
        with pytest.raises(GraphCycleError) as exc_info:
            topological_sort(graph_nodes, graph_conns)
        assert exc_info.value.node_ids == ["b", "c"]

    def test_self_edge_is_a_cycle(self):
        with pytest.raises(GraphCycleError):
            topological_sort(nodes("a"), conns(("a", "a")))


class TestValidation:

    def test_dangling_connection(self):
        with pytest.raises(InvalidGraphError) as exc_info:
            topological_sort(nodes("a"), conns(("a", "ghost")))
        assert exc_info.value.missing_ids == ["ghost"]

    def test_duplicate_node_ids(self):
        with pytest.raises(InvalidGraphError):
            topological_sort(nodes("a", "a"), [])

    @pytest.mark.parametrize("reserved", ["trigger", "variables"])
    def test_template_scope_names_are_reserved(self, reserved):
        with pytest.raises(InvalidGraphError) as exc_info:
            topological_sort(nodes("a", reserved), conns(("a", reserved)))
        assert exc_info.value.missing_ids == [reserved]


class TestLayers:

    def test_diamond_layers(self):
        graph = Graph(
            workflow_id="wf",
            nodes=tuple(nodes("t", "l", "r", "j")),
            connections=tuple(conns(("t", "l"), ("t", "r"), ("l", "j"), ("r", "j"))),
        )
        assert compute_layers(sort_graph(graph), graph) == [["t"], ["l", "r"], ["j"]]
