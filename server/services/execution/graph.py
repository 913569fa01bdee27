"""Graph validation and topological ordering.

Kahn's algorithm with input order as the tie-break, so the same graph always
produces the same order. Nodes without any connection are scheduled like any
other zero in-degree node; they never need a self-edge to be included.
"""

import heapq
from typing import Dict, Iterable, List, Sequence

from core.logging import get_logger
from .exceptions import GraphCycleError, InvalidGraphError
from .models import RESERVED_NODE_IDS, Connection, Graph, Node

logger = get_logger(__name__)


def validate_graph(nodes: Sequence[Node], connections: Iterable[Connection]) -> None:
    """Reject duplicate or reserved node ids and connections to unknown nodes."""
    reserved = [n.id for n in nodes if n.id in RESERVED_NODE_IDS]
    if reserved:
        raise InvalidGraphError(
            f"Reserved node ids: {', '.join(reserved)}",
            missing_ids=reserved,
        )

    seen: Dict[str, int] = {}
    duplicates: List[str] = []
    for node in nodes:
        if node.id in seen:
            duplicates.append(node.id)
        seen[node.id] = 1
    if duplicates:
        raise InvalidGraphError(
            f"Duplicate node ids: {', '.join(sorted(set(duplicates)))}",
            missing_ids=duplicates,
        )

    missing: List[str] = []
    for conn in connections:
        for endpoint in (conn.source, conn.target):
            if endpoint not in seen and endpoint not in missing:
                missing.append(endpoint)
    if missing:
        raise InvalidGraphError(
            f"Connections reference unknown nodes: {', '.join(missing)}",
            missing_ids=missing,
        )


def _build_adjacency(nodes: Sequence[Node],
                     connections: Iterable[Connection]) -> Dict[str, List[str]]:
    adjacency: Dict[str, List[str]] = {n.id: [] for n in nodes}
    for conn in connections:
        if conn.source in adjacency and conn.target in adjacency:
            adjacency[conn.source].append(conn.target)
    return adjacency


def _cycle_members(remaining: List[str], adjacency: Dict[str, List[str]]) -> List[str]:
    """Narrow the nodes Kahn could not place to those on or between cycles.

    Nodes that only sit downstream of a cycle have no path back into the
    remaining set and are peeled off.
    """
    members = set(remaining)
    changed = True
    while changed:
        changed = False
        for node_id in list(members):
            if not any(succ in members for succ in adjacency[node_id]):
                members.discard(node_id)
                changed = True
    return [n for n in remaining if n in members]


def topological_sort(nodes: Sequence[Node], connections: Sequence[Connection]) -> List[Node]:
    """Order nodes so every connection's source precedes its target.

    Args:
        nodes: Workflow nodes, in their stored order
        connections: Directed connections between them

    Returns:
        Nodes in execution order

    Raises:
        InvalidGraphError: A connection references a missing node
        GraphCycleError: The connections contain a cycle
    """
    validate_graph(nodes, connections)

    position = {node.id: index for index, node in enumerate(nodes)}
    adjacency = _build_adjacency(nodes, connections)
    in_degree: Dict[str, int] = {n.id: 0 for n in nodes}
    for targets in adjacency.values():
        for target in targets:
            in_degree[target] += 1

    ready = [position[n.id] for n in nodes if in_degree[n.id] == 0]
    heapq.heapify(ready)

    ordered: List[Node] = []
    while ready:
        node = nodes[heapq.heappop(ready)]
        ordered.append(node)
        for successor in adjacency[node.id]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(ready, position[successor])

    if len(ordered) != len(nodes):
        placed = {n.id for n in ordered}
        remaining = [n.id for n in nodes if n.id not in placed]
        cycle = _cycle_members(remaining, adjacency)
        logger.warning("Cycle detected", nodes=cycle)
        raise GraphCycleError(cycle or remaining)

    return ordered


def sort_graph(graph: Graph) -> List[Node]:
    """Convenience wrapper over ``topological_sort`` for a Graph snapshot."""
    return topological_sort(graph.nodes, graph.connections)


def compute_layers(ordered: Sequence[Node], graph: Graph) -> List[List[str]]:
    """Group an already sorted node list into parallel layers.

    A node's layer is one past the deepest of its predecessors, so every
    node in a layer can run concurrently once the previous layers finish.
    """
    preds = graph.predecessors()
    depth: Dict[str, int] = {}
    layers: List[List[str]] = []
    for node in ordered:
        level = max((depth[p] + 1 for p in preds.get(node.id, []) if p in depth), default=0)
        depth[node.id] = level
        while len(layers) <= level:
            layers.append([])
        layers[level].append(node.id)
    return layers
