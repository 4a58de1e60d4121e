"""
Dependency Graph Helpers
========================

Pure functions over the feature dependency graph. The registry loads the
edges inside its transaction and calls these to decide whether a mutation is
allowed; nothing here touches the database.

The graph is passed as an adjacency mapping: {feature_id: [depends_on, ...]}.
Only required edges take part in cycle checks, because only required edges
block disable/remove.

All traversals carry a visited set, so a corrupted store (e.g. a cycle
written before cycle checks existed) cannot hang them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

_logger = logging.getLogger(__name__)


# Upper bound on steps taken by detect_cycles()
MAX_TRAVERSAL_STEPS = 10_000


def build_adjacency(
    edges: Iterable[tuple[str, str, str]],
    dependency_type: str | None = "required",
) -> dict[str, list[str]]:
    """
    Build an adjacency mapping from (feature_id, depends_on, type) triples.

    Args:
        edges: Edge triples as stored in feature_dependencies
        dependency_type: Keep only edges of this type; None keeps all

    Returns:
        Mapping of feature id to the ids it depends on, in input order
    """
    adjacency: dict[str, list[str]] = {}
    for feature_id, depends_on, edge_type in edges:
        if dependency_type is not None and edge_type != dependency_type:
            continue
        adjacency.setdefault(feature_id, []).append(depends_on)
    return adjacency


def find_dependency_path(
    adjacency: Mapping[str, Iterable[str]],
    start: str,
    goal: str,
) -> list[str] | None:
    """
    Return a path start -> ... -> goal following dependency edges, or None.

    Depth-first with a visited set, so every node is expanded at most once
    and the search ends even on a graph that already holds a cycle. Chain
    length is not limited: a long acyclic chain is still acyclic.
    """
    if start == goal:
        return [start]

    visited: set[str] = set()
    # Stack of (node, path-to-node)
    stack: list[tuple[str, list[str]]] = [(start, [start])]

    while stack:
        node, path = stack.pop()
        if node in visited:
            continue
        visited.add(node)

        for neighbour in adjacency.get(node, ()):
            if neighbour == goal:
                return path + [neighbour]
            if neighbour not in visited:
                stack.append((neighbour, path + [neighbour]))

    return None


def would_create_circular_dependency(
    adjacency: Mapping[str, Iterable[str]],
    feature_id: str,
    depends_on: str,
) -> bool:
    """
    Check whether adding feature_id -> depends_on would close a cycle.

    A cycle appears when depends_on can already reach feature_id.

    Example:
        >>> would_create_circular_dependency({"b": ["a"]}, "a", "b")
        True
    """
    return find_cycle(adjacency, feature_id, depends_on) is not None


def find_cycle(
    adjacency: Mapping[str, Iterable[str]],
    feature_id: str,
    depends_on: str,
) -> list[str] | None:
    """
    Return the cycle that adding feature_id -> depends_on would create.

    The result starts and ends with feature_id, e.g. ["a", "b", "c", "a"].
    """
    if feature_id == depends_on:
        return [feature_id, feature_id]
    path = find_dependency_path(adjacency, depends_on, feature_id)
    if path is None:
        return None
    return [feature_id] + path


def detect_cycles(adjacency: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """
    Find cycles already present in the graph.

    Uses visited and recursion-stack sets; each cycle is reported once as
    the list of its members in traversal order.
    """
    cycles: list[list[str]] = []
    visited: set[str] = set()
    seen_members: set[frozenset[str]] = set()
    steps = 0

    for root in list(adjacency):
        if root in visited:
            continue
        rec_stack: list[str] = []
        on_stack: set[str] = set()
        # Iterative DFS: (node, iterator over neighbours)
        work: list[tuple[str, Any]] = [(root, iter(adjacency.get(root, ())))]
        rec_stack.append(root)
        on_stack.add(root)
        visited.add(root)

        while work:
            steps += 1
            if steps > MAX_TRAVERSAL_STEPS:
                _logger.warning("Cycle detection stopped after %d steps", MAX_TRAVERSAL_STEPS)
                return cycles
            node, neighbours = work[-1]
            advanced = False
            for neighbour in neighbours:
                if neighbour in on_stack:
                    cycle = rec_stack[rec_stack.index(neighbour):]
                    key = frozenset(cycle)
                    if key not in seen_members:
                        seen_members.add(key)
                        cycles.append(list(cycle))
                elif neighbour not in visited:
                    visited.add(neighbour)
                    on_stack.add(neighbour)
                    rec_stack.append(neighbour)
                    work.append((neighbour, iter(adjacency.get(neighbour, ()))))
                    advanced = True
                    break
            if not advanced:
                work.pop()
                on_stack.discard(node)
                rec_stack.pop()

    return cycles


def build_graph_data(
    features: Iterable[dict[str, Any]],
    edges: Iterable[dict[str, Any]],
) -> dict[str, Any]:
    """
    Build a node/edge structure for graph visualisation.

    Args:
        features: Feature dicts (as produced by Feature.to_dict)
        edges: Edge dicts (as produced by FeatureDependency.to_dict)

    Returns:
        {"nodes": [...], "edges": [...], "cycles": [...]}
    """
    nodes = [
        {
            "id": f["id"],
            "name": f["name"],
            "version": f.get("version"),
            "enabled": f.get("enabled", True),
        }
        for f in features
    ]
    edge_list = [
        {
            "source": e["feature_id"],
            "target": e["depends_on"],
            "type": e["dependency_type"],
        }
        for e in edges
    ]
    adjacency = build_adjacency(
        (e["source"], e["target"], e["type"]) for e in edge_list
    )
    return {
        "nodes": nodes,
        "edges": edge_list,
        "cycles": detect_cycles(adjacency),
    }
