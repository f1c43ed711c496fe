"""Graph traversal over changeset parent edges."""

import sqlite3
from collections import deque

# node id -> (parent_id, merge_id)
Edges = dict[str, tuple[str | None, str | None]]


def load_edges(conn: sqlite3.Connection) -> Edges:
    """Read every node's parent references."""
    rows = conn.execute("SELECT id, parent_id, merge_id FROM changeset").fetchall()
    return {row[0]: (row[1], row[2]) for row in rows}


def ancestors(edges: Edges, start: str | None) -> set[str]:
    """All nodes reachable backward from ``start``, including itself."""
    if start is None:
        return set()
    seen = {start}
    frontier = deque([start])
    while frontier:
        node = frontier.popleft()
        for parent in edges.get(node, (None, None)):
            if parent is not None and parent not in seen:
                seen.add(parent)
                frontier.append(parent)
    return seen


def branch_only(edges: Edges, from_id: str, excluding_ancestors_of: str) -> list[str]:
    """Nodes behind ``from_id`` that are not behind ``excluding_ancestors_of``.

    Merge nodes are left out; their content is already carried by the
    nodes of the branches they join.

    Returns:
        Node ids ordered oldest to newest: greatest distance from
        ``from_id`` first, ties broken by id.
    """
    excluded = ancestors(edges, excluding_ancestors_of)
    if from_id in excluded:
        return []

    # Longest path distance from from_id, so every node sorts after all
    # of its ancestors within the branch.
    distance = {from_id: 0}
    order = _topological(edges, from_id, excluded)
    for node in order:
        for parent in edges[node]:
            if parent in edges and parent not in excluded:
                distance[parent] = max(distance.get(parent, 0), distance[node] + 1)

    nodes = [n for n in distance if edges[n][1] is None]
    nodes.sort(key=lambda n: (-distance[n], n))
    return nodes


def _topological(edges: Edges, start: str, excluded: set[str]) -> list[str]:
    """Nodes reachable from ``start`` outside ``excluded``, children first."""
    reachable = ancestors(
        {n: p for n, p in edges.items() if n not in excluded}, start
    ) - excluded
    reachable &= edges.keys()

    children_left = {n: 0 for n in reachable}
    for node in reachable:
        for parent in edges[node]:
            if parent in reachable:
                children_left[parent] += 1

    ready = deque(sorted(n for n, count in children_left.items() if count == 0))
    order = []
    while ready:
        node = ready.popleft()
        order.append(node)
        for parent in edges[node]:
            if parent in reachable:
                children_left[parent] -= 1
                if children_left[parent] == 0:
                    ready.append(parent)
    return order


def leaves(edges: Edges) -> list[str]:
    """Nodes that no other node references, sorted by id."""
    referenced = {p for pair in edges.values() for p in pair if p is not None}
    return sorted(n for n in edges if n not in referenced)
