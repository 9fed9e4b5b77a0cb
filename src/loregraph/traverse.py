"""Graph traversal and structural analytics.

Provides:
- traverse(): hop-annotated BFS over both edge directions (display + expansion)
- bfs() / dfs(): visit order following edge direction
- shortest_path() / path_edges(): unweighted BFS with parent pointers
- related(): flattened multi-hop neighbourhood
- find_orphans() / find_hubs() / find_clusters() / degree(): structure

Every function accepts a node id or a name as its starting reference and
returns an empty result for unknown nodes. Traversal follows active edges
only; the structural analytics count every stored edge.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from .constants import DEFAULT_HUB_LIMIT, DEFAULT_RELATED_HOPS, DEFAULT_TRAVERSAL_DEPTH
from .models import Edge, Node
from .resolver import resolve_ref
from .store import GraphStore


@dataclass
class TraversalStep:
    """One discovered neighbour: how far away, via which edge."""

    hop: int
    edge: Edge
    node: Node

    def format(self, store: GraphStore) -> str:
        """Render as an indented "[type] name → relation → [type] name" line."""
        src = store.get_node(self.edge.from_id)
        dst = store.get_node(self.edge.to_id)
        src_label = f"[{src.type}] {src.name}" if src else self.edge.from_id
        dst_label = f"[{dst.type}] {dst.name}" if dst else self.edge.to_id
        indent = "  " * (self.hop - 1)
        return f"{indent}{src_label} → {self.edge.relation} → {dst_label}"


def traverse(store: GraphStore, start: str, depth: int) -> list[TraversalStep]:
    """Breadth-first exploration of outgoing and incoming edges up to ``depth``.

    Each node is discovered at most once per call, so cycles terminate.
    ``depth <= 0`` yields nothing.
    """
    if depth <= 0:
        return []
    start_id = resolve_ref(store, start)
    if start_id is None:
        return []

    visited = {start_id}
    steps: list[TraversalStep] = []
    queue: deque[tuple[str, int]] = deque([(start_id, 0)])

    while queue:
        node_id, hop = queue.popleft()
        if hop >= depth:
            continue
        for edge in store.incident_edges(node_id):
            neighbor = edge.other_node(node_id)
            if neighbor in visited or not store.has_node(neighbor):
                continue
            visited.add(neighbor)
            steps.append(TraversalStep(hop=hop + 1, edge=edge, node=store.nodes[neighbor]))
            queue.append((neighbor, hop + 1))

    return steps


def _forward_neighbors(store: GraphStore, node_id: str) -> list[str]:
    """Outgoing targets plus sources of bidirectional incoming edges."""
    result = [e.to_id for e in store.outgoing(node_id)]
    result.extend(e.from_id for e in store.incoming(node_id) if e.bidirectional)
    return result


def bfs(store: GraphStore, start: str, max_depth: int = DEFAULT_TRAVERSAL_DEPTH) -> list[dict]:
    """Directed BFS visit order as ``[{"node", "depth"}]``."""
    start_id = resolve_ref(store, start)
    if start_id is None:
        return []

    visited: set[str] = set()
    result: list[dict] = []
    queue: deque[tuple[str, int]] = deque([(start_id, 0)])
    while queue:
        node_id, depth = queue.popleft()
        if node_id in visited or depth > max_depth:
            continue
        visited.add(node_id)
        result.append({"node": node_id, "depth": depth})
        for neighbor in _forward_neighbors(store, node_id):
            if neighbor not in visited:
                queue.append((neighbor, depth + 1))
    return result


def dfs(store: GraphStore, start: str, max_depth: int = DEFAULT_TRAVERSAL_DEPTH) -> list[dict]:
    """Directed DFS (pre-order) visit order as ``[{"node", "depth"}]``."""
    start_id = resolve_ref(store, start)
    if start_id is None:
        return []

    visited: set[str] = set()
    result: list[dict] = []
    # Reversed push keeps children in edge order
    stack: list[tuple[str, int]] = [(start_id, 0)]
    while stack:
        node_id, depth = stack.pop()
        if node_id in visited or depth > max_depth:
            continue
        visited.add(node_id)
        result.append({"node": node_id, "depth": depth})
        for edge in reversed(store.outgoing(node_id)):
            if edge.to_id not in visited:
                stack.append((edge.to_id, depth + 1))
    return result


def shortest_path(store: GraphStore, a: str, b: str) -> list[str]:
    """Shortest undirected path as a list of node ids, or [] if none.

    Unweighted; ties go to whichever edge was inserted first.
    """
    start = resolve_ref(store, a)
    goal = resolve_ref(store, b)
    if start is None or goal is None:
        return []
    if start == goal:
        return [start]

    parents: dict[str, str | None] = {start: None}
    queue: deque[str] = deque([start])
    while queue:
        current = queue.popleft()
        for neighbor in store.neighbors(current):
            if neighbor in parents:
                continue
            parents[neighbor] = current
            if neighbor == goal:
                path = [goal]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])  # type: ignore[arg-type]
                return list(reversed(path))
            queue.append(neighbor)
    return []


def path_edges(store: GraphStore, a: str, b: str) -> list[Edge]:
    """Edges along shortest_path(a, b), one per hop, in path order."""
    path = shortest_path(store, a, b)
    edges: list[Edge] = []
    for left, right in zip(path, path[1:]):
        for edge in store.incident_edges(left):
            if edge.other_node(left) == right:
                edges.append(edge)
                break
    return edges


def related(store: GraphStore, ref: str, hops: int = DEFAULT_RELATED_HOPS) -> list[dict]:
    """Nodes within ``hops`` of ``ref`` (excluding it), nearest first."""
    return [
        {
            "id": step.node.id,
            "type": step.node.type,
            "name": step.node.name,
            "hops": step.hop,
            "relation": step.edge.relation,
        }
        for step in traverse(store, ref, hops)
    ]


def degree(store: GraphStore, ref: str) -> dict | None:
    """In/out/total edge counts for a node, or None if unknown."""
    node_id = resolve_ref(store, ref)
    if node_id is None:
        return None
    out_count = len(store.outgoing(node_id, include_deprecated=True))
    in_count = len(store.incoming(node_id, include_deprecated=True))
    return {"in": in_count, "out": out_count, "total": in_count + out_count}


def find_orphans(store: GraphStore) -> list[Node]:
    """Nodes with no incident edges at all."""
    connected: set[str] = set()
    for edge in store.edges:
        connected.add(edge.from_id)
        connected.add(edge.to_id)
    return [node for node in store.list_nodes() if node.id not in connected]


def find_hubs(store: GraphStore, limit: int = DEFAULT_HUB_LIMIT) -> list[dict]:
    """Most connected nodes by total degree, ties broken by id."""
    counts: dict[str, int] = {node_id: 0 for node_id in store.nodes}
    for edge in store.edges:
        if edge.from_id in counts:
            counts[edge.from_id] += 1
        if edge.to_id in counts and edge.to_id != edge.from_id:
            counts[edge.to_id] += 1

    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [
        {
            "id": node_id,
            "type": store.nodes[node_id].type,
            "name": store.nodes[node_id].name,
            "degree": count,
        }
        for node_id, count in ranked[:limit]
    ]


def find_clusters(store: GraphStore) -> list[list[str]]:
    """Connected components over the undirected closure of all edges.

    Components are discovered by iterating nodes in key order; each is a
    list of member ids in BFS order. Isolated nodes form singleton clusters.
    """
    adjacency: dict[str, list[str]] = {}
    for edge in store.edges:
        adjacency.setdefault(edge.from_id, []).append(edge.to_id)
        adjacency.setdefault(edge.to_id, []).append(edge.from_id)

    visited: set[str] = set()
    clusters: list[list[str]] = []
    for start in sorted(store.nodes):
        if start in visited:
            continue
        cluster: list[str] = []
        queue: deque[str] = deque([start])
        visited.add(start)
        while queue:
            current = queue.popleft()
            cluster.append(current)
            for neighbor in adjacency.get(current, []):
                if neighbor not in visited and neighbor in store.nodes:
                    visited.add(neighbor)
                    queue.append(neighbor)
        clusters.append(cluster)
    return clusters
