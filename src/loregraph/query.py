"""Read-only inspection of the graph: node search and summary statistics.

Traversal lives in traverse.py; this module only looks at nodes and edges
as stored.
"""

from __future__ import annotations

import json
import logging
from collections import Counter

from .constants import DEFAULT_QUERY_LIMIT
from .store import GraphStore

logger = logging.getLogger(__name__)

EXACT_NAME_SCORE = 100
NAME_CONTAINS_SCORE = 50
NAME_PREFIX_SCORE = 25
ATTRIBUTE_HIT_SCORE = 10


def score_node(node, needle: str) -> int:
    """Relevance of one node to a lowercased query string."""
    name = node.name.lower()
    score = 0
    if name == needle:
        score += EXACT_NAME_SCORE
    elif needle in name:
        score += NAME_CONTAINS_SCORE
    if name.startswith(needle):
        score += NAME_PREFIX_SCORE

    attributes = json.dumps(node.attributes, default=str).lower()
    score += attributes.count(needle) * ATTRIBUTE_HIT_SCORE
    return score


def search_nodes(
    store: GraphStore,
    query: str,
    node_type: str | None = None,
    limit: int = DEFAULT_QUERY_LIMIT,
) -> list[dict]:
    """Score nodes against ``query`` by name and attributes.

    Returns ``[{"id", "type", "name", "score"}]`` best first; nodes scoring
    zero are left out. An empty query matches nothing.
    """
    needle = query.strip().lower()
    if not needle:
        return []

    results = []
    for node in store.list_nodes(node_type):
        score = score_node(node, needle)
        if score > 0:
            results.append({
                "id": node.id,
                "type": node.type,
                "name": node.name,
                "score": score,
            })

    results.sort(key=lambda r: (-r["score"], r["id"]))
    return results[:limit]


def stats(store: GraphStore) -> dict:
    """Node/edge totals with per-type and per-relation breakdowns."""
    by_type = Counter(node.type for node in store.nodes.values())
    by_relation = Counter(edge.relation for edge in store.edges)
    deprecated = sum(1 for edge in store.edges if not edge.is_active)
    return {
        "nodes": len(store.nodes),
        "edges": len(store.edges),
        "deprecated_edges": deprecated,
        "by_type": dict(sorted(by_type.items())),
        "by_relation": dict(sorted(by_relation.items())),
    }
