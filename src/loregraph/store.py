"""Graph store backed by a single JSON document.

The document holds a node map keyed by node id and an edge list. Every
mutation rewrites the whole file through a temp file + os.replace, so a
reader never observes a half-written graph. Use ``batch()`` to group many
mutations into one write.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .constants import (
    DEFAULT_EDGE_WEIGHT,
    EDGE_STATUS_DEPRECATED,
    LEGACY_RELATION_ALIASES,
)
from .models import Edge, Node, normalize_relation, utc_now, validate_node_type
from .resolver import resolve_id

logger = logging.getLogger(__name__)


class NodeNotFound(KeyError):
    """Raised when an edge endpoint does not exist."""


def _deep_merge(base: dict, update: dict) -> dict:
    """Recursively merge ``update`` into a copy of ``base``.

    Keys absent from ``update`` are kept as they are.
    """
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def atomic_write_json(path: Path, payload: dict) -> None:
    """Write JSON to ``path`` via a sibling temp file and atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=False)
            f.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class GraphStore:
    """Typed nodes and relation edges with O(1) lookup indices.

    Indices:
    - _by_name: exact name -> node ids (insertion order)
    - _by_name_ci: lowercased name -> node ids
    - _outgoing / _incoming: node id -> edges
    - _edge_keys: (from, to, relation) -> edge

    Thread-safety: single writer only. Two processes mutating the same
    graph file will lose each other's writes.
    """

    def __init__(self, path: Path, autosave: bool = True):
        self.path = Path(path)
        self.autosave = autosave
        self.nodes: dict[str, Node] = {}
        self.edges: list[Edge] = []

        self._by_name: dict[str, list[str]] = {}
        self._by_name_ci: dict[str, list[str]] = {}
        self._outgoing: dict[str, list[Edge]] = {}
        self._incoming: dict[str, list[Edge]] = {}
        self._edge_keys: dict[tuple[str, str, str], Edge] = {}

        self._batch_depth = 0
        self._dirty = False

        self.load()

    # --- Persistence ---

    def load(self) -> None:
        """(Re)load the graph document from disk. Missing file = empty graph."""
        self.nodes = {}
        self.edges = []
        if self.path.exists():
            with open(self.path, encoding="utf-8") as f:
                doc = json.load(f)
            self._load_doc(doc)
        self._rebuild_indices()

    def _load_doc(self, doc: dict) -> None:
        for node_id, raw in (doc.get("nodes") or {}).items():
            raw = dict(raw)
            # Older documents keep attributes under "data"
            if "attributes" not in raw and "data" in raw:
                raw["attributes"] = raw.pop("data") or {}
            raw["id"] = node_id
            self.nodes[node_id] = Node.model_validate(raw)
        for raw in doc.get("edges") or []:
            self.edges.append(Edge.model_validate(raw))

    def to_dict(self) -> dict:
        """Serialize to the on-disk document layout."""
        return {
            "nodes": {
                node_id: node.model_dump(mode="json", exclude={"id"})
                for node_id, node in self.nodes.items()
            },
            "edges": [edge.to_dict() for edge in self.edges],
        }

    def save(self) -> None:
        atomic_write_json(self.path, self.to_dict())
        self._dirty = False

    def _commit(self) -> None:
        """Persist now unless inside batch(); batch() flushes on exit."""
        self._dirty = True
        if self._batch_depth == 0 and self.autosave:
            self.save()

    @contextmanager
    def batch(self) -> Iterator[GraphStore]:
        """Group mutations into a single write at the end of the block.

        If an exception escapes the outermost block nothing is written and
        the in-memory graph is reloaded from disk.
        """
        self._batch_depth += 1
        try:
            yield self
        except BaseException:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                logger.warning(f"Discarding unsaved graph changes after error; reloading {self.path}")
                self._dirty = False
                self.load()
            raise
        self._batch_depth -= 1
        if self._batch_depth == 0 and self._dirty and self.autosave:
            self.save()

    def backup(self) -> Path | None:
        """Copy the current graph file to graph.json.bak. Returns backup path."""
        if not self.path.exists():
            return None
        backup_path = self.path.with_name(self.path.name + ".bak")
        shutil.copy2(self.path, backup_path)
        logger.debug(f"Backed up graph to {backup_path}")
        return backup_path

    def reset(self) -> None:
        """Drop every node and edge."""
        self.nodes = {}
        self.edges = []
        self._rebuild_indices()
        self._commit()

    # --- Indices ---

    def _rebuild_indices(self) -> None:
        self._by_name = {}
        self._by_name_ci = {}
        for node_id, node in self.nodes.items():
            self._index_node(node_id, node)

        self._outgoing = {}
        self._incoming = {}
        self._edge_keys = {}
        for edge in self.edges:
            self._index_edge(edge)

    def _index_node(self, node_id: str, node: Node) -> None:
        self._by_name.setdefault(node.name, []).append(node_id)
        self._by_name_ci.setdefault(node.name.lower(), []).append(node_id)

    def _unindex_node(self, node_id: str, node: Node) -> None:
        for index, key in ((self._by_name, node.name), (self._by_name_ci, node.name.lower())):
            ids = index.get(key, [])
            if node_id in ids:
                ids.remove(node_id)
            if not ids:
                index.pop(key, None)

    def _index_edge(self, edge: Edge) -> None:
        self._outgoing.setdefault(edge.from_id, []).append(edge)
        self._incoming.setdefault(edge.to_id, []).append(edge)
        self._edge_keys[edge.key] = edge

    # --- Nodes ---

    def add_node(self, node_type: str, name: str, attributes: dict | None = None) -> str:
        """Create a node, or merge ``attributes`` into the existing one.

        Existing attribute keys not present in ``attributes`` are left alone;
        ``updated_at`` only moves when the merge actually changes something.
        """
        validate_node_type(node_type)
        node_id = resolve_id(node_type, name)
        attributes = attributes or {}

        existing = self.nodes.get(node_id)
        if existing is None:
            now = utc_now()
            node = Node(
                id=node_id,
                type=node_type,
                name=name,
                attributes=copy.deepcopy(attributes),
                created_at=now,
                updated_at=now,
            )
            self.nodes[node_id] = node
            self._index_node(node_id, node)
            self._commit()
            return node_id

        merged = _deep_merge(existing.attributes, attributes)
        if merged != existing.attributes:
            existing.attributes = merged
            existing.updated_at = utc_now()
            self._commit()
        return node_id

    def get_node(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self.nodes

    def find_by_name(self, name: str, node_type: str | None = None) -> Node | None:
        """Exact-name lookup, first inserted wins."""
        return self._first_match(self._by_name.get(name, []), node_type)

    def find_by_name_ci(self, name: str, node_type: str | None = None) -> Node | None:
        """Case-insensitive name lookup."""
        return self._first_match(self._by_name_ci.get(name.lower(), []), node_type)

    def _first_match(self, node_ids: list[str], node_type: str | None) -> Node | None:
        for node_id in node_ids:
            node = self.nodes[node_id]
            if node_type is None or node.type == node_type:
                return node
        return None

    def list_nodes(self, node_type: str | None = None) -> list[Node]:
        """Nodes in key order, optionally filtered by type."""
        return [
            self.nodes[node_id]
            for node_id in sorted(self.nodes)
            if node_type is None or self.nodes[node_id].type == node_type
        ]

    def attribute_values(self, node_type: str, key: str) -> set:
        """Collect ``attributes[key]`` across nodes of one type.

        Used by sync steps to tell which source records are already projected.
        """
        values = set()
        for node in self.nodes.values():
            if node.type == node_type and key in node.attributes:
                value = node.attributes[key]
                if isinstance(value, (str, int, float)):
                    values.add(value)
        return values

    def delete_node(self, node_id: str) -> bool:
        """Remove a node and every edge touching it. Returns False if unknown."""
        node = self.nodes.pop(node_id, None)
        if node is None:
            return False
        self._unindex_node(node_id, node)

        before = len(self.edges)
        self.edges = [e for e in self.edges if e.from_id != node_id and e.to_id != node_id]
        removed = before - len(self.edges)
        if removed:
            self._rebuild_indices()
        logger.debug(f"Deleted node {node_id} and {removed} incident edges")
        self._commit()
        return True

    # --- Edges ---

    def add_edge(
        self,
        from_id: str,
        to_id: str,
        relation: str,
        weight: float = DEFAULT_EDGE_WEIGHT,
        bidirectional: bool = False,
    ) -> Edge:
        """Add an edge unless the (from, to, relation) triple already exists.

        An existing triple only has its weight updated. Bidirectional edges
        also insert the reverse edge under the same uniqueness rule.
        """
        relation = normalize_relation(relation)
        for endpoint in (from_id, to_id):
            if endpoint not in self.nodes:
                raise NodeNotFound(endpoint)

        edge = self._upsert_edge(from_id, to_id, relation, weight, bidirectional)
        if bidirectional and from_id != to_id:
            self._upsert_edge(to_id, from_id, relation, weight, bidirectional)

        if relation == "supersedes":
            target = self.nodes[to_id]
            if target.attributes.get("status") != "superseded":
                target.attributes = {**target.attributes, "status": "superseded"}
                target.updated_at = utc_now()
                logger.info(f"Marked {to_id} as superseded by {from_id}")
        elif relation == "contradicts":
            logger.info(f"Contradiction recorded: {from_id} contradicts {to_id}")

        self._commit()
        return edge

    def _upsert_edge(
        self, from_id: str, to_id: str, relation: str, weight: float, bidirectional: bool
    ) -> Edge:
        existing = self._edge_keys.get((from_id, to_id, relation))
        if existing is not None:
            existing.weight = weight
            return existing
        edge = Edge(
            from_id=from_id,
            to_id=to_id,
            relation=relation,
            weight=weight,
            bidirectional=bidirectional,
        )
        self.edges.append(edge)
        self._index_edge(edge)
        return edge

    def get_edge(self, from_id: str, to_id: str, relation: str) -> Edge | None:
        return self._edge_keys.get((from_id, to_id, relation))

    def delete_edge(self, from_id: str, to_id: str, relation: str | None = None) -> int:
        """Remove edges from -> to. Without a relation, every edge between the pair."""
        if relation is not None:
            relation = normalize_relation(relation)

        def matches(edge: Edge) -> bool:
            return (
                edge.from_id == from_id
                and edge.to_id == to_id
                and (relation is None or edge.relation == relation)
            )

        kept = [e for e in self.edges if not matches(e)]
        removed = len(self.edges) - len(kept)
        if removed:
            self.edges = kept
            self._rebuild_indices()
            self._commit()
        return removed

    def deprecate_edge(self, from_id: str, to_id: str, relation: str | None = None) -> int:
        """Soft-delete: mark matching edges deprecated so traversal skips them."""
        if relation is not None:
            relation = normalize_relation(relation)
        count = 0
        for edge in self._outgoing.get(from_id, []):
            if edge.to_id != to_id or (relation is not None and edge.relation != relation):
                continue
            if edge.status != EDGE_STATUS_DEPRECATED:
                edge.status = EDGE_STATUS_DEPRECATED
                count += 1
        if count:
            self._commit()
        return count

    def outgoing(self, node_id: str, include_deprecated: bool = False) -> list[Edge]:
        edges = self._outgoing.get(node_id, [])
        return edges if include_deprecated else [e for e in edges if e.is_active]

    def incoming(self, node_id: str, include_deprecated: bool = False) -> list[Edge]:
        edges = self._incoming.get(node_id, [])
        return edges if include_deprecated else [e for e in edges if e.is_active]

    def incident_edges(self, node_id: str) -> list[Edge]:
        """Active edges touching a node, outgoing first, in insertion order."""
        return self.outgoing(node_id) + self.incoming(node_id)

    def neighbors(self, node_id: str) -> list[str]:
        """Distinct neighbour ids over active edges in either direction."""
        seen: dict[str, None] = {}
        for edge in self.incident_edges(node_id):
            other = edge.other_node(node_id)
            if other != node_id:
                seen.setdefault(other, None)
        return list(seen)

    # --- Maintenance ---

    def normalize_relations(self) -> int:
        """Rewrite legacy relation spellings in place. Returns edges changed."""
        changed = 0
        for edge in self.edges:
            canonical = LEGACY_RELATION_ALIASES.get(edge.relation, edge.relation)
            if canonical != edge.relation:
                edge.relation = canonical
                changed += 1
        if changed:
            self._rebuild_indices()
            self._commit()
        return changed

    def dedupe_edges(self) -> int:
        """Keep the first edge per (from, to, relation). Returns edges dropped."""
        seen: set[tuple[str, str, str]] = set()
        kept: list[Edge] = []
        for edge in self.edges:
            if edge.key in seen:
                continue
            seen.add(edge.key)
            kept.append(edge)
        dropped = len(self.edges) - len(kept)
        if dropped:
            self.edges = kept
            self._rebuild_indices()
            self._commit()
        return dropped

    def import_graph(self, doc: dict) -> tuple[int, int]:
        """Merge another graph document. Returns (nodes, edges) imported.

        Nodes are re-keyed through the resolver; edges whose endpoints do not
        survive the import are skipped.
        """
        id_map: dict[str, str] = {}
        edges_added = 0
        with self.batch():
            for old_id, raw in (doc.get("nodes") or {}).items():
                attributes = raw.get("attributes", raw.get("data")) or {}
                id_map[old_id] = self.add_node(raw["type"], raw["name"], attributes)
            for raw in doc.get("edges") or []:
                from_id = id_map.get(raw.get("from"), raw.get("from"))
                to_id = id_map.get(raw.get("to"), raw.get("to"))
                if from_id not in self.nodes or to_id not in self.nodes:
                    logger.debug(f"Skipping edge with missing endpoint: {raw}")
                    continue
                self.add_edge(
                    from_id,
                    to_id,
                    raw["relation"],
                    weight=raw.get("weight", DEFAULT_EDGE_WEIGHT),
                    bidirectional=raw.get("bidirectional", False),
                )
                edges_added += 1
        return len(id_map), edges_added
