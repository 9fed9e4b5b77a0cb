"""Entity resolution: content-addressed node ids and reference lookup.

Node ids are ``<type>-<hash>`` where the hash is the first ID_HASH_WIDTH hex
characters of ID_HASH_ALGORITHM over ``"<type>:<name>"``. Re-deriving the id
for the same logical entity always yields the same value, which is what lets
repeated rebuilds converge without a side table.

Known limitation: 8 hex characters is 32 bits of a strong hash. Two distinct
names of the same type can collide; the second would merge into the first
node. Bump ID_SCHEME_VERSION together with the width if that ever matters.
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING

from .constants import (
    ID_HASH_ALGORITHM,
    ID_HASH_WIDTH,
    REF_FRAGMENT_CHARS,
    REF_FRAGMENT_MIN_CHARS,
)

if TYPE_CHECKING:
    from .models import Node
    from .sources import SourceReader
    from .store import GraphStore

logger = logging.getLogger(__name__)


def resolve_id(node_type: str, name: str) -> str:
    """Derive the stable node id for a (type, name) pair."""
    digest = hashlib.new(ID_HASH_ALGORITHM, f"{node_type}:{name}".encode("utf-8"))
    return f"{node_type}-{digest.hexdigest()[:ID_HASH_WIDTH]}"


def resolve_ref(store: GraphStore, ref: str) -> str | None:
    """Resolve a user reference to a node id.

    Tries, in order: direct id, exact name, case-insensitive name.
    """
    if not ref:
        return None
    if store.get_node(ref) is not None:
        return ref
    node = store.find_by_name(ref)
    if node is None:
        node = store.find_by_name_ci(ref)
    return node.id if node else None


def resolve_fuzzy(store: GraphStore, ref: str) -> str | None:
    """Like resolve_ref, then falls back to a case-insensitive name substring."""
    node_id = resolve_ref(store, ref)
    if node_id is not None:
        return node_id
    needle = ref.lower()
    for node in store.list_nodes():
        if needle in node.name.lower():
            return node.id
    return None


def resolve_to_graph_id(store: GraphStore, text: str) -> str | None:
    """Map a search hit (id, project name, or content) onto a graph node.

    Used by graph expansion, where hits come from the lexical index and may
    carry a journal id, a project scope, or only free text.
    """
    if not text:
        return None
    if store.get_node(text) is not None:
        return text

    for node in store.list_nodes("project"):
        if node.name == text:
            return node.id

    # Hits often look like "Use JSONL for storage: because ..." - match on the head
    fragment = text.split(":", 1)[0][:REF_FRAGMENT_CHARS].strip().lower()
    if len(fragment) < REF_FRAGMENT_MIN_CHARS:
        return None
    for node in store.list_nodes():
        if fragment in node.name.lower():
            return node.id
        summary = node.attributes.get("decision") or node.attributes.get("summary")
        if isinstance(summary, str) and fragment in summary.lower():
            return node.id
    return None


# node type -> (attribute holding the logical id, reader method)
_PROVENANCE = {
    "decision": ("journal_id", "decision"),
    "pattern": ("pattern_id", "pattern"),
    "failure": ("failure_id", "failure"),
    "session": ("session_id", "session"),
    "goal": ("goal_id", "goal"),
    "observation": ("observation_id", "observation"),
    "project": ("project_name", "project"),
}


def lookup_source(store: GraphStore, reader: SourceReader, node_id: str) -> dict | None:
    """Reverse-resolve a graph node to the source record that produced it.

    Returns ``{"graph_id", "node", "source"}`` where ``source`` is the current
    source record (or None when the node has no external source), or None
    when the node itself is unknown.
    """
    node: Node | None = store.get_node(node_id)
    if node is None:
        return None

    result: dict = {
        "graph_id": node.id,
        "node": node.model_dump(mode="json"),
        "source": None,
    }

    entry = _PROVENANCE.get(node.type)
    if entry is None:
        return result

    attr, kind = entry
    logical_id = node.attributes.get(attr) or node.name
    record = reader.find(kind, logical_id)
    if record is None:
        logger.debug(f"No {kind} source record for {node.id} ({logical_id})")
    else:
        result["source"] = record.model_dump(mode="json")
    return result
