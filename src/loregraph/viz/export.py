"""Render the graph as JSON, Graphviz DOT or a Mermaid flowchart.

JSON output is the graph document plus a ``meta`` block, so it can be fed
back through ``GraphStore.import_graph``. DOT and Mermaid are for viewing
only; deprecated edges are drawn dashed.
"""

import json
import re
from datetime import datetime, timezone
from pathlib import Path

from ..store import GraphStore

EXPORT_FORMATS = ("json", "dot", "mermaid")

_MERMAID_ID_RE = re.compile(r"[^A-Za-z0-9_]")


def _label(store: GraphStore, node_id: str) -> str:
    node = store.get_node(node_id)
    return f"[{node.type}] {node.name}" if node else node_id


def export_json(store: GraphStore, node_type: str | None = None) -> str:
    """Graph document with export metadata, optionally one node type only."""
    doc = store.to_dict()
    if node_type:
        keep = {node.id for node in store.list_nodes(node_type)}
        doc["nodes"] = {nid: raw for nid, raw in doc["nodes"].items() if nid in keep}
        doc["edges"] = [e for e in doc["edges"] if e["from"] in keep and e["to"] in keep]

    doc["meta"] = {
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "node_count": len(doc["nodes"]),
        "edge_count": len(doc["edges"]),
    }
    return json.dumps(doc, indent=2)


def _dot_quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def export_dot(store: GraphStore, node_type: str | None = None) -> str:
    """Graphviz digraph, one statement per node and edge."""
    nodes = store.list_nodes(node_type)
    keep = {node.id for node in nodes}

    lines = ["digraph loregraph {", "  rankdir=LR;", "  node [shape=box];"]
    for node in nodes:
        lines.append(f"  {_dot_quote(node.id)} [label={_dot_quote(_label(store, node.id))}];")
    for edge in store.edges:
        if edge.from_id not in keep or edge.to_id not in keep:
            continue
        attrs = [f"label={_dot_quote(edge.relation)}"]
        if not edge.is_active:
            attrs.append("style=dashed")
        lines.append(
            f"  {_dot_quote(edge.from_id)} -> {_dot_quote(edge.to_id)} [{', '.join(attrs)}];"
        )
    lines.append("}")
    return "\n".join(lines) + "\n"


def _mermaid_id(node_id: str) -> str:
    return _MERMAID_ID_RE.sub("_", node_id)


def _mermaid_text(text: str) -> str:
    return text.replace('"', "#quot;")


def export_mermaid(store: GraphStore, node_type: str | None = None) -> str:
    """Mermaid ``graph LR`` flowchart."""
    nodes = store.list_nodes(node_type)
    keep = {node.id for node in nodes}

    lines = ["graph LR"]
    for node in nodes:
        lines.append(f'  {_mermaid_id(node.id)}["{_mermaid_text(_label(store, node.id))}"]')
    for edge in store.edges:
        if edge.from_id not in keep or edge.to_id not in keep:
            continue
        arrow = "-->" if edge.is_active else "-.->"
        lines.append(
            f"  {_mermaid_id(edge.from_id)} {arrow}|{_mermaid_text(edge.relation)}| "
            f"{_mermaid_id(edge.to_id)}"
        )
    return "\n".join(lines) + "\n"


def write_export(
    store: GraphStore,
    fmt: str,
    output_path: Path | None = None,
    node_type: str | None = None,
) -> str:
    """Render ``store`` in ``fmt``; also write it to ``output_path`` when given."""
    renderers = {"json": export_json, "dot": export_dot, "mermaid": export_mermaid}
    if fmt not in renderers:
        raise ValueError(f"Unknown export format '{fmt}'. Valid formats: {', '.join(EXPORT_FORMATS)}")
    text = renderers[fmt](store, node_type)
    if output_path is not None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(text)
    return text
