"""Tests for graph export formats."""

import json

import pytest

from loregraph.store import GraphStore
from loregraph.viz import export_dot, export_json, export_mermaid, write_export


@pytest.fixture
def small_graph(store):
    a = store.add_node("decision", 'Use "quoted" names')
    b = store.add_node("file", "lib/store.py")
    c = store.add_node("concept", "storage")
    store.add_edge(a, b, "references")
    store.add_edge(b, c, "relates_to")
    store.deprecate_edge(b, c)
    return store, a, b, c


def test_json_round_trips_through_import(small_graph, temp_lore_dir):
    store, a, b, _ = small_graph
    doc = json.loads(export_json(store))

    assert doc["meta"]["node_count"] == 3
    assert doc["meta"]["edge_count"] == 2

    other = GraphStore(temp_lore_dir / "other.json")
    assert other.import_graph(doc) == (3, 2)
    assert other.get_edge(a, b, "references") is not None


def test_json_type_filter(small_graph):
    store, _, b, _ = small_graph
    doc = json.loads(export_json(store, node_type="file"))
    assert list(doc["nodes"]) == [b]
    assert doc["edges"] == []


def test_dot(small_graph):
    store, a, b, c = small_graph
    dot = export_dot(store)

    assert dot.startswith("digraph loregraph {")
    assert f'"{a}" -> "{b}" [label="references"];' in dot
    assert f'"{b}" -> "{c}" [label="relates_to", style=dashed];' in dot
    assert '\\"quoted\\"' in dot


def test_mermaid(small_graph):
    store, a, b, c = small_graph
    mermaid = export_mermaid(store)

    assert mermaid.startswith("graph LR")
    assert f"{a.replace('-', '_')} -->|references| {b.replace('-', '_')}" in mermaid
    assert f"{b.replace('-', '_')} -.->|relates_to| {c.replace('-', '_')}" in mermaid
    assert "#quot;quoted#quot;" in mermaid


def test_write_export_to_file(small_graph, temp_lore_dir):
    store, *_ = small_graph
    out = temp_lore_dir / "exports" / "graph.dot"
    text = write_export(store, "dot", output_path=out)
    assert out.read_text() == text


def test_write_export_unknown_format(small_graph):
    store, *_ = small_graph
    with pytest.raises(ValueError):
        write_export(store, "svg")
