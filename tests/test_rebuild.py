"""Tests for projecting source logs into the graph."""

import json

import pytest

from loregraph.query import stats
from loregraph.rebuild import SYNC_ORDER, Rebuilder
from loregraph.resolver import resolve_id
from loregraph.sources import SourceReader
from loregraph.store import GraphStore
from loregraph.traverse import related

from conftest import make_decision, write_jsonl


def _rebuild(paths):
    store = GraphStore(paths.graph)
    report = Rebuilder(store, SourceReader(paths)).rebuild()
    return store, report


def _snapshot(store):
    """Graph contents minus timestamps."""
    nodes = {
        node.id: (node.type, node.name, node.attributes)
        for node in store.nodes.values()
    }
    edges = {
        edge.key: (edge.weight, edge.bidirectional, edge.status)
        for edge in store.edges
    }
    return nodes, edges


def test_rebuild_projects_every_kind(seeded_sources):
    store, report = _rebuild(seeded_sources)

    assert report.sources_ok == len(SYNC_ORDER)
    assert report.failed_steps == []
    counts = stats(store)["by_type"]
    assert counts == {
        "decision": 3,
        "failure": 4,
        "file": 2,
        "goal": 1,
        "observation": 1,
        "pattern": 1,
        "project": 1,
        "session": 1,
    }


def test_rebuild_is_idempotent(seeded_sources):
    store, _ = _rebuild(seeded_sources)
    first = _snapshot(store)

    store, _ = _rebuild(seeded_sources)
    assert _snapshot(store) == first


def test_rebuild_writes_backup(seeded_sources):
    _rebuild(seeded_sources)
    _rebuild(seeded_sources)
    assert seeded_sources.graph_backup.exists()


def test_decision_edges(seeded_sources):
    store, _ = _rebuild(seeded_sources)
    dec1 = resolve_id("decision", "dec-001")
    dec2 = resolve_id("decision", "dec-002")
    store_file = resolve_id("file", "lib/store.py")

    assert store.get_edge(dec1, store_file, "references") is not None
    assert store.get_node(store_file).attributes == {"path": "lib/store.py", "language": "py"}
    # related_decisions are linked in both directions
    assert store.get_edge(dec2, dec1, "relates_to") is not None
    assert store.get_edge(dec1, dec2, "relates_to") is not None
    assert store.get_node(dec1).attributes["journal_id"] == "dec-001"


def test_deprecated_patterns_are_skipped(seeded_sources):
    store, _ = _rebuild(seeded_sources)
    assert not store.has_node(resolve_id("pattern", "pat-002"))


def test_session_links(seeded_sources):
    store, _ = _rebuild(seeded_sources)
    session = resolve_id("session", "session-2025-01-15")
    pattern = resolve_id("pattern", "pat-001")

    assert store.get_node(session).attributes["session_id"] == "session-2025-01-15"
    assert store.get_edge(pattern, session, "learned_from") is not None
    assert store.get_edge(session, resolve_id("decision", "dec-001"), "produces") is not None
    assert store.get_edge(session, pattern, "produces") is not None


def test_project_links(seeded_sources):
    store, _ = _rebuild(seeded_sources)
    project = resolve_id("project", "alpha")

    attrs = store.get_node(project).attributes
    assert attrs["project_name"] == "alpha"
    assert attrs["tag"] == "project:alpha"
    assert store.get_edge(project, resolve_id("session", "session-2025-01-15"), "hosts") is not None
    assert store.get_edge(resolve_id("file", "lib/store.py"), project, "part_of") is not None
    assert store.get_edge(resolve_id("file", "api/auth.py"), project, "part_of") is None


def test_goal_links(seeded_sources):
    store, _ = _rebuild(seeded_sources)
    goal = resolve_id("goal", "Ship alpha")

    assert store.get_edge(goal, resolve_id("project", "alpha"), "relates_to") is not None
    tagged = store.get_edge(goal, resolve_id("decision", "dec-001"), "relates_to")
    assert tagged.weight == 0.8
    assert store.get_edge(goal, resolve_id("decision", "dec-002"), "relates_to") is None


def test_promoted_observation_links_to_target(seeded_sources):
    store, _ = _rebuild(seeded_sources)
    observation = resolve_id("observation", "Temp file plus rename keeps writes atomic")

    assert store.get_node(observation).attributes["observation_id"] == "obs-001"
    assert store.get_edge(resolve_id("pattern", "pat-001"), observation, "derived_from") is not None
    assert store.find_by_name("Maybe look at bloom filters") is None


def test_missing_source_is_skipped(seeded_sources):
    seeded_sources.failures.unlink()
    store, report = _rebuild(seeded_sources)

    assert report.sources_ok == len(SYNC_ORDER) - 1
    assert [step.name for step in report.failed_steps] == ["failures"]
    assert stats(store)["by_type"]["decision"] == 3
    assert "failure" not in stats(store)["by_type"]


def test_empty_data_dir_rebuilds_to_empty_graph(paths):
    store, report = _rebuild(paths)
    assert report.sources_ok == 0
    assert store.nodes == {}


def test_sync_only_adds_new_records(seeded_sources):
    store = GraphStore(seeded_sources.graph)
    rebuilder = Rebuilder(store, SourceReader(seeded_sources))
    rebuilder.rebuild()

    (result,) = rebuilder.sync(["decisions"])
    assert result.ok
    assert result.nodes_added == 0

    with open(seeded_sources.decisions, "a") as f:
        f.write(json.dumps(make_decision("dec-004", "Switch CI to nightly builds")) + "\n")
    (result,) = rebuilder.sync(["decisions"])
    assert result.nodes_added == 1
    assert store.has_node(resolve_id("decision", "dec-004"))


def test_sync_unknown_step(seeded_sources):
    rebuilder = Rebuilder(GraphStore(seeded_sources.graph), SourceReader(seeded_sources))
    with pytest.raises(ValueError):
        rebuilder.sync(["gossip"])


def test_project_tag_end_to_end(paths):
    """Three decisions sharing a project tag all reach the project node."""
    write_jsonl(paths.decisions, [
        make_decision(f"decision-{i}", text, tags=["project:alpha"])
        for i, text in enumerate(
            ["Use JSONL for storage", "Adopt JWT tokens", "Cache results in SQLite"], 1
        )
    ])
    store, _ = _rebuild(paths)

    neighbours = related(store, resolve_id("decision", "decision-1"), hops=1)
    assert resolve_id("project", "alpha") in [item["id"] for item in neighbours]

    summary = stats(store)
    assert summary["by_type"]["decision"] == 3
    assert summary["by_type"]["project"] >= 1


def test_malformed_record_is_skipped(seeded_sources):
    with open(seeded_sources.decisions, "a") as f:
        f.write(json.dumps(make_decision("dec-bad", "Bad tags", tags=5)) + "\n")
        f.write(json.dumps(make_decision("dec-bad-2", "Bad entities", entities=True)) + "\n")

    store, report = _rebuild(seeded_sources)

    assert report.failed_steps == []
    assert stats(store)["by_type"]["decision"] == 3
    assert not store.has_node(resolve_id("decision", "dec-bad"))
    assert stats(GraphStore(seeded_sources.graph))["nodes"] == len(store.nodes)


def test_unexpected_error_leaves_graph_on_disk(seeded_sources, monkeypatch):
    store, _ = _rebuild(seeded_sources)
    before = _snapshot(GraphStore(seeded_sources.graph))

    rebuilder = Rebuilder(store, SourceReader(seeded_sources))

    def explode():
        raise TypeError("unexpected")

    monkeypatch.setitem(rebuilder._steps, "goals", explode)
    with pytest.raises(TypeError):
        rebuilder.rebuild()

    assert _snapshot(GraphStore(seeded_sources.graph)) == before
    assert _snapshot(store) == before
