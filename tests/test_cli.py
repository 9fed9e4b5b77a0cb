"""Tests for the loregraph CLI."""

import json

import pytest
from click.testing import CliRunner

from loregraph.cli import cli
from loregraph.resolver import resolve_id


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.delenv("LORE_DATA_DIR", raising=False)
    monkeypatch.delenv("LORE_PROJECTS_FILE", raising=False)
    return CliRunner()


@pytest.fixture
def invoke(runner, temp_lore_dir):
    def run(*args):
        return runner.invoke(cli, ["--data-dir", str(temp_lore_dir), *args])
    return run


@pytest.fixture
def seeded_invoke(invoke, seeded_sources):
    return invoke


# --- Graph editing ---


def test_graph_add(invoke):
    result = invoke("graph", "add", "decision", "Use JSONL", "--attr", "outcome=pending")
    assert result.exit_code == 0
    assert resolve_id("decision", "Use JSONL") in result.output

    shown = invoke("graph", "get", "Use JSONL")
    payload = json.loads(shown.stdout)
    assert payload["attributes"] == {"outcome": "pending"}
    assert payload["degree"]["total"] == 0


def test_graph_add_rejects_unknown_type(invoke):
    result = invoke("graph", "add", "widget", "x")
    assert result.exit_code == 2


def test_graph_add_rejects_bad_attr(invoke):
    result = invoke("graph", "add", "concept", "x", "--attr", "novalue")
    assert result.exit_code == 1
    assert "key=value" in result.output


def test_graph_link_related_and_path(invoke):
    invoke("graph", "add", "decision", "Use JSONL")
    invoke("graph", "add", "file", "lib/store.py")
    invoke("graph", "add", "concept", "storage")

    result = invoke("graph", "link", "Use JSONL", "lib/store.py", "references")
    assert result.exit_code == 0
    assert "references" in result.output
    invoke("graph", "link", "lib/store.py", "storage", "related_to")

    related = invoke("graph", "related", "Use JSONL", "--hops", "2")
    assert related.exit_code == 0
    assert "lib/store.py" in related.output
    assert "storage" in related.output

    path = invoke("graph", "path", "Use JSONL", "storage")
    assert path.exit_code == 0
    assert "Path (2 hops)" in path.output
    assert "relates_to" in path.output


def test_graph_link_unknown_node(invoke):
    invoke("graph", "add", "concept", "storage")
    result = invoke("graph", "link", "storage", "nowhere", "relates_to")
    assert result.exit_code == 1
    assert "Node not found: nowhere" in result.output


def test_graph_link_unknown_relation(invoke):
    invoke("graph", "add", "concept", "a")
    invoke("graph", "add", "concept", "b")
    result = invoke("graph", "link", "a", "b", "loves")
    assert result.exit_code == 1


def test_graph_deprecate_stops_traversal(invoke):
    invoke("graph", "add", "concept", "a")
    invoke("graph", "add", "concept", "b")
    invoke("graph", "link", "a", "b", "depends_on")

    assert "Deprecated 1 edge(s)" in invoke("graph", "deprecate", "a", "b").output
    assert "No connections" in invoke("graph", "traverse", "a").output


def test_graph_traverse_depth_is_bounded(invoke):
    invoke("graph", "add", "concept", "a")
    assert invoke("graph", "traverse", "a", "--depth", "4").exit_code == 2


def test_graph_stats_json(invoke):
    invoke("graph", "add", "concept", "a")
    invoke("graph", "add", "concept", "b")
    invoke("graph", "connect", "a", "b")

    data = json.loads(invoke("graph", "stats", "--json").stdout)
    assert data["nodes"] == 2
    assert data["edges"] == 2
    assert data["by_relation"] == {"relates_to": 2}


def test_graph_delete(invoke):
    invoke("graph", "add", "concept", "a")
    assert invoke("graph", "delete", "a").exit_code == 0
    assert "No nodes" in invoke("graph", "list").output


def test_graph_query(invoke):
    invoke("graph", "add", "decision", "Use JSONL for storage")
    invoke("graph", "add", "decision", "Adopt JWT")
    result = invoke("graph", "query", "jsonl")
    assert "Use JSONL for storage" in result.output
    assert "Adopt JWT" not in result.output


def test_graph_export_import(invoke, temp_lore_dir):
    invoke("graph", "add", "concept", "a")
    invoke("graph", "add", "concept", "b")
    invoke("graph", "link", "a", "b", "depends_on")
    out = temp_lore_dir / "export.json"

    assert invoke("graph", "export", str(out)).exit_code == 0
    invoke("graph", "delete", "a")
    result = invoke("graph", "import", str(out))
    assert result.exit_code == 0
    assert "Imported 2 nodes, 1 edges" in result.output


def test_graph_visualize_mermaid(invoke):
    invoke("graph", "add", "concept", "a")
    result = invoke("graph", "visualize", "--format", "mermaid")
    assert result.stdout.startswith("graph LR")


# --- Rebuild and search ---


def test_graph_rebuild(seeded_invoke):
    result = seeded_invoke("graph", "rebuild")
    assert result.exit_code == 0
    assert "from 7/7 sources" in result.output

    lookup = seeded_invoke("graph", "lookup", "dec-002")
    assert json.loads(lookup.stdout)["source"]["decision"] == "Adopt JWT for API authentication"


def test_graph_rebuild_reports_missing_source(seeded_invoke, seeded_sources):
    seeded_sources.failures.unlink()
    result = seeded_invoke("graph", "rebuild")
    assert result.exit_code == 0
    assert "failures skipped" in result.output
    assert "from 6/7 sources" in result.output


def test_search_empty_query(invoke):
    result = invoke("search", "   ")
    assert result.exit_code == 1
    assert "Search query required" in result.output


def test_search_bad_graph_depth(seeded_invoke):
    result = seeded_invoke("search", "JSONL", "--graph-depth", "7")
    assert result.exit_code == 1


def test_search_falls_back_to_scan(seeded_invoke):
    result = seeded_invoke("search", "JSONL")
    assert result.exit_code == 0
    assert "not built" in result.output
    assert "dec-001" in result.output


def test_search_after_index_rebuild(seeded_invoke):
    rebuilt = seeded_invoke("index", "rebuild")
    assert rebuilt.exit_code == 0
    assert "Indexed 13 records" in rebuilt.output

    result = seeded_invoke("search", "JSONL", "--json")
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["mode"] == "lexical"
    assert payload["hits"][0]["record_id"] == "dec-001"


def test_search_no_results(seeded_invoke):
    seeded_invoke("index", "rebuild")
    result = seeded_invoke("search", "zzzyyyxxx_nomatch")
    assert result.exit_code == 0
    assert "No results for 'zzzyyyxxx_nomatch'" in result.output


# --- Conflict checks ---


def test_check_duplicate_blocks(seeded_invoke):
    result = seeded_invoke("check", "decision", "Use JSONL for decision storage")
    assert result.exit_code == 1
    assert "Possible duplicate(s) found" in result.output
    assert "dec-001" in result.output


def test_check_force_bypasses(seeded_invoke):
    result = seeded_invoke("check", "decision", "Use JSONL for decision storage", "--force")
    assert result.exit_code == 0
    assert "bypassed" in result.output


def test_check_unique(seeded_invoke):
    result = seeded_invoke("check", "decision", "Deploy the staging cluster tonight")
    assert result.exit_code == 0
    assert "No duplicates found" in result.output


def test_check_short_text(seeded_invoke):
    result = seeded_invoke("check", "failure", "boom")
    assert result.exit_code == 0
    assert "too short" in result.output


def test_check_warns_on_contradiction(seeded_invoke):
    result = seeded_invoke("check", "decision", "Replace lib/store.py with a database server")
    assert result.exit_code == 0
    assert "Possible contradiction" in result.output


def test_triggers(seeded_invoke):
    result = seeded_invoke("triggers")
    assert result.exit_code == 0
    assert "ToolError" in result.output
    assert "Timeout" not in result.output

    quiet = seeded_invoke("triggers", "--threshold", "5")
    assert "No recurring failures (threshold 5)" in quiet.output
