"""Tests for the FTS5 lexical index."""

import pytest

from loregraph.index import (
    IndexedRecord,
    InvalidQuery,
    LexicalIndex,
    build_fts_query,
    project_records,
)
from loregraph.sources import SourceReader

from conftest import days_ago, make_decision, write_jsonl


@pytest.fixture
def index(paths):
    index = LexicalIndex(paths.search_db)
    yield index
    index.close()


@pytest.fixture
def built_index(seeded_sources, index):
    index.rebuild(SourceReader(seeded_sources))
    return index


def test_build_fts_query():
    assert build_fts_query("JSONL storage") == '"JSONL" AND "storage"'
    assert build_fts_query("what's up?") == '"what" AND "s" AND "up"'
    assert build_fts_query("?!") is None


def test_project_records_counts(seeded_sources):
    rows, counts = project_records(SourceReader(seeded_sources))
    assert counts == {
        "decision": 3,
        "pattern": 3,
        "transfer": 1,
        "failure": 4,
        "observation": 2,
    }
    decision = next(r for r in rows if r.record_id == "dec-002")
    assert decision.importance == 4
    assert decision.scope == "security"
    assert next(r for r in rows if r.record_id == "dec-001").scope == "alpha"


def test_project_records_tolerates_missing_logs(paths):
    rows, counts = project_records(SourceReader(paths))
    assert rows == []
    assert set(counts.values()) == {0}


def test_not_built_until_rebuild(index, seeded_sources):
    assert not index.is_built()
    assert index.built_at() is None
    index.rebuild(SourceReader(seeded_sources))
    assert index.is_built()
    assert index.built_at().tzinfo is not None


def test_project_records_skips_malformed_lines(paths):
    write_jsonl(paths.decisions, [
        make_decision("dec-001", "Use JSONL"),
        make_decision("dec-bad", "Bad tags", tags=5),
    ])
    rows, counts = project_records(SourceReader(paths))
    assert counts["decision"] == 1
    assert [r.record_id for r in rows] == ["dec-001"]


def test_search_ranks_matching_record(built_index):
    hits = built_index.search("JSONL")
    assert hits[0].kind == "decision"
    assert hits[0].record_id == "dec-001"
    assert hits[0].snippet.startswith("Use JSONL")
    assert hits[0].score > 0


def test_search_no_match_is_empty(built_index):
    assert built_index.search("zzzyyyxxx_nomatch") == []


def test_search_empty_query_is_error(built_index):
    with pytest.raises(InvalidQuery):
        built_index.search("   ")


def test_search_punctuation_only_is_empty(built_index):
    assert built_index.search("?!") == []


def test_search_kind_filter(built_index):
    hits = built_index.search("atomic", kind="observation")
    assert [h.record_id for h in hits] == ["obs-001"]


def test_search_uses_stemming(built_index):
    assert [h.record_id for h in built_index.search("caching")] == ["dec-003"]


def test_rebuild_replaces_rows(seeded_sources, built_index):
    write_jsonl(seeded_sources.decisions, [make_decision("dec-900", "Only decision left")])
    built_index.rebuild(SourceReader(seeded_sources))

    assert built_index.search("JSONL", kind="decision") == []
    assert built_index.counts()["decision"] == 1


def test_rebuild_keeps_access_log(seeded_sources, built_index):
    built_index.tracker.record_access([("decision", "dec-001")])
    built_index.rebuild(SourceReader(seeded_sources))
    assert built_index.tracker.access_count("decision", "dec-001") == 1


def test_get(built_index):
    record = built_index.get("failure", "fail-004")
    assert record.title == "index rebuild took too long"
    assert built_index.get("failure", "fail-999") is None


def _twin_index(index):
    ts = days_ago(2)
    index.replace_all([
        IndexedRecord(kind="decision", record_id=record_id, title="Use JSONL for storage", timestamp=ts)
        for record_id in ("twin-a", "twin-b")
    ])


def test_reinforcement_lifts_accessed_record(index):
    _twin_index(index)
    index.tracker.record_access([("decision", "twin-b")])

    hits = index.search("JSONL")
    assert [h.record_id for h in hits] == ["twin-b", "twin-a"]
    assert hits[0].score > hits[1].score


def test_project_scope_boost(index):
    ts = days_ago(2)
    index.replace_all([
        IndexedRecord(kind="decision", record_id="other", title="Use JSONL", timestamp=ts, scope="beta"),
        IndexedRecord(kind="decision", record_id="mine", title="Use JSONL", timestamp=ts, scope="alpha"),
    ])
    assert index.search("JSONL", project="alpha")[0].record_id == "mine"


def test_newer_records_rank_higher(index):
    index.replace_all([
        IndexedRecord(kind="decision", record_id="old", title="Use JSONL", timestamp=days_ago(300)),
        IndexedRecord(kind="decision", record_id="new", title="Use JSONL", timestamp=days_ago(1)),
    ])
    assert index.search("JSONL")[0].record_id == "new"


def test_semantic_search_without_model_is_empty(built_index):
    built_index.vector_index._model_failed = True
    assert built_index.semantic_search("storage") == []
