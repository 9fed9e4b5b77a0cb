"""Tests for the retrieval engine: modes, graph expansion and fallback."""

import json

import pytest

from loregraph.index import LexicalIndex, SearchHit
from loregraph.retrieval import InvalidQuery, RetrievalEngine, reciprocal_rank_fusion

from conftest import make_decision


@pytest.fixture
def indexed_engine(seeded_engine):
    seeded_engine.rebuild_graph()
    seeded_engine.rebuild_index()
    return seeded_engine


def _hit(record_id, score=1.0, kind="decision"):
    return SearchHit(kind=kind, record_id=record_id, snippet=record_id, score=score)


def test_reciprocal_rank_fusion():
    lexical = [_hit("a"), _hit("b"), _hit("c")]
    semantic = [_hit("b"), _hit("c")]

    fused = reciprocal_rank_fusion([lexical, semantic], k=60)
    assert [h.record_id for h in fused] == ["b", "c", "a"]
    assert fused[0].score == pytest.approx(1 / 62 + 1 / 61)
    assert {h.source for h in fused} == {"hybrid"}


def test_query_ranks_from_index(indexed_engine):
    result = indexed_engine.search("JSONL")
    assert result.mode == "lexical"
    assert not result.degraded
    assert result.hits[0].key == ("decision", "dec-001")


def test_query_no_match(indexed_engine):
    result = indexed_engine.search("zzzyyyxxx_nomatch")
    assert result.empty
    assert not result.degraded


@pytest.mark.parametrize("kwargs", [
    {"text": ""},
    {"text": "   "},
    {"text": "JSONL", "graph_depth": 4},
    {"text": "JSONL", "graph_depth": -1},
    {"text": "JSONL", "mode": "fuzzy"},
])
def test_invalid_queries(indexed_engine, kwargs):
    with pytest.raises(InvalidQuery):
        indexed_engine.search(**kwargs)


def test_query_records_access(indexed_engine):
    indexed_engine.search("JSONL", kind="decision")
    assert indexed_engine.index.tracker.access_count("decision", "dec-001") == 1


def test_graph_expansion_adds_neighbours(indexed_engine):
    plain = indexed_engine.search("JSONL", kind="decision", limit=20)
    expanded = indexed_engine.search("JSONL", kind="decision", graph_depth=1, limit=20)

    assert all(hit.source == "lexical" for hit in plain.hits)
    graph_hits = {hit.key: hit for hit in expanded.hits if hit.source == "graph"}
    assert ("decision", "dec-002") in graph_hits
    seed = next(hit for hit in expanded.hits if hit.key == ("decision", "dec-001"))
    assert graph_hits[("decision", "dec-002")].score == pytest.approx(seed.score * 0.5)


def test_graph_expansion_keeps_lexical_hits(indexed_engine):
    expanded = indexed_engine.search("JSONL", graph_depth=2, limit=20)
    sources = {hit.key: hit.source for hit in expanded.hits}
    assert sources[("decision", "dec-001")] == "lexical"


def test_scan_when_index_not_built(seeded_engine):
    result = seeded_engine.search("JSONL")
    assert result.mode == "scan"
    assert result.degraded
    assert "not built" in result.reason
    assert ("decision", "dec-001") in [hit.key for hit in result.hits]
    assert all(hit.source == "scan" for hit in result.hits)


def test_scan_when_index_missing(seeded_engine):
    engine = RetrievalEngine(
        get_index=lambda: None,
        get_store=lambda: seeded_engine.store,
        reader=seeded_engine.reader,
    )
    result = engine.query("atomic", kind="observation")
    assert result.mode == "scan"
    assert [hit.record_id for hit in result.hits] == ["obs-001"]


def test_hybrid_degrades_without_model(indexed_engine):
    indexed_engine.index.vector_index._model_failed = True

    result = indexed_engine.search("JSONL", mode="hybrid")
    assert result.mode == "lexical"
    assert result.degraded
    assert result.hits[0].key == ("decision", "dec-001")


def test_refresh_in_background(seeded_engine):
    thread = seeded_engine.retrieval.refresh_in_background()
    thread.join(timeout=30)

    assert not thread.is_alive()
    assert seeded_engine.index.is_built()


def test_refresh_in_background_without_index(seeded_engine):
    engine = RetrievalEngine(
        get_index=lambda: None,
        get_store=lambda: seeded_engine.store,
        reader=seeded_engine.reader,
    )
    thread = engine.refresh_in_background()
    thread.join(timeout=30)
    assert not thread.is_alive()


def test_graph_hits_record_access(indexed_engine):
    result = indexed_engine.search("JSONL", kind="decision", graph_depth=1, limit=20)
    tracker = indexed_engine.index.tracker

    graph_hits = [hit for hit in result.hits if hit.source == "graph"]
    assert ("decision", "dec-002") in [hit.key for hit in graph_hits]
    for hit in result.hits:
        assert tracker.access_count(*hit.key) == 1


def test_truncated_hits_are_not_recorded(indexed_engine):
    full = indexed_engine.search("JSONL", graph_depth=1, limit=20, mode="lexical")
    dropped = [hit.key for hit in full.hits[1:]]
    assert dropped

    indexed_engine.search("JSONL", graph_depth=1, limit=1)
    tracker = indexed_engine.index.tracker
    assert tracker.access_count(*full.hits[0].key) == 2
    for key in dropped:
        assert tracker.access_count(*key) == 1


def _age_index(index):
    with index.conn:
        index.conn.execute(
            "UPDATE index_meta SET value = '2020-01-01T00:00:00+00:00' WHERE key = 'built_at'"
        )


def test_fresh_index_does_not_refresh(indexed_engine):
    indexed_engine.search("JSONL")
    assert not indexed_engine.retrieval.is_stale(indexed_engine.index)
    assert indexed_engine.retrieval._refresh_thread is None


def test_stale_index_refreshes_after_query(indexed_engine):
    with open(indexed_engine.paths.decisions, "a") as f:
        f.write(json.dumps(make_decision("dec-004", "Compact JSONL journals nightly")) + "\n")
    _age_index(indexed_engine.index)
    retrieval = indexed_engine.retrieval

    stale = indexed_engine.search("JSONL", kind="decision")
    assert ("decision", "dec-004") not in [hit.key for hit in stale.hits]

    retrieval.wait_for_refresh(timeout=30)
    assert not retrieval.is_stale(indexed_engine.index)
    fresh = indexed_engine.search("compact nightly", kind="decision")
    assert fresh.hits[0].key == ("decision", "dec-004")


def test_auto_refresh_can_be_disabled(indexed_engine):
    _age_index(indexed_engine.index)
    engine = RetrievalEngine(
        get_index=lambda: indexed_engine.index,
        get_store=lambda: indexed_engine.store,
        reader=indexed_engine.reader,
        auto_refresh=False,
    )
    engine.query("JSONL")
    assert engine.is_stale(indexed_engine.index)
    assert engine._refresh_thread is None


def test_refresh_opens_its_own_connection(indexed_engine, monkeypatch):
    seen = []

    def rebuild(self, reader, embeddings=False):
        seen.append((self, self.conn))
        return {}

    monkeypatch.setattr(LexicalIndex, "rebuild", rebuild)
    thread = indexed_engine.retrieval.refresh_in_background()
    thread.join(timeout=30)

    (background, conn), = seen
    assert background is not indexed_engine.index
    assert conn is not indexed_engine.index.conn
    assert background._conn is None


def test_refresh_failure_is_logged(indexed_engine, monkeypatch, caplog):
    def rebuild(self, reader, embeddings=False):
        raise OSError("disk full")

    monkeypatch.setattr(LexicalIndex, "rebuild", rebuild)
    thread = indexed_engine.retrieval.refresh_in_background()
    thread.join(timeout=30)

    assert not thread.is_alive()
    assert "Background reindex failed: disk full" in caplog.text


def test_close_waits_for_refresh(seeded_engine):
    thread = seeded_engine.retrieval.refresh_in_background()
    seeded_engine.close()
    assert not thread.is_alive()
