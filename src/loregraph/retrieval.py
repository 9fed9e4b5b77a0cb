"""Unified retrieval over the lexical index, embeddings and the graph.

A query runs in one of three modes:
- lexical: FTS5 bm25 ranking with age, importance, scope and reinforcement
- semantic: nearest records by embedding
- hybrid: both, fused with reciprocal rank fusion

With ``graph_depth > 0`` the top hits are mapped onto graph nodes and their
neighbours are unioned in at a discounted score. When the index cannot be
used at all, a plain substring scan over the source logs answers instead.

Every hit returned to the caller, graph neighbours included, is logged to
the access tracker. A query that finds the index older than the source
logs still answers from it and starts a rebuild on a background thread.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from .constants import (
    DEFAULT_QUERY_LIMIT,
    GRAPH_NEIGHBOR_DISCOUNT,
    MAX_GRAPH_EXPAND_DEPTH,
    RRF_K,
    SNIPPET_CHARS,
)
from .index import IndexUnavailable, InvalidQuery, LexicalIndex, SearchHit
from .models import Node
from .resolver import resolve_id, resolve_to_graph_id
from .sources import SourceReader
from .store import GraphStore
from .traverse import traverse

logger = logging.getLogger(__name__)

__all__ = ["InvalidQuery", "RetrievalEngine", "RetrievalResult", "SEARCH_MODES"]

SEARCH_MODES = ("lexical", "semantic", "hybrid")

# index kind -> source kinds scanned when the index is unavailable
_SCAN_KINDS = {
    "decision": ("decision",),
    "pattern": ("pattern", "anti_pattern"),
    "transfer": ("session",),
    "failure": ("failure",),
    "observation": ("observation",),
}

# index kind -> (graph node type, attribute holding the record id)
_GRAPH_KEYS = {
    "decision": ("decision", "journal_id"),
    "pattern": ("pattern", "pattern_id"),
    "transfer": ("session", "session_id"),
    "failure": ("failure", "failure_id"),
    "observation": ("observation", "observation_id"),
}


@dataclass
class RetrievalResult:
    """Ranked hits plus how they were produced."""

    query: str
    hits: list[SearchHit] = field(default_factory=list)
    mode: str = "lexical"
    degraded: bool = False
    reason: str | None = None

    @property
    def empty(self) -> bool:
        return not self.hits

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "mode": self.mode,
            "degraded": self.degraded,
            "reason": self.reason,
            "hits": [hit.to_dict() for hit in self.hits],
        }


def reciprocal_rank_fusion(rankings: list[list[SearchHit]], k: int = RRF_K) -> list[SearchHit]:
    """Fuse ranked lists: each list contributes 1 / (k + rank) per hit."""
    fused: dict[tuple[str, str], SearchHit] = {}
    scores: dict[tuple[str, str], float] = {}
    for ranking in rankings:
        for rank, hit in enumerate(ranking, 1):
            scores[hit.key] = scores.get(hit.key, 0.0) + 1.0 / (k + rank)
            fused.setdefault(hit.key, hit)

    results = []
    for key, hit in fused.items():
        results.append(
            SearchHit(
                kind=hit.kind,
                record_id=hit.record_id,
                snippet=hit.snippet,
                score=scores[key],
                scope=hit.scope,
                source="hybrid",
            )
        )
    results.sort(key=lambda h: h.score, reverse=True)
    return results


def _record_key_for(node: Node) -> tuple[str, str]:
    """Map a graph node back to the index key of the record it came from."""
    for kind, (node_type, attr) in _GRAPH_KEYS.items():
        if node.type == node_type and node.attributes.get(attr):
            return (kind, str(node.attributes[attr]))
    return (node.type, node.id)


class RetrievalEngine:
    """Query façade over index, store and source logs.

    Uses callable accessors so the index and graph are only opened when a
    query actually needs them.
    Set ``auto_refresh=False`` to stop queries from reindexing stale data.
    """

    def __init__(
        self,
        get_index: Callable[[], LexicalIndex | None],
        get_store: Callable[[], GraphStore],
        reader: SourceReader,
        auto_refresh: bool = True,
    ):
        self._get_index = get_index
        self._get_store = get_store
        self.reader = reader
        self.auto_refresh = auto_refresh
        self._refresh_thread: threading.Thread | None = None

    def query(
        self,
        text: str,
        kind: str | None = None,
        graph_depth: int = 0,
        limit: int = DEFAULT_QUERY_LIMIT,
        mode: str = "lexical",
        project: str | None = None,
    ) -> RetrievalResult:
        """Ranked search. An empty result means nothing matched.

        Raises:
            InvalidQuery: empty query, unknown mode, or graph_depth outside
                0..MAX_GRAPH_EXPAND_DEPTH
        """
        if not text or not text.strip():
            raise InvalidQuery("Search query required")
        if not 0 <= graph_depth <= MAX_GRAPH_EXPAND_DEPTH:
            raise InvalidQuery(
                f"graph_depth must be between 0 and {MAX_GRAPH_EXPAND_DEPTH}, got {graph_depth}"
            )
        if mode not in SEARCH_MODES:
            raise InvalidQuery(f"Unknown search mode '{mode}'. Valid modes: {', '.join(SEARCH_MODES)}")

        index = self._get_index()
        if index is None:
            return self._scan(text, kind, limit, reason="Lexical index unavailable")
        try:
            if not index.is_built():
                return self._scan(text, kind, limit, reason="Lexical index not built yet")
            result = self._ranked(index, text, kind, limit, mode, project)
        except IndexUnavailable as e:
            logger.warning(f"Falling back to substring scan: {e}")
            return self._scan(text, kind, limit, reason=str(e))

        if graph_depth > 0 and result.hits:
            result.hits = self._expand(result.hits, graph_depth, limit)
        if result.hits:
            index.tracker.record_access([hit.key for hit in result.hits])

        if self.auto_refresh and self.is_stale(index):
            self.refresh_in_background()
        return result

    # --- Ranking ---

    def _ranked(
        self,
        index: LexicalIndex,
        text: str,
        kind: str | None,
        limit: int,
        mode: str,
        project: str | None,
    ) -> RetrievalResult:
        if mode == "lexical":
            return RetrievalResult(query=text, hits=index.search(text, kind, limit, project))

        if not index.vector_index.available:
            health = index.vector_index.health
            logger.debug(f"Semantic search unavailable, using lexical: {health.error}")
            return RetrievalResult(
                query=text,
                hits=index.search(text, kind, limit, project),
                mode="lexical",
                degraded=True,
                reason=health.error,
            )

        semantic = index.semantic_search(text, kind, limit * 2)
        if mode == "semantic":
            return RetrievalResult(query=text, hits=semantic[:limit], mode="semantic")

        lexical = index.search(text, kind, limit * 2, project)
        fused = reciprocal_rank_fusion([lexical, semantic])
        return RetrievalResult(query=text, hits=fused[:limit], mode="hybrid")

    # --- Graph expansion ---

    def _seed_node(self, store: GraphStore, hit: SearchHit) -> str | None:
        node_type, _ = _GRAPH_KEYS.get(hit.kind, (hit.kind, ""))
        try:
            direct = resolve_id(node_type, hit.record_id)
        except ValueError:
            direct = None
        if direct and store.has_node(direct):
            return direct
        return resolve_to_graph_id(store, hit.record_id) or resolve_to_graph_id(store, hit.snippet)

    def _expand(self, hits: list[SearchHit], depth: int, limit: int) -> list[SearchHit]:
        """Union in graph neighbours of the hits at a discounted score."""
        store = self._get_store()
        merged: dict[tuple[str, str], SearchHit] = {hit.key: hit for hit in hits}

        for hit in hits:
            seed = self._seed_node(store, hit)
            if seed is None:
                continue
            for step in traverse(store, seed, depth):
                key = _record_key_for(step.node)
                score = hit.score * GRAPH_NEIGHBOR_DISCOUNT ** step.hop
                existing = merged.get(key)
                if existing is not None and existing.score >= score:
                    continue
                if existing is not None and existing.source != "graph":
                    continue
                merged[key] = SearchHit(
                    kind=key[0],
                    record_id=key[1],
                    snippet=f"[{step.node.type}] {step.node.name}"[:SNIPPET_CHARS],
                    score=score,
                    scope=hit.scope,
                    source="graph",
                )

        results = sorted(merged.values(), key=lambda h: h.score, reverse=True)
        return results[:limit]

    # --- Fallback ---

    def _scan(self, text: str, kind: str | None, limit: int, reason: str) -> RetrievalResult:
        """Unranked substring scan over the raw source logs."""
        terms = text.lower().split()
        kinds = [kind] if kind else list(_SCAN_KINDS)
        hits: list[SearchHit] = []

        for index_kind in kinds:
            for source_kind in _SCAN_KINDS.get(index_kind, (index_kind,)):
                try:
                    records = self.reader.records(source_kind)
                except (FileNotFoundError, ValueError) as e:
                    logger.debug(f"Scan skipped {source_kind}: {e}")
                    continue
                for record in records:
                    haystack = record.searchable_text.lower()
                    if all(term in haystack for term in terms):
                        hits.append(
                            SearchHit(
                                kind=index_kind,
                                record_id=record.logical_id,
                                snippet=record.summary_text[:SNIPPET_CHARS],
                                score=0.0,
                                source="scan",
                            )
                        )
                    if len(hits) >= limit:
                        return RetrievalResult(
                            query=text, hits=hits, mode="scan", degraded=True, reason=reason
                        )

        return RetrievalResult(query=text, hits=hits, mode="scan", degraded=True, reason=reason)

    # --- Background refresh ---

    def is_stale(self, index: LexicalIndex) -> bool:
        """True when a source log changed after the index was last built."""
        built_at = index.built_at()
        changed = self.reader.latest_change()
        return built_at is not None and changed is not None and changed > built_at

    def refresh_in_background(self, embeddings: bool = False) -> threading.Thread:
        """Rebuild the index on a daemon thread. Never raises to the caller.

        The thread opens its own connection to the index database, so the
        foreground keeps reading the previous rows until the rebuild commits.
        A refresh that is still running is returned instead of starting another.
        """
        if self._refresh_thread is not None and self._refresh_thread.is_alive():
            return self._refresh_thread

        index = self._get_index()
        db_path = index.db_path if index is not None else None

        def run() -> None:
            if db_path is None:
                logger.debug("Background reindex skipped: index unavailable")
                return
            background: LexicalIndex | None = None
            try:
                background = LexicalIndex(db_path)
                background.rebuild(self.reader, embeddings=embeddings)
            except Exception as e:
                logger.warning(f"Background reindex failed: {e}")
            finally:
                if background is not None:
                    background.close()

        thread = threading.Thread(target=run, name="loregraph-reindex", daemon=True)
        thread.start()
        self._refresh_thread = thread
        return thread

    def wait_for_refresh(self, timeout: float | None = None) -> None:
        """Block until a running background refresh finishes (or timeout)."""
        if self._refresh_thread is not None:
            self._refresh_thread.join(timeout)
