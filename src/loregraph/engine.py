"""Lore engine - wires the graph store, source reader, index and retrieval."""

from __future__ import annotations

import logging

from .config import LorePaths
from .conflict import ConflictDetector, Contradiction, DuplicateCheck
from .constants import (
    BACKGROUND_REFRESH_JOIN_SECONDS,
    DEFAULT_QUERY_LIMIT,
    DEFAULT_RELATED_HOPS,
    RECURRING_FAILURE_THRESHOLD,
)
from .index import IndexUnavailable, LexicalIndex
from .query import search_nodes, stats
from .rebuild import RebuildReport, Rebuilder, StepResult
from .resolver import lookup_source, resolve_fuzzy
from .retrieval import RetrievalEngine, RetrievalResult
from .sources import DecisionRecord, SourceReader
from .store import GraphStore
from .traverse import related, shortest_path

logger = logging.getLogger(__name__)


class LoreEngine:
    """One process's view of a lore data directory.

    Every component is created on first use, so a graph-only command never
    opens the search database and a search never loads the graph unless it
    expands through it.
    """

    def __init__(self, paths: LorePaths | None = None):
        self.paths = paths or LorePaths.from_env()
        self._store: GraphStore | None = None
        self._reader: SourceReader | None = None
        self._index: LexicalIndex | None = None
        self._index_error: str | None = None
        self._retrieval: RetrievalEngine | None = None
        self._conflict: ConflictDetector | None = None

    # --- Components ---

    @property
    def store(self) -> GraphStore:
        """Lazy-load the graph store."""
        if self._store is None:
            self._store = GraphStore(self.paths.graph)
        return self._store

    @property
    def reader(self) -> SourceReader:
        if self._reader is None:
            self._reader = SourceReader(self.paths)
        return self._reader

    @property
    def index(self) -> LexicalIndex | None:
        """Lazy-load the lexical index; None when SQLite/FTS5 is unusable."""
        if self._index is None and self._index_error is None:
            try:
                self._index = LexicalIndex(self.paths.search_db)
            except IndexUnavailable as e:
                self._index_error = str(e)
                logger.warning(f"{e}; searches will use a substring scan")
        return self._index

    @property
    def index_error(self) -> str | None:
        return self._index_error

    @property
    def retrieval(self) -> RetrievalEngine:
        if self._retrieval is None:
            self._retrieval = RetrievalEngine(
                get_index=lambda: self.index,
                get_store=lambda: self.store,
                reader=self.reader,
            )
        return self._retrieval

    @property
    def conflict(self) -> ConflictDetector:
        if self._conflict is None:
            self._conflict = ConflictDetector(self.reader)
        return self._conflict

    @property
    def rebuilder(self) -> Rebuilder:
        return Rebuilder(self.store, self.reader)

    # --- Graph lifecycle ---

    def rebuild_graph(self) -> RebuildReport:
        return self.rebuilder.rebuild()

    def sync(self, kinds: list[str] | None = None) -> list[StepResult]:
        return self.rebuilder.sync(kinds)

    def rebuild_index(self, embeddings: bool = False) -> dict[str, int]:
        """Re-project the source logs into the search index.

        Raises:
            IndexUnavailable: SQLite/FTS5 cannot be used at all
        """
        index = self.index
        if index is None:
            raise IndexUnavailable(self._index_error or "Lexical index unavailable")
        return index.rebuild(self.reader, embeddings=embeddings)

    # --- Queries ---

    def search(
        self,
        text: str,
        kind: str | None = None,
        graph_depth: int = 0,
        limit: int = DEFAULT_QUERY_LIMIT,
        mode: str = "lexical",
        project: str | None = None,
    ) -> RetrievalResult:
        return self.retrieval.query(
            text, kind=kind, graph_depth=graph_depth, limit=limit, mode=mode, project=project
        )

    def find_nodes(self, text: str, node_type: str | None = None, limit: int = DEFAULT_QUERY_LIMIT) -> list[dict]:
        return search_nodes(self.store, text, node_type, limit)

    def related(self, ref: str, hops: int = DEFAULT_RELATED_HOPS) -> list[dict]:
        return related(self.store, ref, hops)

    def path(self, a: str, b: str) -> list[str]:
        return shortest_path(self.store, a, b)

    def lookup(self, ref: str) -> dict | None:
        """Resolve a reference (id, name or name fragment) back to its source record."""
        node_id = resolve_fuzzy(self.store, ref)
        if node_id is None:
            return None
        return lookup_source(self.store, self.reader, node_id)

    def stats(self) -> dict:
        return stats(self.store)

    # --- Conflict checks ---

    def check(self, kind: str, text: str) -> tuple[DuplicateCheck, list[Contradiction]]:
        """Advisory duplicate check, plus a contradiction check for decisions."""
        duplicate = self.conflict.check_duplicate(kind, text)
        contradictions: list[Contradiction] = []
        if kind == "decision":
            candidate = DecisionRecord(id="(new)", decision=text)
            contradictions = self.conflict.check_contradiction(candidate)
        return duplicate, contradictions

    def triggers(self, threshold: int = RECURRING_FAILURE_THRESHOLD) -> list[dict]:
        return self.conflict.recurring_failures(threshold)

    def close(self) -> None:
        """Let a running background reindex finish, then close the index."""
        if self._retrieval is not None:
            self._retrieval.wait_for_refresh(BACKGROUND_REFRESH_JOIN_SECONDS)
        if self._index is not None:
            self._index.close()
            self._index = None
