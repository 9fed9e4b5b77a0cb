"""Lexical index over source records, backed by SQLite FTS5.

One FTS5 table holds a flat row per record: the indexed text columns
(title, body, tags) plus unindexed metadata (kind, id, timestamp, scope,
importance). Ranking starts from FTS5's bm25() and is adjusted for age,
importance, project scope and reinforcement. A rebuild replaces the rows
wholesale inside one transaction; the access log is left alone.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from datetime import datetime, timezone
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from .constants import (
    AGE_DECAY_DAYS,
    DEFAULT_QUERY_LIMIT,
    DEFAULT_SCOPE,
    IMPORTANCE_DEFAULT,
    IMPORTANCE_LESSON,
    IMPORTANCE_WEIGHT,
    PROJECT_MATCH_BOOST,
    SNIPPET_CHARS,
)
from .reinforcement import ReinforcementTracker
from .timeutil import days_since, parse_timestamp

if TYPE_CHECKING:
    from .sources import SourceReader
    from .vectors import VectorIndex

logger = logging.getLogger(__name__)

INDEX_KINDS = ("decision", "pattern", "transfer", "failure", "observation")

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


class InvalidQuery(ValueError):
    """Raised for empty/whitespace queries and out-of-range options."""


class IndexUnavailable(RuntimeError):
    """Raised when the search database or FTS5 itself cannot be used."""


@dataclass
class IndexedRecord:
    """One flat row of the lexical index."""

    kind: str
    record_id: str
    title: str
    body: str = ""
    tags: str = ""
    timestamp: str | None = None
    scope: str = DEFAULT_SCOPE
    importance: int = IMPORTANCE_DEFAULT

    @property
    def content(self) -> str:
        return f"{self.title} {self.body}".strip()


@dataclass
class SearchHit:
    """A ranked result: which record, a short snippet, and its final score."""

    kind: str
    record_id: str
    snippet: str
    score: float
    scope: str = DEFAULT_SCOPE
    source: str = "lexical"  # lexical | semantic | graph | scan

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind, self.record_id)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "id": self.record_id,
            "snippet": self.snippet,
            "score": round(self.score, 4),
            "scope": self.scope,
            "source": self.source,
        }


def build_fts_query(raw: str) -> str | None:
    """Quote each word token and AND them together. None if no tokens."""
    tokens = _TOKEN_RE.findall(raw)
    if not tokens:
        return None
    return " AND ".join(f'"{token}"' for token in tokens)


def _scope_from_tags(tags: list[str]) -> str:
    for tag in tags:
        if tag.startswith("project:"):
            return tag.split(":", 1)[1] or DEFAULT_SCOPE
    return tags[0] if tags else DEFAULT_SCOPE


def project_records(reader: SourceReader) -> tuple[list[IndexedRecord], dict[str, int]]:
    """Flatten every source kind into index rows.

    Returns (rows, per-kind counts). A missing source log contributes zero
    rows; the other kinds are still indexed.
    """
    rows: list[IndexedRecord] = []
    counts: dict[str, int] = {}

    def collect(kind: str, build: Callable[[], list[IndexedRecord]]) -> None:
        try:
            built = build()
        except FileNotFoundError as e:
            logger.debug(f"Skipping {kind} rows: {e}")
            built = []
        counts[kind] = len(built)
        rows.extend(built)

    collect("decision", lambda: [
        IndexedRecord(
            kind="decision",
            record_id=d.id,
            title=d.decision,
            body=d.rationale,
            tags=" ".join(d.tags),
            timestamp=d.timestamp,
            scope=_scope_from_tags(d.tags),
            importance=IMPORTANCE_LESSON if d.lesson_learned else IMPORTANCE_DEFAULT,
        )
        for d in reader.decisions()
    ])

    def patterns() -> list[IndexedRecord]:
        built = [
            IndexedRecord(
                kind="pattern",
                record_id=p.id,
                title=p.name,
                body=" ".join([p.context, p.problem, p.solution]).strip(),
                tags=p.category or "",
                timestamp=p.created_at,
            )
            for p in reader.patterns()
        ]
        built.extend(
            IndexedRecord(
                kind="pattern",
                record_id=a.id,
                title=a.summary_text,
                body=" ".join([a.symptom, a.risk, a.fix]).strip(),
                timestamp=a.created_at,
            )
            for a in reader.anti_patterns()
        )
        return built

    collect("pattern", patterns)

    collect("transfer", lambda: [
        IndexedRecord(
            kind="transfer",
            record_id=s.id,
            title=s.summary_text,
            body=" ".join(str(step) for step in s.handoff.get("next_steps") or []),
            timestamp=s.timestamp_text,
            scope=s.project or DEFAULT_SCOPE,
        )
        for s in reader.sessions()
        if s.summary_text
    ])

    collect("failure", lambda: [
        IndexedRecord(
            kind="failure",
            record_id=f.id,
            title=f.error_message,
            body=f.error_type or "",
            timestamp=f.timestamp,
        )
        for f in reader.failures()
    ])

    collect("observation", lambda: [
        IndexedRecord(
            kind="observation",
            record_id=o.id,
            title=o.content,
            tags=" ".join(o.tags),
            timestamp=o.timestamp,
            scope=_scope_from_tags(o.tags),
        )
        for o in reader.observations()
    ])

    return rows, counts


class LexicalIndex:
    """Persisted FTS5 index plus the access log it shares a database with."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._tracker: ReinforcementTracker | None = None
        self._vector_index: VectorIndex | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Background refresh runs on another thread; writes stay serialized
            self._conn = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
        return self._conn

    def _init_db(self) -> None:
        try:
            conn = self._get_conn()
            conn.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS records USING fts5(
                    title,
                    body,
                    tags,
                    kind UNINDEXED,
                    record_id UNINDEXED,
                    timestamp UNINDEXED,
                    scope UNINDEXED,
                    importance UNINDEXED,
                    tokenize='porter'
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS index_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.commit()
        except sqlite3.Error as e:
            # "no such module: fts5" on builds without the extension
            raise IndexUnavailable(f"Lexical index unavailable at {self.db_path}: {e}") from e

    @property
    def conn(self) -> sqlite3.Connection:
        return self._get_conn()

    @property
    def tracker(self) -> ReinforcementTracker:
        """Lazy-load the reinforcement tracker (shares this connection)."""
        if self._tracker is None:
            self._tracker = ReinforcementTracker(self._get_conn())
        return self._tracker

    @property
    def vector_index(self) -> VectorIndex:
        """Lazy-load the optional vector index (shares this connection)."""
        if self._vector_index is None:
            from .vectors import VectorIndex

            self._vector_index = VectorIndex(self._get_conn())
        return self._vector_index

    # --- Build ---

    def replace_all(self, rows: list[IndexedRecord]) -> int:
        """Replace every row in one transaction. Returns rows written."""
        conn = self._get_conn()
        try:
            with conn:
                conn.execute("DELETE FROM records")
                conn.executemany(
                    """
                    INSERT INTO records
                        (title, body, tags, kind, record_id, timestamp, scope, importance)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            row.title,
                            row.body,
                            row.tags,
                            row.kind,
                            row.record_id,
                            row.timestamp,
                            row.scope,
                            row.importance,
                        )
                        for row in rows
                    ],
                )
                conn.execute(
                    "INSERT OR REPLACE INTO index_meta (key, value) VALUES ('built_at', ?)",
                    (datetime.now(timezone.utc).isoformat(),),
                )
        except sqlite3.Error as e:
            raise IndexUnavailable(f"Index rebuild failed: {e}") from e
        return len(rows)

    def rebuild(self, reader: SourceReader, embeddings: bool = False) -> dict[str, int]:
        """Re-project every source log into the index. Returns per-kind counts.

        With ``embeddings`` the vector index is refreshed as well; that part
        is best-effort and leaves the lexical index usable when it fails.
        """
        rows, counts = project_records(reader)
        self.replace_all(rows)
        logger.info(f"Indexed {len(rows)} records: {counts}")

        if embeddings:
            embedded = self.vector_index.index_records(rows)
            counts["embedded"] = embedded
            if embedded == 0 and rows:
                logger.warning(
                    f"Embeddings skipped ({self.vector_index.health.status.value}): "
                    f"{self.vector_index.health.error}"
                )
        return counts

    # --- Query ---

    def built_at(self) -> datetime | None:
        """When the rows were last replaced, or None if never built."""
        row = self._get_conn().execute(
            "SELECT value FROM index_meta WHERE key = 'built_at'"
        ).fetchone()
        return parse_timestamp(row[0]) if row else None

    def is_built(self) -> bool:
        return self.built_at() is not None

    def counts(self) -> dict[str, int]:
        rows = self._get_conn().execute(
            "SELECT kind, COUNT(*) FROM records GROUP BY kind"
        ).fetchall()
        return {row[0]: row[1] for row in rows}

    def get(self, kind: str, record_id: str) -> IndexedRecord | None:
        row = self._get_conn().execute(
            "SELECT * FROM records WHERE kind = ? AND record_id = ?", (kind, record_id)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def _row_to_record(self, row: sqlite3.Row) -> IndexedRecord:
        return IndexedRecord(
            kind=row["kind"],
            record_id=row["record_id"],
            title=row["title"] or "",
            body=row["body"] or "",
            tags=row["tags"] or "",
            timestamp=row["timestamp"],
            scope=row["scope"] or DEFAULT_SCOPE,
            importance=int(row["importance"] or IMPORTANCE_DEFAULT),
        )

    def search(
        self,
        query: str,
        kind: str | None = None,
        limit: int = DEFAULT_QUERY_LIMIT,
        project: str | None = None,
    ) -> list[SearchHit]:
        """Ranked lexical search. Empty list means no match, not an error.

        Raises:
            InvalidQuery: query is empty or whitespace
            IndexUnavailable: the FTS5 query itself failed
        """
        if not query or not query.strip():
            raise InvalidQuery("Search query required")

        fts_query = build_fts_query(query)
        if fts_query is None:
            return []

        sql = (
            "SELECT kind, record_id, title, body, timestamp, scope, importance, "
            "bm25(records) AS rank FROM records WHERE records MATCH ?"
        )
        params: list = [fts_query]
        if kind:
            sql += " AND kind = ?"
            params.append(kind)
        sql += " ORDER BY rank LIMIT ?"
        params.append(max(limit, 1) * 5)  # over-fetch, then re-rank

        try:
            rows = self._get_conn().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise IndexUnavailable(f"Lexical query failed: {e}") from e
        if not rows:
            return []

        boosts = self.tracker.boosts([(row["kind"], row["record_id"]) for row in rows])

        hits = []
        for row in rows:
            base = -float(row["rank"])
            age_factor = 1.0 / (1.0 + days_since(row["timestamp"]) / AGE_DECAY_DAYS)
            importance = int(row["importance"] or IMPORTANCE_DEFAULT)
            importance_factor = 1.0 + importance / 5.0 * IMPORTANCE_WEIGHT
            score = base * age_factor * importance_factor
            score *= boosts.get((row["kind"], row["record_id"]), 1.0)
            if project and row["scope"] == project:
                score *= PROJECT_MATCH_BOOST

            content = row["title"] or row["body"] or ""
            hits.append(
                SearchHit(
                    kind=row["kind"],
                    record_id=row["record_id"],
                    snippet=content[:SNIPPET_CHARS],
                    score=score,
                    scope=row["scope"] or DEFAULT_SCOPE,
                )
            )

        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    def semantic_search(
        self,
        query: str,
        kind: str | None = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> list[SearchHit]:
        """Cosine-style search over stored embeddings; [] when unavailable."""
        if not query or not query.strip():
            raise InvalidQuery("Search query required")
        results = self.vector_index.search(query, limit=limit, kind_filter=kind)
        hits = []
        for (hit_kind, record_id), similarity in results:
            record = self.get(hit_kind, record_id)
            content = record.content if record else ""
            hits.append(
                SearchHit(
                    kind=hit_kind,
                    record_id=record_id,
                    snippet=content[:SNIPPET_CHARS],
                    score=similarity,
                    scope=record.scope if record else DEFAULT_SCOPE,
                    source="semantic",
                )
            )
        return hits

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._tracker = None
            self._vector_index = None
