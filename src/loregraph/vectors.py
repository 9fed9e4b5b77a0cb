"""Optional semantic embeddings for indexed records.

Embeddings come from sentence-transformers and live in the same search.db as
the lexical index. Every embedding is stored as JSON in ``record_meta``; when
the sqlite-vec extension loads, a ``vec0`` table is kept alongside for KNN
queries, otherwise search falls back to brute-force cosine with numpy.
Without the embedding model nothing here raises: calls return empty results
and ``health`` says why.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np

from .constants import DEFAULT_EMBEDDING_DIMENSION, DEFAULT_EMBEDDING_MODEL

if TYPE_CHECKING:
    from .index import IndexedRecord

logger = logging.getLogger(__name__)


class VectorStatus(Enum):
    """Status of the embedding subsystem."""

    READY = "ready"  # Model + sqlite-vec KNN
    DEGRADED = "degraded"  # Model loaded, brute-force cosine (or model not loaded yet)
    UNAVAILABLE = "unavailable"  # No embedding model


@dataclass
class VectorHealth:
    status: VectorStatus
    error: str | None = None
    embedding_model: str | None = None
    dimension: int | None = None


def _stable_hash(text: str) -> str:
    """Deterministic hash for change detection (hash() is salted per process)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def _record_key(kind: str, record_id: str) -> str:
    return f"{kind}:{record_id}"


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 when either is all zeros."""
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


class VectorIndex:
    """Record embeddings, shared connection with LexicalIndex.

    The embedding model is loaded on first use to keep plain lexical
    searches fast.
    """

    def __init__(self, conn: sqlite3.Connection | None, model_name: str = DEFAULT_EMBEDDING_MODEL):
        self._conn = conn
        self._model_name = model_name
        self._model = None
        self._dims: int | None = None

        self._extension_loaded = False
        self._model_loaded = False
        self._model_failed = False
        self._tables_initialized = False
        self.health = VectorHealth(
            status=VectorStatus.DEGRADED,
            error="Embedding model loads on first use",
        )

        if self._conn is not None:
            self._try_load_extension()

    def _try_load_extension(self) -> bool:
        """Load sqlite-vec into the shared connection. Returns True on success."""
        if self._extension_loaded:
            return True
        try:
            import sqlite_vec

            self._conn.enable_load_extension(True)
            sqlite_vec.load(self._conn)
            self._conn.enable_load_extension(False)
            self._extension_loaded = True
            return True
        except (ImportError, OSError, AttributeError, sqlite3.Error) as e:
            logger.debug(f"sqlite-vec unavailable, using brute-force cosine: {e}")
            return False

    def _try_load_model(self) -> bool:
        if self._model_loaded:
            return True
        if self._model_failed:
            return False
        try:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(self._model_name)
            self._dims = self._model.get_sentence_embedding_dimension()
            self._model_loaded = True
            self.health = VectorHealth(
                status=VectorStatus.READY if self._extension_loaded else VectorStatus.DEGRADED,
                error=None if self._extension_loaded else "sqlite-vec missing, brute-force cosine",
                embedding_model=self._model_name,
                dimension=self._dims,
            )
            return True
        except (ImportError, OSError, RuntimeError) as e:
            self._model_failed = True
            self.health = VectorHealth(
                status=VectorStatus.UNAVAILABLE,
                error=f"Embedding model failed: {e}",
            )
            logger.warning(f"Embedding model unavailable: {e}")
            return False

    @property
    def model(self):
        """Lazy-load the embedding model (None if it cannot be loaded)."""
        if not self._model_loaded:
            self._try_load_model()
        return self._model

    @property
    def dims(self) -> int:
        if self._dims is None:
            _ = self.model
        return self._dims or DEFAULT_EMBEDDING_DIMENSION

    @property
    def available(self) -> bool:
        return self._conn is not None and self.model is not None

    def _ensure_tables(self) -> None:
        if self._tables_initialized:
            return
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS record_meta (
                record_key TEXT PRIMARY KEY,
                kind TEXT,
                record_id TEXT,
                text_hash TEXT,
                embedding TEXT
            )
        """)
        if self._extension_loaded:
            self._conn.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS record_vectors
                USING vec0(
                    record_key TEXT PRIMARY KEY,
                    embedding FLOAT[{self.dims}]
                )
            """)
        self._conn.commit()
        self._tables_initialized = True

    def index_record(self, record: IndexedRecord) -> bool:
        """Embed one record unless its text is unchanged. Returns True if written."""
        if not self.available:
            return False
        self._ensure_tables()

        key = _record_key(record.kind, record.record_id)
        text = record.content
        text_hash = _stable_hash(text)
        existing = self._conn.execute(
            "SELECT text_hash FROM record_meta WHERE record_key = ?", (key,)
        ).fetchone()
        if existing and existing[0] == text_hash:
            return False

        embedding = self.model.encode(text).tolist()
        if self._extension_loaded:
            import sqlite_vec

            self._conn.execute("DELETE FROM record_vectors WHERE record_key = ?", (key,))
            self._conn.execute(
                "INSERT INTO record_vectors (record_key, embedding) VALUES (?, ?)",
                (key, sqlite_vec.serialize_float32(embedding)),
            )
        self._conn.execute(
            "INSERT OR REPLACE INTO record_meta (record_key, kind, record_id, text_hash, embedding) "
            "VALUES (?, ?, ?, ?, ?)",
            (key, record.kind, record.record_id, text_hash, json.dumps(embedding)),
        )
        self._conn.commit()
        return True

    def _drop(self, key: str) -> None:
        if self._extension_loaded:
            self._conn.execute("DELETE FROM record_vectors WHERE record_key = ?", (key,))
        self._conn.execute("DELETE FROM record_meta WHERE record_key = ?", (key,))

    def index_records(self, records: list[IndexedRecord]) -> int:
        """Embed every record, dropping vectors for records that disappeared."""
        if not self.available:
            return 0
        self._ensure_tables()

        live = {_record_key(r.kind, r.record_id) for r in records}
        for row in self._conn.execute("SELECT record_key FROM record_meta").fetchall():
            if row[0] not in live:
                self._drop(row[0])
        self._conn.commit()

        indexed = 0
        for record in records:
            try:
                if self.index_record(record):
                    indexed += 1
            except (sqlite3.Error, RuntimeError, ValueError) as e:
                logger.debug(f"Embedding failed for {record.kind}:{record.record_id}: {e}")
        return indexed

    def search(
        self,
        query: str,
        limit: int = 10,
        kind_filter: str | None = None,
    ) -> list[tuple[tuple[str, str], float]]:
        """Nearest records as ((kind, id), similarity). [] when unavailable."""
        if not self.available:
            logger.debug(f"Semantic search unavailable ({self.health.status.value})")
            return []
        self._ensure_tables()

        query_embedding = self.model.encode(query).tolist()
        try:
            if self._extension_loaded:
                scored = self._knn(query_embedding, limit * 5 if kind_filter else limit)
            else:
                scored = self._brute_force(query_embedding)
        except sqlite3.Error as e:
            logger.warning(f"Vector query failed: {e}")
            return []

        results = []
        for record_key, similarity in scored:
            kind, _, record_id = record_key.partition(":")
            if kind_filter and kind != kind_filter:
                continue
            results.append(((kind, record_id), similarity))
            if len(results) >= limit:
                break
        return results

    def _knn(self, query_embedding: list[float], k: int) -> list[tuple[str, float]]:
        import sqlite_vec

        rows = self._conn.execute(
            """
            SELECT record_key, distance
            FROM record_vectors
            WHERE embedding MATCH ? AND k = ?
            ORDER BY distance
            """,
            (sqlite_vec.serialize_float32(query_embedding), k),
        ).fetchall()
        # Convert distance to similarity (1 / (1 + distance))
        return [(row[0], 1.0 / (1.0 + row[1])) for row in rows]

    def _brute_force(self, query_embedding: list[float]) -> list[tuple[str, float]]:
        rows = self._conn.execute("SELECT record_key, embedding FROM record_meta").fetchall()
        scored = [
            (row[0], cosine_similarity(query_embedding, json.loads(row[1])))
            for row in rows
            if row[1]
        ]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored
