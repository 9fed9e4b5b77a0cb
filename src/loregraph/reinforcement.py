"""Usage-based ranking reinforcement.

Every record a retrieval surfaces gets an access event. A record's boost is
a log-damped sum of its accesses, each weighted by exponential recency decay,
so a record fetched often and lately outranks an equally relevant record
nobody has looked at. The access log lives next to the lexical index in
search.db but is never dropped by an index rebuild.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime, timezone

from .constants import (
    LN_2,
    REINFORCEMENT_FREQUENCY_WEIGHT,
    REINFORCEMENT_HALF_LIFE_DAYS,
    SECONDS_PER_DAY,
)
from .timeutil import parse_timestamp

logger = logging.getLogger(__name__)


def compute_recency_score(
    accessed_at: datetime,
    half_life_days: float = REINFORCEMENT_HALF_LIFE_DAYS,
    reference_time: datetime | None = None,
) -> float:
    """Exponential decay: 1.0 now, 0.5 after one half-life, 0.25 after two.

    Examples:
        >>> compute_recency_score(now)
        1.0
        >>> compute_recency_score(now - timedelta(days=30))
        0.5
    """
    reference = reference_time or datetime.now(timezone.utc)
    days_since = (reference - accessed_at).total_seconds() / SECONDS_PER_DAY

    if days_since < 0:
        return 1.0  # Future date, treat as fresh

    decay_rate = LN_2 / half_life_days
    return max(0.0, min(1.0, math.exp(-decay_rate * days_since)))


def reinforcement_boost(
    access_times: list[datetime],
    half_life_days: float = REINFORCEMENT_HALF_LIFE_DAYS,
    reference_time: datetime | None = None,
) -> float:
    """Multiplicative boost >= 1.0; exactly 1.0 for never-accessed records."""
    weighted = sum(
        compute_recency_score(ts, half_life_days, reference_time) for ts in access_times
    )
    return 1.0 + math.log1p(weighted) * REINFORCEMENT_FREQUENCY_WEIGHT


class ReinforcementTracker:
    """Access log over indexed records, keyed by (kind, id)."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        half_life_days: float = REINFORCEMENT_HALF_LIFE_DAYS,
    ):
        self._conn = conn
        self.half_life_days = half_life_days
        self._init_tables()

    def _init_tables(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS access_log (
                record_type TEXT NOT NULL,
                record_id TEXT NOT NULL,
                accessed_at TEXT NOT NULL
            )
        """)
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_access_record ON access_log(record_type, record_id)"
        )
        self._conn.commit()

    def record_access(
        self,
        hits: list[tuple[str, str]],
        accessed_at: datetime | None = None,
    ) -> int:
        """Append one access event per (kind, id). Returns events written."""
        if not hits:
            return 0
        ts = (accessed_at or datetime.now(timezone.utc)).isoformat()
        self._conn.executemany(
            "INSERT INTO access_log (record_type, record_id, accessed_at) VALUES (?, ?, ?)",
            [(kind, record_id, ts) for kind, record_id in hits],
        )
        self._conn.commit()
        return len(hits)

    def access_times(self, kind: str, record_id: str) -> list[datetime]:
        rows = self._conn.execute(
            "SELECT accessed_at FROM access_log WHERE record_type = ? AND record_id = ?",
            (kind, record_id),
        ).fetchall()
        times = [parse_timestamp(row[0]) for row in rows]
        return [ts for ts in times if ts is not None]

    def access_count(self, kind: str, record_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM access_log WHERE record_type = ? AND record_id = ?",
            (kind, record_id),
        ).fetchone()
        return int(row[0]) if row else 0

    def boost(self, kind: str, record_id: str, reference_time: datetime | None = None) -> float:
        return reinforcement_boost(
            self.access_times(kind, record_id), self.half_life_days, reference_time
        )

    def boosts(
        self,
        keys: list[tuple[str, str]],
        reference_time: datetime | None = None,
    ) -> dict[tuple[str, str], float]:
        """Boost for each key in one pass over the log."""
        if not keys:
            return {}
        wanted = set(keys)
        times: dict[tuple[str, str], list[datetime]] = {key: [] for key in wanted}
        kinds = sorted({kind for kind, _ in wanted})
        placeholders = ",".join("?" for _ in kinds)
        rows = self._conn.execute(
            f"SELECT record_type, record_id, accessed_at FROM access_log "
            f"WHERE record_type IN ({placeholders})",
            kinds,
        ).fetchall()
        for kind, record_id, accessed_at in rows:
            key = (kind, record_id)
            if key in times:
                ts = parse_timestamp(accessed_at)
                if ts is not None:
                    times[key].append(ts)
        return {
            key: reinforcement_boost(ts_list, self.half_life_days, reference_time)
            for key, ts_list in times.items()
        }

    def clear(self) -> None:
        self._conn.execute("DELETE FROM access_log")
        self._conn.commit()
        logger.debug("Access log cleared")
