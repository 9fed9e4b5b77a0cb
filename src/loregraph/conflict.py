"""Conflict detection for new source records.

Advisory checks run before a collaborator appends a record:
- check_duplicate(): token-set Jaccard against the last N records of a kind
- check_contradiction(): shared referenced entities but divergent wording
- recurring_failures(): failure types that keep coming back

Nothing here writes or blocks; callers decide whether to skip, warn, or
force the write.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from .constants import (
    CONTRADICTION_MAX_SIMILARITY,
    CONTRADICTION_MIN_SHARED_ENTITIES,
    DUPLICATE_LOOKBACK,
    DUPLICATE_MIN_WORDS,
    DUPLICATE_THRESHOLD,
    RECURRING_FAILURE_THRESHOLD,
)
from .sources import SourceRecord, extract_entities

if TYPE_CHECKING:
    from .sources import FailureRecord, SourceReader

logger = logging.getLogger(__name__)

_SPLIT_RE = re.compile(r"[^a-z0-9]+")


def _stem(token: str) -> str:
    """Drop a single plural "s" so "decisions" and "decision" compare equal."""
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def tokenize(text: str) -> set[str]:
    """Lowercased, punctuation-stripped, lightly stemmed word set."""
    return {_stem(token) for token in _SPLIT_RE.split(text.lower()) if token}


def word_count(text: str) -> int:
    return len([token for token in _SPLIT_RE.split(text.lower()) if token])


def jaccard_similarity(text1: str, text2: str) -> float:
    """Jaccard similarity over tokenize() sets, 0.0-1.0."""
    tokens1, tokens2 = tokenize(text1), tokenize(text2)
    union = len(tokens1 | tokens2)
    return len(tokens1 & tokens2) / union if union > 0 else 0.0


def _conflict_text(record: SourceRecord) -> str:
    rationale = getattr(record, "rationale", "") or ""
    return f"{record.summary_text} {rationale}".strip()


# kind -> field appended to the headline for the second duplicate comparison
_DUPLICATE_DETAIL = {"decision": "rationale", "pattern": "solution"}


def _duplicate_texts(record: SourceRecord) -> list[str]:
    """The headline alone, and the headline with its rationale or solution."""
    texts = [record.summary_text] if record.summary_text else []
    field_name = _DUPLICATE_DETAIL.get(record.kind)
    detail = (getattr(record, field_name, "") or "") if field_name else ""
    if detail.strip():
        texts.append(f"{record.summary_text} {detail}".strip())
    return texts


@dataclass
class DuplicateMatch:
    record_id: str
    similarity: float
    text: str


@dataclass
class DuplicateCheck:
    """Outcome of check_duplicate(). ``matches`` is sorted by similarity."""

    status: Literal["unique", "duplicate", "skipped"]
    matches: list[DuplicateMatch] = field(default_factory=list)

    @property
    def is_duplicate(self) -> bool:
        return self.status == "duplicate"

    @property
    def match_id(self) -> str | None:
        return self.matches[0].record_id if self.matches else None

    @property
    def similarity(self) -> float:
        return self.matches[0].similarity if self.matches else 0.0


@dataclass
class Contradiction:
    record_id: str
    other_id: str
    shared_entities: list[str]
    similarity: float


class ConflictDetector:
    """Near-duplicate and contradiction checks over recent history.

    History comes from the SourceReader unless passed explicitly; a missing
    source log is treated as empty history.
    """

    def __init__(
        self,
        reader: SourceReader | None = None,
        threshold: float = DUPLICATE_THRESHOLD,
        lookback: int = DUPLICATE_LOOKBACK,
        min_words: int = DUPLICATE_MIN_WORDS,
    ):
        self._reader = reader
        self.threshold = threshold
        self.lookback = lookback
        self.min_words = min_words

    def _history(self, kind: str) -> list[SourceRecord]:
        if self._reader is None:
            return []
        try:
            if kind == "decision":
                # Raw log: a re-appended update is still recent history
                return list(self._reader.decisions_log())
            return self._reader.records(kind)
        except FileNotFoundError:
            logger.debug(f"No {kind} log yet, nothing to compare against")
            return []

    def check_duplicate(
        self,
        kind: str,
        text: str,
        history: list[SourceRecord] | None = None,
    ) -> DuplicateCheck:
        """Compare ``text`` against the last ``lookback`` records of ``kind``.

        Decisions are also compared with their rationale appended, and patterns
        with their solution; the better score counts.

        Texts shorter than ``min_words`` are not checked (status "skipped").
        """
        if word_count(text) < self.min_words:
            return DuplicateCheck(status="skipped")

        records = history if history is not None else self._history(kind)
        matches = []
        for record in records[-self.lookback:]:
            candidates = _duplicate_texts(record)
            if not candidates:
                continue
            similarity = max(jaccard_similarity(text, other) for other in candidates)
            if similarity >= self.threshold:
                matches.append(
                    DuplicateMatch(record.logical_id, round(similarity, 2), record.summary_text)
                )

        if not matches:
            return DuplicateCheck(status="unique")
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return DuplicateCheck(status="duplicate", matches=matches)

    def check_contradiction(
        self,
        record: SourceRecord,
        history: list[SourceRecord] | None = None,
        min_shared: int = CONTRADICTION_MIN_SHARED_ENTITIES,
        max_similarity: float = CONTRADICTION_MAX_SIMILARITY,
    ) -> list[Contradiction]:
        """Flag recent records that touch the same entities but say something else.

        Warn-only: the result is informational and never blocks a write.
        """
        entities = set(record.referenced_entities or extract_entities(_conflict_text(record)))
        if not entities:
            return []

        records = history if history is not None else self._history(record.kind)
        text = _conflict_text(record)
        found = []
        for other in records[-self.lookback:]:
            if other.logical_id == record.logical_id:
                continue
            other_entities = set(
                other.referenced_entities or extract_entities(_conflict_text(other))
            )
            shared = entities & other_entities
            if len(shared) < min_shared:
                continue
            similarity = jaccard_similarity(text, _conflict_text(other))
            if similarity < max_similarity:
                found.append(
                    Contradiction(
                        record_id=record.logical_id,
                        other_id=other.logical_id,
                        shared_entities=sorted(shared),
                        similarity=round(similarity, 2),
                    )
                )
        return found

    def recurring_failures(
        self,
        threshold: int = RECURRING_FAILURE_THRESHOLD,
        failures: list[FailureRecord] | None = None,
    ) -> list[dict]:
        """Failure types seen at least ``threshold`` times, most frequent first."""
        if failures is None:
            if self._reader is None:
                return []
            try:
                failures = self._reader.failures()
            except FileNotFoundError:
                return []

        groups: dict[str, list[FailureRecord]] = defaultdict(list)
        for failure in failures:
            groups[failure.error_type or "unknown"].append(failure)

        results = []
        for error_type, items in groups.items():
            if len(items) < threshold:
                continue
            latest = max(items, key=lambda f: f.timestamp or "")
            results.append({
                "error_type": error_type,
                "count": len(items),
                "latest": latest.timestamp,
                "sample_message": latest.error_message,
            })
        return sorted(results, key=lambda r: (-r["count"], r["error_type"]))
