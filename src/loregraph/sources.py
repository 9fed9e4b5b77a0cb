"""Source records and the read-only boundary to the collaborator logs.

Each collaborator (journal, pattern library, failure log, session tracker,
project registry, goal tracker, observation inbox) owns an append-only log
in its own format. Records are validated into one pydantic model per kind
here, before the projection or the index ever sees them. Malformed lines
are skipped one at a time; a missing log raises FileNotFoundError so the
caller can decide whether that is fatal.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import ClassVar, Iterator

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .config import LorePaths

logger = logging.getLogger(__name__)

_FILE_PATH_RE = re.compile(r"[a-zA-Z0-9_/-]+\.[a-zA-Z]{1,4}\b")
_FUNCTION_RE = re.compile(r"\b([a-z_][a-zA-Z0-9_]*)\(\)")
_BACKTICK_RE = re.compile(r"`([^`]+)`")


def extract_entities(text: str) -> list[str]:
    """Pull referenced entities out of free text.

    Recognizes file paths (``lib/utils.py``), call-like tokens
    (``parse_config()`` -> ``parse_config``) and backtick-quoted terms.
    Order is stable: paths, then functions, then quoted terms, each sorted.
    """
    if not text:
        return []
    found: list[str] = []
    for group in (
        sorted(set(_FILE_PATH_RE.findall(text))),
        sorted(set(_FUNCTION_RE.findall(text))),
        sorted(set(_BACKTICK_RE.findall(text))),
    ):
        for entity in group:
            if entity and entity not in found:
                found.append(entity)
    return found


def _split_tags(value):
    """Accept "a, b" or ["a", "b"]; drop blanks.

    Raises ValueError for anything else so pydantic reports it as a
    validation error and the record is skipped.
    """
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"expected a list or comma-separated string, got {type(value).__name__}")
    return [str(tag).strip() for tag in value if str(tag).strip()]


def _as_text(value):
    """YAML yields date/datetime objects for bare timestamps; keep them as text."""
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


class SourceRecord(BaseModel):
    """Fields every source kind exposes to the projection and the index."""

    model_config = ConfigDict(extra="allow")

    kind: ClassVar[str] = ""

    @property
    def logical_id(self) -> str:
        return getattr(self, "id")

    @property
    def timestamp_text(self) -> str | None:
        return getattr(self, "timestamp", None)

    @property
    def summary_text(self) -> str:
        return ""

    @property
    def referenced_entities(self) -> list[str]:
        return []

    @property
    def tag_list(self) -> list[str]:
        return list(getattr(self, "tags", []) or [])

    @property
    def searchable_text(self) -> str:
        """Everything worth matching on in a substring scan."""
        return " ".join([self.logical_id, self.summary_text, " ".join(self.tag_list)])


class DecisionRecord(SourceRecord):
    kind: ClassVar[str] = "decision"

    id: str
    timestamp: str | None = None
    decision: str
    rationale: str = ""
    alternatives: list = Field(default_factory=list)
    entities: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    related_decisions: list[str] = Field(default_factory=list)
    lesson_learned: str | None = None
    outcome: str | None = None
    type: str | None = None
    session_id: str | None = None

    @field_validator("tags", "entities", "related_decisions", mode="before")
    @classmethod
    def split_lists(cls, value):
        return _split_tags(value)

    @property
    def summary_text(self) -> str:
        return self.decision

    @property
    def referenced_entities(self) -> list[str]:
        if self.entities:
            return list(self.entities)
        return extract_entities(f"{self.decision} {self.rationale}")

    @property
    def searchable_text(self) -> str:
        return " ".join([self.id, self.decision, self.rationale, " ".join(self.tags)])


class PatternRecord(SourceRecord):
    kind: ClassVar[str] = "pattern"

    id: str
    name: str
    context: str = ""
    problem: str = ""
    solution: str = ""
    category: str | None = None
    confidence: float | None = None
    origin: str = ""
    created_at: str | None = None

    @field_validator("created_at", mode="before")
    @classmethod
    def created_as_text(cls, value):
        return _as_text(value)

    @property
    def timestamp_text(self) -> str | None:
        return self.created_at

    @property
    def summary_text(self) -> str:
        return self.name

    @property
    def searchable_text(self) -> str:
        return " ".join([self.id, self.name, self.context, self.problem, self.solution])


class AntiPatternRecord(SourceRecord):
    kind: ClassVar[str] = "anti_pattern"

    id: str
    name: str
    symptom: str = ""
    risk: str = ""
    fix: str = ""
    created_at: str | None = None

    @field_validator("created_at", mode="before")
    @classmethod
    def created_as_text(cls, value):
        return _as_text(value)

    @property
    def timestamp_text(self) -> str | None:
        return self.created_at

    @property
    def summary_text(self) -> str:
        return f"ANTI: {self.name}"

    @property
    def searchable_text(self) -> str:
        return " ".join([self.id, self.name, self.symptom, self.risk, self.fix])


class FailureRecord(SourceRecord):
    kind: ClassVar[str] = "failure"

    id: str
    timestamp: str | None = None
    error_type: str | None = None
    error_message: str = ""
    tool: str | None = None
    mission: str | None = None

    @property
    def summary_text(self) -> str:
        return self.error_message


class SessionRecord(SourceRecord):
    kind: ClassVar[str] = "session"

    id: str
    started_at: str | None = None
    ended_at: str | None = None
    summary: str = ""
    handoff: dict = Field(default_factory=dict)
    decisions_made: list[str] = Field(default_factory=list)
    patterns_learned: list[str] = Field(default_factory=list)
    context: dict = Field(default_factory=dict)

    @field_validator("started_at", "ended_at", mode="before")
    @classmethod
    def times_as_text(cls, value):
        return _as_text(value)

    @field_validator("handoff", "context", mode="before")
    @classmethod
    def none_to_dict(cls, value):
        return value or {}

    @property
    def timestamp_text(self) -> str | None:
        return self.ended_at or self.started_at

    @property
    def handoff_message(self) -> str:
        message = self.handoff.get("message")
        return message if isinstance(message, str) else ""

    @property
    def summary_text(self) -> str:
        return self.handoff_message or self.summary

    @property
    def project(self) -> str | None:
        return self.context.get("project")


class ProjectRecord(SourceRecord):
    kind: ClassVar[str] = "project"

    name: str
    description: str = Field(default="", validation_alias=AliasChoices("desc", "description"))
    path: str = ""
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value):
        return _split_tags(value)

    @property
    def logical_id(self) -> str:
        return self.name

    @property
    def summary_text(self) -> str:
        return self.description


class GoalRecord(SourceRecord):
    kind: ClassVar[str] = "goal"

    id: str
    name: str
    status: str = "active"
    priority: str | int | None = "medium"
    deadline: str | None = None
    description: str = ""
    projects: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    created_at: str | None = None

    @field_validator("tags", "projects", mode="before")
    @classmethod
    def split_lists(cls, value):
        return _split_tags(value)

    @field_validator("deadline", "created_at", mode="before")
    @classmethod
    def dates_as_text(cls, value):
        return _as_text(value)

    @property
    def timestamp_text(self) -> str | None:
        return self.created_at

    @property
    def summary_text(self) -> str:
        return self.name


class ObservationRecord(SourceRecord):
    kind: ClassVar[str] = "observation"

    id: str
    content: str
    timestamp: str | None = None
    source: str = ""
    status: str = "raw"
    tags: list[str] = Field(default_factory=list)
    promoted_to: str | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value):
        return _split_tags(value)

    @property
    def summary_text(self) -> str:
        return self.content


RECORD_TYPES: dict[str, type[SourceRecord]] = {
    model.kind: model
    for model in (
        DecisionRecord,
        PatternRecord,
        AntiPatternRecord,
        FailureRecord,
        SessionRecord,
        ProjectRecord,
        GoalRecord,
        ObservationRecord,
    )
}


def _validate(model: type[SourceRecord], raw, origin: str) -> SourceRecord | None:
    if not isinstance(raw, dict):
        logger.debug(f"Skipping non-object record in {origin}")
        return None
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        logger.debug(f"Skipping invalid {model.kind} record in {origin}: {e.error_count()} errors")
        return None


def _require(path: Path) -> Path:
    if not path.exists():
        raise FileNotFoundError(f"Source log not found: {path}")
    return path


class SourceReader:
    """Read-only iteration over each collaborator's log."""

    def __init__(self, paths: LorePaths):
        self.paths = paths

    # --- Low-level readers ---

    def _read_jsonl(self, path: Path, model: type[SourceRecord]) -> Iterator[SourceRecord]:
        with open(_require(path), encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed line {line_no} in {path}")
                    continue
                record = _validate(model, raw, f"{path}:{line_no}")
                if record is not None:
                    yield record

    def _read_yaml(self, path: Path) -> dict:
        with open(_require(path), encoding="utf-8") as f:
            doc = yaml.safe_load(f)
        return doc if isinstance(doc, dict) else {}

    @staticmethod
    def latest_by_id(records: list[SourceRecord]) -> list[SourceRecord]:
        """Collapse append-only updates: last record per id wins, first-seen order."""
        latest: dict[str, SourceRecord] = {}
        for record in records:
            latest[record.logical_id] = record
        return list(latest.values())

    # --- Per-kind readers ---

    def decisions_log(self) -> list[DecisionRecord]:
        """Every decision record in append order, updates included."""
        return list(self._read_jsonl(self.paths.decisions, DecisionRecord))  # type: ignore[arg-type]

    def decisions(self) -> list[DecisionRecord]:
        """Current value of each decision."""
        return self.latest_by_id(self.decisions_log())  # type: ignore[return-value]

    def _pattern_section(self, section: str, model: type[SourceRecord]) -> list:
        doc = self._read_yaml(self.paths.patterns)
        records = []
        for raw in doc.get(section) or []:
            record = _validate(model, raw, f"{self.paths.patterns}:{section}")
            if record is not None:
                records.append(record)
        return records

    def patterns(self) -> list[PatternRecord]:
        return self._pattern_section("patterns", PatternRecord)

    def anti_patterns(self) -> list[AntiPatternRecord]:
        return self._pattern_section("anti_patterns", AntiPatternRecord)

    def failures(self) -> list[FailureRecord]:
        return list(self._read_jsonl(self.paths.failures, FailureRecord))  # type: ignore[arg-type]

    def observations(self) -> list[ObservationRecord]:
        records = list(self._read_jsonl(self.paths.observations, ObservationRecord))
        return self.latest_by_id(records)  # type: ignore[return-value]

    def session_files(self) -> list[Path]:
        """session-*.json files, skipping compressed copies and examples."""
        sessions_dir = _require(self.paths.sessions_dir)
        return [
            path
            for path in sorted(sessions_dir.glob("session-*.json"))
            if not path.name.endswith(".compressed.json") and "example" not in path.name
        ]

    def sessions(self) -> list[SessionRecord]:
        records = []
        for path in self.session_files():
            try:
                with open(path, encoding="utf-8") as f:
                    raw = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.debug(f"Skipping unreadable session {path.name}: {e}")
                continue
            if isinstance(raw, dict):
                raw.setdefault("id", path.stem)
            record = _validate(SessionRecord, raw, str(path))
            if record is not None:
                records.append(record)
        return records

    def projects(self) -> list[ProjectRecord]:
        doc = self._read_yaml(self.paths.projects)
        records = []
        for name, raw in (doc.get("projects") or {}).items():
            raw = dict(raw or {})
            raw["name"] = str(name)
            record = _validate(ProjectRecord, raw, f"{self.paths.projects}:{name}")
            if record is not None:
                records.append(record)
        return records

    def goals(self) -> list[GoalRecord]:
        goals_dir = _require(self.paths.goals_dir)
        records = []
        for path in sorted(goals_dir.glob("*.yaml")):
            try:
                raw = self._read_yaml(path)
            except yaml.YAMLError as e:
                logger.debug(f"Skipping unparsable goal {path.name}: {e}")
                continue
            record = _validate(GoalRecord, raw, str(path))
            if record is not None:
                records.append(record)
        return records

    # --- Generic access ---

    def records(self, kind: str) -> list[SourceRecord]:
        """All current records of one kind. Raises FileNotFoundError if the log is missing."""
        readers = {
            "decision": self.decisions,
            "pattern": self.patterns,
            "anti_pattern": self.anti_patterns,
            "failure": self.failures,
            "session": self.sessions,
            "project": self.projects,
            "goal": self.goals,
            "observation": self.observations,
        }
        if kind not in readers:
            raise ValueError(f"Unknown source kind '{kind}'. Valid kinds: {', '.join(readers)}")
        return list(readers[kind]())

    def find(self, kind: str, logical_id: str) -> SourceRecord | None:
        """Current record for a logical id, or None (missing logs count as empty)."""
        try:
            records = self.records(kind)
        except FileNotFoundError:
            return None
        for record in reversed(records):
            if record.logical_id == logical_id:
                return record
        return None

    def latest_change(self) -> datetime | None:
        """Newest modification time across every source log, or None if none exist."""
        paths = [
            self.paths.decisions,
            self.paths.patterns,
            self.paths.failures,
            self.paths.observations,
            self.paths.projects,
        ]
        for directory in (self.paths.sessions_dir, self.paths.goals_dir):
            if directory.is_dir():
                paths.append(directory)
                paths.extend(directory.iterdir())

        newest = None
        for path in paths:
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if newest is None or mtime > newest:
                newest = mtime
        if newest is None:
            return None
        return datetime.fromtimestamp(newest, tz=timezone.utc)
