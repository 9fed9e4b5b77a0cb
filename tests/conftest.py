"""Shared test fixtures and helpers for loregraph tests."""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

from loregraph.config import LorePaths
from loregraph.engine import LoreEngine
from loregraph.store import GraphStore


# --- Fixtures ---


@pytest.fixture
def temp_lore_dir():
    """Provide a temporary lore data directory, cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def paths(temp_lore_dir):
    return LorePaths(root=temp_lore_dir)


@pytest.fixture
def store(paths):
    """Provide an empty GraphStore backed by the temp directory."""
    return GraphStore(paths.graph)


@pytest.fixture
def seeded_sources(paths):
    """Write a small, cross-linked set of source logs for every kind."""
    seed_sources(paths)
    return paths


@pytest.fixture
def engine(paths):
    """Provide a LoreEngine over the temp directory (no sources written)."""
    engine = LoreEngine(paths)
    yield engine
    engine.close()


@pytest.fixture
def seeded_engine(seeded_sources):
    """Provide a LoreEngine over the seeded source logs."""
    engine = LoreEngine(seeded_sources)
    yield engine
    engine.close()


# --- Helper Functions (not fixtures) ---


def days_ago(days: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


def write_jsonl(path: Path, records: list[dict]) -> None:
    """Write records as one JSON object per line, creating parent dirs."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record) + "\n")


def write_yaml(path: Path, doc: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(doc, sort_keys=False))


def make_decision(id: str, decision: str, **fields) -> dict:
    """Helper to create a journal record with sensible defaults."""
    record = {
        "id": id,
        "timestamp": days_ago(1),
        "decision": decision,
        "rationale": "",
        "tags": [],
        "entities": [],
    }
    record.update(fields)
    return record


SEED_DECISIONS = [
    make_decision(
        "dec-001",
        "Use JSONL for decision storage",
        rationale="Append-only files are easy to grep and merge",
        entities=["lib/store.py"],
        tags=["storage", "project:alpha"],
    ),
    make_decision(
        "dec-002",
        "Adopt JWT for API authentication",
        rationale="Stateless tokens avoid a session table",
        entities=["api/auth.py"],
        tags=["security"],
        related_decisions=["dec-001"],
        lesson_learned="Rotate signing keys before they leak",
    ),
    make_decision(
        "dec-003",
        "Cache search results in SQLite",
        rationale="Repeated queries were slow",
        tags=["performance", "project:alpha"],
    ),
]


def seed_sources(paths: LorePaths) -> None:
    """Write one log per collaborator kind into ``paths``."""
    # dec-001 is appended twice; the second line is its current value
    updated = dict(SEED_DECISIONS[0], outcome="successful")
    write_jsonl(paths.decisions, SEED_DECISIONS + [updated])

    write_yaml(paths.patterns, {
        "patterns": [
            {
                "id": "pat-001",
                "name": "Atomic file writes",
                "context": "Persisting shared state files",
                "problem": "Readers see half-written JSON",
                "solution": "Write a temp file, then rename over the target",
                "category": "reliability",
                "confidence": 0.9,
                "origin": "session-2025-01-15",
                "created_at": "2025-01-15",
            },
            {
                "id": "pat-002",
                "name": "DEPRECATED retry forever",
                "solution": "Loop until it works",
            },
        ],
        "anti_patterns": [
            {
                "id": "anti-001",
                "name": "Editing the graph file by hand",
                "symptom": "Dangling edges",
                "risk": "Corrupt graph",
                "fix": "Use the graph commands",
            },
        ],
    })

    write_jsonl(paths.failures, [
        {"id": f"fail-00{i}", "timestamp": days_ago(i), "error_type": "ToolError",
         "error_message": f"grep exited with status {i}"}
        for i in range(1, 4)
    ] + [
        {"id": "fail-004", "timestamp": days_ago(2), "error_type": "Timeout",
         "error_message": "index rebuild took too long"},
    ])

    paths.sessions_dir.mkdir(parents=True, exist_ok=True)
    (paths.sessions_dir / "session-2025-01-15.json").write_text(json.dumps({
        "id": "session-2025-01-15",
        "started_at": "2025-01-15T09:00:00Z",
        "ended_at": "2025-01-15T17:00:00Z",
        "summary": "Storage work",
        "handoff": {
            "message": "Finished the JSONL storage migration",
            "next_steps": ["wire the search index"],
        },
        "decisions_made": ["dec-001"],
        "patterns_learned": ["pat-001"],
        "context": {"project": "alpha"},
    }))
    (paths.sessions_dir / "session-example.json").write_text(json.dumps({
        "id": "session-example",
        "summary": "Template, never projected",
    }))

    write_yaml(paths.projects, {
        "projects": {
            "alpha": {"path": "lib", "desc": "Alpha storage engine", "tags": "core, storage"},
        },
    })

    write_yaml(paths.goals_dir / "goal-001.yaml", {
        "id": "goal-001",
        "name": "Ship alpha",
        "status": "active",
        "priority": "high",
        "deadline": "2026-12-01",
        "projects": ["alpha"],
        "tags": ["storage"],
    })

    write_jsonl(paths.observations, [
        {"id": "obs-001", "content": "Temp file plus rename keeps writes atomic",
         "timestamp": days_ago(3), "source": "session", "status": "promoted",
         "promoted_to": "pat-001", "tags": ["reliability"]},
        {"id": "obs-002", "content": "Maybe look at bloom filters",
         "timestamp": days_ago(1), "source": "manual", "status": "raw"},
    ])
