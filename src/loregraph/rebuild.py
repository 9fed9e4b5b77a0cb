"""Projection of the source logs into the graph.

Each source kind has one sync step that reads every current record, skips
records already projected (matched on the logical id kept in the node's
attributes), and adds nodes and edges through the GraphStore. Node ids are
content-addressed, so steps can link to nodes other steps will create later
by deriving the same id.

A full rebuild backs up the graph, resets it, runs every step in a fixed
order, then normalizes relation spelling and deduplicates edges. A step that
fails (missing log, unreadable file) is logged and contributes nothing; the
others still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable

import yaml

from .constants import (
    DEFAULT_PATTERN_CONFIDENCE,
    GOAL_TAG_EDGE_WEIGHT,
    OBSERVATION_NAME_CHARS,
    SUMMARY_SNIPPET_CHARS,
)
from .resolver import resolve_id
from .sources import SourceReader
from .store import GraphStore

logger = logging.getLogger(__name__)

SYNC_ORDER = (
    "decisions",
    "patterns",
    "failures",
    "sessions",
    "projects",
    "goals",
    "observations",
)

# Errors that mean "this source is unusable right now", not "the rebuild is broken"
STEP_ERRORS = (OSError, ValueError, KeyError, yaml.YAMLError)


@dataclass
class StepResult:
    name: str
    ok: bool
    nodes_added: int = 0
    edges_added: int = 0
    error: str | None = None


@dataclass
class RebuildReport:
    nodes: int
    edges: int
    steps: list[StepResult] = field(default_factory=list)
    relations_normalized: int = 0
    edges_deduplicated: int = 0

    @property
    def sources_ok(self) -> int:
        return sum(1 for step in self.steps if step.ok)

    @property
    def failed_steps(self) -> list[StepResult]:
        return [step for step in self.steps if not step.ok]

    def summary(self) -> str:
        return (
            f"Rebuilt graph: {self.nodes} nodes, {self.edges} edges "
            f"from {self.sources_ok} sources"
        )


def _language_of(path: str) -> str:
    suffix = PurePosixPath(path).suffix
    return suffix[1:] if suffix else ""


def _looks_like_path(entity: str) -> bool:
    return "/" in entity or bool(PurePosixPath(entity).suffix)


class Rebuilder:
    """Runs sync steps against a GraphStore."""

    def __init__(self, store: GraphStore, reader: SourceReader):
        self.store = store
        self.reader = reader
        self._steps: dict[str, Callable[[], None]] = {
            "decisions": self.sync_decisions,
            "patterns": self.sync_patterns,
            "failures": self.sync_failures,
            "sessions": self.sync_sessions,
            "projects": self.sync_projects,
            "goals": self.sync_goals,
            "observations": self.sync_observations,
        }

    # --- Orchestration ---

    def run_step(self, name: str) -> StepResult:
        """Run one sync step, converting source failures into a failed result."""
        if name not in self._steps:
            raise ValueError(f"Unknown sync step '{name}'. Valid steps: {', '.join(SYNC_ORDER)}")
        nodes_before = len(self.store.nodes)
        edges_before = len(self.store.edges)
        try:
            with self.store.batch():
                self._steps[name]()
        except STEP_ERRORS as e:
            logger.warning(f"Sync step '{name}' skipped: {e}")
            return StepResult(name=name, ok=False, error=str(e))
        result = StepResult(
            name=name,
            ok=True,
            nodes_added=len(self.store.nodes) - nodes_before,
            edges_added=len(self.store.edges) - edges_before,
        )
        logger.debug(f"Sync {name}: +{result.nodes_added} nodes, +{result.edges_added} edges")
        return result

    def sync(self, names: list[str] | None = None) -> list[StepResult]:
        """Incremental sync: run steps without resetting the graph."""
        return [self.run_step(name) for name in (names or list(SYNC_ORDER))]

    def rebuild(self) -> RebuildReport:
        """Back up, reset, re-project everything, normalize and dedupe."""
        self.store.backup()
        with self.store.batch():
            self.store.reset()
            steps = [self.run_step(name) for name in SYNC_ORDER]
            normalized = self.store.normalize_relations()
            deduped = self.store.dedupe_edges()

        report = RebuildReport(
            nodes=len(self.store.nodes),
            edges=len(self.store.edges),
            steps=steps,
            relations_normalized=normalized,
            edges_deduplicated=deduped,
        )
        logger.info(report.summary())
        return report

    # --- Helpers ---

    def _link(self, from_id: str, to_id: str, relation: str, **kwargs) -> bool:
        """Add an edge if both endpoints exist. Returns True if linked."""
        if not (self.store.has_node(from_id) and self.store.has_node(to_id)):
            return False
        self.store.add_edge(from_id, to_id, relation, **kwargs)
        return True

    def _find_pattern(self, ref: str) -> str | None:
        """Pattern node by pattern id, falling back to its display name."""
        node_id = resolve_id("pattern", ref)
        if self.store.has_node(node_id):
            return node_id
        for node in self.store.list_nodes("pattern"):
            if node.attributes.get("name") == ref:
                return node.id
        return None

    # --- Sync steps ---

    def sync_decisions(self) -> None:
        projected = self.store.attribute_values("decision", "journal_id")
        pending_related: list[tuple[str, str]] = []

        for decision in self.reader.decisions():
            if decision.id in projected:
                continue
            decision_id = self.store.add_node("decision", decision.id, {
                "journal_id": decision.id,
                "decision": decision.decision[:SUMMARY_SNIPPET_CHARS],
                "tags": list(decision.tags),
            })

            for entity in decision.referenced_entities:
                if _looks_like_path(entity):
                    target = self.store.add_node("file", entity, {
                        "path": entity,
                        "language": _language_of(entity),
                    })
                else:
                    target = self.store.add_node("concept", entity, {})
                self.store.add_edge(decision_id, target, "references")

            for tag in decision.tags:
                if tag.startswith("project:") and tag[len("project:"):]:
                    project_id = self.store.add_node("project", tag[len("project:"):], {"tag": tag})
                    self.store.add_edge(decision_id, project_id, "part_of")

            for related in decision.related_decisions:
                pending_related.append((decision_id, related))

        # Related decisions may appear later in the log than the referencing one
        for decision_id, related in pending_related:
            self._link(decision_id, resolve_id("decision", related), "relates_to", bidirectional=True)

    def sync_patterns(self) -> None:
        projected = self.store.attribute_values("pattern", "pattern_id")
        for pattern in self.reader.patterns():
            if "deprecated" in pattern.name.lower() or pattern.id in projected:
                continue
            pattern_id = self.store.add_node("pattern", pattern.id, {
                "pattern_id": pattern.id,
                "name": pattern.name,
                "category": pattern.category or "general",
                "confidence": (
                    pattern.confidence
                    if pattern.confidence is not None
                    else DEFAULT_PATTERN_CONFIDENCE
                ),
            })
            if pattern.origin.startswith("session-"):
                # The sessions step fills in this node's attributes later
                session_id = self.store.add_node("session", pattern.origin, {})
                self.store.add_edge(pattern_id, session_id, "learned_from")

    def sync_failures(self) -> None:
        projected = self.store.attribute_values("failure", "failure_id")
        for failure in self.reader.failures():
            if failure.id in projected:
                continue
            self.store.add_node("failure", failure.id, {
                "failure_id": failure.id,
                "error_type": failure.error_type or "unknown",
                "error_message": failure.error_message[:SUMMARY_SNIPPET_CHARS],
            })

    def sync_sessions(self) -> None:
        projected = self.store.attribute_values("session", "session_id")
        for session in self.reader.sessions():
            if session.id in projected:
                continue
            session_id = self.store.add_node("session", session.id, {
                "session_id": session.id,
                "summary": session.summary_text[:SUMMARY_SNIPPET_CHARS],
                "started_at": session.started_at,
            })
            for decision in session.decisions_made:
                self._link(session_id, resolve_id("decision", decision), "produces")
            for pattern in session.patterns_learned:
                pattern_id = self._find_pattern(pattern)
                if pattern_id:
                    self.store.add_edge(session_id, pattern_id, "produces")

    def sync_projects(self) -> None:
        projected = self.store.attribute_values("project", "project_name")
        try:
            sessions = self.reader.sessions()
        except FileNotFoundError:
            sessions = []

        for project in self.reader.projects():
            if project.name in projected:
                continue
            project_id = self.store.add_node("project", project.name, {
                "project_name": project.name,
                "path": project.path,
                "description": project.description,
                "tags": list(project.tags),
            })

            for session in sessions:
                if session.project == project.name:
                    self._link(project_id, resolve_id("session", session.id), "hosts")

            if project.path:
                prefix = project.path.rstrip("/") + "/"
                for node in self.store.list_nodes("file"):
                    path = node.attributes.get("path", "")
                    if path == project.path or path.startswith(prefix):
                        self.store.add_edge(node.id, project_id, "part_of")

    def sync_goals(self) -> None:
        projected = self.store.attribute_values("goal", "goal_id")
        decisions = self.store.list_nodes("decision")

        for goal in self.reader.goals():
            if goal.id in projected:
                continue
            goal_id = self.store.add_node("goal", goal.name, {
                "goal_id": goal.id,
                "status": goal.status,
                "priority": goal.priority,
                "deadline": goal.deadline,
            })

            for project in goal.projects:
                self._link(goal_id, resolve_id("project", project), "relates_to")

            goal_tags = set(goal.tags)
            if not goal_tags:
                continue
            for decision in decisions:
                if goal_tags & set(decision.attributes.get("tags") or []):
                    self.store.add_edge(
                        goal_id, decision.id, "relates_to", weight=GOAL_TAG_EDGE_WEIGHT
                    )

    def sync_observations(self) -> None:
        projected = self.store.attribute_values("observation", "observation_id")
        for observation in self.reader.observations():
            if observation.status != "promoted" or observation.id in projected:
                continue
            observation_id = self.store.add_node(
                "observation",
                observation.content[:OBSERVATION_NAME_CHARS],
                {
                    "observation_id": observation.id,
                    "source": observation.source,
                    "status": observation.status,
                    "tags": list(observation.tags),
                },
            )

            target = observation.promoted_to or ""
            # A bare kind ("pattern") records the promotion without naming the record
            if not target or target in ("pattern", "decision"):
                continue
            target_type = "pattern" if target.startswith(("pat-", "pattern-")) else "decision"
            self._link(resolve_id(target_type, target), observation_id, "derived_from")
