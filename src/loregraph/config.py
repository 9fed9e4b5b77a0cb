"""Filesystem layout of the lore data directory.

Each collaborator owns one append-only log under the data root; the graph
document and the search database are derived and can be deleted at any time.
"""

import os
from dataclasses import dataclass
from pathlib import Path


def default_data_dir() -> Path:
    """Find data root from LORE_DATA_DIR, falling back to ~/.lore."""
    if env_path := os.environ.get("LORE_DATA_DIR"):
        return Path(env_path).expanduser()
    return Path.home() / ".lore"


@dataclass
class LorePaths:
    """Resolved locations of every source log and derived store."""

    root: Path
    decisions: Path | None = None
    patterns: Path | None = None
    failures: Path | None = None
    observations: Path | None = None
    goals_dir: Path | None = None
    sessions_dir: Path | None = None
    projects: Path | None = None
    graph: Path | None = None
    search_db: Path | None = None

    def __post_init__(self):
        root = Path(self.root)
        self.root = root
        self.decisions = self.decisions or root / "journal" / "data" / "decisions.jsonl"
        self.patterns = self.patterns or root / "patterns" / "data" / "patterns.yaml"
        self.failures = self.failures or root / "failures" / "data" / "failures.jsonl"
        self.observations = self.observations or root / "inbox" / "data" / "observations.jsonl"
        self.goals_dir = self.goals_dir or root / "intent" / "data" / "goals"
        self.sessions_dir = self.sessions_dir or root / "transfer" / "data" / "sessions"
        self.projects = self.projects or root / "mani.yaml"
        self.graph = self.graph or root / "graph" / "data" / "graph.json"
        self.search_db = self.search_db or root / "search.db"

    @classmethod
    def from_env(cls, root: Path | None = None) -> "LorePaths":
        """Build paths from the environment (LORE_DATA_DIR, LORE_PROJECTS_FILE)."""
        projects = os.environ.get("LORE_PROJECTS_FILE")
        return cls(
            root=root or default_data_dir(),
            projects=Path(projects).expanduser() if projects else None,
        )

    @property
    def graph_backup(self) -> Path:
        return self.graph.with_name(self.graph.name + ".bak")
