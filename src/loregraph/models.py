"""Core data models for the projected knowledge graph.

Uses Pydantic v2 for validation. Node ids are content-addressed (see
resolver.py), so unlike the source logs nothing here generates random ids.
"""

from datetime import datetime, timezone
from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_EDGE_WEIGHT, EDGE_STATUS_ACTIVE, LEGACY_RELATION_ALIASES


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


NodeType = Literal[
    "concept",      # ideas, approaches
    "file",         # paths referenced by decisions
    "pattern",      # recurring solutions from the pattern library
    "lesson",       # things learned the hard way
    "decision",     # journal entries
    "session",      # handoff/transfer records
    "project",      # registry entries or project: tags
    "failure",      # failure log entries
    "goal",         # intent tracker goals
    "observation",  # promoted inbox observations
]

RelationType = Literal[
    "relates_to",
    "learned_from",
    "affects",
    "supersedes",
    "contradicts",
    "contains",
    "references",
    "implements",
    "depends_on",
    "produces",
    "consumes",
    "derived_from",
    "part_of",
    "summarized_by",
    "yields",
    "informs",
    "grounds",
    "hosts",
]

NODE_TYPES: tuple[str, ...] = get_args(NodeType)
RELATION_TYPES: tuple[str, ...] = get_args(RelationType)

EdgeStatus = Literal["active", "deprecated"]


class InvalidNodeType(ValueError):
    """Raised when a node type is outside the fixed vocabulary."""


class InvalidRelation(ValueError):
    """Raised when a relation name is outside the fixed vocabulary."""


def validate_node_type(node_type: str) -> str:
    if node_type not in NODE_TYPES:
        raise InvalidNodeType(
            f"Invalid node type '{node_type}'. Valid types: {', '.join(NODE_TYPES)}"
        )
    return node_type


def normalize_relation(relation: str) -> str:
    """Map legacy spellings to the canonical relation and validate it."""
    relation = LEGACY_RELATION_ALIASES.get(relation, relation)
    if relation not in RELATION_TYPES:
        raise InvalidRelation(
            f"Invalid edge type '{relation}'. Valid types: {', '.join(RELATION_TYPES)}"
        )
    return relation


class Node(BaseModel):
    """A node in the projected graph."""

    id: str
    type: NodeType
    name: str
    attributes: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def to_summary(self) -> dict:
        """Return a compact summary of this node."""
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "updated_at": self.updated_at.isoformat(),
        }


class Edge(BaseModel):
    """A typed relation between two nodes.

    Serialized with ``from``/``to`` keys; at most one edge may exist per
    ``(from, to, relation)`` triple.
    """

    model_config = ConfigDict(populate_by_name=True)

    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")
    relation: str  # validated by normalize_relation on write
    weight: float = DEFAULT_EDGE_WEIGHT
    bidirectional: bool = False
    status: EdgeStatus = EDGE_STATUS_ACTIVE
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.from_id, self.to_id, self.relation)

    @property
    def is_active(self) -> bool:
        return self.status == EDGE_STATUS_ACTIVE

    def other_node(self, node_id: str) -> str:
        """Return the node on the other end of this edge."""
        return self.to_id if self.from_id == node_id else self.from_id

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
