"""Data models for the pattern memory system.

This module defines the structures used by the memory engine: patterns and
their evidence, relations, aliases and journal-entry links, plus the
transient types that flow through compaction and retrieval.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class PatternKind(str, Enum):
    """Closed set of pattern kinds. Immutable once a pattern is created."""
    BEHAVIOR = "behavior"
    EMOTION = "emotion"
    BELIEF = "belief"
    GOAL = "goal"
    PREFERENCE = "preference"
    TEMPORAL = "temporal"
    CAUSAL = "causal"
    FACT = "fact"
    EVENT = "event"


# Kinds that may carry expires_at and are swept by expiry
EXPIRING_KINDS = (PatternKind.EVENT, PatternKind.FACT)


class PatternStatus(str, Enum):
    """Pattern lifecycle. Only ACTIVE may transition; the others are terminal."""
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self is not PatternStatus.ACTIVE


class RelationType(str, Enum):
    """Directed relation between two patterns."""
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    SUPERSEDES = "supersedes"


class LinkSource(str, Enum):
    """Where a pattern-to-entry link came from."""
    COMPACTION = "compaction"
    TOOL_LOOP = "tool_loop"


class Signal(str, Enum):
    """How directly the user stated a pattern."""
    EXPLICIT = "explicit"
    IMPLICIT = "implicit"


@dataclass
class Pattern:
    """A single durable memory unit.

    ``strength`` is the stored accessibility weight; time decay is applied
    when scoring and never written back.
    """
    id: int
    content: str
    kind: PatternKind
    confidence: float
    canonical_hash: str
    strength: float = 1.0
    times_seen: int = 1
    status: PatternStatus = PatternStatus.ACTIVE
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    # Optional fields
    embedding: Optional[list[float]] = None
    embedding_model: Optional[str] = None
    temporal: Optional[dict[str, Any]] = None  # Annotation only, never scored
    expires_at: Optional[datetime] = None

    # Provenance
    source_type: str = "chat_compaction"
    source_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status is PatternStatus.ACTIVE


@dataclass
class PatternObservation:
    """Evidence trail for one creation or reinforcement event. Insert-only."""
    id: int
    pattern_id: int
    evidence: str
    message_ids: list[int] = field(default_factory=list)
    evidence_roles: list[str] = field(default_factory=list)  # "user", "tool_result"
    confidence: float = 0.5
    extractor_version: str = "v1"
    source_type: str = "chat_compaction"
    source_id: Optional[str] = None
    observed_at: Optional[datetime] = None


@dataclass
class PatternRelation:
    """Typed edge between patterns; the (from, to, relation) triple is unique."""
    from_pattern_id: int
    to_pattern_id: int
    relation: RelationType
    created_at: Optional[datetime] = None


@dataclass
class PatternAlias:
    """Alternate phrasing of a pattern, used only to widen similarity matching."""
    id: int
    pattern_id: int
    content: str
    embedding: Optional[list[float]] = None
    created_at: Optional[datetime] = None


@dataclass
class PatternEntryLink:
    """Association between a pattern and a journal entry."""
    pattern_id: int
    entry_uuid: str
    source: LinkSource = LinkSource.COMPACTION
    confidence: float = 0.5
    times_linked: int = 1
    last_linked_at: Optional[datetime] = None


@dataclass
class ChatMessage:
    """A buffered conversation message awaiting compaction."""
    id: int
    conversation_id: str
    role: str  # "user", "assistant", "tool_result"
    content: str
    external_message_id: Optional[str] = None
    created_at: Optional[datetime] = None
    compacted_at: Optional[datetime] = None


# =========================================================================
# Pipeline types
# =========================================================================


@dataclass
class CandidatePattern:
    """A pattern proposed by the extraction step."""
    content: str
    kind: PatternKind
    confidence: float
    signal: Signal = Signal.EXPLICIT
    evidence_message_ids: list[int] = field(default_factory=list)
    entry_uuids: list[str] = field(default_factory=list)
    temporal: dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    # Hints from extraction about an existing pattern this one conflicts with
    contradicts_id: Optional[int] = None
    supersedes_id: Optional[int] = None


@dataclass
class ReinforcementProposal:
    """Extraction says an existing pattern was seen again."""
    pattern_id: int
    confidence: float
    signal: Signal = Signal.EXPLICIT
    evidence_message_ids: list[int] = field(default_factory=list)
    entry_uuids: list[str] = field(default_factory=list)


@dataclass
class ContradictionProposal:
    """Extraction says the conversation contradicts an existing pattern.

    ``reason`` is the contradicting statement; it becomes a new pattern of
    the cited pattern's kind, related to it by ``contradicts``.
    """
    pattern_id: int
    reason: str
    confidence: float = 0.7
    signal: Signal = Signal.EXPLICIT
    evidence_message_ids: list[int] = field(default_factory=list)


@dataclass
class ExtractionResult:
    """Structured output of one extraction call."""
    new_patterns: list[CandidatePattern] = field(default_factory=list)
    reinforcements: list[ReinforcementProposal] = field(default_factory=list)
    contradictions: list[ContradictionProposal] = field(default_factory=list)


class Outcome(str, Enum):
    """What the dedup pipeline did with a candidate."""
    CREATED = "created"
    REINFORCED = "reinforced"
    CONTRADICTED = "contradicted"  # Created, plus a contradicts relation
    SUPERSEDED = "superseded"      # Created, old pattern superseded


@dataclass
class CandidateOutcome:
    """Result of routing one candidate through the dedup pipeline."""
    outcome: Outcome
    pattern_id: int
    related_pattern_id: Optional[int] = None
    similarity: Optional[float] = None
    alias_added: bool = False


@dataclass
class CompactionSummary:
    """Summary of one compaction run, used for the user-facing memory note."""
    conversation_id: str
    message_count: int = 0
    created: int = 0
    reinforced: int = 0
    contradicted: int = 0
    superseded: int = 0
    stale_event_count: int = 0
    kinds: list[str] = field(default_factory=list)


@dataclass
class ScoredPattern:
    """A pattern with its raw similarity and decay-weighted score."""
    pattern: Pattern
    similarity: float
    score: float


@dataclass
class RetrievalResult:
    """Budget-capped retrieval output plus observability data."""
    patterns: list[Pattern] = field(default_factory=list)
    scored: list[ScoredPattern] = field(default_factory=list)
    excluded_ids: list[int] = field(default_factory=list)
    top_similarity: Optional[float] = None
    degraded: bool = False
