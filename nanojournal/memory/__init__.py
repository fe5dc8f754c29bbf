"""nanojournal Pattern Memory

Long-term memory for the journaling assistant: conversation is compacted
into typed, scored, decaying patterns that are retrieved under a token
budget for future prompts.
"""

from nanojournal.memory.models import (
    CandidatePattern,
    ChatMessage,
    CompactionSummary,
    ContradictionProposal,
    ExtractionResult,
    Pattern,
    PatternKind,
    PatternStatus,
    RelationType,
    RetrievalResult,
    ScoredPattern,
)
from nanojournal.memory.errors import (
    DuplicateCanonicalHash,
    ExternalCallFailure,
    PatternMemoryError,
    PatternNotFound,
)
from nanojournal.memory.store import PatternStore
from nanojournal.memory.embeddings import (
    EmbeddingProvider,
    cosine_similarity,
    pack_embedding,
    unpack_embedding,
)
from nanojournal.memory.extraction import PatternExtractor
from nanojournal.memory.compaction import (
    CompactionTrigger,
    ConversationLocks,
    PatternCompactor,
    format_memory_note,
)
from nanojournal.memory.retrieval import (
    PatternRetrieval,
    budget_cap,
    format_patterns_for_prompt,
    mmr_rerank,
)
from nanojournal.memory.background import ExpiryMaintenance
from nanojournal.memory.service import PatternMemory, create_pattern_memory

__all__ = [
    # Models
    "CandidatePattern",
    "ChatMessage",
    "CompactionSummary",
    "ContradictionProposal",
    "ExtractionResult",
    "Pattern",
    "PatternKind",
    "PatternStatus",
    "RelationType",
    "RetrievalResult",
    "ScoredPattern",
    # Errors
    "PatternMemoryError",
    "DuplicateCanonicalHash",
    "PatternNotFound",
    "ExternalCallFailure",
    # Storage
    "PatternStore",
    # Embeddings
    "EmbeddingProvider",
    "pack_embedding",
    "unpack_embedding",
    "cosine_similarity",
    # Pipeline
    "PatternExtractor",
    "CompactionTrigger",
    "ConversationLocks",
    "PatternCompactor",
    "format_memory_note",
    "PatternRetrieval",
    "mmr_rerank",
    "budget_cap",
    "format_patterns_for_prompt",
    "ExpiryMaintenance",
    # Facade
    "PatternMemory",
    "create_pattern_memory",
]
