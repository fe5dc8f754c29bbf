"""Pattern memory facade.

PatternMemory wires the store, embedder, extractor, compactor, retrieval
and expiry maintenance together behind the operations the assistant uses.
Use create_pattern_memory() to build one from configuration.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger

from nanojournal.config.schema import MemoryConfig, ProviderConfig
from nanojournal.memory.background import ExpiryMaintenance
from nanojournal.memory.compaction import (
    ConversationLocks,
    EntryChecker,
    PatternCompactor,
)
from nanojournal.memory.embeddings import Embedder, EmbeddingProvider
from nanojournal.memory.extraction import Extractor, PatternExtractor
from nanojournal.memory.models import (
    CompactionSummary,
    LinkSource,
    Pattern,
    PatternEntryLink,
    RetrievalResult,
)
from nanojournal.memory.retrieval import PatternRetrieval
from nanojournal.memory.store import PatternStore
from nanojournal.memory.token_counter import TokenCounter
from nanojournal.providers.base import LLMProvider
from nanojournal.providers.litellm_provider import LiteLLMProvider


class PatternMemory:
    """Long-term pattern memory for one workspace."""

    def __init__(
        self,
        store: PatternStore,
        compactor: PatternCompactor,
        retrieval: PatternRetrieval,
        maintenance: ExpiryMaintenance,
    ):
        self.store = store
        self.compactor = compactor
        self.retrieval = retrieval
        self.maintenance = maintenance

    # Message buffer

    def record_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        external_message_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """Buffer a message; redelivered external ids are ignored."""
        return self.store.append_message(
            conversation_id, role, content,
            external_message_id=external_message_id,
            created_at=created_at,
        )

    # Compaction

    async def run_compaction(self, conversation_id: str, now: Optional[datetime] = None) -> Optional[CompactionSummary]:
        """Compact now, holding the conversation lock. Returns None if a run is already in flight."""
        async with self.compactor.locks.hold(conversation_id) as acquired:
            if not acquired:
                logger.debug(f"Compaction already running for {conversation_id}")
                return None
            return await self.compactor.run_compaction(conversation_id, now)

    async def compact_if_needed(self, conversation_id: str, now: Optional[datetime] = None) -> Optional[str]:
        return await self.compactor.compact_if_needed(conversation_id, now)

    async def force_compact(self, conversation_id: str, now: Optional[datetime] = None) -> str:
        return await self.compactor.force_compact(conversation_id, now)

    # Retrieval

    def retrieve_for_prompt(
        self,
        conversation_id: str,
        query_embedding: Optional[list[float]],
        token_budget: Optional[int] = None,
        limit: Optional[int] = None,
        query_text: str = "",
    ) -> RetrievalResult:
        return self.retrieval.retrieve_for_prompt(
            conversation_id, query_embedding,
            token_budget=token_budget, limit=limit, query_text=query_text,
        )

    async def retrieve_for_text(
        self,
        conversation_id: str,
        query_text: str,
        token_budget: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> RetrievalResult:
        return await self.retrieval.retrieve_for_text(
            conversation_id, query_text, token_budget=token_budget, limit=limit,
        )

    def get_top_patterns(self, limit: int = 20) -> list[Pattern]:
        return self.retrieval.get_top_patterns(limit)

    def count_stale_event_patterns(self, now: Optional[datetime] = None) -> int:
        return self.retrieval.count_stale_event_patterns(now)

    # Maintenance

    def expire_event_patterns(self, now: Optional[datetime] = None) -> int:
        return self.store.expire_event_patterns(now)

    def link_entry_from_tool(self, pattern_id: int, entry_uuid: str, confidence: float = 0.5) -> PatternEntryLink:
        """Link a pattern to a journal entry the assistant looked up during a tool loop."""
        return self.store.link_entry(pattern_id, entry_uuid, LinkSource.TOOL_LOOP, confidence)

    async def start(self):
        """Start background maintenance."""
        await self.maintenance.start()

    async def stop(self):
        """Stop background maintenance and close the store."""
        await self.maintenance.stop()
        self.store.close()


def create_pattern_memory(
    config: MemoryConfig,
    workspace: Path,
    provider: Optional[LLMProvider] = None,
    provider_config: Optional[ProviderConfig] = None,
    embedder: Optional[Embedder] = None,
    extractor: Optional[Extractor] = None,
    entry_checker: Optional[EntryChecker] = None,
    token_counter: Optional[TokenCounter] = None,
) -> PatternMemory:
    """
    Factory function to create a PatternMemory.

    Args:
        config: Memory configuration
        workspace: Workspace directory (the database lives under it)
        provider: LLM provider for extraction; built from ``provider_config``
            with LiteLLM when omitted
        provider_config: API key and base for the default provider
        embedder: Vector provider (FastEmbed by default)
        extractor: Pattern extractor (LLM-backed by default)
        entry_checker: Journal-entry existence check (accepts all by default)
        token_counter: Budget estimator (tiktoken by default)

    Returns:
        Configured PatternMemory instance
    """
    store = PatternStore(config, workspace)

    if embedder is None:
        embedder = EmbeddingProvider(config.embedding)

    if extractor is None:
        if provider is None:
            provider_config = provider_config or ProviderConfig()
            provider = LiteLLMProvider(
                api_key=provider_config.api_key or None,
                api_base=provider_config.api_base,
                default_model=config.extraction.model,
            )
        extractor = PatternExtractor(provider, config.extraction, config.compaction.max_new_patterns)

    compactor = PatternCompactor(
        store,
        embedder,
        extractor,
        config,
        entry_checker=entry_checker,
        locks=ConversationLocks(),
    )
    retrieval = PatternRetrieval(store, config, embedder=embedder, token_counter=token_counter)
    maintenance = ExpiryMaintenance(store, config.background)

    logger.info(f"Pattern memory ready ({store.db_path})")
    return PatternMemory(store, compactor, retrieval, maintenance)
