"""Pattern retrieval for prompt context.

Retrieval runs in three steps:

1. search: the ``candidate_window`` most similar active patterns, scored by
   similarity weighted with decayed strength
2. MMR rerank: greedy selection that trades score against similarity to
   what is already selected, so near-identical patterns don't crowd out
   the rest
3. budget cap: keep patterns in rerank order until the next one would
   overflow the token budget; everything after that point is excluded
"""

import sqlite3
from datetime import datetime
from typing import Optional

from loguru import logger

from nanojournal.config.schema import MemoryConfig
from nanojournal.memory.embeddings import Embedder, cosine_similarities
from nanojournal.memory.models import Pattern, RetrievalResult, ScoredPattern
from nanojournal.memory.scoring import score_pattern
from nanojournal.memory.store import PatternStore
from nanojournal.memory.token_counter import TokenCounter


def format_pattern_line(pattern: Pattern) -> str:
    """Render one pattern as a prompt line."""
    line = f"- [{pattern.kind.value}] {pattern.content} (seen {pattern.times_seen}x)"
    if pattern.temporal:
        details = ", ".join(f"{key}: {value}" for key, value in pattern.temporal.items())
        line = f"{line} [{details}]"
    return line


def format_patterns_for_prompt(patterns: list[Pattern]) -> str:
    """Render patterns as a bullet list, one per line."""
    return "\n".join(format_pattern_line(p) for p in patterns)


def mmr_rerank(scored: list[ScoredPattern], lambda_: float = 0.5) -> list[ScoredPattern]:
    """
    Greedy maximal-marginal-relevance ordering.

    Each step picks the candidate maximizing
    ``score - lambda_ * max_similarity_to_selected``. The per-candidate max
    similarity is updated incrementally after every pick, so the cost is
    one vector batch per selection. Patterns without an embedding are
    treated as dissimilar to everything.

    Args:
        scored: Candidates, typically sorted by score
        lambda_: Diversity weight; 0 keeps pure score order

    Returns:
        All candidates, reordered
    """
    remaining = list(scored)
    max_sim = [0.0] * len(remaining)
    selected: list[ScoredPattern] = []

    while remaining:
        best_index = max(
            range(len(remaining)),
            key=lambda i: (remaining[i].score - lambda_ * max_sim[i], -i),
        )
        pick = remaining.pop(best_index)
        max_sim.pop(best_index)
        selected.append(pick)

        if not remaining or not pick.pattern.embedding:
            continue

        sims = cosine_similarities(
            pick.pattern.embedding,
            [item.pattern.embedding or [] for item in remaining],
        )
        max_sim = [max(current, sim) for current, sim in zip(max_sim, sims)]

    return selected


def budget_cap(
    scored: list[ScoredPattern],
    token_budget: int,
    token_counter: TokenCounter,
) -> tuple[list[ScoredPattern], list[int]]:
    """
    Keep patterns in order while their prompt lines fit ``token_budget``.

    Stops at the first pattern that would overflow; it and every pattern
    after it are excluded.

    Returns:
        (kept patterns, excluded pattern ids)
    """
    kept: list[ScoredPattern] = []
    used = 0

    for index, item in enumerate(scored):
        cost = token_counter.count_tokens(format_pattern_line(item.pattern))
        if used + cost > token_budget:
            excluded = [s.pattern.id for s in scored[index:]]
            logger.debug(f"Token budget {token_budget} reached after {len(kept)} patterns, {len(excluded)} excluded")
            return kept, excluded
        used += cost
        kept.append(item)

    return kept, []


class PatternRetrieval:
    """
    Selects patterns for the prompt.

    Args:
        store: Pattern store
        config: Memory configuration
        embedder: Used by retrieve_for_text to embed the query
        token_counter: Budget estimator (defaults to tiktoken cl100k)
    """

    def __init__(
        self,
        store: PatternStore,
        config: MemoryConfig,
        embedder: Optional[Embedder] = None,
        token_counter: Optional[TokenCounter] = None,
    ):
        self.store = store
        self.config = config
        self.embedder = embedder
        self.token_counter = token_counter or TokenCounter()

    def search_patterns(
        self,
        query_embedding: list[float],
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> list[ScoredPattern]:
        """
        Score the most similar active patterns. A pattern matches through its
        own embedding or any of its aliases, whichever is closer.

        Args:
            query_embedding: Query vector
            limit: Candidate window (defaults to config)
            min_similarity: Similarity floor (defaults to config)
            now: Scoring time

        Returns:
            Candidates sorted by score descending, ties by similarity
        """
        settings = self.config.retrieval
        now = now or datetime.now()
        overrides = self.config.decay.half_life_days

        matches = self.store.find_by_embedding(
            query_embedding,
            limit=limit if limit is not None else settings.candidate_window,
            min_similarity=min_similarity if min_similarity is not None else settings.min_similarity,
            include_aliases=True,
        )

        scored = [
            ScoredPattern(pattern, similarity, score_pattern(pattern, similarity, now, overrides))
            for pattern, similarity in matches
        ]
        scored.sort(key=lambda s: (s.score, s.similarity), reverse=True)
        return scored

    def retrieve_for_prompt(
        self,
        conversation_id: str,
        query_embedding: Optional[list[float]],
        token_budget: Optional[int] = None,
        limit: Optional[int] = None,
        query_text: str = "",
        now: Optional[datetime] = None,
    ) -> RetrievalResult:
        """
        Search, rerank and budget-cap patterns for one prompt.

        A missing query embedding or a failed search yields an empty,
        degraded result rather than an error.
        """
        budget = token_budget if token_budget is not None else self.config.retrieval.token_budget
        result = RetrievalResult(degraded=True)

        if query_embedding:
            try:
                scored = self.search_patterns(query_embedding, now=now)
            except sqlite3.Error as e:
                logger.warning(f"Pattern search failed, continuing without memory: {e}")
            else:
                result = self._select(scored, budget, limit)

        if result.degraded:
            logger.debug(f"Degraded retrieval for {conversation_id}")

        if self.config.retrieval.log_retrievals:
            self.store.log_retrieval(
                conversation_id,
                query_text,
                result.patterns,
                result.excluded_ids,
                result.top_similarity,
                degraded=result.degraded,
                now=now,
            )

        return result

    def _select(self, scored: list[ScoredPattern], budget: int, limit: Optional[int]) -> RetrievalResult:
        reranked = mmr_rerank(scored, self.config.retrieval.mmr_lambda)

        cut: list[int] = []
        if limit is not None and len(reranked) > limit:
            cut = [s.pattern.id for s in reranked[limit:]]
            reranked = reranked[:limit]

        kept, excluded = budget_cap(reranked, budget, self.token_counter)

        return RetrievalResult(
            patterns=[s.pattern for s in kept],
            scored=kept,
            excluded_ids=excluded + cut,
            top_similarity=max((s.similarity for s in scored), default=None),
            degraded=False,
        )

    async def retrieve_for_text(
        self,
        conversation_id: str,
        query_text: str,
        token_budget: Optional[int] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RetrievalResult:
        """Embed ``query_text`` and retrieve; no vector means a degraded result."""
        embedding = None
        if self.embedder is not None and query_text.strip():
            try:
                embedding = await self.embedder.embed(query_text)
            except Exception as e:
                logger.warning(f"Query embedding failed, continuing without memory: {e}")

        return self.retrieve_for_prompt(
            conversation_id,
            embedding,
            token_budget=token_budget,
            limit=limit,
            query_text=query_text,
            now=now,
        )

    def get_top_patterns(self, limit: int = 20) -> list[Pattern]:
        """Active patterns by stored strength, undecayed."""
        return self.store.list_top_by_strength(limit)

    def count_stale_event_patterns(self, now: Optional[datetime] = None) -> int:
        """Active event/fact patterns already past expiry."""
        return self.store.count_stale(now)
