"""Conversation compaction into durable patterns.

Compaction takes the oldest half of a conversation's uncompacted messages,
asks the extractor for candidate patterns and routes every candidate
through the dedup pipeline:

1. exact canonical-hash match -> reinforce
2. embedding match at ``merge_threshold`` (patterns and aliases) -> reinforce
   and keep the new phrasing as an alias
3. contradiction (extractor hint, or same-kind match at
   ``contradiction_threshold`` with opposite polarity) -> create and relate;
   an explicit supersede signal retires the old pattern instead
4. otherwise -> create

A supersede hint is honored on every path: when the candidate merges into
an existing pattern, that pattern supersedes the hinted one. Contradictions
the extractor flags against existing patterns become candidates carrying a
contradiction hint. Embedder errors abort the run as ExternalCallFailure.

Runs are serialized per conversation by ConversationLocks. A trigger that
arrives while a run is in flight is dropped rather than queued.
"""

import re
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Optional

from loguru import logger

from nanojournal.config.schema import CompactionConfig, MemoryConfig
from nanojournal.memory.embeddings import Embedder
from nanojournal.memory.errors import (
    DuplicateCanonicalHash,
    ExternalCallFailure,
    PatternMemoryError,
    PatternNotFound,
)
from nanojournal.memory.extraction import Extractor
from nanojournal.memory.models import (
    EXPIRING_KINDS,
    CandidateOutcome,
    CandidatePattern,
    ChatMessage,
    CompactionSummary,
    ContradictionProposal,
    LinkSource,
    Outcome,
    Pattern,
    PatternKind,
    PatternStatus,
    RelationType,
    ReinforcementProposal,
    Signal,
)
from nanojournal.memory.scoring import canonical_hash, normalize_content
from nanojournal.memory.store import PatternStore
from nanojournal.memory.token_counter import CHARS_PER_TOKEN

EVIDENCE_ROLES = ("user", "tool_result")
MAX_EVIDENCE_CHARS = 500
MAX_SOURCE_IDS_CHARS = 150
MERGE_CANDIDATES = 5  # Matches above merge_threshold examined per candidate

SIGNAL_WEIGHTS = {
    Signal.EXPLICIT: 1.0,
    Signal.IMPLICIT: 0.5,
}
TOOL_RESULT_ONLY_WEIGHT = 0.7

_NEGATION_WORDS = frozenset({
    "not", "no", "never", "none", "nobody", "nothing", "neither", "nor",
    "cannot", "can't", "don't", "doesn't", "didn't", "won't", "isn't",
    "aren't", "wasn't", "weren't", "hasn't", "haven't", "hadn't",
    "shouldn't", "wouldn't", "couldn't", "dislikes", "hates", "stopped",
    "quit", "anymore",
})
_NEGATION_PHRASES = ("no longer", "not anymore", "gave up")
_WORD = re.compile(r"[a-z']+")


EntryChecker = Callable[[str], Awaitable[bool]]


async def accept_all_entries(entry_uuid: str) -> bool:
    """Default entry checker: every journal entry id is considered to exist."""
    return True


def has_negation(text: str) -> bool:
    """True if the statement carries a negation marker."""
    normalized = normalize_content(text)
    if any(phrase in normalized for phrase in _NEGATION_PHRASES):
        return True
    return any(word in _NEGATION_WORDS for word in _WORD.findall(normalized))


def opposite_polarity(a: str, b: str) -> bool:
    """Negation present in exactly one of the two statements."""
    return has_negation(a) != has_negation(b)


def filter_evidence(
    message_ids: list[int],
    messages: list[ChatMessage],
) -> tuple[list[int], list[str]]:
    """
    Keep only message ids that belong to the batch and were written by the
    user or returned by a tool.

    Returns:
        (filtered ids in citation order, distinct roles in first-seen order)
    """
    by_id = {m.id: m for m in messages}
    filtered: list[int] = []
    roles: list[str] = []

    for message_id in message_ids:
        message = by_id.get(message_id)
        if message is None or message.role not in EVIDENCE_ROLES:
            continue
        if message_id in filtered:
            continue
        filtered.append(message_id)
        if message.role not in roles:
            roles.append(message.role)

    return filtered, roles


def evidence_text(message_ids: list[int], messages: list[ChatMessage]) -> str:
    """Message texts joined with ' | ', capped at 500 characters."""
    wanted = set(message_ids)
    text = " | ".join(m.content for m in messages if m.id in wanted)
    return text[:MAX_EVIDENCE_CHARS]


def observation_confidence(confidence: float, signal: Signal, roles: list[str]) -> float:
    """Weight a confidence by signal directness and evidence role."""
    role_weight = 1.0 if "user" in roles else TOOL_RESULT_ONLY_WEIGHT
    return confidence * SIGNAL_WEIGHTS[Signal(signal)] * role_weight


def make_source_id(conversation_id: str, message_ids: list[int]) -> str:
    """Provenance string ``chat:<conversation>:msg:<sorted ids>``."""
    if not message_ids:
        return f"chat:{conversation_id}"
    ids = ",".join(str(i) for i in sorted(set(message_ids)))
    return f"chat:{conversation_id}:msg:{ids[:MAX_SOURCE_IDS_CHARS]}"


def format_memory_note(summary: Optional[CompactionSummary]) -> Optional[str]:
    """
    Render a one-line note about what a compaction run remembered.

    Example: ``saved 2 memories (fact, event) · reinforced 1 · 1 stale event
    memory pending review``. Returns None when there is nothing to report.
    """
    if summary is None:
        return None

    notes: list[str] = []
    if summary.created > 0:
        noun = "memory" if summary.created == 1 else "memories"
        notes.append(f"saved {summary.created} {noun} ({', '.join(summary.kinds)})")
    if summary.reinforced > 0:
        notes.append(f"reinforced {summary.reinforced}")
    if summary.contradicted > 0:
        notes.append(f"flagged {summary.contradicted} as contradicting")
    if summary.superseded > 0:
        notes.append(f"superseded {summary.superseded}")
    if summary.stale_event_count > 0:
        noun = "memory" if summary.stale_event_count == 1 else "memories"
        notes.append(f"{summary.stale_event_count} stale event {noun} pending review")

    return " · ".join(notes) if notes else None


def _tally(summary: CompactionSummary, candidate: CandidatePattern, result: CandidateOutcome):
    if result.outcome is Outcome.REINFORCED:
        summary.reinforced += 1
        if result.related_pattern_id is not None:
            summary.superseded += 1
        return

    summary.created += 1
    if candidate.kind.value not in summary.kinds:
        summary.kinds.append(candidate.kind.value)
    if result.outcome is Outcome.CONTRADICTED:
        summary.contradicted += 1
    elif result.outcome is Outcome.SUPERSEDED:
        summary.superseded += 1


class CompactionTrigger:
    """Decides whether a conversation's buffer is due for compaction."""

    def __init__(self, config: CompactionConfig):
        self.config = config

    def should_compact(
        self,
        messages: list[ChatMessage],
        last_compaction: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Size trigger: estimated tokens (chars / 4) reach ``token_threshold``.
        Time trigger: ``interval_hours`` since the last completed run and at
        least ``min_messages_for_time`` messages. A conversation that never
        compacted counts as infinitely old.
        """
        if not messages:
            return False

        total_chars = sum(len(m.content) for m in messages)
        if total_chars / CHARS_PER_TOKEN >= self.config.token_threshold:
            return True

        if len(messages) < self.config.min_messages_for_time:
            return False

        if last_compaction is None:
            return True

        now = now or datetime.now()
        hours_since = (now - last_compaction).total_seconds() / 3600
        return hours_since >= self.config.interval_hours


class ConversationLocks:
    """
    In-flight guard per conversation.

    Acquisition never waits: a second caller for the same conversation gets
    False and is expected to drop its run.
    """

    def __init__(self):
        self._in_flight: set[str] = set()

    def try_acquire(self, conversation_id: str) -> bool:
        if conversation_id in self._in_flight:
            return False
        self._in_flight.add(conversation_id)
        return True

    def release(self, conversation_id: str) -> None:
        self._in_flight.discard(conversation_id)

    def is_locked(self, conversation_id: str) -> bool:
        return conversation_id in self._in_flight

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[bool]:
        """Yield whether the lock was acquired; release on every exit path."""
        acquired = self.try_acquire(conversation_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(conversation_id)


class PatternCompactor:
    """
    Turns buffered conversation into patterns.

    Args:
        store: Pattern store
        embedder: Vector provider (may return None)
        extractor: Candidate pattern extractor
        config: Memory configuration
        entry_checker: Async journal-entry existence check
        locks: Shared per-conversation locks
    """

    def __init__(
        self,
        store: PatternStore,
        embedder: Embedder,
        extractor: Extractor,
        config: MemoryConfig,
        entry_checker: Optional[EntryChecker] = None,
        locks: Optional[ConversationLocks] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.extractor = extractor
        self.config = config
        self.entry_checker = entry_checker or accept_all_entries
        self.locks = locks or ConversationLocks()
        self.trigger = CompactionTrigger(config.compaction)

    # =========================================================================
    # Dedup pipeline
    # =========================================================================

    async def process_candidate(
        self,
        candidate: CandidatePattern,
        conversation_id: str,
        messages: list[ChatMessage],
        now: Optional[datetime] = None,
    ) -> CandidateOutcome:
        """
        Route one candidate through exact match, approximate match,
        contradiction detection and creation.

        Args:
            candidate: Proposed pattern
            conversation_id: Conversation the batch belongs to
            messages: The compacted batch (evidence source)
            now: Processing time

        Returns:
            What happened and which pattern received the write
        """
        now = now or datetime.now()
        content = " ".join(candidate.content.split())
        kind = PatternKind(candidate.kind)
        content_hash = canonical_hash(content)

        # Tier 1: exact canonical match
        existing = self.store.find_active_by_hash(content_hash)
        if existing:
            await self._reinforce(existing.id, candidate.confidence, candidate.signal,
                                  candidate.evidence_message_ids, candidate.entry_uuids,
                                  conversation_id, messages, now)
            retired = self._retire_hinted(candidate, existing.id, now)
            logger.debug(f"Exact match for candidate, reinforced pattern {existing.id}")
            return CandidateOutcome(Outcome.REINFORCED, existing.id, related_pattern_id=retired, similarity=1.0)

        embedding = await self._embed(content)
        hinted_ids = {candidate.contradicts_id, candidate.supersedes_id} - {None}

        # Tier 2: approximate match against patterns and their aliases.
        # Hinted and opposite-polarity matches are skipped, not merged.
        if embedding:
            for match, similarity in self.store.find_by_embedding(
                embedding,
                limit=MERGE_CANDIDATES,
                min_similarity=self.config.dedup.merge_threshold,
                include_aliases=True,
            ):
                if match.id in hinted_ids or opposite_polarity(match.content, content):
                    continue
                await self._reinforce(match.id, candidate.confidence, candidate.signal,
                                      candidate.evidence_message_ids, candidate.entry_uuids,
                                      conversation_id, messages, now)
                alias_added = self._maybe_add_alias(match, content, embedding, now)
                retired = self._retire_hinted(candidate, match.id, now)
                logger.debug(
                    f"Approximate match ({similarity:.3f}) for candidate, reinforced pattern {match.id}"
                )
                return CandidateOutcome(
                    Outcome.REINFORCED, match.id, related_pattern_id=retired,
                    similarity=similarity, alias_added=alias_added,
                )

        # Tier 3: contradiction / supersession
        old, relation, similarity = self._find_conflict(candidate, kind, content, embedding)

        # Tier 4: create
        expires_at = self._expiry_for(candidate, kind, now)
        filtered_ids, roles = filter_evidence(candidate.evidence_message_ids, messages)
        source_id = make_source_id(conversation_id, candidate.evidence_message_ids)

        try:
            pattern = self.store.create_pattern(
                content=content,
                kind=kind,
                confidence=candidate.confidence,
                canonical_hash=content_hash,
                embedding=embedding,
                temporal=candidate.temporal or None,
                expires_at=expires_at,
                embedding_model=getattr(self.embedder, "model_name", None),
                source_type="chat_compaction",
                source_id=source_id,
                now=now,
            )
        except DuplicateCanonicalHash as e:
            logger.debug(f"Concurrent duplicate for hash {e.canonical_hash[:12]}, reinforcing {e.existing_id}")
            await self._reinforce(e.existing_id, candidate.confidence, candidate.signal,
                                  candidate.evidence_message_ids, candidate.entry_uuids,
                                  conversation_id, messages, now)
            retired = self._retire_hinted(candidate, e.existing_id, now)
            return CandidateOutcome(Outcome.REINFORCED, e.existing_id, related_pattern_id=retired, similarity=1.0)

        if filtered_ids:
            self.store.add_observation(
                pattern.id,
                evidence=evidence_text(filtered_ids, messages),
                message_ids=filtered_ids,
                evidence_roles=roles,
                confidence=observation_confidence(candidate.confidence, candidate.signal, roles),
                extractor_version=self.config.extraction.extractor_version,
                source_id=source_id,
                now=now,
            )

        await self._link_entries(pattern.id, candidate.entry_uuids, candidate.confidence, now)

        if old is None:
            logger.info(f"Pattern {pattern.id} created [{kind.value}] {content[:60]}")
            return CandidateOutcome(Outcome.CREATED, pattern.id)

        self.store.add_relation(pattern.id, old.id, relation, now=now)
        if relation is RelationType.SUPERSEDES:
            self.store.set_status(old.id, PatternStatus.SUPERSEDED)
            logger.info(f"Pattern {pattern.id} supersedes {old.id}")
            return CandidateOutcome(Outcome.SUPERSEDED, pattern.id, related_pattern_id=old.id, similarity=similarity)

        logger.info(f"Pattern {pattern.id} contradicts {old.id}")
        return CandidateOutcome(Outcome.CONTRADICTED, pattern.id, related_pattern_id=old.id, similarity=similarity)

    def _find_conflict(
        self,
        candidate: CandidatePattern,
        kind: PatternKind,
        content: str,
        embedding: Optional[list[float]],
    ) -> tuple[Optional[Pattern], Optional[RelationType], Optional[float]]:
        """Resolve the pattern this candidate contradicts or supersedes, if any."""
        for hinted_id, relation in (
            (candidate.supersedes_id, RelationType.SUPERSEDES),
            (candidate.contradicts_id, RelationType.CONTRADICTS),
        ):
            if hinted_id is None:
                continue
            old = self.store.get_pattern(hinted_id)
            if old is not None and old.is_active:
                return old, relation, None
            logger.warning(f"Conflict hint names pattern {hinted_id}, which is missing or inactive")

        if not embedding:
            return None, None, None

        for old, similarity in self.store.find_by_embedding(
            embedding,
            limit=5,
            min_similarity=self.config.dedup.contradiction_threshold,
            kind=kind,
        ):
            if opposite_polarity(old.content, content):
                return old, RelationType.CONTRADICTS, similarity

        return None, None, None

    async def _embed(self, content: str) -> Optional[list[float]]:
        try:
            return await self.embedder.embed(content)
        except ExternalCallFailure:
            raise
        except Exception as e:
            raise ExternalCallFailure("embedding", e) from e

    def _retire_hinted(self, candidate: CandidatePattern, matched_id: int, now: datetime) -> Optional[int]:
        """
        Honor a supersede hint when the candidate merged into another pattern.

        The matched pattern takes over: the hinted one becomes superseded and
        a ``matched -supersedes-> hinted`` relation is recorded.

        Returns:
            The retired pattern ID, or None
        """
        old_id = candidate.supersedes_id
        if old_id is None or old_id == matched_id:
            return None

        old = self.store.get_pattern(old_id)
        if old is None or not old.is_active:
            logger.warning(f"Supersede hint names pattern {old_id}, which is missing or inactive")
            return None

        self.store.add_relation(matched_id, old_id, RelationType.SUPERSEDES, now=now)
        self.store.set_status(old_id, PatternStatus.SUPERSEDED)
        logger.info(f"Pattern {matched_id} supersedes {old_id}")
        return old_id

    def _contradiction_candidate(self, proposal: ContradictionProposal) -> Optional[CandidatePattern]:
        """Turn an extractor-flagged contradiction into a candidate that challenges the cited pattern."""
        old = self.store.get_pattern(proposal.pattern_id)
        if old is None or not old.is_active:
            logger.warning(f"Skipping contradiction of pattern {proposal.pattern_id}: missing or inactive")
            return None

        return CandidatePattern(
            content=proposal.reason,
            kind=old.kind,
            confidence=proposal.confidence,
            signal=proposal.signal,
            evidence_message_ids=proposal.evidence_message_ids,
            contradicts_id=old.id,
        )

    def _expiry_for(self, candidate: CandidatePattern, kind: PatternKind, now: datetime) -> Optional[datetime]:
        if kind not in EXPIRING_KINDS:
            return None
        if candidate.expires_at is not None:
            return candidate.expires_at
        if kind is PatternKind.EVENT:
            return now + timedelta(days=self.config.dedup.event_ttl_days)
        return None

    def _maybe_add_alias(self, parent: Pattern, content: str, embedding: list[float], now: datetime) -> bool:
        """Record a new phrasing unless it matches the parent or an existing alias."""
        normalized = normalize_content(content)
        known = {normalize_content(parent.content)}
        known.update(normalize_content(a.content) for a in self.store.get_aliases(parent.id))
        if normalized in known:
            return False
        self.store.add_alias(parent.id, content, embedding, now=now)
        return True

    async def _reinforce(
        self,
        pattern_id: int,
        confidence: float,
        signal: Signal,
        evidence_message_ids: list[int],
        entry_uuids: list[str],
        conversation_id: str,
        messages: list[ChatMessage],
        now: datetime,
    ) -> Pattern:
        pattern = self.store.reinforce_pattern(pattern_id, confidence, now=now)

        filtered_ids, roles = filter_evidence(evidence_message_ids, messages)
        if filtered_ids:
            self.store.add_observation(
                pattern_id,
                evidence=evidence_text(filtered_ids, messages),
                message_ids=filtered_ids,
                evidence_roles=roles,
                confidence=observation_confidence(confidence, signal, roles),
                extractor_version=self.config.extraction.extractor_version,
                source_id=make_source_id(conversation_id, evidence_message_ids),
                now=now,
            )

        await self._link_entries(pattern_id, entry_uuids, confidence, now)
        return pattern

    async def _link_entries(self, pattern_id: int, entry_uuids: list[str], confidence: float, now: datetime):
        for entry_uuid in dict.fromkeys(entry_uuids):
            if not await self.entry_checker(entry_uuid):
                logger.debug(f"Skipping link to unknown journal entry {entry_uuid}")
                continue
            self.store.link_entry(pattern_id, entry_uuid, LinkSource.COMPACTION, confidence, now=now)

    async def apply_reinforcement(
        self,
        proposal: ReinforcementProposal,
        conversation_id: str,
        messages: list[ChatMessage],
        now: Optional[datetime] = None,
    ) -> Pattern:
        """
        Apply an extractor-proposed reinforcement of an existing pattern.

        Raises:
            PatternNotFound: the pattern is missing or no longer active
        """
        return await self._reinforce(
            proposal.pattern_id, proposal.confidence, proposal.signal,
            proposal.evidence_message_ids, proposal.entry_uuids,
            conversation_id, messages, now or datetime.now(),
        )

    # =========================================================================
    # Runs
    # =========================================================================

    async def run_compaction(
        self,
        conversation_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[CompactionSummary]:
        """
        Compact the oldest half of the conversation's uncompacted window.

        Callers are expected to hold the conversation lock.

        Returns:
            Summary of the run, or None when there was nothing to compact

        Raises:
            ExternalCallFailure: extraction (or an embedder) failed; the batch
                stays uncompacted
        """
        now = now or datetime.now()
        started_at = datetime.now()
        settings = self.config.compaction

        messages = self.store.get_uncompacted_messages(conversation_id, settings.window_messages)
        batch = messages[: len(messages) // 2]
        if not batch:
            logger.debug(f"Nothing to compact for {conversation_id}")
            return None

        prior = self.store.list_top_by_strength(settings.prior_patterns)
        logger.info(f"Compacting {len(batch)} messages for {conversation_id} ({len(prior)} prior patterns)")

        try:
            extraction = await self.extractor.extract(batch, prior)

            summary = CompactionSummary(
                conversation_id=conversation_id,
                message_count=len(batch),
                stale_event_count=self.store.count_stale(now),
            )

            candidates = list(extraction.new_patterns)
            for contradiction in extraction.contradictions:
                candidate = self._contradiction_candidate(contradiction)
                if candidate is not None:
                    candidates.append(candidate)

            for candidate in candidates:
                if not candidate.content.strip():
                    logger.warning("Skipping candidate with empty content")
                    continue
                result = await self.process_candidate(candidate, conversation_id, batch, now)
                _tally(summary, candidate, result)

            for proposal in extraction.reinforcements:
                try:
                    await self.apply_reinforcement(proposal, conversation_id, batch, now)
                    summary.reinforced += 1
                except PatternNotFound as e:
                    logger.warning(f"Skipping reinforcement: {e}")

        except ExternalCallFailure as e:
            logger.error(f"Compaction failed for {conversation_id}: {e}")
            self.store.record_compaction_run(
                conversation_id, started_at, "failed",
                message_count=len(batch), error=str(e),
            )
            raise

        self.store.mark_messages_compacted([m.id for m in batch], now)
        self.store.record_compaction_run(
            conversation_id, started_at, "completed",
            message_count=len(batch),
            created=summary.created,
            reinforced=summary.reinforced,
            finished_at=now,
        )

        logger.info(
            f"Compaction done for {conversation_id}: {summary.created} created, "
            f"{summary.reinforced} reinforced, {summary.stale_event_count} stale"
        )
        return summary

    async def compact_if_needed(
        self,
        conversation_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Compact when a trigger fires and no run is in flight.

        Returns:
            The memory note, or None (no trigger, lock busy, failure, or
            nothing worth reporting)
        """
        if not self.config.compaction.enabled:
            return None

        now = now or datetime.now()
        try:
            messages = self.store.get_uncompacted_messages(
                conversation_id, self.config.compaction.window_messages
            )
            last = self.store.get_last_compaction_time(conversation_id)
        except sqlite3.Error as e:
            logger.error(f"Could not read compaction state for {conversation_id}: {e}")
            return None

        if not self.trigger.should_compact(messages, last, now):
            return None

        async with self.locks.hold(conversation_id) as acquired:
            if not acquired:
                logger.debug(f"Compaction already running for {conversation_id}, trigger dropped")
                return None
            try:
                summary = await self.run_compaction(conversation_id, now)
            except PatternMemoryError as e:
                logger.warning(f"Compaction for {conversation_id} did not complete: {e}")
                return None
            except sqlite3.Error as e:
                logger.error(f"Compaction for {conversation_id} hit a database error: {e}")
                return None

        return format_memory_note(summary)

    async def force_compact(
        self,
        conversation_id: str,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Compact regardless of triggers.

        Returns:
            A short human-readable note

        Raises:
            ExternalCallFailure: extraction failed
        """
        messages = self.store.get_uncompacted_messages(
            conversation_id, self.config.compaction.window_messages
        )
        if len(messages) < self.config.compaction.min_messages_for_force:
            return "nothing to compact"

        async with self.locks.hold(conversation_id) as acquired:
            if not acquired:
                return "compaction already in progress"
            summary = await self.run_compaction(conversation_id, now)

        return format_memory_note(summary) or "nothing new to remember"
