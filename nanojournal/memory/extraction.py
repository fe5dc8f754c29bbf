"""LLM-backed pattern extraction.

PatternExtractor turns a batch of conversation messages into candidate
patterns and reinforcements of existing ones. The model is asked for JSON;
the reply is repaired with json_repair and validated with pydantic before
anything reaches the store. Any failure raises ExternalCallFailure so the
compaction run aborts before writing.
"""

import re
from datetime import datetime
from typing import Any, Optional, Protocol

import json_repair
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from nanojournal.config.schema import ExtractionConfig
from nanojournal.memory.errors import ExternalCallFailure
from nanojournal.memory.models import (
    CandidatePattern,
    ChatMessage,
    ContradictionProposal,
    ExtractionResult,
    Pattern,
    PatternKind,
    ReinforcementProposal,
    Signal,
)
from nanojournal.providers.base import LLMProvider


class Extractor(Protocol):
    """Anything that can propose patterns from a message batch."""

    async def extract(
        self,
        messages: list[ChatMessage],
        prior_patterns: list[Pattern],
    ) -> ExtractionResult:
        ...


# =========================================================================
# Wire payload
# =========================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class _NewPatternPayload(_Payload):
    content: str
    kind: PatternKind
    confidence: float = Field(ge=0.0, le=1.0)
    signal: Signal = Signal.EXPLICIT
    evidence_message_ids: list[int] = Field(default_factory=list)
    entry_uuids: list[str] = Field(default_factory=list)
    temporal: dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    contradicts_pattern_id: Optional[int] = None
    supersedes_pattern_id: Optional[int] = None


class _ReinforcementPayload(_Payload):
    pattern_id: int
    confidence: float = Field(ge=0.0, le=1.0)
    signal: Signal = Signal.EXPLICIT
    evidence_message_ids: list[int] = Field(default_factory=list)
    entry_uuids: list[str] = Field(default_factory=list)


class _ContradictionPayload(_Payload):
    pattern_id: int
    reason: str
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    signal: Signal = Signal.EXPLICIT
    evidence_message_ids: list[int] = Field(default_factory=list)


class _SupersedePayload(_Payload):
    old_pattern_id: int
    new_pattern_content: str
    kind: Optional[PatternKind] = None
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    evidence_message_ids: list[int] = Field(default_factory=list)


class _ExtractionPayload(_Payload):
    new_patterns: list[_NewPatternPayload] = Field(default_factory=list)
    reinforcements: list[_ReinforcementPayload] = Field(default_factory=list)
    contradictions: list[_ContradictionPayload] = Field(default_factory=list)
    supersedes: list[_SupersedePayload] = Field(default_factory=list)


SYSTEM_PROMPT = "You extract long-term memory patterns from journaling conversations. Return valid JSON only. Do not include markdown fences."

EXTRACTION_PROMPT = """Analyze these conversation messages and extract patterns, facts, and events.

Existing patterns (for reference, to reinforce, contradict or supersede):
{existing}

Messages to analyze:
<untrusted>
{messages}
</untrusted>

Extract patterns following these rules:
- Atomic patterns only (one claim each)
- Maximum {max_new} new patterns
- Replace pronouns with specific nouns
- Resolve entity references to canonical names
- Only cite user or tool_result messages as evidence (never assistant messages)
- signal: "explicit" for direct user statements, "implicit" for inferred patterns
- If a new pattern conflicts with an existing one, set contradicts_pattern_id
- If the messages contradict an existing pattern without stating a new one, add a contradictions item whose reason is the contradicting statement
- If the user says an existing pattern is no longer true, add a supersedes item
- Choose kinds carefully:
  - fact: durable biographical detail (name, city, role, allergies, relationships)
  - event: specific one-time occurrence (trip, appointment, move, launch)
  - temporal: recurring timing pattern (e.g. "usually Sundays")
  - belief: opinion/value stance rather than concrete biography

Return JSON matching this schema:
{{
  "new_patterns": [{{ "content": "...", "kind": "behavior|emotion|belief|goal|preference|temporal|causal|fact|event", "confidence": 0.0-1.0, "signal": "explicit|implicit", "evidence_message_ids": [...], "entry_uuids": [...], "temporal": {{}}, "contradicts_pattern_id": null }}],
  "reinforcements": [{{ "pattern_id": N, "confidence": 0.0-1.0, "signal": "explicit|implicit", "evidence_message_ids": [...], "entry_uuids": [...] }}],
  "contradictions": [{{ "pattern_id": N, "reason": "...", "evidence_message_ids": [...] }}],
  "supersedes": [{{ "old_pattern_id": N, "new_pattern_content": "...", "kind": "...", "evidence_message_ids": [...] }}]
}}"""

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

_ROLE_LABELS = {
    "user": "User",
    "tool_result": "Tool Result",
    "assistant": "Assistant",
}


class PatternExtractor:
    """
    Extract candidate patterns from conversation with an LLM.

    Args:
        provider: Chat completion provider
        config: Extraction settings (model, token limit, temperature)
        max_new_patterns: Cap on new patterns per call
    """

    def __init__(
        self,
        provider: LLMProvider,
        config: ExtractionConfig,
        max_new_patterns: int = 7,
    ):
        self.provider = provider
        self.config = config
        self.max_new_patterns = max_new_patterns

    def build_prompt(self, messages: list[ChatMessage], prior_patterns: list[Pattern]) -> str:
        """Render the extraction prompt for a message batch."""
        messages_text = "\n".join(
            f"[id:{m.id}] {_ROLE_LABELS.get(m.role, 'Assistant')}: {m.content}"
            for m in messages
        )
        existing_text = "\n".join(
            f"[id:{p.id}] ({p.kind.value}) {p.content}" for p in prior_patterns
        ) or "None"

        return EXTRACTION_PROMPT.format(
            existing=existing_text,
            messages=messages_text,
            max_new=self.max_new_patterns,
        )

    async def extract(
        self,
        messages: list[ChatMessage],
        prior_patterns: list[Pattern],
    ) -> ExtractionResult:
        """
        Run one extraction call.

        Args:
            messages: Batch to analyze, oldest first
            prior_patterns: Existing patterns offered as context

        Returns:
            Validated extraction result

        Raises:
            ExternalCallFailure: provider error, empty reply or invalid payload
        """
        prompt = self.build_prompt(messages, prior_patterns)

        try:
            response = await self.provider.chat(
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
        except Exception as e:
            raise ExternalCallFailure("pattern extraction", e) from e

        if response.is_error:
            raise ExternalCallFailure("pattern extraction", RuntimeError(response.content or "provider error"))
        if not response.content or not response.content.strip():
            raise ExternalCallFailure("pattern extraction", ValueError("empty response"))

        result = self.parse(response.content)
        logger.debug(
            f"Extraction produced {len(result.new_patterns)} candidates, "
            f"{len(result.reinforcements)} reinforcements"
        )
        return result

    def parse(self, text: str) -> ExtractionResult:
        """
        Parse and validate a model reply.

        Raises:
            ExternalCallFailure: the reply is not a valid extraction payload
        """
        match = _FENCE.search(text)
        if match:
            text = match.group(1)

        try:
            data = json_repair.loads(text)
            payload = _ExtractionPayload.model_validate(data)
        except (ValidationError, ValueError, TypeError) as e:
            raise ExternalCallFailure("pattern extraction parse", e) from e

        new_items = [item for item in payload.new_patterns if item.content]
        if len(new_items) < len(payload.new_patterns):
            logger.warning(f"Skipping {len(payload.new_patterns) - len(new_items)} new patterns with empty content")

        if len(new_items) > self.max_new_patterns:
            logger.warning(
                f"Extraction returned {len(new_items)} new patterns, "
                f"keeping the first {self.max_new_patterns}"
            )

        candidates = [
            CandidatePattern(
                content=item.content,
                kind=item.kind,
                confidence=item.confidence,
                signal=item.signal,
                evidence_message_ids=item.evidence_message_ids,
                entry_uuids=item.entry_uuids,
                temporal=item.temporal,
                expires_at=item.expires_at,
                contradicts_id=item.contradicts_pattern_id,
                supersedes_id=item.supersedes_pattern_id,
            )
            for item in new_items[:self.max_new_patterns]
        ]

        for item in payload.supersedes:
            if not item.new_pattern_content:
                logger.warning(f"Skipping supersede of pattern {item.old_pattern_id} with empty content")
                continue
            candidates.append(CandidatePattern(
                content=item.new_pattern_content,
                kind=item.kind or PatternKind.BEHAVIOR,
                confidence=item.confidence,
                signal=Signal.EXPLICIT,
                evidence_message_ids=item.evidence_message_ids,
                supersedes_id=item.old_pattern_id,
            ))

        reinforcements = [
            ReinforcementProposal(
                pattern_id=item.pattern_id,
                confidence=item.confidence,
                signal=item.signal,
                evidence_message_ids=item.evidence_message_ids,
                entry_uuids=item.entry_uuids,
            )
            for item in payload.reinforcements
        ]

        contradictions = []
        for item in payload.contradictions:
            if not item.reason:
                logger.warning(f"Skipping contradiction of pattern {item.pattern_id} with no reason")
                continue
            contradictions.append(ContradictionProposal(
                pattern_id=item.pattern_id,
                reason=item.reason,
                confidence=item.confidence,
                signal=item.signal,
                evidence_message_ids=item.evidence_message_ids,
            ))

        return ExtractionResult(
            new_patterns=candidates,
            reinforcements=reinforcements,
            contradictions=contradictions,
        )
