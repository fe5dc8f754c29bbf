"""Decay and reinforcement scoring for patterns.

Pure functions, no I/O. Two pieces of math live here:

- Retrieval score: ``similarity * ln(strength * decay(kind, age) + 1)``
  where ``decay`` is a per-kind exponential with a half-life looked up in
  ``HALF_LIFE_DAYS``. Volatile kinds (emotion, temporal) fade in days,
  durable ones (belief, goal, fact) over months.
- Reinforcement: strength grows by a spacing-sensitive boost. A repeat
  within the same day adds little; a repeat after a multi-day gap adds
  more, saturating at ``max_boost``.

A single scalar strength is kept instead of the full reinforcement history,
so a history-faithful activation model (ACT-R style) is not possible here.
"""

import hashlib
import math
import re
from datetime import datetime
from typing import Mapping, Optional

from nanojournal.memory.models import Pattern, PatternKind

SECONDS_PER_DAY = 86_400.0

HALF_LIFE_DAYS: dict[PatternKind, float] = {
    PatternKind.EMOTION: 7.0,
    PatternKind.TEMPORAL: 14.0,
    PatternKind.EVENT: 30.0,
    PatternKind.BEHAVIOR: 60.0,
    PatternKind.PREFERENCE: 90.0,
    PatternKind.CAUSAL: 120.0,
    PatternKind.BELIEF: 180.0,
    PatternKind.GOAL: 180.0,
    PatternKind.FACT: 365.0,
}

DEFAULT_MIN_BOOST = 0.05
DEFAULT_MAX_BOOST = 1.0
DEFAULT_SPACING_DAYS = 7.0

_WHITESPACE = re.compile(r"\s+")


def normalize_content(content: str) -> str:
    """Lowercase, collapse whitespace and trim."""
    return _WHITESPACE.sub(" ", content.lower()).strip()


def canonical_hash(content: str) -> str:
    """Stable sha256 hex digest of the normalized content."""
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()


def days_between(earlier: Optional[datetime], later: datetime) -> float:
    """Elapsed days from ``earlier`` to ``later``, never negative."""
    if earlier is None:
        return 0.0
    return max((later - earlier).total_seconds() / SECONDS_PER_DAY, 0.0)


def half_life(
    kind: PatternKind,
    overrides: Optional[Mapping[str, float]] = None,
) -> float:
    """Half-life in days for a kind, honoring config overrides keyed by kind value."""
    if overrides and kind.value in overrides and overrides[kind.value] > 0:
        return float(overrides[kind.value])
    return HALF_LIFE_DAYS[kind]


def decay(
    kind: PatternKind,
    days: float,
    overrides: Optional[Mapping[str, float]] = None,
) -> float:
    """
    Exponential decay factor for a pattern of ``kind`` aged ``days``.

    Returns:
        A value in (0, 1]; exactly 1.0 at zero days. Negative or non-finite
        ages are treated as zero.
    """
    if not math.isfinite(days) or days <= 0:
        return 1.0
    return 0.5 ** (days / half_life(kind, overrides))


def retrieval_score(
    similarity: float,
    strength: float,
    kind: PatternKind,
    days: float,
    overrides: Optional[Mapping[str, float]] = None,
) -> float:
    """Decay-weighted retrieval score."""
    weight = max(strength, 0.0) * decay(kind, days, overrides)
    return similarity * math.log(weight + 1.0)


def score_pattern(
    pattern: Pattern,
    similarity: float,
    now: datetime,
    overrides: Optional[Mapping[str, float]] = None,
) -> float:
    """Score a stored pattern against a query similarity at time ``now``."""
    age = days_between(pattern.last_seen, now)
    return retrieval_score(similarity, pattern.strength, pattern.kind, age, overrides)


def reinforcement_boost(
    gap_days: float,
    min_boost: float = DEFAULT_MIN_BOOST,
    max_boost: float = DEFAULT_MAX_BOOST,
    spacing_days: float = DEFAULT_SPACING_DAYS,
) -> float:
    """
    Strength increment for a reinforcement arriving ``gap_days`` after the last one.

    Rises from ``min_boost`` (same-day repeat) towards ``max_boost``
    with a time constant of ``spacing_days``. Always positive, never above
    ``max_boost``.
    """
    gap = gap_days if math.isfinite(gap_days) and gap_days > 0 else 0.0
    floor = max(min_boost, 0.0)
    ceiling = max(max_boost, floor)
    spacing = spacing_days if spacing_days > 0 else DEFAULT_SPACING_DAYS
    return floor + (ceiling - floor) * (1.0 - math.exp(-gap / spacing))


def reinforced_strength(
    strength: float,
    gap_days: float,
    min_boost: float = DEFAULT_MIN_BOOST,
    max_boost: float = DEFAULT_MAX_BOOST,
    spacing_days: float = DEFAULT_SPACING_DAYS,
) -> float:
    """New strength after one reinforcement; never lower than the old value."""
    return max(strength, 0.0) + reinforcement_boost(gap_days, min_boost, max_boost, spacing_days)
