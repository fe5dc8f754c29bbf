"""Tests for decay and reinforcement scoring."""

import math
from datetime import datetime, timedelta

import pytest

from nanojournal.memory import scoring
from nanojournal.memory.models import Pattern, PatternKind


class TestDecay:
    """Tests for per-kind exponential decay."""

    def test_every_kind_has_a_half_life(self):
        for kind in PatternKind:
            assert scoring.HALF_LIFE_DAYS[kind] > 0

    def test_volatile_kinds_fade_faster(self):
        assert scoring.HALF_LIFE_DAYS[PatternKind.EMOTION] < scoring.HALF_LIFE_DAYS[PatternKind.BEHAVIOR]
        assert scoring.HALF_LIFE_DAYS[PatternKind.BEHAVIOR] < scoring.HALF_LIFE_DAYS[PatternKind.FACT]

    def test_zero_days_is_exactly_one(self):
        for kind in PatternKind:
            assert scoring.decay(kind, 0) == 1.0

    def test_halves_at_half_life(self):
        hl = scoring.HALF_LIFE_DAYS[PatternKind.BEHAVIOR]
        assert scoring.decay(PatternKind.BEHAVIOR, hl) == pytest.approx(0.5)
        assert scoring.decay(PatternKind.BEHAVIOR, 2 * hl) == pytest.approx(0.25)

    def test_negative_and_non_finite_ages_treated_as_zero(self):
        assert scoring.decay(PatternKind.EMOTION, -5) == 1.0
        assert scoring.decay(PatternKind.EMOTION, float("nan")) == 1.0
        assert scoring.decay(PatternKind.EMOTION, float("inf")) == 1.0

    def test_decay_stays_positive_for_very_old_patterns(self):
        value = scoring.decay(PatternKind.EMOTION, 365)
        assert 0.0 < value < 1e-10

    def test_half_life_override(self):
        overrides = {"emotion": 14.0}
        assert scoring.decay(PatternKind.EMOTION, 14, overrides) == pytest.approx(0.5)
        # Other kinds keep the built-in table
        assert scoring.half_life(PatternKind.FACT, overrides) == 365.0


class TestRetrievalScore:
    """Tests for the decay-weighted retrieval score."""

    def test_formula(self):
        score = scoring.retrieval_score(0.8, 2.0, PatternKind.FACT, 0)
        assert score == pytest.approx(0.8 * math.log(3.0))

    def test_older_scores_lower(self):
        fresh = scoring.retrieval_score(0.9, 1.0, PatternKind.EMOTION, 1)
        stale = scoring.retrieval_score(0.9, 1.0, PatternKind.EMOTION, 30)
        assert fresh > stale

    def test_stronger_scores_higher(self):
        weak = scoring.retrieval_score(0.9, 1.0, PatternKind.BELIEF, 10)
        strong = scoring.retrieval_score(0.9, 3.0, PatternKind.BELIEF, 10)
        assert strong > weak

    def test_score_pattern_uses_last_seen(self):
        now = datetime(2026, 3, 1, 12, 0)
        pattern = Pattern(
            id=1,
            content="likes tea",
            kind=PatternKind.PREFERENCE,
            confidence=0.8,
            canonical_hash=scoring.canonical_hash("likes tea"),
            strength=1.0,
            last_seen=now - timedelta(days=90),
        )
        expected = 0.7 * math.log(0.5 + 1.0)
        assert scoring.score_pattern(pattern, 0.7, now) == pytest.approx(expected)


class TestReinforcement:
    """Tests for the spacing-aware reinforcement boost."""

    def test_same_day_repeat_adds_minimum(self):
        assert scoring.reinforcement_boost(0) == pytest.approx(0.05)

    def test_two_week_gap(self):
        expected = 0.05 + 0.95 * (1 - math.exp(-2))
        assert scoring.reinforcement_boost(14) == pytest.approx(expected)

    def test_boost_saturates(self):
        assert scoring.reinforcement_boost(10_000) <= 1.0
        assert scoring.reinforcement_boost(10_000) == pytest.approx(1.0)

    def test_spaced_repeats_boost_more(self):
        assert scoring.reinforcement_boost(14) > scoring.reinforcement_boost(1) > scoring.reinforcement_boost(0)

    def test_strength_never_decreases(self):
        strength = 1.0
        for gap in [0, 0, 3, 0.5, 30, 0]:
            new_strength = scoring.reinforced_strength(strength, gap)
            assert new_strength > strength
            strength = new_strength

    def test_custom_parameters(self):
        assert scoring.reinforcement_boost(0, min_boost=0.1, max_boost=0.5) == pytest.approx(0.1)
        assert scoring.reinforcement_boost(1000, min_boost=0.1, max_boost=0.5) == pytest.approx(0.5)


class TestCanonicalHash:
    """Tests for content normalization and hashing."""

    def test_normalize(self):
        assert scoring.normalize_content("  User  Prefers\n\tMorning   Workouts ") == "user prefers morning workouts"

    def test_hash_ignores_case_and_whitespace(self):
        a = scoring.canonical_hash("User prefers morning workouts")
        b = scoring.canonical_hash("user   prefers MORNING workouts ")
        assert a == b
        assert len(a) == 64

    def test_different_content_different_hash(self):
        assert scoring.canonical_hash("likes tea") != scoring.canonical_hash("likes coffee")

    def test_days_between_clamps(self):
        now = datetime(2026, 1, 10)
        assert scoring.days_between(now, now - timedelta(days=2)) == 0.0
        assert scoring.days_between(now - timedelta(days=2), now) == pytest.approx(2.0)
        assert scoring.days_between(None, now) == 0.0
