"""Tests for PatternStore operations."""

import sqlite3
from datetime import datetime, timedelta

import pytest

from nanojournal.memory.errors import DuplicateCanonicalHash, PatternNotFound
from nanojournal.memory.models import (
    LinkSource,
    PatternKind,
    PatternStatus,
    RelationType,
)
from nanojournal.memory.scoring import canonical_hash

from fakes import BASE, vec

NOW = datetime(2026, 5, 1, 9, 0)


def _create(store, content, kind=PatternKind.BEHAVIOR, confidence=0.8, embedding=None, now=NOW, **kwargs):
    return store.create_pattern(
        content=content,
        kind=kind,
        confidence=confidence,
        canonical_hash=canonical_hash(content),
        embedding=embedding,
        now=now,
        **kwargs,
    )


class TestPatternStore:
    """Tests for PatternStore database operations."""

    def test_store_initialization(self, temp_store):
        """Test that the store creates its tables with WAL mode."""
        store = temp_store
        store.get_stats()

        assert store.db_path.exists()

        conn = sqlite3.connect(str(store.db_path))
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        for table in [
            "patterns", "pattern_observations", "pattern_relations", "pattern_aliases",
            "pattern_entries", "chat_messages", "compaction_runs", "retrieval_logs",
        ]:
            assert table in tables

        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        conn.close()

    def test_create_and_get_pattern(self, temp_store):
        pattern = _create(
            temp_store,
            "User prefers morning workouts",
            kind=PatternKind.PREFERENCE,
            embedding=BASE,
            temporal={"time_of_day": "morning"},
            source_id="chat:1:msg:3",
            embedding_model="fake",
        )

        assert pattern.id is not None
        assert pattern.strength == 1.0
        assert pattern.times_seen == 1
        assert pattern.status == PatternStatus.ACTIVE
        assert pattern.first_seen == NOW
        assert pattern.last_seen == NOW

        retrieved = temp_store.get_pattern(pattern.id)
        assert retrieved.content == "User prefers morning workouts"
        assert retrieved.kind == PatternKind.PREFERENCE
        assert retrieved.temporal == {"time_of_day": "morning"}
        assert retrieved.embedding == pytest.approx(BASE)
        assert retrieved.embedding_model == "fake"
        assert retrieved.source_id == "chat:1:msg:3"

    def test_get_missing_pattern(self, temp_store):
        assert temp_store.get_pattern(999) is None

    def test_duplicate_hash_same_kind_rejected(self, temp_store):
        first = _create(temp_store, "Lives in Lisbon", kind=PatternKind.FACT)

        with pytest.raises(DuplicateCanonicalHash) as exc_info:
            _create(temp_store, "lives  in lisbon", kind=PatternKind.FACT)

        assert exc_info.value.existing_id == first.id

    def test_duplicate_hash_allowed_after_deprecation(self, temp_store):
        first = _create(temp_store, "Lives in Lisbon", kind=PatternKind.FACT)
        temp_store.deprecate_pattern(first.id)

        second = _create(temp_store, "Lives in Lisbon", kind=PatternKind.FACT)
        assert second.id != first.id
        assert temp_store.find_active_by_hash(canonical_hash("Lives in Lisbon")).id == second.id

    def test_confidence_is_clamped(self, temp_store):
        pattern = _create(temp_store, "Overconfident", confidence=1.7)
        assert pattern.confidence == 1.0


class TestReinforcement:
    """Tests for reinforce_pattern."""

    def test_spaced_reinforcement_beats_same_day(self, temp_store):
        """Reinforcing after a 14-day gap grows strength more than a same-day repeat."""
        spaced = _create(temp_store, "User prefers morning workouts")
        massed = _create(temp_store, "User journals before bed")

        spaced_after = temp_store.reinforce_pattern(spaced.id, 0.9, now=NOW + timedelta(days=14))
        massed_after = temp_store.reinforce_pattern(massed.id, 0.9, now=NOW)

        assert spaced_after.times_seen == 2
        assert spaced_after.strength > 1.0
        assert (spaced_after.strength - 1.0) > (massed_after.strength - 1.0)
        assert massed_after.strength == pytest.approx(1.05)

    def test_reinforce_updates_confidence_and_last_seen(self, temp_store):
        pattern = _create(temp_store, "Drinks coffee daily", confidence=0.5)
        later = NOW + timedelta(days=3)

        reinforced = temp_store.reinforce_pattern(pattern.id, 0.9, now=later)

        assert reinforced.confidence == 0.9
        assert reinforced.last_seen == later
        assert reinforced.first_seen == NOW

    def test_strength_is_monotonic(self, temp_store):
        pattern = _create(temp_store, "Walks the dog")
        strength = pattern.strength
        for days in [0, 1, 1, 10, 10, 40]:
            pattern = temp_store.reinforce_pattern(pattern.id, 0.8, now=NOW + timedelta(days=days))
            assert pattern.strength > strength
            strength = pattern.strength

    def test_reinforce_missing_raises(self, temp_store):
        with pytest.raises(PatternNotFound):
            temp_store.reinforce_pattern(12345, 0.5)

    def test_reinforce_terminal_raises(self, temp_store):
        pattern = _create(temp_store, "Old habit")
        temp_store.set_status(pattern.id, PatternStatus.SUPERSEDED)

        with pytest.raises(PatternNotFound):
            temp_store.reinforce_pattern(pattern.id, 0.5)

        assert temp_store.get_pattern(pattern.id).times_seen == 1


class TestStatus:
    """Tests for forward-only status transitions."""

    def test_active_to_deprecated(self, temp_store):
        pattern = _create(temp_store, "Temporary")
        temp_store.deprecate_pattern(pattern.id)
        assert temp_store.get_pattern(pattern.id).status == PatternStatus.DEPRECATED

    def test_terminal_status_is_sticky(self, temp_store):
        pattern = _create(temp_store, "Replaced belief", kind=PatternKind.BELIEF)
        temp_store.set_status(pattern.id, PatternStatus.SUPERSEDED)
        temp_store.set_status(pattern.id, PatternStatus.DEPRECATED)

        assert temp_store.get_pattern(pattern.id).status == PatternStatus.SUPERSEDED

    def test_cannot_reactivate(self, temp_store):
        pattern = _create(temp_store, "Gone")
        temp_store.deprecate_pattern(pattern.id)

        with pytest.raises(ValueError):
            temp_store.set_status(pattern.id, PatternStatus.ACTIVE)

    def test_missing_pattern_raises(self, temp_store):
        with pytest.raises(PatternNotFound):
            temp_store.set_status(404, PatternStatus.DEPRECATED)


class TestEmbeddingSearch:
    """Tests for find_by_embedding."""

    def test_sorted_by_similarity(self, temp_store):
        low = _create(temp_store, "Low match", embedding=vec(0.5))
        high = _create(temp_store, "High match", embedding=vec(0.95))
        mid = _create(temp_store, "Mid match", embedding=vec(0.7))

        results = temp_store.find_by_embedding(BASE, limit=10)

        assert [p.id for p, _ in results] == [high.id, mid.id, low.id]
        assert results[0][1] == pytest.approx(0.95, abs=1e-4)

    def test_min_similarity_and_limit(self, temp_store):
        _create(temp_store, "A", embedding=vec(0.9))
        _create(temp_store, "B", embedding=vec(0.8))
        _create(temp_store, "C", embedding=vec(0.3))

        assert len(temp_store.find_by_embedding(BASE, limit=10, min_similarity=0.5)) == 2
        assert len(temp_store.find_by_embedding(BASE, limit=1)) == 1

    def test_excludes_inactive_patterns(self, temp_store):
        active = _create(temp_store, "Still true", embedding=vec(0.9))
        deprecated = _create(temp_store, "Expired", embedding=vec(0.95))
        superseded = _create(temp_store, "Replaced", embedding=vec(0.99))
        temp_store.deprecate_pattern(deprecated.id)
        temp_store.set_status(superseded.id, PatternStatus.SUPERSEDED)

        ids = [p.id for p, _ in temp_store.find_by_embedding(BASE, limit=10)]
        assert ids == [active.id]

    def test_patterns_without_embedding_are_not_searchable(self, temp_store):
        _create(temp_store, "No vector")
        assert temp_store.find_by_embedding(BASE, limit=10) == []

    def test_kind_filter(self, temp_store):
        _create(temp_store, "A goal", kind=PatternKind.GOAL, embedding=vec(0.9))
        belief = _create(temp_store, "A belief", kind=PatternKind.BELIEF, embedding=vec(0.8))

        results = temp_store.find_by_embedding(BASE, limit=10, kind=PatternKind.BELIEF)
        assert [p.id for p, _ in results] == [belief.id]

    def test_ties_prefer_recent(self, temp_store):
        older = _create(temp_store, "Older", embedding=vec(0.9), now=NOW - timedelta(days=5))
        newer = _create(temp_store, "Newer", embedding=vec(0.9, axis=2), now=NOW)

        results = temp_store.find_by_embedding(BASE, limit=10)
        assert [p.id for p, _ in results] == [newer.id, older.id]

    def test_alias_embedding_counts_for_parent(self, temp_store):
        parent = _create(temp_store, "Runs on weekends", embedding=vec(0.3))
        temp_store.add_alias(parent.id, "Goes jogging Saturday", embedding=vec(0.92))

        without = temp_store.find_by_embedding(BASE, limit=5, min_similarity=0.8)
        with_aliases = temp_store.find_by_embedding(BASE, limit=5, min_similarity=0.8, include_aliases=True)

        assert without == []
        assert len(with_aliases) == 1
        assert with_aliases[0][0].id == parent.id
        assert with_aliases[0][1] == pytest.approx(0.92, abs=1e-4)

    def test_mismatched_dimensions_score_zero(self, temp_store):
        _create(temp_store, "Other model", embedding=[1.0, 0.0])
        assert temp_store.find_by_embedding(BASE, limit=5, min_similarity=0.1) == []


class TestExpiry:
    """Tests for event expiry."""

    def test_expire_stale_event(self, temp_store):
        """An expired event is counted, deprecated, and the count returns to baseline."""
        baseline = temp_store.count_stale(NOW)

        event = _create(
            temp_store, "Trip to Porto", kind=PatternKind.EVENT,
            expires_at=NOW - timedelta(days=1),
        )
        assert temp_store.count_stale(NOW) >= baseline + 1

        expired = temp_store.expire_event_patterns(NOW)

        assert expired == 1
        assert temp_store.get_pattern(event.id).status == PatternStatus.DEPRECATED
        assert temp_store.count_stale(NOW) == baseline

    def test_expiry_is_idempotent(self, temp_store):
        _create(temp_store, "Dentist appointment", kind=PatternKind.EVENT, expires_at=NOW - timedelta(hours=1))

        assert temp_store.expire_event_patterns(NOW) == 1
        assert temp_store.expire_event_patterns(NOW) == 0

    def test_future_events_untouched(self, temp_store):
        event = _create(temp_store, "Conference next year", kind=PatternKind.EVENT, expires_at=NOW + timedelta(days=30))

        assert temp_store.expire_event_patterns(NOW) == 0
        assert temp_store.get_pattern(event.id).status == PatternStatus.ACTIVE

    def test_facts_with_expiry_are_swept(self, temp_store):
        fact = _create(temp_store, "Works at Acme", kind=PatternKind.FACT, expires_at=NOW - timedelta(days=1))
        temp_store.expire_event_patterns(NOW)
        assert temp_store.get_pattern(fact.id).status == PatternStatus.DEPRECATED

    def test_other_kinds_are_never_swept(self, temp_store):
        pref = _create(temp_store, "Likes jazz", kind=PatternKind.PREFERENCE, expires_at=NOW - timedelta(days=1))

        assert temp_store.count_stale(NOW) == 0
        assert temp_store.expire_event_patterns(NOW) == 0
        assert temp_store.get_pattern(pref.id).status == PatternStatus.ACTIVE


class TestProvenance:
    """Tests for observations, relations, aliases and entry links."""

    def test_observations(self, temp_store):
        pattern = _create(temp_store, "Sleeps badly before deadlines", kind=PatternKind.CAUSAL)

        temp_store.add_observation(
            pattern.id,
            evidence="I never sleep before a deadline | deadline tomorrow",
            message_ids=[3, 5],
            evidence_roles=["user"],
            confidence=0.7,
            source_id="chat:c1:msg:3,5",
            now=NOW,
        )

        observations = temp_store.get_observations(pattern.id)
        assert len(observations) == 1
        assert observations[0].message_ids == [3, 5]
        assert observations[0].evidence_roles == ["user"]
        assert observations[0].confidence == 0.7
        assert observations[0].observed_at == NOW

    def test_relations_are_idempotent(self, temp_store):
        old = _create(temp_store, "Eats meat")
        new = _create(temp_store, "Is vegetarian")

        assert temp_store.add_relation(new.id, old.id, RelationType.CONTRADICTS) is True
        assert temp_store.add_relation(new.id, old.id, RelationType.CONTRADICTS) is False

        relations = temp_store.get_relations(old.id)
        assert len(relations) == 1
        assert relations[0].from_pattern_id == new.id
        assert relations[0].relation == RelationType.CONTRADICTS

    def test_different_relation_types_coexist(self, temp_store):
        a = _create(temp_store, "A")
        b = _create(temp_store, "B")

        temp_store.add_relation(a.id, b.id, RelationType.SUPPORTS)
        temp_store.add_relation(a.id, b.id, RelationType.CONTRADICTS)

        assert len(temp_store.get_relations(a.id)) == 2

    def test_aliases(self, temp_store):
        pattern = _create(temp_store, "Prefers tea")
        temp_store.add_alias(pattern.id, "Likes tea more than coffee", embedding=vec(0.9))

        aliases = temp_store.get_aliases(pattern.id)
        assert [a.content for a in aliases] == ["Likes tea more than coffee"]
        assert aliases[0].embedding == pytest.approx(vec(0.9), abs=1e-6)

    def test_link_entry_increments_times_linked(self, temp_store):
        pattern = _create(temp_store, "Stressed about work")

        first = temp_store.link_entry(pattern.id, "ENTRY-001", LinkSource.COMPACTION, 0.7, now=NOW)
        second = temp_store.link_entry(pattern.id, "ENTRY-001", LinkSource.TOOL_LOOP, 0.9, now=NOW + timedelta(hours=1))

        assert first.times_linked == 1
        assert second.times_linked == 2
        assert second.source == LinkSource.TOOL_LOOP
        assert second.confidence == 0.9
        assert second.last_linked_at == NOW + timedelta(hours=1)
        assert len(temp_store.get_entry_links(pattern.id)) == 1


class TestMessageBuffer:
    """Tests for the conversation message buffer."""

    def test_append_and_read_oldest_first(self, temp_store):
        for i in range(3):
            temp_store.append_message("c1", "user", f"message {i}", created_at=NOW + timedelta(minutes=i))

        messages = temp_store.get_uncompacted_messages("c1")
        assert [m.content for m in messages] == ["message 0", "message 1", "message 2"]

    def test_duplicate_external_id_ignored(self, temp_store):
        first = temp_store.append_message("c1", "user", "hello", external_message_id="tg:1")
        again = temp_store.append_message("c1", "user", "hello", external_message_id="tg:1")

        assert first is not None
        assert again is None
        assert len(temp_store.get_uncompacted_messages("c1")) == 1

    def test_limit_keeps_most_recent(self, temp_store):
        for i in range(5):
            temp_store.append_message("c1", "user", f"m{i}", created_at=NOW + timedelta(minutes=i))

        messages = temp_store.get_uncompacted_messages("c1", limit=2)
        assert [m.content for m in messages] == ["m3", "m4"]

    def test_conversations_are_separate(self, temp_store):
        temp_store.append_message("c1", "user", "one")
        temp_store.append_message("c2", "user", "two")

        assert [m.content for m in temp_store.get_uncompacted_messages("c2")] == ["two"]

    def test_mark_compacted(self, temp_store):
        ids = [temp_store.append_message("c1", "user", f"m{i}", created_at=NOW + timedelta(minutes=i)) for i in range(4)]

        assert temp_store.mark_messages_compacted(ids[:2], NOW) == 2
        remaining = temp_store.get_uncompacted_messages("c1")
        assert [m.id for m in remaining] == ids[2:]
        assert temp_store.mark_messages_compacted([]) == 0

    def test_purge_compacted_messages(self, temp_store):
        ids = [temp_store.append_message("c1", "user", f"m{i}", created_at=NOW - timedelta(days=20 - i)) for i in range(3)]
        temp_store.mark_messages_compacted([ids[0]], NOW - timedelta(days=10))
        temp_store.mark_messages_compacted([ids[1]], NOW - timedelta(days=3))

        assert temp_store.purge_compacted_messages(NOW - timedelta(days=7)) == 1
        assert temp_store.get_stats()["chat_messages"] == 2
        assert [m.id for m in temp_store.get_uncompacted_messages("c1")] == [ids[2]]
        assert temp_store.purge_compacted_messages(NOW - timedelta(days=7)) == 0


class TestRunLogs:
    """Tests for compaction and retrieval logs."""

    def test_last_compaction_ignores_failed_runs(self, temp_store):
        assert temp_store.get_last_compaction_time("c1") is None

        temp_store.record_compaction_run("c1", NOW, "completed", finished_at=NOW)
        temp_store.record_compaction_run("c1", NOW, "failed", error="boom", finished_at=NOW + timedelta(hours=2))

        assert temp_store.get_last_compaction_time("c1") == NOW

    def test_retrieval_log(self, temp_store):
        pattern = _create(temp_store, "Likes hiking", kind=PatternKind.PREFERENCE)

        temp_store.log_retrieval("c1", "weekend plans?", [pattern], [7, 8], 0.83, now=NOW)

        logs = temp_store.get_retrieval_logs("c1")
        assert len(logs) == 1
        assert logs[0]["pattern_ids"] == [pattern.id]
        assert logs[0]["pattern_kinds"] == ["preference"]
        assert logs[0]["excluded_ids"] == [7, 8]
        assert logs[0]["degraded"] is False
        assert len(logs[0]["query_hash"]) == 64

    def test_stats(self, temp_store):
        _create(temp_store, "A", kind=PatternKind.GOAL)
        dep = _create(temp_store, "B", kind=PatternKind.GOAL)
        temp_store.deprecate_pattern(dep.id)
        temp_store.append_message("c1", "user", "hi")

        stats = temp_store.get_stats()
        assert stats["patterns"] == 2
        assert stats["by_status"] == {"active": 1, "deprecated": 1}
        assert stats["active_by_kind"] == {"goal": 1}
        assert stats["without_embedding"] == 1
        assert stats["pending_messages"] == 1
