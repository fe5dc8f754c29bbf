"""SQLite storage layer for the pattern memory system.

This module provides the PatternStore class which manages all database
operations for patterns and their supporting rows (observations, relations,
aliases, journal-entry links), plus the conversation message buffer,
the compaction run log and the retrieval log. It holds no business policy:
dedup, contradiction handling and ranking live in the pipeline modules.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from loguru import logger

from nanojournal.config.schema import MemoryConfig
from nanojournal.memory import scoring
from nanojournal.memory.embeddings import (
    cosine_similarities,
    pack_embedding,
    unpack_embedding,
)
from nanojournal.memory.errors import DuplicateCanonicalHash, PatternNotFound
from nanojournal.memory.models import (
    EXPIRING_KINDS,
    ChatMessage,
    LinkSource,
    Pattern,
    PatternAlias,
    PatternEntryLink,
    PatternKind,
    PatternObservation,
    PatternRelation,
    PatternStatus,
    RelationType,
)


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value else None


def _dt(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value) if value is not None else None


class PatternStore:
    """
    SQLite-based storage for patterns.

    Uses WAL mode (Write-Ahead Logging) so readers and the expiry sweep
    don't block compaction writes.
    """

    def __init__(self, config: MemoryConfig, workspace: Path):
        """
        Initialize the pattern store.

        Args:
            config: Memory system configuration
            workspace: Path to workspace directory
        """
        self.config = config
        self.workspace = workspace

        self.db_path = workspace / config.db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Connection (created on first use)
        self._conn: Optional[sqlite3.Connection] = None

        logger.info(f"PatternStore initialized: {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection with WAL mode."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row

            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA foreign_keys=ON;")

            self._init_tables()

            logger.debug("Database connection established with WAL mode")

        return self._conn

    def _init_tables(self):
        """Create all required tables if they don't exist."""
        conn = self._conn

        # Patterns - the durable memory units
        conn.execute("""
            CREATE TABLE IF NOT EXISTS patterns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                content TEXT NOT NULL,
                kind TEXT NOT NULL,
                confidence REAL NOT NULL DEFAULT 0.5,
                strength REAL NOT NULL DEFAULT 1.0,
                times_seen INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL DEFAULT 'active',
                canonical_hash TEXT NOT NULL,
                embedding BLOB,
                embedding_model TEXT,
                temporal TEXT,  -- JSON object
                expires_at REAL,
                source_type TEXT NOT NULL DEFAULT 'chat_compaction',
                source_id TEXT,
                first_seen REAL NOT NULL,
                last_seen REAL NOT NULL,
                created_at REAL NOT NULL
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_patterns_status ON patterns(status);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_patterns_hash ON patterns(canonical_hash);")
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_patterns_expires_active
            ON patterns(expires_at) WHERE status = 'active' AND expires_at IS NOT NULL
        """)

        # Evidence trail, one row per creation/reinforcement event
        conn.execute("""
            CREATE TABLE IF NOT EXISTS pattern_observations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_id INTEGER NOT NULL,
                message_ids TEXT,  -- JSON array
                evidence TEXT NOT NULL,
                evidence_roles TEXT,  -- JSON array
                confidence REAL NOT NULL DEFAULT 0.5,
                extractor_version TEXT NOT NULL DEFAULT 'v1',
                source_type TEXT NOT NULL DEFAULT 'chat_compaction',
                source_id TEXT,
                observed_at REAL NOT NULL,
                FOREIGN KEY (pattern_id) REFERENCES patterns(id)
            )
        """)

        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_observations_pattern ON pattern_observations(pattern_id);"
        )

        conn.execute("""
            CREATE TABLE IF NOT EXISTS pattern_relations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_pattern_id INTEGER NOT NULL,
                to_pattern_id INTEGER NOT NULL,
                relation TEXT NOT NULL,
                created_at REAL NOT NULL,
                UNIQUE (from_pattern_id, to_pattern_id, relation),
                FOREIGN KEY (from_pattern_id) REFERENCES patterns(id),
                FOREIGN KEY (to_pattern_id) REFERENCES patterns(id)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS pattern_aliases (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_id INTEGER NOT NULL,
                content TEXT NOT NULL,
                embedding BLOB,
                created_at REAL NOT NULL,
                FOREIGN KEY (pattern_id) REFERENCES patterns(id)
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_aliases_pattern ON pattern_aliases(pattern_id);")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS pattern_entries (
                pattern_id INTEGER NOT NULL,
                entry_uuid TEXT NOT NULL,
                source TEXT NOT NULL DEFAULT 'compaction',
                confidence REAL NOT NULL DEFAULT 0.5,
                times_linked INTEGER NOT NULL DEFAULT 1,
                last_linked_at REAL NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (pattern_id, entry_uuid),
                FOREIGN KEY (pattern_id) REFERENCES patterns(id)
            )
        """)

        # Message buffer fed by the chat transport
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                external_message_id TEXT UNIQUE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at REAL NOT NULL,
                compacted_at REAL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_chat_messages_active
            ON chat_messages(conversation_id, created_at) WHERE compacted_at IS NULL
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS compaction_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                started_at REAL NOT NULL,
                finished_at REAL NOT NULL,
                status TEXT NOT NULL,
                message_count INTEGER NOT NULL DEFAULT 0,
                created INTEGER NOT NULL DEFAULT 0,
                reinforced INTEGER NOT NULL DEFAULT 0,
                error TEXT
            )
        """)

        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_compaction_runs_conv ON compaction_runs(conversation_id, finished_at);"
        )

        conn.execute("""
            CREATE TABLE IF NOT EXISTS retrieval_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                query_text TEXT NOT NULL,
                query_hash TEXT NOT NULL,
                degraded INTEGER NOT NULL DEFAULT 0,
                pattern_ids TEXT,  -- JSON array
                pattern_kinds TEXT,  -- JSON array
                excluded_ids TEXT,  -- JSON array
                top_similarity REAL,
                created_at REAL NOT NULL
            )
        """)

        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_retrieval_logs_conv ON retrieval_logs(conversation_id, created_at);"
        )

        conn.commit()
        logger.debug("Database tables initialized")

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.debug("Database connection closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # =========================================================================
    # Pattern Operations
    # =========================================================================

    def create_pattern(
        self,
        content: str,
        kind: PatternKind,
        confidence: float,
        canonical_hash: str,
        embedding: Optional[list[float]] = None,
        temporal: Optional[dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
        embedding_model: Optional[str] = None,
        source_type: str = "chat_compaction",
        source_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Pattern:
        """
        Insert a new active pattern.

        Args:
            content: Normalized statement
            kind: Pattern kind (immutable afterwards)
            confidence: Initial confidence in [0, 1]
            canonical_hash: Hash of the normalized content
            embedding: Optional semantic vector
            temporal: Optional annotation dict
            expires_at: Optional expiry (event/fact patterns)
            embedding_model: Model that produced the embedding
            source_type: Provenance category
            source_id: Provenance identifier
            now: Creation time (defaults to now)

        Returns:
            The stored pattern

        Raises:
            DuplicateCanonicalHash: an active pattern of the same kind has this hash
        """
        conn = self._get_connection()
        now = now or datetime.now()
        kind = PatternKind(kind)

        existing = conn.execute(
            """
            SELECT id FROM patterns
            WHERE canonical_hash = ? AND kind = ? AND status = 'active'
            LIMIT 1
            """,
            (canonical_hash, kind.value)
        ).fetchone()
        if existing:
            raise DuplicateCanonicalHash(canonical_hash, existing["id"])

        cursor = conn.execute(
            """
            INSERT INTO patterns (
                content, kind, confidence, strength, times_seen, status,
                canonical_hash, embedding, embedding_model, temporal,
                expires_at, source_type, source_id,
                first_seen, last_seen, created_at
            ) VALUES (?, ?, ?, 1.0, 1, 'active', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                content,
                kind.value,
                _clamp(confidence),
                canonical_hash,
                pack_embedding(embedding) if embedding else None,
                embedding_model if embedding else None,
                json.dumps(temporal) if temporal else None,
                _ts(expires_at),
                source_type,
                source_id,
                now.timestamp(),
                now.timestamp(),
                now.timestamp(),
            )
        )
        conn.commit()

        pattern_id = cursor.lastrowid
        logger.debug(f"Pattern created: {pattern_id} [{kind.value}] {content[:60]}")
        return self.get_pattern(pattern_id)

    def get_pattern(self, pattern_id: int) -> Optional[Pattern]:
        """Retrieve a pattern by ID, whatever its status."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM patterns WHERE id = ?",
            (pattern_id,)
        ).fetchone()

        if not row:
            return None

        return self._row_to_pattern(row)

    def find_active_by_hash(self, canonical_hash: str) -> Optional[Pattern]:
        """Find the active pattern with this canonical hash, if any."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT * FROM patterns
            WHERE canonical_hash = ? AND status = 'active'
            ORDER BY last_seen DESC
            LIMIT 1
            """,
            (canonical_hash,)
        ).fetchone()

        return self._row_to_pattern(row) if row else None

    def reinforce_pattern(
        self,
        pattern_id: int,
        new_confidence: float,
        now: Optional[datetime] = None,
    ) -> Pattern:
        """
        Record one more sighting of an active pattern.

        Increments times_seen, sets confidence, grows strength by the
        spacing-aware boost for the gap since last_seen, and moves last_seen
        to ``now``.

        Raises:
            PatternNotFound: no such pattern, or it is no longer active
        """
        conn = self._get_connection()
        now = now or datetime.now()

        pattern = self.get_pattern(pattern_id)
        if pattern is None:
            raise PatternNotFound(pattern_id)
        if not pattern.is_active:
            raise PatternNotFound(pattern_id, f"is {pattern.status.value}, cannot reinforce")

        reinforcement = self.config.reinforcement
        gap = scoring.days_between(pattern.last_seen, now)
        strength = scoring.reinforced_strength(
            pattern.strength,
            gap,
            min_boost=reinforcement.min_boost,
            max_boost=reinforcement.max_boost,
            spacing_days=reinforcement.spacing_days,
        )

        conn.execute(
            """
            UPDATE patterns SET
                times_seen = times_seen + 1,
                confidence = ?,
                strength = ?,
                last_seen = ?
            WHERE id = ?
            """,
            (_clamp(new_confidence), strength, max(now.timestamp(), _ts(pattern.last_seen) or 0.0), pattern_id)
        )
        conn.commit()

        logger.debug(
            f"Pattern {pattern_id} reinforced: strength {pattern.strength:.3f} -> {strength:.3f} "
            f"(gap {gap:.1f}d)"
        )
        return self.get_pattern(pattern_id)

    def set_status(self, pattern_id: int, status: PatternStatus) -> None:
        """
        Move an active pattern to a terminal status.

        Terminal patterns are left as they are (idempotent, not an error).

        Raises:
            PatternNotFound: no such pattern
            ValueError: attempted transition back to active
        """
        status = PatternStatus(status)
        if status is PatternStatus.ACTIVE:
            raise ValueError("Patterns cannot transition back to active")

        conn = self._get_connection()
        row = conn.execute("SELECT status FROM patterns WHERE id = ?", (pattern_id,)).fetchone()
        if not row:
            raise PatternNotFound(pattern_id)

        if PatternStatus(row["status"]).is_terminal:
            logger.debug(f"Pattern {pattern_id} already {row['status']}, status change ignored")
            return

        conn.execute(
            "UPDATE patterns SET status = ? WHERE id = ? AND status = 'active'",
            (status.value, pattern_id)
        )
        conn.commit()
        logger.info(f"Pattern {pattern_id} marked {status.value}")

    def deprecate_pattern(self, pattern_id: int) -> None:
        """Mark a pattern deprecated."""
        self.set_status(pattern_id, PatternStatus.DEPRECATED)

    def find_by_embedding(
        self,
        vector: list[float],
        limit: int = 10,
        min_similarity: float = 0.0,
        kind: Optional[PatternKind] = None,
        include_aliases: bool = False,
    ) -> list[tuple[Pattern, float]]:
        """
        Search active patterns by cosine similarity.

        Args:
            vector: Query embedding
            limit: Maximum number of results
            min_similarity: Minimum similarity to include
            kind: Optional kind filter
            include_aliases: Also match alias embeddings; a pattern scores
                the best of its own and its aliases' similarities

        Returns:
            List of (pattern, similarity), similarity descending, ties broken
            by more recent last_seen
        """
        if not vector or limit <= 0:
            return []

        conn = self._get_connection()
        kind_clause = "AND kind = ?" if kind else ""
        params: tuple = (PatternKind(kind).value,) if kind else ()

        rows = conn.execute(
            f"""
            SELECT * FROM patterns
            WHERE status = 'active' AND embedding IS NOT NULL {kind_clause}
            """,
            params
        ).fetchall()

        patterns: dict[int, Pattern] = {}
        best: dict[int, float] = {}

        candidates = [self._row_to_pattern(row) for row in rows]
        sims = cosine_similarities(vector, [p.embedding for p in candidates])
        for pattern, sim in zip(candidates, sims):
            patterns[pattern.id] = pattern
            best[pattern.id] = sim

        if include_aliases:
            alias_rows = conn.execute(
                f"""
                SELECT a.pattern_id, a.embedding FROM pattern_aliases a
                JOIN patterns p ON p.id = a.pattern_id
                WHERE p.status = 'active' AND a.embedding IS NOT NULL {kind_clause.replace('kind', 'p.kind')}
                """,
                params
            ).fetchall()
            alias_vectors = [unpack_embedding(row["embedding"]) for row in alias_rows]
            alias_sims = cosine_similarities(vector, alias_vectors)
            for row, sim in zip(alias_rows, alias_sims):
                pid = row["pattern_id"]
                if pid not in patterns:
                    pattern = self.get_pattern(pid)
                    if pattern is None:
                        continue
                    patterns[pid] = pattern
                    best[pid] = sim
                elif sim > best[pid]:
                    best[pid] = sim

        results = [
            (patterns[pid], sim) for pid, sim in best.items()
            if sim >= min_similarity
        ]
        results.sort(
            key=lambda item: (item[1], _ts(item[0].last_seen) or 0.0),
            reverse=True,
        )
        return results[:limit]

    def list_top_by_strength(self, limit: int = 20) -> list[Pattern]:
        """Active patterns by descending stored strength."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM patterns
            WHERE status = 'active'
            ORDER BY strength DESC, last_seen DESC
            LIMIT ?
            """,
            (limit,)
        ).fetchall()

        return [self._row_to_pattern(row) for row in rows]

    def expire_event_patterns(self, now: Optional[datetime] = None) -> int:
        """
        Deprecate active event/fact patterns whose expires_at has passed.

        Returns:
            Number of patterns deprecated by this call
        """
        conn = self._get_connection()
        now = now or datetime.now()
        kinds = tuple(k.value for k in EXPIRING_KINDS)

        cursor = conn.execute(
            f"""
            UPDATE patterns SET status = 'deprecated'
            WHERE status = 'active'
              AND kind IN ({",".join("?" * len(kinds))})
              AND expires_at IS NOT NULL
              AND expires_at < ?
            """,
            (*kinds, now.timestamp())
        )
        conn.commit()

        count = cursor.rowcount
        if count:
            logger.info(f"Expired {count} event patterns")
        return count

    def count_stale(self, now: Optional[datetime] = None) -> int:
        """Count active event/fact patterns already past expires_at (read-only)."""
        conn = self._get_connection()
        now = now or datetime.now()
        kinds = tuple(k.value for k in EXPIRING_KINDS)

        return conn.execute(
            f"""
            SELECT COUNT(*) FROM patterns
            WHERE status = 'active'
              AND kind IN ({",".join("?" * len(kinds))})
              AND expires_at IS NOT NULL
              AND expires_at < ?
            """,
            (*kinds, now.timestamp())
        ).fetchone()[0]

    def _row_to_pattern(self, row: sqlite3.Row) -> Pattern:
        """Convert a database row to a Pattern object."""
        temporal = None
        if row['temporal']:
            temporal = json.loads(row['temporal'])

        return Pattern(
            id=row['id'],
            content=row['content'],
            kind=PatternKind(row['kind']),
            confidence=row['confidence'],
            canonical_hash=row['canonical_hash'],
            strength=row['strength'],
            times_seen=row['times_seen'],
            status=PatternStatus(row['status']),
            first_seen=_dt(row['first_seen']),
            last_seen=_dt(row['last_seen']),
            embedding=unpack_embedding(row['embedding']),
            embedding_model=row['embedding_model'],
            temporal=temporal,
            expires_at=_dt(row['expires_at']),
            source_type=row['source_type'],
            source_id=row['source_id'],
        )

    # =========================================================================
    # Observations
    # =========================================================================

    def add_observation(
        self,
        pattern_id: int,
        evidence: str,
        message_ids: Iterable[int] = (),
        evidence_roles: Iterable[str] = (),
        confidence: float = 0.5,
        extractor_version: str = "v1",
        source_type: str = "chat_compaction",
        source_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Record evidence for a creation or reinforcement event.

        Returns:
            The observation ID
        """
        conn = self._get_connection()
        now = now or datetime.now()

        cursor = conn.execute(
            """
            INSERT INTO pattern_observations (
                pattern_id, message_ids, evidence, evidence_roles, confidence,
                extractor_version, source_type, source_id, observed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pattern_id,
                json.dumps(list(message_ids)),
                evidence,
                json.dumps(list(evidence_roles)),
                _clamp(confidence),
                extractor_version,
                source_type,
                source_id,
                now.timestamp(),
            )
        )
        conn.commit()
        return cursor.lastrowid

    def get_observations(self, pattern_id: int) -> list[PatternObservation]:
        """Evidence rows for a pattern, oldest first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM pattern_observations WHERE pattern_id = ? ORDER BY observed_at, id",
            (pattern_id,)
        ).fetchall()

        return [
            PatternObservation(
                id=row['id'],
                pattern_id=row['pattern_id'],
                evidence=row['evidence'],
                message_ids=json.loads(row['message_ids'] or "[]"),
                evidence_roles=json.loads(row['evidence_roles'] or "[]"),
                confidence=row['confidence'],
                extractor_version=row['extractor_version'],
                source_type=row['source_type'],
                source_id=row['source_id'],
                observed_at=_dt(row['observed_at']),
            )
            for row in rows
        ]

    # =========================================================================
    # Relations
    # =========================================================================

    def add_relation(
        self,
        from_pattern_id: int,
        to_pattern_id: int,
        relation: RelationType,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Insert a typed relation; inserting an existing triple is a no-op.

        Returns:
            True if a new row was written
        """
        conn = self._get_connection()
        relation = RelationType(relation)
        now = now or datetime.now()

        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO pattern_relations (from_pattern_id, to_pattern_id, relation, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (from_pattern_id, to_pattern_id, relation.value, now.timestamp())
        )
        conn.commit()

        inserted = cursor.rowcount == 1
        if inserted:
            logger.debug(f"Relation {from_pattern_id} -{relation.value}-> {to_pattern_id}")
        return inserted

    def get_relations(self, pattern_id: int) -> list[PatternRelation]:
        """All relations touching a pattern, in either direction."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM pattern_relations
            WHERE from_pattern_id = ? OR to_pattern_id = ?
            ORDER BY id
            """,
            (pattern_id, pattern_id)
        ).fetchall()

        return [
            PatternRelation(
                from_pattern_id=row['from_pattern_id'],
                to_pattern_id=row['to_pattern_id'],
                relation=RelationType(row['relation']),
                created_at=_dt(row['created_at']),
            )
            for row in rows
        ]

    # =========================================================================
    # Aliases
    # =========================================================================

    def add_alias(
        self,
        pattern_id: int,
        content: str,
        embedding: Optional[list[float]] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Store an alternate phrasing for a pattern. Returns the alias ID."""
        conn = self._get_connection()
        now = now or datetime.now()

        cursor = conn.execute(
            "INSERT INTO pattern_aliases (pattern_id, content, embedding, created_at) VALUES (?, ?, ?, ?)",
            (
                pattern_id,
                content,
                pack_embedding(embedding) if embedding else None,
                now.timestamp(),
            )
        )
        conn.commit()

        logger.debug(f"Alias added to pattern {pattern_id}: {content[:60]}")
        return cursor.lastrowid

    def get_aliases(self, pattern_id: int) -> list[PatternAlias]:
        """Aliases of a pattern, oldest first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM pattern_aliases WHERE pattern_id = ? ORDER BY id",
            (pattern_id,)
        ).fetchall()

        return [
            PatternAlias(
                id=row['id'],
                pattern_id=row['pattern_id'],
                content=row['content'],
                embedding=unpack_embedding(row['embedding']),
                created_at=_dt(row['created_at']),
            )
            for row in rows
        ]

    # =========================================================================
    # Journal entry links
    # =========================================================================

    def link_entry(
        self,
        pattern_id: int,
        entry_uuid: str,
        source: LinkSource = LinkSource.COMPACTION,
        confidence: float = 0.5,
        now: Optional[datetime] = None,
    ) -> PatternEntryLink:
        """
        Link a pattern to a journal entry, incrementing times_linked on repeat.

        Returns:
            The stored link
        """
        conn = self._get_connection()
        source = LinkSource(source)
        now = now or datetime.now()

        conn.execute(
            """
            INSERT INTO pattern_entries (
                pattern_id, entry_uuid, source, confidence,
                times_linked, last_linked_at, created_at
            ) VALUES (?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT (pattern_id, entry_uuid) DO UPDATE SET
                times_linked = pattern_entries.times_linked + 1,
                source = excluded.source,
                confidence = excluded.confidence,
                last_linked_at = excluded.last_linked_at
            """,
            (pattern_id, entry_uuid, source.value, _clamp(confidence), now.timestamp(), now.timestamp())
        )
        conn.commit()

        return next(
            link for link in self.get_entry_links(pattern_id)
            if link.entry_uuid == entry_uuid
        )

    def get_entry_links(self, pattern_id: int) -> list[PatternEntryLink]:
        """Journal entries linked to a pattern."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM pattern_entries WHERE pattern_id = ? ORDER BY created_at, entry_uuid",
            (pattern_id,)
        ).fetchall()

        return [
            PatternEntryLink(
                pattern_id=row['pattern_id'],
                entry_uuid=row['entry_uuid'],
                source=LinkSource(row['source']),
                confidence=row['confidence'],
                times_linked=row['times_linked'],
                last_linked_at=_dt(row['last_linked_at']),
            )
            for row in rows
        ]

    # =========================================================================
    # Message buffer
    # =========================================================================

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        external_message_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Buffer a conversation message for later compaction.

        Returns:
            The message ID, or None if ``external_message_id`` was already stored
        """
        conn = self._get_connection()
        created_at = created_at or datetime.now()

        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO chat_messages (
                conversation_id, external_message_id, role, content, created_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (conversation_id, external_message_id, role, content, created_at.timestamp())
        )
        conn.commit()

        if cursor.rowcount == 0:
            logger.debug(f"Duplicate message ignored: {external_message_id}")
            return None
        return cursor.lastrowid

    def get_uncompacted_messages(self, conversation_id: str, limit: int = 50) -> list[ChatMessage]:
        """
        The most recent uncompacted messages of a conversation.

        Returns:
            Up to ``limit`` messages, oldest first
        """
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM chat_messages
            WHERE conversation_id = ? AND compacted_at IS NULL
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (conversation_id, limit)
        ).fetchall()

        return [self._row_to_message(row) for row in reversed(rows)]

    def mark_messages_compacted(self, message_ids: Iterable[int], now: Optional[datetime] = None) -> int:
        """Flag messages as compacted. Returns the number updated."""
        ids = list(message_ids)
        if not ids:
            return 0

        conn = self._get_connection()
        now = now or datetime.now()
        cursor = conn.execute(
            f"""
            UPDATE chat_messages SET compacted_at = ?
            WHERE compacted_at IS NULL AND id IN ({",".join("?" * len(ids))})
            """,
            (now.timestamp(), *ids)
        )
        conn.commit()
        return cursor.rowcount

    def purge_compacted_messages(self, older_than: datetime) -> int:
        """
        Hard-delete messages compacted before ``older_than``.

        Uncompacted messages are never touched. Observations keep their
        message ids as plain integers, so evidence text survives the purge.

        Returns:
            Number of messages deleted
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            DELETE FROM chat_messages
            WHERE compacted_at IS NOT NULL AND compacted_at < ?
            """,
            (older_than.timestamp(),)
        )
        conn.commit()

        if cursor.rowcount:
            logger.debug(f"Purged {cursor.rowcount} compacted messages older than {older_than:%Y-%m-%d}")
        return cursor.rowcount

    def _row_to_message(self, row: sqlite3.Row) -> ChatMessage:
        return ChatMessage(
            id=row['id'],
            conversation_id=row['conversation_id'],
            role=row['role'],
            content=row['content'],
            external_message_id=row['external_message_id'],
            created_at=_dt(row['created_at']),
            compacted_at=_dt(row['compacted_at']),
        )

    # =========================================================================
    # Compaction log
    # =========================================================================

    def record_compaction_run(
        self,
        conversation_id: str,
        started_at: datetime,
        status: str,
        message_count: int = 0,
        created: int = 0,
        reinforced: int = 0,
        error: Optional[str] = None,
        finished_at: Optional[datetime] = None,
    ) -> int:
        """Log a compaction run ("completed" or "failed")."""
        conn = self._get_connection()
        finished_at = finished_at or datetime.now()

        cursor = conn.execute(
            """
            INSERT INTO compaction_runs (
                conversation_id, started_at, finished_at, status,
                message_count, created, reinforced, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conversation_id,
                started_at.timestamp(),
                finished_at.timestamp(),
                status,
                message_count,
                created,
                reinforced,
                error,
            )
        )
        conn.commit()
        return cursor.lastrowid

    def get_last_compaction_time(self, conversation_id: str) -> Optional[datetime]:
        """Finish time of the last completed compaction of a conversation."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT MAX(finished_at) AS finished_at FROM compaction_runs
            WHERE conversation_id = ? AND status = 'completed'
            """,
            (conversation_id,)
        ).fetchone()
        return _dt(row['finished_at']) if row else None

    # =========================================================================
    # Retrieval log
    # =========================================================================

    def log_retrieval(
        self,
        conversation_id: str,
        query_text: str,
        patterns: list[Pattern],
        excluded_ids: list[int],
        top_similarity: Optional[float],
        degraded: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """Record what a prompt retrieval selected, for telemetry."""
        conn = self._get_connection()
        now = now or datetime.now()

        cursor = conn.execute(
            """
            INSERT INTO retrieval_logs (
                conversation_id, query_text, query_hash, degraded,
                pattern_ids, pattern_kinds, excluded_ids, top_similarity, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conversation_id,
                query_text,
                hashlib.sha256(query_text.encode("utf-8")).hexdigest(),
                int(degraded),
                json.dumps([p.id for p in patterns]),
                json.dumps([p.kind.value for p in patterns]),
                json.dumps(excluded_ids),
                top_similarity,
                now.timestamp(),
            )
        )
        conn.commit()
        return cursor.lastrowid

    def get_retrieval_logs(self, conversation_id: str, limit: int = 20) -> list[dict]:
        """Most recent retrieval log rows for a conversation."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM retrieval_logs
            WHERE conversation_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (conversation_id, limit)
        ).fetchall()

        return [
            {
                "query_text": row["query_text"],
                "query_hash": row["query_hash"],
                "degraded": bool(row["degraded"]),
                "pattern_ids": json.loads(row["pattern_ids"] or "[]"),
                "pattern_kinds": json.loads(row["pattern_kinds"] or "[]"),
                "excluded_ids": json.loads(row["excluded_ids"] or "[]"),
                "top_similarity": row["top_similarity"],
                "created_at": _dt(row["created_at"]),
            }
            for row in rows
        ]

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> dict:
        """
        Get database statistics.

        Returns:
            Dictionary with table row counts and pattern breakdowns
        """
        conn = self._get_connection()

        tables = [
            'patterns', 'pattern_observations', 'pattern_relations',
            'pattern_aliases', 'pattern_entries', 'chat_messages',
        ]
        stats: dict[str, Any] = {}

        for table in tables:
            stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

        stats['by_status'] = {
            row[0]: row[1]
            for row in conn.execute("SELECT status, COUNT(*) FROM patterns GROUP BY status")
        }
        stats['active_by_kind'] = {
            row[0]: row[1]
            for row in conn.execute(
                "SELECT kind, COUNT(*) FROM patterns WHERE status = 'active' GROUP BY kind"
            )
        }
        stats['without_embedding'] = conn.execute(
            "SELECT COUNT(*) FROM patterns WHERE status = 'active' AND embedding IS NULL"
        ).fetchone()[0]
        stats['pending_messages'] = conn.execute(
            "SELECT COUNT(*) FROM chat_messages WHERE compacted_at IS NULL"
        ).fetchone()[0]

        return stats


def _clamp(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)
