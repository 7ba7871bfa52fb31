"""
Memory Store — SQLite Persistent Backend

Tables:
    memory_items       - Memory records (constraint / decision / heuristic)
    memory_embeddings  - One float32 vector per record (cascade on delete)
    friction_events    - Feedback log (append-only, cascade on delete)
    sessions           - Interactive runs (audit only)
    session_memories   - Memories surfaced per session (audit only)
    migrations         - Applied schema migrations
    schema_meta        - Store-wide settings (embedding dimension)

Every mutation runs inside ``transaction()``: ``BEGIN IMMEDIATE`` takes the
write lock up front, so concurrent writers from other processes serialise on
SQLite's lock (waiting up to busy_timeout) instead of losing updates.
Nested transactions become savepoints.

Thread safety: sqlite3 check_same_thread=False with an RLock around every
statement; the lock is held for the whole of a transaction.
"""

from __future__ import annotations

import json
import logging
import math
import os
import sqlite3
import struct
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import (
    Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple,
    TypeVar, Union,
)

from deepctx.errors import (
    DimensionMismatch,
    StoreLockedError,
    ValidationError,
)
from deepctx.similarity import BruteForceIndex, VectorIndex
from deepctx.types import (
    VALID_EVENT_TYPES,
    VALID_KINDS,
    VARIANT_FIELDS,
    FrictionEvent,
    MemoryRecord,
    MemoryStats,
    Session,
    SessionMemory,
    _now_iso,
    check_kind,
    clamp_friction,
)

logger = logging.getLogger(__name__)

DEFAULT_DIMENSION = 384

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema migrations (applied in order, recorded in `migrations`)
# ---------------------------------------------------------------------------

_BOOTSTRAP_SQL = """
CREATE TABLE IF NOT EXISTS migrations (
    id         INTEGER PRIMARY KEY,
    name       TEXT NOT NULL UNIQUE,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_MIGRATIONS: List[Tuple[str, str]] = [
    ("001_initial", """
CREATE TABLE memory_items (
    id             TEXT PRIMARY KEY,
    kind           TEXT NOT NULL CHECK(kind IN ('constraint','decision','heuristic')),
    text           TEXT NOT NULL,
    note           TEXT,
    origin         TEXT NOT NULL DEFAULT 'user' CHECK(origin IN ('user','auto','git')),
    friction_score REAL NOT NULL DEFAULT 0,
    created_at     TEXT NOT NULL,
    updated_at     TEXT NOT NULL,
    active         INTEGER NOT NULL DEFAULT 1,
    metadata       TEXT NOT NULL DEFAULT '{}'   -- JSON object of variant fields
);

CREATE TABLE memory_embeddings (
    memory_id TEXT PRIMARY KEY REFERENCES memory_items(id) ON DELETE CASCADE,
    vector    BLOB NOT NULL                      -- float32 little-endian
);

CREATE TABLE friction_events (
    id         TEXT PRIMARY KEY,
    memory_id  TEXT NOT NULL REFERENCES memory_items(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL CHECK(event_type IN
                   ('iteration','correction','revert','rejection','acceptance')),
    delta      REAL NOT NULL,
    note       TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE sessions (
    id           TEXT PRIMARY KEY,
    started_at   TEXT NOT NULL,
    ended_at     TEXT,
    prompt_count INTEGER NOT NULL DEFAULT 0,
    memory_hits  INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE session_memories (
    session_id      TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    memory_id       TEXT NOT NULL REFERENCES memory_items(id) ON DELETE CASCADE,
    relevance_score REAL NOT NULL,
    was_helpful     INTEGER,
    PRIMARY KEY (session_id, memory_id)
);

CREATE INDEX idx_memory_kind ON memory_items(kind);
CREATE INDEX idx_memory_active ON memory_items(active);
CREATE INDEX idx_memory_created ON memory_items(created_at);
CREATE INDEX idx_friction_memory ON friction_events(memory_id);
CREATE INDEX idx_friction_created ON friction_events(created_at);
CREATE INDEX idx_sessions_started ON sessions(started_at);
"""),
    # The score must stay re-derivable from the log: record what each event
    # actually moved after clamping, and any change made outside the log
    # (decay, scores carried in by import).
    ("002_friction_accounting", """
ALTER TABLE friction_events ADD COLUMN applied_delta REAL NOT NULL DEFAULT 0;
ALTER TABLE memory_items ADD COLUMN score_offset REAL NOT NULL DEFAULT 0;
UPDATE friction_events SET applied_delta = delta;
"""),
]


# ---------------------------------------------------------------------------
# Vector packing helpers
# ---------------------------------------------------------------------------

def _pack_vector(vec: Sequence[float]) -> bytes:
    """Pack float list to bytes (float32, little-endian)."""
    return struct.pack(f"<{len(vec)}f", *vec)


def _unpack_vector(data: bytes, dim: int) -> Optional[List[float]]:
    """Unpack bytes to float list. None if the blob is not exactly ``dim`` floats."""
    if data is None or len(data) != dim * 4:
        return None
    return list(struct.unpack(f"<{dim}f", data))


def _is_locked(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


def _split_statements(sql: str) -> List[str]:
    """Split a migration script into single statements for ``execute()``.

    ``executescript()`` would commit the surrounding transaction first.
    """
    statements = []
    pending = ""
    for line in sql.splitlines(keepends=True):
        pending += line
        if sqlite3.complete_statement(pending):
            statements.append(pending.strip())
            pending = ""
    if pending.strip():
        statements.append(pending.strip())
    return statements


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    """
    SQLite-backed persistent store for memory records, embeddings and
    friction events.

    All embeddings in one store share one dimension, fixed when the database
    is created and checked every time it is reopened.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        dimension: int = DEFAULT_DIMENSION,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        index: Optional[VectorIndex] = None,
    ):
        """Open (and migrate) a store.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            dimension: Embedding length for this store.
            wal_mode: Enable WAL journal mode for concurrent readers.
            busy_timeout_ms: How long a writer waits for another process's
                lock before StoreLockedError.
            index: Vector search strategy (default: brute force).

        Raises:
            DimensionMismatch: The database was created with another dimension.
        """
        self._db_path = str(db_path)
        self._dimension = dimension
        self._index: VectorIndex = index or BruteForceIndex()
        self._lock = threading.RLock()
        self._tx_depth = 0
        on_disk = self._db_path != ":memory:"
        if on_disk:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are managed explicitly below
        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=busy_timeout_ms / 1000.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        if wal_mode and on_disk:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        if on_disk:
            try:
                os.chmod(self._db_path, 0o600)
            except OSError as exc:
                logger.debug(f"Could not restrict permissions on {self._db_path}: {exc}")

        try:
            self._migrate()
        except Exception:
            self._conn.close()
            raise
        logger.info(f"MemoryStore initialized: {self._db_path} (dimension={dimension})")

    # -- Schema ------------------------------------------------------------

    def _migrate(self) -> None:
        """Apply pending migrations and record the store dimension.

        Everything after the bootstrap tables runs in one ``BEGIN IMMEDIATE``
        transaction, and the applied set is read inside it. Processes that
        open a fresh database together therefore apply each migration once;
        the later ones find nothing left to do.

        Raises:
            DimensionMismatch: The database was created with another dimension.
        """
        with self._lock:
            # IF NOT EXISTS only; safe to race
            self._conn.executescript(_BOOTSTRAP_SQL)
            newly_applied = []
            with self.transaction() as conn:
                applied = {
                    row["name"]
                    for row in conn.execute("SELECT name FROM migrations")
                }
                for name, sql in _MIGRATIONS:
                    if name in applied:
                        continue
                    for statement in _split_statements(sql):
                        conn.execute(statement)
                    conn.execute(
                        "INSERT INTO migrations (name, applied_at) VALUES (?, ?)",
                        (name, _now_iso()),
                    )
                    newly_applied.append(name)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('dimension', ?)",
                    (str(self._dimension),),
                )
                row = conn.execute(
                    "SELECT value FROM schema_meta WHERE key='dimension'"
                ).fetchone()
        for name in newly_applied:
            logger.info(f"Applied migration {name}")
        stored = int(row["value"])
        if stored != self._dimension:
            raise DimensionMismatch(stored, self._dimension)

    def applied_migrations(self) -> List[str]:
        """Names of applied migrations, in order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT name FROM migrations ORDER BY id"
            ).fetchall()
        return [r["name"] for r in rows]

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Transactions ------------------------------------------------------

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.OperationalError as exc:
            if _is_locked(exc):
                raise StoreLockedError(f"Memory store is locked: {exc}") from exc
            raise

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Atomic block: commit on success, roll back on any exception.

        Re-entrant: an inner ``transaction()`` becomes a savepoint of the
        outer one, so a whole batch commits or none of it does.

        Raises:
            StoreLockedError: Another process held the write lock past
                busy_timeout.
        """
        with self._lock:
            if self._tx_depth:
                name = f"sp_{self._tx_depth}"
                self._conn.execute(f"SAVEPOINT {name}")
                self._tx_depth += 1
                try:
                    yield self._conn
                except BaseException:
                    self._conn.execute(f"ROLLBACK TO {name}")
                    self._conn.execute(f"RELEASE {name}")
                    raise
                else:
                    self._conn.execute(f"RELEASE {name}")
                finally:
                    self._tx_depth -= 1
                return

            self._execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield self._conn
                self._execute("COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise
            finally:
                self._tx_depth = 0

    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        """Run ``fn()`` atomically; any exception rolls everything back."""
        with self.transaction():
            return fn()

    # -- Validation --------------------------------------------------------

    def _check_vector(self, vector: Sequence[float]) -> None:
        if len(vector) != self._dimension:
            raise DimensionMismatch(self._dimension, len(vector))

    @staticmethod
    def _check_text(text: Any) -> None:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Memory text must be a non-empty string")

    @staticmethod
    def _check_kinds(kinds: Union[str, Iterable[str], None]) -> Optional[List[str]]:
        if kinds is None:
            return None
        if isinstance(kinds, str):
            kinds = [kinds]
        return [check_kind(k) for k in kinds]

    # -- Create ------------------------------------------------------------

    def insert_record(
        self, record: MemoryRecord, embedding: Optional[Sequence[float]] = None,
    ) -> str:
        """Persist a fully-built record (and optionally its embedding) atomically.

        Raises:
            ValidationError: Empty text or an id already in the store.
            DimensionMismatch: Embedding of the wrong length.
        """
        self._check_text(record.text)
        if embedding is not None:
            self._check_vector(embedding)
        score = clamp_friction(record.friction_score)
        try:
            with self.transaction() as conn:
                conn.execute(
                    """INSERT INTO memory_items
                       (id, kind, text, note, origin, friction_score, score_offset,
                        created_at, updated_at, active, metadata)
                       VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
                    (
                        record.id, record.kind, record.text, record.note,
                        record.origin, score, score,
                        record.created_at, record.updated_at,
                        int(record.active), record.metadata_json(),
                    ),
                )
                if embedding is not None:
                    conn.execute(
                        "INSERT INTO memory_embeddings (memory_id, vector) VALUES (?,?)",
                        (record.id, _pack_vector(embedding)),
                    )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Cannot insert memory {record.id}: {exc}") from exc
        logger.debug(f"Added {record.kind} {record.id}")
        return record.id

    def add_constraint(
        self,
        text: str,
        scope: Optional[str] = None,
        severity: str = "warning",
        note: Optional[str] = None,
        origin: str = "user",
        embedding: Optional[Sequence[float]] = None,
    ) -> str:
        """Add an active constraint. Returns its id."""
        record = MemoryRecord(
            kind="constraint", text=text, note=note, origin=origin,
            scope=scope, severity=severity,
        )
        return self.insert_record(record, embedding)

    def add_decision(
        self,
        text: str,
        rationale: str = "",
        alternatives: Optional[List[str]] = None,
        related_artifacts: Optional[List[str]] = None,
        note: Optional[str] = None,
        origin: str = "user",
        embedding: Optional[Sequence[float]] = None,
    ) -> str:
        """Add an active decision. Returns its id."""
        record = MemoryRecord(
            kind="decision", text=text, note=note, origin=origin,
            rationale=rationale or "",
            alternatives=list(alternatives or []),
            related_artifacts=list(related_artifacts or []),
        )
        return self.insert_record(record, embedding)

    def add_heuristic(
        self,
        text: str,
        applicable_when: Optional[str] = None,
        strength: str = "moderate",
        note: Optional[str] = None,
        origin: str = "user",
        embedding: Optional[Sequence[float]] = None,
    ) -> str:
        """Add an active heuristic. Returns its id."""
        record = MemoryRecord(
            kind="heuristic", text=text, note=note, origin=origin,
            applicable_when=applicable_when, strength=strength,
        )
        return self.insert_record(record, embedding)

    # -- Read --------------------------------------------------------------

    def get_by_id(self, memory_id: str) -> Optional[MemoryRecord]:
        """Active record by id, or None if missing or soft-deleted."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM memory_items WHERE id=? AND active=1", (memory_id,)
            ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def get_by_type(self, kind: str) -> List[MemoryRecord]:
        """All active records of one kind, newest first."""
        check_kind(kind)
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM memory_items WHERE kind=? AND active=1
                   ORDER BY created_at DESC, rowid DESC""",
                (kind,),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def get_all_constraints(self) -> List[MemoryRecord]:
        """Every active constraint, newest first."""
        return self.get_by_type("constraint")

    def list_memories(
        self,
        kind: Optional[str] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
        include_inactive: bool = False,
    ) -> List[MemoryRecord]:
        """Paginated listing, newest first. ``limit=None`` means no limit."""
        clauses: List[str] = []
        params: List[Any] = []
        if kind is not None:
            clauses.append("kind=?")
            params.append(check_kind(kind))
        if not include_inactive:
            clauses.append("active=1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([-1 if limit is None else limit, offset])
        with self._lock:
            rows = self._conn.execute(
                f"""SELECT * FROM memory_items {where}
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT ? OFFSET ?""",
                params,
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    # -- Update / delete ---------------------------------------------------

    def update_content(
        self,
        memory_id: str,
        new_text: str,
        embedding: Optional[Sequence[float]] = None,
    ) -> bool:
        """Replace text (and embedding, if given). False if missing or inactive."""
        self._check_text(new_text)
        if embedding is not None:
            self._check_vector(embedding)
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE memory_items SET text=?, updated_at=? WHERE id=? AND active=1",
                (new_text, _now_iso(), memory_id),
            )
            if cur.rowcount == 0:
                return False
            if embedding is not None:
                conn.execute(
                    "INSERT OR REPLACE INTO memory_embeddings (memory_id, vector) VALUES (?,?)",
                    (memory_id, _pack_vector(embedding)),
                )
        return True

    def soft_delete(self, memory_id: str) -> bool:
        """Mark inactive. False if missing or already inactive."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE memory_items SET active=0, updated_at=? WHERE id=? AND active=1",
                (_now_iso(), memory_id),
            )
        return cur.rowcount > 0

    def hard_delete(self, memory_id: str) -> bool:
        """Remove a record with its embedding, friction events and session links."""
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM memory_items WHERE id=?", (memory_id,))
        return cur.rowcount > 0

    # -- Embeddings --------------------------------------------------------

    def set_embedding(self, memory_id: str, vector: Sequence[float]) -> bool:
        """Store or replace a record's embedding. False if the record is missing.

        Raises:
            DimensionMismatch: ``len(vector)`` differs from the store dimension.
        """
        self._check_vector(vector)
        with self.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM memory_items WHERE id=?", (memory_id,)
            ).fetchone()
            if exists is None:
                return False
            conn.execute(
                "INSERT OR REPLACE INTO memory_embeddings (memory_id, vector) VALUES (?,?)",
                (memory_id, _pack_vector(vector)),
            )
        return True

    def get_embedding(self, memory_id: str) -> Optional[List[float]]:
        """A record's embedding, or None if absent or stored with a bad size."""
        with self._lock:
            row = self._conn.execute(
                "SELECT vector FROM memory_embeddings WHERE memory_id=?", (memory_id,)
            ).fetchone()
        if row is None:
            return None
        vec = _unpack_vector(row["vector"], self._dimension)
        if vec is None:
            logger.warning(f"Ignoring malformed embedding for {memory_id}")
        return vec

    def vector_search(
        self,
        query: Sequence[float],
        limit: int = 10,
        kinds: Union[str, Iterable[str], None] = None,
    ) -> List[Tuple[MemoryRecord, float]]:
        """Top-``limit`` active records by cosine similarity, highest first.

        Records without an embedding never match.

        Raises:
            DimensionMismatch: Query vector of the wrong length.
        """
        self._check_vector(query)
        kind_list = self._check_kinds(kinds)
        sql = (
            "SELECT e.memory_id, e.vector FROM memory_embeddings e "
            "JOIN memory_items m ON m.id = e.memory_id WHERE m.active=1"
        )
        params: List[Any] = []
        if kind_list:
            sql += f" AND m.kind IN ({','.join('?' for _ in kind_list)})"
            params.extend(kind_list)
        sql += " ORDER BY m.created_at DESC, m.rowid DESC"

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
            candidates = []
            for row in rows:
                vec = _unpack_vector(row["vector"], self._dimension)
                if vec is not None:
                    candidates.append((row["memory_id"], vec))
            ranked = self._index.search(query, candidates, limit)
            if not ranked:
                return []
            ids = [memory_id for memory_id, _ in ranked]
            records = {
                r["id"]: self._row_to_record(r)
                for r in self._conn.execute(
                    f"SELECT * FROM memory_items WHERE id IN ({','.join('?' for _ in ids)})",
                    ids,
                ).fetchall()
            }
        return [(records[mid], sim) for mid, sim in ranked if mid in records]

    # -- Friction ----------------------------------------------------------

    def record_friction_event(
        self,
        memory_id: str,
        event_type: str,
        delta: float,
        note: Optional[str] = None,
    ) -> Optional[str]:
        """Append a friction event and move the score, atomically.

        The new score is ``clamp(score + delta, -10, 10)``; the event stores
        both the requested delta and the change actually applied.

        Returns:
            The event id, or None if the memory is missing or inactive.

        Raises:
            ValidationError: Unknown event type or non-finite delta.
        """
        if event_type not in VALID_EVENT_TYPES:
            raise ValidationError(
                f"event_type: {event_type!r} not in {sorted(VALID_EVENT_TYPES)}"
            )
        if (
            isinstance(delta, bool) or not isinstance(delta, (int, float))
            or not math.isfinite(delta)
        ):
            raise ValidationError(f"delta must be a finite number, got {delta!r}")

        with self.transaction() as conn:
            row = conn.execute(
                "SELECT friction_score FROM memory_items WHERE id=? AND active=1",
                (memory_id,),
            ).fetchone()
            if row is None:
                return None
            old = row["friction_score"]
            new = clamp_friction(old + delta)
            event = FrictionEvent(
                memory_id=memory_id, event_type=event_type, delta=float(delta),
                applied_delta=new - old, note=note,
            )
            conn.execute(
                """INSERT INTO friction_events
                   (id, memory_id, event_type, delta, applied_delta, note, created_at)
                   VALUES (?,?,?,?,?,?,?)""",
                (
                    event.id, event.memory_id, event.event_type, event.delta,
                    event.applied_delta, event.note, event.created_at,
                ),
            )
            conn.execute(
                "UPDATE memory_items SET friction_score=? WHERE id=?",
                (new, memory_id),
            )
        logger.debug(
            f"Friction {event_type} on {memory_id}: {old:+.3f} -> {new:+.3f}"
        )
        return event.id

    def get_friction_events(self, memory_id: str) -> List[FrictionEvent]:
        """Friction log of one memory, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM friction_events WHERE memory_id=?
                   ORDER BY created_at, rowid""",
                (memory_id,),
            ).fetchall()
        return [
            FrictionEvent(
                id=r["id"], memory_id=r["memory_id"], event_type=r["event_type"],
                delta=r["delta"], applied_delta=r["applied_delta"],
                note=r["note"], created_at=r["created_at"],
            )
            for r in rows
        ]

    def friction_balance(self, memory_id: str) -> Optional[float]:
        """Score re-derived from the log: applied deltas plus the carried offset.

        Equals the stored ``friction_score`` up to float rounding.
        """
        with self._lock:
            row = self._conn.execute(
                """SELECT m.score_offset AS carried,
                          (SELECT COALESCE(SUM(applied_delta), 0)
                             FROM friction_events f WHERE f.memory_id = m.id) AS applied
                   FROM memory_items m WHERE m.id=?""",
                (memory_id,),
            ).fetchone()
        if row is None:
            return None
        return row["applied"] + row["carried"]

    def apply_friction_decay(self, half_life_days: float) -> int:
        """Decay every non-zero score by one day of half-life.

        ``score *= 0.5 ** (1 / half_life_days)``. Returns how many records
        changed.

        Raises:
            ValidationError: ``half_life_days`` is not a positive finite number.
        """
        if (
            isinstance(half_life_days, bool)
            or not isinstance(half_life_days, (int, float))
            or not math.isfinite(half_life_days)
            or half_life_days <= 0
        ):
            raise ValidationError(
                f"half_life_days must be positive, got {half_life_days!r}"
            )
        factor = 0.5 ** (1.0 / half_life_days)
        with self.transaction() as conn:
            # Right-hand sides see the pre-update friction_score
            cur = conn.execute(
                """UPDATE memory_items
                   SET score_offset = score_offset + friction_score * (? - 1),
                       friction_score = friction_score * ?
                   WHERE friction_score != 0""",
                (factor, factor),
            )
        logger.debug(f"Friction decay x{factor:.5f} applied to {cur.rowcount} memories")
        return cur.rowcount

    # -- Stats -------------------------------------------------------------

    def get_stats(self) -> MemoryStats:
        """Counts and friction summary over active records."""
        with self._lock:
            agg = self._conn.execute(
                """SELECT COUNT(*) AS cnt, AVG(friction_score) AS avg_friction,
                          MIN(created_at) AS oldest, MAX(created_at) AS newest
                   FROM memory_items WHERE active=1"""
            ).fetchone()
            per_kind = {k: 0 for k in VALID_KINDS}
            for row in self._conn.execute(
                "SELECT kind, COUNT(*) AS cnt FROM memory_items WHERE active=1 GROUP BY kind"
            ).fetchall():
                per_kind[row["kind"]] = row["cnt"]
            events = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM friction_events"
            ).fetchone()["cnt"]
        return MemoryStats(
            total_count=agg["cnt"],
            per_kind_counts=per_kind,
            total_friction_events=events,
            average_friction_score=agg["avg_friction"] or 0.0,
            oldest_created_at=agg["oldest"],
            newest_created_at=agg["newest"],
        )

    # -- Sessions (audit trail) --------------------------------------------

    def start_session(self) -> str:
        """Open a session record. Returns its id."""
        session = Session()
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO sessions (id, started_at) VALUES (?,?)",
                (session.id, session.started_at),
            )
        return session.id

    def end_session(self, session_id: str) -> bool:
        """Stamp ended_at. False if missing or already ended."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE sessions SET ended_at=? WHERE id=? AND ended_at IS NULL",
                (_now_iso(), session_id),
            )
        return cur.rowcount > 0

    def increment_session_counters(
        self, session_id: str, prompts: int = 0, memory_hits: int = 0,
    ) -> bool:
        """Add to a session's prompt and memory-hit counters."""
        with self.transaction() as conn:
            cur = conn.execute(
                """UPDATE sessions SET prompt_count = prompt_count + ?,
                                       memory_hits = memory_hits + ?
                   WHERE id=?""",
                (prompts, memory_hits, session_id),
            )
        return cur.rowcount > 0

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sessions WHERE id=?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        return Session(
            id=row["id"], started_at=row["started_at"], ended_at=row["ended_at"],
            prompt_count=row["prompt_count"], memory_hit_count=row["memory_hits"],
        )

    def record_session_memory(
        self,
        session_id: str,
        memory_id: str,
        relevance_score: float,
        was_helpful: Optional[bool] = None,
    ) -> bool:
        """Link a memory to a session. False if either id is unknown."""
        try:
            with self.transaction() as conn:
                conn.execute(
                    """INSERT OR REPLACE INTO session_memories
                       (session_id, memory_id, relevance_score, was_helpful)
                       VALUES (?,?,?,?)""",
                    (
                        session_id, memory_id, relevance_score,
                        None if was_helpful is None else int(was_helpful),
                    ),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def get_session_memories(self, session_id: str) -> List[SessionMemory]:
        """Memories linked to a session, most relevant first."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM session_memories WHERE session_id=?
                   ORDER BY relevance_score DESC""",
                (session_id,),
            ).fetchall()
        return [
            SessionMemory(
                session_id=r["session_id"], memory_id=r["memory_id"],
                relevance_score=r["relevance_score"],
                was_helpful=None if r["was_helpful"] is None else bool(r["was_helpful"]),
            )
            for r in rows
        ]

    # -- Internal helpers --------------------------------------------------

    def _row_to_record(self, row: sqlite3.Row) -> MemoryRecord:
        kind = row["kind"]
        meta: Dict[str, Any] = json.loads(row["metadata"] or "{}")
        variant = {k: v for k, v in meta.items() if k in VARIANT_FIELDS[kind]}
        return MemoryRecord.from_dict({
            "id": row["id"],
            "kind": kind,
            "text": row["text"],
            "note": row["note"],
            "origin": row["origin"],
            "friction_score": row["friction_score"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "active": bool(row["active"]),
            **variant,
        })
