"""
Tests for deepctx.store — MemoryStore CRUD, embeddings, friction, sessions,
transactions and schema.
"""

import multiprocessing

import pytest

from deepctx.errors import (
    DimensionMismatch,
    StoreLockedError,
    UnknownMemoryKind,
    ValidationError,
)
from deepctx.store import MemoryStore
from deepctx.types import FRICTION_MAX, FRICTION_MIN, MemoryRecord

DIM = 4


@pytest.fixture
def store():
    """Create an in-memory store for testing."""
    s = MemoryStore(":memory:", dimension=DIM)
    yield s
    s.close()


@pytest.fixture
def disk_store(tmp_path):
    """Create a disk-backed store for testing."""
    s = MemoryStore(tmp_path / "memory.db", dimension=DIM)
    yield s
    s.close()


def _axis(i, dim=DIM):
    v = [0.0] * dim
    v[i] = 1.0
    return v


def _open_fresh_store(path, results, barrier):
    barrier.wait()
    try:
        MemoryStore(path, dimension=DIM).close()
    except Exception as exc:
        results.put(repr(exc))
    else:
        results.put(None)


def _record_acceptances(path, memory_id, count, barrier):
    s = MemoryStore(path, dimension=DIM)
    try:
        barrier.wait()
        for _ in range(count):
            s.record_friction_event(memory_id, "acceptance", 0.01)
    finally:
        s.close()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_migrations_applied(self, store):
        assert store.applied_migrations() == ["001_initial", "002_friction_accounting"]

    def test_all_tables_exist(self, store):
        tables = {
            r["name"] for r in store._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {
            "memory_items", "memory_embeddings", "friction_events",
            "sessions", "session_memories", "migrations", "schema_meta",
        } <= tables

    def test_reopen_does_not_reapply(self, tmp_path):
        path = tmp_path / "memory.db"
        MemoryStore(path, dimension=DIM).close()
        s = MemoryStore(path, dimension=DIM)
        assert s.applied_migrations() == ["001_initial", "002_friction_accounting"]
        s.close()

    def test_reopen_other_dimension(self, tmp_path):
        path = tmp_path / "memory.db"
        MemoryStore(path, dimension=DIM).close()
        with pytest.raises(DimensionMismatch):
            MemoryStore(path, dimension=DIM * 2)

    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "memory.db"
        s = MemoryStore(path, dimension=DIM)
        mid = s.add_decision("Use PostgreSQL", rationale="joins", embedding=_axis(0))
        s.close()
        s = MemoryStore(path, dimension=DIM)
        assert s.get_by_id(mid).rationale == "joins"
        assert s.get_embedding(mid) == _axis(0)
        s.close()

    def test_creates_parent_dir(self, tmp_path):
        s = MemoryStore(tmp_path / "a" / "b" / "memory.db", dimension=DIM)
        assert (tmp_path / "a" / "b" / "memory.db").exists()
        s.close()


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


class TestCRUD:
    def test_add_and_get_constraint(self, store):
        mid = store.add_constraint("Always validate input", scope="src/api/**")
        r = store.get_by_id(mid)
        assert r.kind == "constraint"
        assert r.text == "Always validate input"
        assert r.scope == "src/api/**"
        assert r.severity == "warning"

    def test_add_decision_fields(self, store):
        mid = store.add_decision(
            "Use PostgreSQL", rationale="Need complex joins",
            alternatives=["MySQL"], related_artifacts=["db/schema.sql"],
            note="design review", origin="git",
        )
        r = store.get_by_id(mid)
        assert r.rationale == "Need complex joins"
        assert r.alternatives == ["MySQL"]
        assert r.related_artifacts == ["db/schema.sql"]
        assert r.note == "design review"
        assert r.origin == "git"

    def test_add_heuristic_fields(self, store):
        mid = store.add_heuristic("Prefer async/await", applicable_when="I/O", strength="strong")
        r = store.get_by_id(mid)
        assert r.applicable_when == "I/O"
        assert r.strength == "strong"

    def test_get_missing(self, store):
        assert store.get_by_id("MEM-nope") is None

    def test_empty_text_rejected(self, store):
        with pytest.raises(ValidationError):
            store.add_constraint("   ")
        assert store.list_memories() == []

    def test_duplicate_id_rejected(self, store):
        rec = MemoryRecord(kind="decision", text="x")
        store.insert_record(rec)
        with pytest.raises(ValidationError):
            store.insert_record(MemoryRecord(kind="decision", text="y", id=rec.id))

    def test_get_by_type(self, store):
        store.add_constraint("c1")
        store.add_decision("d1")
        store.add_decision("d2")
        assert {r.text for r in store.get_by_type("decision")} == {"d1", "d2"}

    def test_get_by_type_unknown(self, store):
        with pytest.raises(UnknownMemoryKind):
            store.get_by_type("fact")

    def test_update_content(self, store):
        mid = store.add_decision("old", embedding=_axis(0))
        assert store.update_content(mid, "new", embedding=_axis(1))
        assert store.get_by_id(mid).text == "new"
        assert store.get_embedding(mid) == _axis(1)

    def test_update_missing(self, store):
        assert store.update_content("MEM-nope", "new") is False

    def test_update_wrong_dimension_leaves_text(self, store):
        mid = store.add_decision("old")
        with pytest.raises(DimensionMismatch):
            store.update_content(mid, "new", embedding=[1.0])
        assert store.get_by_id(mid).text == "old"


class TestListing:
    def test_newest_first(self, store):
        ids = [store.add_decision(f"d{i}") for i in range(5)]
        listed = [r.id for r in store.list_memories()]
        assert listed == list(reversed(ids))

    def test_pagination(self, store):
        ids = [store.add_decision(f"d{i}") for i in range(5)]
        page1 = [r.id for r in store.list_memories(limit=2)]
        page2 = [r.id for r in store.list_memories(limit=2, offset=2)]
        assert page1 == [ids[4], ids[3]]
        assert page2 == [ids[2], ids[1]]

    def test_no_limit(self, store):
        for i in range(60):
            store.add_heuristic(f"h{i}")
        assert len(store.list_memories()) == 50
        assert len(store.list_memories(limit=None)) == 60

    def test_kind_filter(self, store):
        store.add_constraint("c")
        store.add_heuristic("h")
        assert [r.kind for r in store.list_memories(kind="heuristic")] == ["heuristic"]


# ---------------------------------------------------------------------------
# Soft / hard delete
# ---------------------------------------------------------------------------


class TestDelete:
    def test_soft_delete_isolation(self, store):
        mid = store.add_constraint("c", embedding=_axis(0))
        assert store.soft_delete(mid)
        assert store.get_by_id(mid) is None
        assert store.get_by_type("constraint") == []
        assert store.list_memories() == []
        inactive = store.list_memories(include_inactive=True)
        assert [r.id for r in inactive] == [mid]
        assert inactive[0].active is False

    def test_soft_deleted_never_matches_search(self, store):
        mid = store.add_decision("d", embedding=_axis(0))
        store.soft_delete(mid)
        assert store.vector_search(_axis(0)) == []

    def test_soft_delete_twice(self, store):
        mid = store.add_decision("d")
        assert store.soft_delete(mid) is True
        assert store.soft_delete(mid) is False

    def test_soft_delete_missing(self, store):
        assert store.soft_delete("MEM-nope") is False

    def test_hard_delete_cascades(self, store):
        mid = store.add_decision("d", embedding=_axis(0))
        store.record_friction_event(mid, "correction", -0.5)
        assert store.hard_delete(mid)
        assert store.get_embedding(mid) is None
        assert store.get_friction_events(mid) == []
        assert store.list_memories(include_inactive=True) == []

    def test_hard_delete_missing(self, store):
        assert store.hard_delete("MEM-nope") is False


# ---------------------------------------------------------------------------
# Embeddings / vector search
# ---------------------------------------------------------------------------


class TestEmbeddings:
    def test_set_and_get(self, store):
        mid = store.add_decision("d")
        assert store.set_embedding(mid, [0.5, 0.25, 0.0, 1.0])
        assert store.get_embedding(mid) == [0.5, 0.25, 0.0, 1.0]

    @pytest.mark.parametrize("length", [0, DIM - 1, DIM + 1])
    def test_set_wrong_dimension(self, store, length):
        mid = store.add_decision("d")
        with pytest.raises(DimensionMismatch):
            store.set_embedding(mid, [1.0] * length)
        assert store.get_embedding(mid) is None

    def test_add_with_wrong_dimension(self, store):
        with pytest.raises(DimensionMismatch):
            store.add_decision("d", embedding=[1.0] * (DIM + 1))
        assert store.list_memories() == []

    def test_set_on_missing_record(self, store):
        assert store.set_embedding("MEM-nope", _axis(0)) is False

    def test_malformed_blob_reads_as_none(self, store):
        mid = store.add_decision("d", embedding=_axis(0))
        store._conn.execute(
            "UPDATE memory_embeddings SET vector=? WHERE memory_id=?", (b"\x00" * 3, mid),
        )
        assert store.get_embedding(mid) is None

    def test_query_wrong_dimension(self, store):
        with pytest.raises(DimensionMismatch):
            store.vector_search([1.0, 0.0])

    def test_closer_vector_first(self, store):
        near = store.add_decision("near", embedding=[1.0, 0.2, 0.0, 0.0])
        far = store.add_decision("far", embedding=[0.2, 1.0, 0.0, 0.0])
        results = store.vector_search(_axis(0), limit=2)
        assert [r.id for r, _ in results] == [near, far]
        assert results[0][1] > results[1][1]

    def test_kind_filter(self, store):
        store.add_constraint("c", embedding=_axis(0))
        d = store.add_decision("d", embedding=_axis(0))
        results = store.vector_search(_axis(0), kinds="decision")
        assert [r.id for r, _ in results] == [d]

    def test_records_without_embedding_skipped(self, store):
        store.add_decision("no vector")
        assert store.vector_search(_axis(0)) == []

    def test_limit(self, store):
        for i in range(5):
            store.add_decision(f"d{i}", embedding=_axis(i % DIM))
        assert len(store.vector_search(_axis(0), limit=3)) == 3


# ---------------------------------------------------------------------------
# Friction
# ---------------------------------------------------------------------------


class TestFriction:
    def test_event_moves_score(self, store):
        mid = store.add_decision("d")
        eid = store.record_friction_event(mid, "acceptance", 0.5, "helpful")
        assert eid.startswith("FRC-")
        assert store.get_by_id(mid).friction_score == pytest.approx(0.5)
        events = store.get_friction_events(mid)
        assert [(e.event_type, e.delta, e.note) for e in events] == [
            ("acceptance", 0.5, "helpful")
        ]

    def test_clamp_high(self, store):
        mid = store.add_decision("d")
        store.record_friction_event(mid, "acceptance", 8.0)
        store.record_friction_event(mid, "acceptance", 5.0)
        assert store.get_by_id(mid).friction_score == FRICTION_MAX
        events = store.get_friction_events(mid)
        assert events[1].delta == 5.0
        assert events[1].applied_delta == pytest.approx(2.0)

    def test_clamp_low(self, store):
        mid = store.add_decision("d")
        for _ in range(30):
            store.record_friction_event(mid, "rejection", -1.0)
        assert store.get_by_id(mid).friction_score == FRICTION_MIN

    def test_balance_matches_score(self, store):
        mid = store.add_decision("d")
        for delta in [3.0, 9.0, -4.5, -20.0, 0.25, 6.0]:
            store.record_friction_event(mid, "iteration", delta)
            score = store.get_by_id(mid).friction_score
            assert FRICTION_MIN <= score <= FRICTION_MAX
            assert store.friction_balance(mid) == pytest.approx(score)

    def test_balance_missing(self, store):
        assert store.friction_balance("MEM-nope") is None

    def test_missing_memory(self, store):
        assert store.record_friction_event("MEM-nope", "correction", -0.5) is None

    def test_inactive_memory(self, store):
        mid = store.add_decision("d")
        store.soft_delete(mid)
        assert store.record_friction_event(mid, "correction", -0.5) is None

    def test_unknown_event_type(self, store):
        mid = store.add_decision("d")
        with pytest.raises(ValidationError):
            store.record_friction_event(mid, "like", 1.0)

    @pytest.mark.parametrize("delta", [float("nan"), float("inf"), "1", True])
    def test_bad_delta(self, store, delta):
        mid = store.add_decision("d")
        with pytest.raises(ValidationError):
            store.record_friction_event(mid, "iteration", delta)

    def test_imported_score_is_balanced(self, store):
        rec = MemoryRecord(kind="decision", text="d", friction_score=4.0)
        store.insert_record(rec)
        assert store.friction_balance(rec.id) == pytest.approx(4.0)
        store.record_friction_event(rec.id, "correction", -0.5)
        assert store.friction_balance(rec.id) == pytest.approx(3.5)


class TestDecay:
    def test_halves_at_one_day_half_life(self, store):
        mid = store.add_decision("d")
        store.record_friction_event(mid, "acceptance", 4.0)
        assert store.apply_friction_decay(1.0) == 1
        assert store.get_by_id(mid).friction_score == pytest.approx(2.0)

    @pytest.mark.parametrize("start", [6.0, -6.0, 0.01, -0.01])
    def test_monotonic_no_sign_flip(self, store, start):
        mid = store.add_decision("d")
        store.record_friction_event(mid, "iteration", start)
        before = store.get_by_id(mid).friction_score
        store.apply_friction_decay(30.0)
        after = store.get_by_id(mid).friction_score
        assert abs(after) < abs(before)
        assert (after > 0) == (before > 0)

    def test_zero_scores_untouched(self, store):
        store.add_decision("d")
        assert store.apply_friction_decay(30.0) == 0

    def test_balance_after_decay(self, store):
        mid = store.add_decision("d")
        store.record_friction_event(mid, "acceptance", 5.0)
        store.apply_friction_decay(7.0)
        store.record_friction_event(mid, "correction", -1.0)
        score = store.get_by_id(mid).friction_score
        assert store.friction_balance(mid) == pytest.approx(score)

    @pytest.mark.parametrize(
        "half_life", [0, -1.0, float("nan"), float("inf"), "7", True, None]
    )
    def test_bad_half_life(self, store, half_life):
        with pytest.raises(ValidationError):
            store.apply_friction_decay(half_life)


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


class TestStats:
    def test_empty(self, store):
        stats = store.get_stats()
        assert stats.total_count == 0
        assert stats.average_friction_score == 0.0
        assert stats.oldest_created_at is None

    def test_counts(self, store):
        store.add_constraint("c1")
        store.add_constraint("c2")
        d = store.add_decision("d")
        h = store.add_heuristic("h")
        store.soft_delete(h)
        store.record_friction_event(d, "acceptance", 3.0)
        stats = store.get_stats()
        assert stats.total_count == 3
        assert stats.per_kind_counts == {"constraint": 2, "decision": 1, "heuristic": 0}
        assert stats.total_friction_events == 1
        assert stats.average_friction_score == pytest.approx(1.0)
        assert stats.oldest_created_at <= stats.newest_created_at


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_lifecycle(self, store):
        sid = store.start_session()
        assert store.increment_session_counters(sid, prompts=1, memory_hits=3)
        store.increment_session_counters(sid, prompts=1)
        s = store.get_session(sid)
        assert s.prompt_count == 2
        assert s.memory_hit_count == 3
        assert s.ended_at is None
        assert store.end_session(sid) is True
        assert store.end_session(sid) is False
        assert store.get_session(sid).ended_at is not None

    def test_missing_session(self, store):
        assert store.get_session("SES-nope") is None
        assert store.increment_session_counters("SES-nope", prompts=1) is False

    def test_session_memories(self, store):
        sid = store.start_session()
        a = store.add_constraint("a")
        b = store.add_decision("b")
        assert store.record_session_memory(sid, a, 1.0)
        assert store.record_session_memory(sid, b, 0.6, was_helpful=True)
        linked = store.get_session_memories(sid)
        assert [m.memory_id for m in linked] == [a, b]
        assert linked[1].was_helpful is True
        assert linked[0].was_helpful is None

    def test_session_memory_unknown_ids(self, store):
        sid = store.start_session()
        assert store.record_session_memory(sid, "MEM-nope", 0.5) is False
        assert store.record_session_memory("SES-nope", store.add_decision("d"), 0.5) is False


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransactions:
    def test_run_in_transaction_rollback(self, store):
        def work():
            store.add_decision("never committed")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.run_in_transaction(work)
        assert store.get_by_type("decision") == []

    def test_run_in_transaction_commit(self, store):
        ids = store.run_in_transaction(
            lambda: [store.add_decision("a"), store.add_decision("b")]
        )
        assert len(ids) == 2
        assert len(store.get_by_type("decision")) == 2

    def test_nested_savepoint(self, store):
        with store.transaction():
            store.add_decision("outer")
            with pytest.raises(ValueError):
                with store.transaction():
                    store.add_decision("inner")
                    raise ValueError("inner fails")
        assert [r.text for r in store.get_by_type("decision")] == ["outer"]

    def test_locked_database(self, tmp_path):
        path = tmp_path / "memory.db"
        holder = MemoryStore(path, dimension=DIM)
        waiter = MemoryStore(path, dimension=DIM, busy_timeout_ms=50)
        try:
            with holder.transaction():
                holder.add_decision("held")
                with pytest.raises(StoreLockedError):
                    waiter.add_decision("blocked")
        finally:
            holder.close()
            waiter.close()
        s = MemoryStore(path, dimension=DIM)
        assert [r.text for r in s.get_by_type("decision")] == ["held"]
        s.close()


# ---------------------------------------------------------------------------
# Several processes on one database
# ---------------------------------------------------------------------------


class TestMultiProcess:
    N_PROCS = 6

    def test_fresh_database_opened_concurrently(self, tmp_path):
        path = str(tmp_path / "memory.db")
        ctx = multiprocessing.get_context("spawn")
        barrier = ctx.Barrier(self.N_PROCS)
        results = ctx.Queue()
        procs = [
            ctx.Process(target=_open_fresh_store, args=(path, results, barrier))
            for _ in range(self.N_PROCS)
        ]
        for p in procs:
            p.start()
        errors = [results.get(timeout=60) for _ in procs]
        for p in procs:
            p.join(timeout=60)
        assert errors == [None] * self.N_PROCS
        s = MemoryStore(path, dimension=DIM)
        assert s.applied_migrations() == ["001_initial", "002_friction_accounting"]
        s.close()

    def test_friction_from_several_processes(self, disk_store):
        mid = disk_store.add_decision("Use PostgreSQL")
        ctx = multiprocessing.get_context("spawn")
        barrier = ctx.Barrier(4)
        procs = [
            ctx.Process(
                target=_record_acceptances,
                args=(disk_store.db_path, mid, 50, barrier),
            )
            for _ in range(4)
        ]
        for p in procs:
            p.start()
        for p in procs:
            p.join(timeout=120)
        assert [p.exitcode for p in procs] == [0, 0, 0, 0]
        assert len(disk_store.get_friction_events(mid)) == 200
        assert disk_store.get_by_id(mid).friction_score == pytest.approx(2.0)
        assert disk_store.friction_balance(mid) == pytest.approx(2.0)
