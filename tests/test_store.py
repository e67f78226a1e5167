"""Tests for memory/store.py - durable patterns, links and trajectories.

Critical path: every other component reads and writes through the store,
so its validation, atomicity and versioning rules are tested directly.
"""

import pytest

from conftest import NOW, days_ago


class TestPutPattern:
    """Insert, update and validation."""

    def test_insert_and_get(self, store, make_pattern):
        """Stored pattern round-trips with its learned state."""
        make_pattern("p1", content="Use retries for flaky HTTP calls", domain="http",
                     tags=["net"], confidence=0.7, usage_count=3, success_count=2)

        p = store.get_pattern("test", "p1")
        assert p.content == "Use retries for flaky HTTP calls"
        assert p.domain == "http"
        assert p.tags == ["net"]
        assert p.confidence == pytest.approx(0.7)
        assert (p.usage_count, p.success_count) == (3, 2)
        assert p.embedding == pytest.approx((1.0, 0.0, 0.0))
        assert p.version == 0
        assert p.contradiction_flagged is False

    def test_ids_scoped_to_namespace(self, store, make_pattern):
        """Same id in two namespaces is two patterns."""
        make_pattern("p1", namespace="a", content="alpha")
        make_pattern("p1", namespace="b", content="beta")

        assert store.get_pattern("a", "p1").content == "alpha"
        assert store.get_pattern("b", "p1").content == "beta"

    def test_update_keeps_learned_state(self, store, make_pattern):
        """Updating content never touches confidence or counters."""
        from dataclasses import replace

        p = make_pattern("p1", confidence=0.8, usage_count=4, success_count=4)
        edited = replace(p, content="revised text", confidence=0.2, usage_count=0, success_count=0)
        updated = store.put_pattern(edited)

        assert updated.content == "revised text"
        assert updated.confidence == pytest.approx(0.8)
        assert updated.usage_count == 4
        assert updated.version == 1

    def test_stale_update_conflicts(self, store, make_pattern):
        """Update from an outdated read raises ConflictError."""
        from dataclasses import replace
        from patternbank.errors import ConflictError

        p = make_pattern("p1")
        store.put_pattern(replace(p, content="first edit"))

        with pytest.raises(ConflictError):
            store.put_pattern(replace(p, content="second edit from stale copy"))
        assert store.get_pattern("test", "p1").content == "first edit"

    @pytest.mark.parametrize("confidence", [0.0, 0.04, 0.96, 1.5])
    def test_rejects_confidence_out_of_bounds(self, store, confidence):
        from patternbank.db.schema import Pattern
        from patternbank.errors import ValidationError

        with pytest.raises(ValidationError):
            store.put_pattern(Pattern(id="p", namespace="test", content="x",
                                      embedding=(1.0, 0.0), confidence=confidence))
        assert not store.has_pattern("test", "p")

    def test_rejects_empty_content(self, store):
        from patternbank.db.schema import Pattern
        from patternbank.errors import ValidationError

        with pytest.raises(ValidationError):
            store.put_pattern(Pattern(id="p", namespace="test", content="   ", embedding=(1.0,)))

    @pytest.mark.parametrize("embedding", [(), (0.0, 0.0, 0.0), (float("nan"), 1.0, 0.0)])
    def test_rejects_unusable_embedding(self, store, embedding):
        from patternbank.db.schema import Pattern
        from patternbank.errors import ValidationError

        with pytest.raises(ValidationError):
            store.put_pattern(Pattern(id="p", namespace="test", content="x", embedding=embedding))

    def test_dimension_fixed_by_first_pattern(self, store, make_pattern):
        """Once a dimension is stored, other dimensions are rejected."""
        from patternbank.errors import ValidationError

        make_pattern("p1", embedding=(1.0, 0.0, 0.0))
        assert store.embedding_dim == 3
        with pytest.raises(ValidationError):
            make_pattern("p2", embedding=(1.0, 0.0))

    def test_missing_pattern_raises_not_found(self, store):
        from patternbank.errors import NotFoundError

        with pytest.raises(NotFoundError):
            store.get_pattern("test", "nope")


class TestCandidates:

    def test_filters_by_namespace_and_domain(self, store, make_pattern):
        make_pattern("b", domain="db")
        make_pattern("a", domain="http")
        make_pattern("c", namespace="other")

        assert [p.id for p in store.get_candidates("test")] == ["a", "b"]
        assert [p.id for p in store.get_candidates("test", domain="db")] == ["b"]
        assert [p.id for p in store.get_candidates("test", limit=1)] == ["a"]
        assert store.get_candidates("empty") == []


class TestUpdateConfidence:

    def test_applies_deltas_and_bumps_version(self, store, make_pattern):
        make_pattern("p1")
        p = store.update_confidence("test", "p1", 0.6, usage_delta=1, success_delta=1,
                                    used_at=NOW)

        assert p.confidence == pytest.approx(0.6)
        assert (p.usage_count, p.success_count) == (1, 1)
        assert p.last_used_at == NOW.isoformat()
        assert p.version == 1

    def test_same_trajectory_applied_once(self, store, make_pattern):
        from patternbank.errors import AlreadyReinforcedError

        make_pattern("p1")
        store.update_confidence("test", "p1", 0.6, 1, 1, trajectory_id="t1")
        with pytest.raises(AlreadyReinforcedError):
            store.update_confidence("test", "p1", 0.72, 1, 1, trajectory_id="t1")

        p = store.get_pattern("test", "p1")
        assert p.confidence == pytest.approx(0.6)
        assert p.usage_count == 1
        assert store.was_reinforced("test", "t1", "p1")

    def test_version_mismatch_conflicts_without_writing(self, store, make_pattern):
        from patternbank.errors import ConflictError

        make_pattern("p1")
        with pytest.raises(ConflictError):
            store.update_confidence("test", "p1", 0.6, 1, 1, expected_version=7, trajectory_id="t1")

        # Ledger row rolled back with the failed update
        assert not store.was_reinforced("test", "t1", "p1")
        assert store.get_pattern("test", "p1").usage_count == 0

    def test_rejects_out_of_bounds(self, store, make_pattern):
        from patternbank.errors import ValidationError

        make_pattern("p1")
        with pytest.raises(ValidationError):
            store.update_confidence("test", "p1", 0.99)

    def test_missing_pattern(self, store):
        from patternbank.errors import NotFoundError

        with pytest.raises(NotFoundError):
            store.update_confidence("test", "ghost", 0.5, 1)


class TestMergeAndDelete:

    def test_merge_conserves_counts(self, store, make_pattern):
        """Survivor gets summed counts, max confidence, and loser disappears."""
        make_pattern("a", confidence=0.8, usage_count=10, success_count=7, last_used_at=days_ago(5))
        make_pattern("b", confidence=0.6, usage_count=5, success_count=1, last_used_at=days_ago(1),
                     contradiction_flagged=True)

        merged = store.merge_patterns("test", "a", "b")

        assert merged.confidence == pytest.approx(0.8)
        assert merged.usage_count == 15
        assert merged.success_count == 8
        assert merged.last_used_at == days_ago(1)
        assert merged.contradiction_flagged is True
        assert [p.id for p in store.get_candidates("test")] == ["a"]

    def test_merge_rewrites_links(self, store, make_pattern):
        from patternbank.db.schema import PatternLink

        for pid in ("a", "b", "c", "d"):
            make_pattern(pid)
        store.put_link(PatternLink("test", "b", "c", "requires"))
        store.put_link(PatternLink("test", "d", "b", "causes"))
        store.put_link(PatternLink("test", "a", "c", "requires"))  # duplicate after rewrite
        store.put_link(PatternLink("test", "a", "b", "related_to"))  # self-link after rewrite

        store.merge_patterns("test", "a", "b")

        links = {(l.from_id, l.to_id, l.relation) for l in store.get_links("test")}
        assert links == {("a", "c", "requires"), ("d", "a", "causes")}

    def test_merge_moves_reinforcement_records(self, store, make_pattern):
        make_pattern("a")
        make_pattern("b")
        store.update_confidence("test", "b", 0.6, 1, 1, trajectory_id="t1")

        store.merge_patterns("test", "a", "b")
        assert store.was_reinforced("test", "t1", "a")

    def test_merge_missing_raises(self, store, make_pattern):
        from patternbank.errors import NotFoundError

        make_pattern("a")
        with pytest.raises(NotFoundError):
            store.merge_patterns("test", "a", "ghost")
        assert store.has_pattern("test", "a")

    def test_delete_removes_links(self, store, make_pattern):
        from patternbank.db.schema import PatternLink

        make_pattern("a")
        make_pattern("b")
        store.put_link(PatternLink("test", "a", "b", "enhances"))

        store.delete_pattern("test", "b")
        assert not store.has_pattern("test", "b")
        assert store.get_links("test") == []

    def test_delete_with_stale_version_conflicts(self, store, make_pattern):
        from patternbank.errors import ConflictError

        make_pattern("a")
        store.update_confidence("test", "a", 0.6, 1, 1)
        with pytest.raises(ConflictError):
            store.delete_pattern("test", "a", expected_version=0)
        assert store.has_pattern("test", "a")


class TestLinks:

    def test_link_requires_existing_patterns(self, store, make_pattern):
        from patternbank.db.schema import PatternLink
        from patternbank.errors import NotFoundError

        make_pattern("a")
        with pytest.raises(NotFoundError):
            store.put_link(PatternLink("test", "a", "ghost", "requires"))

    def test_rejects_unknown_relation(self, store, make_pattern):
        from patternbank.db.schema import PatternLink
        from patternbank.errors import ValidationError

        make_pattern("a")
        make_pattern("b")
        with pytest.raises(ValidationError):
            store.put_link(PatternLink("test", "a", "b", "solves"))

    def test_get_links_by_pattern_and_relation(self, store, make_pattern):
        from patternbank.db.schema import PatternLink

        for pid in ("a", "b", "c"):
            make_pattern(pid)
        store.put_link(PatternLink("test", "a", "b", "requires"))
        store.put_link(PatternLink("test", "c", "a", "causes"))
        store.put_link(PatternLink("test", "b", "c", "enhances"))

        assert len(store.get_links("test", "a")) == 2
        assert [l.to_id for l in store.get_links("test", relation="enhances")] == ["c"]


class TestTrajectories:

    def test_put_assigns_seq_and_is_idempotent(self, store, make_trajectory):
        t1 = store.put_trajectory(make_trajectory("t1", used=["p1", "p2"]))
        t2 = store.put_trajectory(make_trajectory("t2"))
        again = store.put_trajectory(make_trajectory("t1", verdict="failure"))

        assert t2.seq > t1.seq
        assert again.seq == t1.seq
        assert again.verdict == "success"
        assert again.used_pattern_ids == ["p1", "p2"]

    def test_list_since_seq(self, store, make_trajectory):
        stored = [store.put_trajectory(make_trajectory(f"t{i}")) for i in range(4)]

        after = store.list_trajectories("test", since_seq=stored[1].seq)
        assert [t.id for t in after] == ["t2", "t3"]
        assert [t.id for t in store.list_trajectories("test", limit=2)] == ["t0", "t1"]

    def test_mark_consolidated(self, store, make_trajectory):
        stored = [store.put_trajectory(make_trajectory(f"t{i}")) for i in range(3)]

        assert store.mark_consolidated("test", up_to_seq=stored[1].seq) == 2
        pending = store.list_trajectories("test", unconsolidated_only=True)
        assert [t.id for t in pending] == ["t2"]

    def test_trajectories_using(self, store, make_trajectory):
        store.put_trajectory(make_trajectory("t1", used=["p1", "p10"]))
        store.put_trajectory(make_trajectory("t2", used=["p10"]))
        store.put_trajectory(make_trajectory("t3", used=["p1"], namespace="other"))

        assert [t.id for t in store.trajectories_using("test", "p1")] == ["t1"]
        assert [t.id for t in store.trajectories_using("test", "p10")] == ["t1", "t2"]
        assert store.trajectories_using("test", "p") == []

    @pytest.mark.parametrize("fields", [
        {"verdict": "maybe"},
        {"verdict": None},
        {"verdict_confidence": 1.5},
        {"query_text": ""},
    ])
    def test_rejects_malformed(self, store, make_trajectory, fields):
        from patternbank.errors import ValidationError

        with pytest.raises(ValidationError):
            store.put_trajectory(make_trajectory("bad", **fields))
        assert store.list_trajectories("test") == []


class TestConsolidationLease:

    def test_one_holder_at_a_time(self, store):
        assert store.try_acquire_consolidation("test", "w1", 60, now=NOW)
        assert not store.try_acquire_consolidation("test", "w2", 60, now=NOW)
        assert store.try_acquire_consolidation("other", "w2", 60, now=NOW)

        assert store.release_consolidation("test", "w1")
        assert store.try_acquire_consolidation("test", "w2", 60, now=NOW)

    def test_expired_lease_is_taken_over(self, store):
        from datetime import timedelta

        assert store.try_acquire_consolidation("test", "crashed", 60, now=NOW)
        assert store.try_acquire_consolidation("test", "w2", 60, now=NOW + timedelta(seconds=61))
        assert store.consolidation_holder("test") == "w2"


class TestStats:

    def test_counts(self, store, make_pattern, make_trajectory):
        make_pattern("a", confidence=0.6, usage_count=2, success_count=1)
        make_pattern("b", confidence=0.4, contradiction_flagged=True)
        store.put_trajectory(make_trajectory("t1", verdict="failure"))

        s = store.stats("test")
        assert s["patterns"] == 2
        assert s["avg_confidence"] == pytest.approx(0.5)
        assert s["flagged_patterns"] == 1
        assert s["unused_patterns"] == 1
        assert s["by_verdict"] == {"success": 0, "failure": 1, "partial": 0}
        assert s["pending_consolidation"] == 1
        assert s["embedding_dim"] == 3


class TestSchema:

    def test_reopen_keeps_data(self, tmp_path):
        from patternbank.db.connection import SCHEMA_VERSION, current_version
        from patternbank.db.schema import Pattern
        from patternbank.memory.store import PatternStore

        path = tmp_path / "reopen.db"
        with PatternStore(path) as s:
            s.put_pattern(Pattern(id="p", namespace="test", content="x", embedding=(1.0, 0.0)))
        with PatternStore(path) as s:
            assert s.has_pattern("test", "p")
            assert current_version(s.db) == SCHEMA_VERSION

    def test_migrates_v1_database(self, tmp_path):
        """A store created before contradiction flags and versions opens cleanly."""
        import sqlite3
        from patternbank.memory.store import PatternStore

        path = tmp_path / "v1.db"
        db = sqlite3.connect(path)
        db.executescript("""
            CREATE TABLE schema_version (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL);
            INSERT INTO schema_version VALUES (1, '2024-01-01');
            CREATE TABLE patterns (
                namespace TEXT NOT NULL, id TEXT NOT NULL, content TEXT NOT NULL,
                domain TEXT NOT NULL DEFAULT '', tags TEXT NOT NULL DEFAULT '[]',
                embedding BLOB NOT NULL, confidence REAL NOT NULL DEFAULT 0.5,
                usage_count INTEGER NOT NULL DEFAULT 0, success_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL, last_used_at TEXT,
                PRIMARY KEY (namespace, id)
            );
            CREATE TABLE trajectories (
                seq INTEGER PRIMARY KEY AUTOINCREMENT, id TEXT NOT NULL, namespace TEXT NOT NULL,
                query_text TEXT NOT NULL, used_pattern_ids TEXT NOT NULL DEFAULT '[]',
                verdict TEXT NOT NULL, verdict_confidence REAL NOT NULL DEFAULT 0,
                timestamp TEXT NOT NULL, consolidated INTEGER NOT NULL DEFAULT 0,
                UNIQUE (namespace, id)
            );
        """)
        db.execute(
            "INSERT INTO patterns (namespace, id, content, embedding, created_at) VALUES (?,?,?,?,?)",
            ("test", "old", "legacy pattern", b"\x00\x00\x80\x3f", "2024-01-01T00:00:00+00:00")
        )
        db.commit()
        db.close()

        with PatternStore(path) as s:
            p = s.get_pattern("test", "old")
            assert p.contradiction_flagged is False
            assert p.version == 0
            assert p.embedding == (1.0,)
            s.flag_contradiction("test", ["old"])
            assert s.get_pattern("test", "old").contradiction_flagged is True
