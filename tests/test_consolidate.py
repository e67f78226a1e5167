"""Tests for memory/consolidate.py - dedup, contradiction flags, pruning."""

import pytest

from conftest import NOW, at_cosine, days_ago, unit


@pytest.fixture
def consolidator(store, config):
    from patternbank.memory.consolidate import Consolidator
    return Consolidator(store, config)


class TestCadence:

    @pytest.mark.parametrize("completed,due", [(0, False), (19, False), (20, True), (21, False), (40, True)])
    def test_due(self, consolidator, completed, due):
        assert consolidator.due(completed) is due


class TestDedup:

    def test_merges_into_higher_confidence(self, store, consolidator, make_pattern):
        make_pattern("A", confidence=0.8, usage_count=10, success_count=6)
        make_pattern("B", embedding=unit(1.0, 0.05, 0.0), confidence=0.6, usage_count=5)

        report = consolidator.run("test", now=NOW)

        assert report.merged == [{"winner": "A", "loser": "B", "similarity": pytest.approx(0.9988, abs=1e-3)}]
        survivor = store.get_pattern("test", "A")
        assert survivor.confidence == pytest.approx(0.8)
        assert survivor.usage_count == 15
        assert [p.id for p in store.get_candidates("test")] == ["A"]

    def test_equal_confidence_keeps_more_used(self, store, consolidator, make_pattern):
        make_pattern("A", confidence=0.7, usage_count=2)
        make_pattern("B", embedding=unit(1.0, 0.05, 0.0), confidence=0.7, usage_count=9)

        consolidator.run("test", now=NOW)
        assert [p.id for p in store.get_candidates("test")] == ["B"]
        assert store.get_pattern("test", "B").usage_count == 11

    def test_full_tie_keeps_smaller_id(self, store, consolidator, make_pattern):
        make_pattern("b")
        make_pattern("a", embedding=unit(1.0, 0.05, 0.0))

        consolidator.run("test", now=NOW)
        assert [p.id for p in store.get_candidates("test")] == ["a"]

    def test_merged_pattern_not_reused_in_pass(self, store, consolidator, make_pattern):
        """A chain of duplicates collapses into one survivor."""
        make_pattern("A", confidence=0.9)
        make_pattern("B", embedding=unit(1.0, 0.2, 0.0), confidence=0.6)
        make_pattern("C", embedding=unit(1.0, 0.4, 0.0), confidence=0.5)

        report = consolidator.run("test", now=NOW)

        losers = [m["loser"] for m in report.merged]
        assert sorted(losers) == ["B", "C"]
        assert len(set(losers)) == len(losers)
        assert [p.id for p in store.get_candidates("test")] == ["A"]

    def test_below_threshold_untouched(self, store, consolidator, make_pattern):
        make_pattern("A")
        make_pattern("B", embedding=at_cosine(0.9))

        assert consolidator.run("test", now=NOW).merged == []
        assert len(store.get_candidates("test")) == 2

    def test_namespaces_isolated(self, store, consolidator, make_pattern):
        make_pattern("A", namespace="one")
        make_pattern("B", namespace="two")

        consolidator.run("one", now=NOW)
        assert store.has_pattern("two", "B")


class TestContradictions:

    def _seed(self, store, make_pattern, make_trajectory, query_b="add caching to the api"):
        make_pattern("A")
        make_pattern("B", embedding=at_cosine(0.8))
        store.put_trajectory(make_trajectory("t1", used=["A"], verdict="success",
                                             query_text="add caching to the API"))
        store.put_trajectory(make_trajectory("t2", used=["B"], verdict="failure",
                                             query_text=query_b))

    def test_flags_both_without_deleting(self, store, consolidator, make_pattern, make_trajectory):
        self._seed(store, make_pattern, make_trajectory)

        report = consolidator.run("test", now=NOW)

        assert report.flagged == [{"a": "A", "b": "B", "similarity": pytest.approx(0.8, abs=1e-3)}]
        a, b = store.get_pattern("test", "A"), store.get_pattern("test", "B")
        assert a.contradiction_flagged and b.contradiction_flagged
        assert (a.confidence, b.confidence) == (0.5, 0.5)

    def test_unrelated_queries_not_flagged(self, store, consolidator, make_pattern, make_trajectory):
        self._seed(store, make_pattern, make_trajectory, query_b="rotate the log files nightly")

        assert consolidator.run("test", now=NOW).flagged == []

    def test_query_embeddings_compared_when_present(self, store, consolidator, make_pattern,
                                                    make_trajectory):
        make_pattern("A")
        make_pattern("B", embedding=at_cosine(0.8))
        store.put_trajectory(make_trajectory("t1", used=["A"], verdict="success",
                                             query_text="speed up search",
                                             query_embedding=(1.0, 0.0)))
        store.put_trajectory(make_trajectory("t2", used=["B"], verdict="failure",
                                             query_text="make lookups faster",
                                             query_embedding=unit(1.0, 0.2)))

        assert [(f["a"], f["b"]) for f in consolidator.run("test", now=NOW).flagged] == [("A", "B")]

    def test_same_verdicts_not_flagged(self, store, consolidator, make_pattern, make_trajectory):
        make_pattern("A")
        make_pattern("B", embedding=at_cosine(0.8))
        store.put_trajectory(make_trajectory("t1", used=["A"], verdict="success", query_text="q"))
        store.put_trajectory(make_trajectory("t2", used=["B"], verdict="success", query_text="q"))

        assert consolidator.run("test", now=NOW).flagged == []

    def test_shared_trajectory_not_evidence(self, store, consolidator, make_pattern, make_trajectory):
        """Trajectories that used both patterns say nothing about which one is wrong."""
        make_pattern("A")
        make_pattern("B", embedding=at_cosine(0.8))
        store.put_trajectory(make_trajectory("t1", used=["A", "B"], verdict="success", query_text="q"))
        store.put_trajectory(make_trajectory("t2", used=["A", "B"], verdict="failure", query_text="q"))

        assert consolidator.run("test", now=NOW).flagged == []

    def test_outside_band_not_flagged(self, store, consolidator, make_pattern, make_trajectory):
        make_pattern("A")
        make_pattern("B", embedding=at_cosine(0.5))
        store.put_trajectory(make_trajectory("t1", used=["A"], verdict="success", query_text="q"))
        store.put_trajectory(make_trajectory("t2", used=["B"], verdict="failure", query_text="q"))

        assert consolidator.run("test", now=NOW).flagged == []


class TestPrune:

    def test_prunes_only_when_all_conditions_hold(self, store, consolidator, make_pattern):
        # Spread embeddings so nothing is deduplicated
        make_pattern("stale", embedding=(1.0, 0.0, 0.0), confidence=0.05, usage_count=0,
                     created_at=days_ago(100))
        make_pattern("used", embedding=(0.0, 1.0, 0.0), confidence=0.05, usage_count=5,
                     created_at=days_ago(100))
        make_pattern("fresh", embedding=(0.0, 0.0, 1.0), confidence=0.05, usage_count=0,
                     created_at=days_ago(10))
        make_pattern("good", embedding=unit(-1.0, 0.0, 0.0), confidence=0.5, usage_count=0,
                     created_at=days_ago(200))

        report = consolidator.run("test", now=NOW)

        assert report.pruned == ["stale"]
        assert sorted(p.id for p in store.get_candidates("test")) == ["fresh", "good", "used"]

    def test_boundary_values(self, store, consolidator, make_pattern):
        make_pattern("edge", embedding=(1.0, 0.0, 0.0), confidence=0.10, usage_count=1,
                     success_count=0, created_at=days_ago(91))
        make_pattern("young", embedding=(0.0, 1.0, 0.0), confidence=0.10, usage_count=1,
                     created_at=days_ago(90))

        assert consolidator.run("test", now=NOW).pruned == ["edge"]


class TestRun:

    def test_phases_in_order(self, store, consolidator, make_pattern):
        """A merged-away pattern is never a pruning candidate, and merge max() rescues it."""
        make_pattern("weak", confidence=0.05, usage_count=0, created_at=days_ago(200))
        make_pattern("strong", embedding=unit(1.0, 0.05, 0.0), confidence=0.7, usage_count=1,
                     created_at=days_ago(200))

        report = consolidator.run("test", now=NOW)

        assert report.merged[0]["winner"] == "strong"
        assert report.pruned == []

    def test_marks_trajectories(self, store, consolidator, make_trajectory):
        store.put_trajectory(make_trajectory("t1"))
        store.put_trajectory(make_trajectory("t2"))

        assert consolidator.run("test", now=NOW).trajectories_marked == 2
        assert store.list_trajectories("test", unconsolidated_only=True) == []

    def test_skipped_while_another_pass_runs(self, store, consolidator):
        from patternbank.errors import ConsolidationSkipped

        assert store.try_acquire_consolidation("test", "other-worker", 600, now=NOW)
        with pytest.raises(ConsolidationSkipped) as exc:
            consolidator.run("test", now=NOW)
        assert exc.value.holder == "other-worker"

    def test_lease_released_on_error(self, store, consolidator, make_pattern, monkeypatch):
        make_pattern("A")

        def boom(*args, **kwargs):
            raise RuntimeError("disk gone")

        monkeypatch.setattr(store, "get_candidates", boom)
        with pytest.raises(RuntimeError):
            consolidator.run("test", now=NOW)
        assert store.consolidation_holder("test") is None

    def test_dry_run_writes_nothing(self, store, consolidator, make_pattern, make_trajectory):
        make_pattern("A", confidence=0.8)
        make_pattern("B", embedding=unit(1.0, 0.05, 0.0))
        make_pattern("old", embedding=(0.0, 1.0, 0.0), confidence=0.05, created_at=days_ago(120))
        store.put_trajectory(make_trajectory("t1"))

        report = consolidator.run("test", now=NOW, dry_run=True)

        assert report.dry_run
        assert [m["loser"] for m in report.merged] == ["B"]
        assert report.pruned == ["old"]
        assert len(store.get_candidates("test")) == 3
        assert len(store.list_trajectories("test", unconsolidated_only=True)) == 1

    def test_prune_skips_pattern_reinforced_mid_pass(self, store, consolidator, make_pattern,
                                                      monkeypatch):
        """Row versions guard deletes against concurrent reinforcement."""
        make_pattern("stale", confidence=0.05, created_at=days_ago(100))
        original = store.delete_pattern

        def reinforced_first(namespace, pattern_id, expected_version=None):
            store.update_confidence(namespace, pattern_id, 0.06, 1, 1)
            return original(namespace, pattern_id, expected_version=expected_version)

        monkeypatch.setattr(store, "delete_pattern", reinforced_first)
        report = consolidator.run("test", now=NOW)

        assert report.pruned == []
        assert report.conflicts == 1
        assert store.has_pattern("test", "stale")
