"""Tests for run history stores."""

import pytest

from phase_shepherd.history import (
    InMemoryRunHistory,
    JsonlRunHistory,
    RunRecord,
    TransitionRecord,
    _HistoryQueries,
)


@pytest.fixture(params=["memory", "jsonl"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRunHistory()
    return JsonlRunHistory(tmp_path / "history")


def run(run_id, phase, issue_id="bd-1", **kwargs):
    return RunRecord(run_id=run_id, issue_id=issue_id, phase=phase, **kwargs)


class TestRunQueries:
    """count_runs, get_runs and duration stats."""

    def test_count_runs(self, store):
        store.record_run(run("r1", "plan"))
        store.record_run(run("r2", "plan", status="failed"))
        store.record_run(run("r3", "plan", issue_id="bd-2"))

        assert store.count_runs("bd-1", "plan") == 2
        assert store.count_runs("bd-1", "plan", status="failed") == 1
        assert store.count_runs("bd-1", "test") == 0

    def test_get_runs_keeps_most_recent(self, store):
        for i in range(4):
            store.record_run(run(f"r{i}", "implement", attempt_number=i + 1))

        assert [r.run_id for r in store.get_runs("bd-1", limit=2)] == ["r2", "r3"]
        assert len(store.get_runs("bd-1")) == 4
        assert store.get_runs("bd-1", limit=0) == []

    def test_duration_stats(self, store):
        store.record_run(run("r1", "test", duration_ms=100))
        store.record_run(run("r2", "test", duration_ms=300))

        stats = store.get_phase_duration_stats("bd-1", "test")

        assert stats.avg_ms == 200
        assert stats.total_ms == 400
        assert stats.visit_count == 2

    def test_duration_stats_without_runs(self, store):
        stats = store.get_phase_duration_stats("bd-1", "test")

        assert stats.visit_count == 0
        assert stats.avg_ms == 0.0


class TestTransitionQueries:
    """count_transitions and get_transition_history."""

    def test_count_is_directional(self, store):
        store.record_transition(TransitionRecord("bd-1", "test", "implement"))
        store.record_transition(TransitionRecord("bd-1", "test", "implement"))
        store.record_transition(TransitionRecord("bd-1", "implement", "test"))

        assert store.count_transitions("bd-1", "test", "implement") == 2
        assert store.count_transitions("bd-1", "implement", "test") == 1

    def test_history_oldest_first(self, store):
        for from_phase, to_phase in [("a", "b"), ("b", "c"), ("c", "d")]:
            store.record_transition(TransitionRecord("bd-1", from_phase, to_phase))
        store.record_transition(TransitionRecord("bd-2", "x", "y"))

        history = store.get_transition_history("bd-1", limit=2)

        assert [r.edge for r in history] == [("b", "c"), ("c", "d")]
        assert store.get_transition_history("bd-1", limit=0) == []


class TestJsonlRunHistory:
    """Persistence across instances."""

    def test_reopen(self, tmp_path):
        JsonlRunHistory(tmp_path).record_run(run("r1", "plan", error="boom"))

        reopened = JsonlRunHistory(tmp_path)

        [restored] = reopened.get_runs("bd-1")
        assert restored.error == "boom"
        assert (tmp_path / "runs.jsonl").exists()


class TestSharedQueries:
    """Stores must supply both record streams."""

    def test_store_without_transition_stream_cannot_be_built(self):
        class RunsOnly(_HistoryQueries):
            def _iter_runs(self):
                return []

        with pytest.raises(TypeError, match="_iter_transitions"):
            RunsOnly()

    def test_minimal_store_gets_queries(self):
        class Fixed(_HistoryQueries):
            def _iter_runs(self):
                return [run("r1", "plan", duration_ms=10)]

            def _iter_transitions(self):
                return [TransitionRecord("bd-1", "plan", "implement")]

        store = Fixed()

        assert store.count_runs("bd-1", "plan") == 1
        assert store.count_transitions("bd-1", "plan", "implement") == 1
