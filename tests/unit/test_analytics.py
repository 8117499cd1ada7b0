"""Tests for decision analytics."""

import json

import pytest

from phase_shepherd.decisions.analytics import (
    DecisionEvent,
    DecisionEventLog,
    confidence_bucket,
    summarize_decisions,
)
from phase_shepherd.errors import DecisionLogError


def event(action="jump", target="plan", confidence=0.9, auto_applied=True, issue_id="bd-1"):
    return DecisionEvent(
        issue_id=issue_id,
        from_phase="review",
        action=action,
        target_phase=target,
        confidence=confidence,
        transition_type="jump_back" if auto_applied else "block",
        auto_applied=auto_applied,
    )


class TestConfidenceBucket:
    """Bucket boundaries."""

    @pytest.mark.parametrize(
        "confidence,bucket",
        [(1.0, "high"), (0.8, "high"), (0.79, "medium"), (0.5, "medium"), (0.49, "low"), (0.0, "low")],
    )
    def test_boundaries(self, confidence, bucket):
        assert confidence_bucket(confidence) == bucket


class TestSummarize:
    """Fold over the event stream."""

    def test_empty_stream(self):
        stats = summarize_decisions([])

        assert stats.total == 0
        assert stats.average_confidence == 0.0
        assert stats.most_common_targets() == []
        assert stats.approval_rates() == {"high": 0.0, "medium": 0.0, "low": 0.0}

    def test_counts(self):
        events = [
            event("jump", "plan", 0.9),
            event("jump", "plan", 0.85),
            event("advance", "test", 0.7, auto_applied=False),
            event("require_approval", None, 0.3, auto_applied=False),
        ]

        stats = summarize_decisions(events)

        assert stats.total == 4
        assert stats.by_action == {"jump": 2, "advance": 1, "require_approval": 1}
        assert stats.target_counts == {"plan": 2, "test": 1}
        assert stats.average_confidence == pytest.approx(0.6875)
        assert stats.confidence_buckets["high"].total == 2
        assert stats.confidence_buckets["medium"].total == 1
        assert stats.confidence_buckets["low"].total == 1

    def test_approval_rates_per_bucket(self):
        events = [
            event(confidence=0.9),
            event("require_approval", None, 0.95, auto_applied=False),
            event("advance", "test", 0.7, auto_applied=False),
            event(confidence=0.3, auto_applied=False),
        ]

        stats = summarize_decisions(events)

        assert stats.approval_rates() == {"high": 0.5, "medium": 1.0, "low": 1.0}
        assert stats.auto_applied_rates() == {"high": 0.5, "medium": 0.0, "low": 0.0}

    def test_blocked_advance_still_counts_as_approved(self):
        stats = summarize_decisions([event("advance", "test", 0.7, auto_applied=False)])

        medium = stats.confidence_buckets["medium"]
        assert medium.approved == 1
        assert medium.auto_applied == 0
        assert medium.approval_rate == 1.0

    def test_most_common_targets_ordering(self):
        events = [
            event(target="test"),
            event(target="plan"),
            event(target="implement"),
            event(target="implement"),
        ]

        stats = summarize_decisions(events)

        assert stats.most_common_targets() == [("implement", 2), ("plan", 1), ("test", 1)]
        assert stats.most_common_targets(limit=1) == [("implement", 2)]

    def test_to_dict(self):
        data = summarize_decisions([event()]).to_dict()

        assert data["total"] == 1
        assert data["confidence_buckets"] == {"high": 1, "medium": 0, "low": 0}
        assert data["most_common_targets"] == [("plan", 1)]
        assert data["approval_rates"]["high"] == 1.0
        assert data["auto_applied_rates"]["high"] == 1.0


class TestDecisionEventLog:
    """In-memory and JSONL-backed event log."""

    def test_in_memory(self):
        log = DecisionEventLog()
        log.append(event(issue_id="bd-1"))
        log.append(event(issue_id="bd-2"))

        assert len(log) == 2
        assert [e.issue_id for e in log.events("bd-2")] == ["bd-2"]
        assert log.summary("bd-1").total == 1

    def test_persists_and_reloads(self, tmp_path):
        path = tmp_path / "nested" / "decisions.jsonl"
        log = DecisionEventLog(path)
        log.append(event(target="implement", confidence=0.65, auto_applied=False))

        reloaded = DecisionEventLog(path)

        assert len(reloaded) == 1
        restored = reloaded.events()[0]
        assert restored.target_phase == "implement"
        assert restored.auto_applied is False
        assert restored.confidence == 0.65

    def test_jsonl_format(self, tmp_path):
        path = tmp_path / "decisions.jsonl"
        DecisionEventLog(path).append(event())

        line = path.read_text().splitlines()[0]

        assert json.loads(line)["action"] == "jump"

    def test_load_skips_blank_lines(self, tmp_path):
        path = tmp_path / "decisions.jsonl"
        path.write_text(json.dumps(event().to_dict()) + "\n\n")

        assert len(list(DecisionEventLog.load(path))) == 1

    def test_malformed_line_reports_location(self, tmp_path):
        path = tmp_path / "decisions.jsonl"
        path.write_text(json.dumps(event().to_dict()) + "\n{not json\n")

        with pytest.raises(DecisionLogError) as exc_info:
            DecisionEventLog(path)

        assert exc_info.value.line_number == 2
        assert exc_info.value.path == str(path)
        assert isinstance(exc_info.value.cause, json.JSONDecodeError)

    @pytest.mark.parametrize("line", ['{"issue_id": "bd-1", "from_phase": "review"}', "42"])
    def test_incomplete_event_reports_location(self, tmp_path, line):
        path = tmp_path / "decisions.jsonl"
        path.write_text(line + "\n")

        with pytest.raises(DecisionLogError, match=r"decisions.jsonl:1"):
            list(DecisionEventLog.load(path))
