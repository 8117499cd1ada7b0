"""Tests for issue and outcome models."""

import pytest

from phase_shepherd.models import Issue, OutcomeMetrics, ResultType, RunOutcome


class TestRunOutcome:
    """Outcome category and serialization."""

    @pytest.mark.parametrize(
        "success,result_type,expected",
        [
            (True, None, ResultType.SUCCESS),
            (False, None, ResultType.FAILURE),
            (True, ResultType.PARTIAL_SUCCESS, ResultType.PARTIAL_SUCCESS),
            (False, ResultType.UNCLEAR, ResultType.UNCLEAR),
        ],
    )
    def test_category(self, success, result_type, expected):
        assert RunOutcome(success=success, result_type=result_type).category is expected

    def test_to_dict_fields(self):
        outcome = RunOutcome(
            success=False,
            result_type=ResultType.UNCLEAR,
            retry_count=1,
            metrics=OutcomeMetrics(duration_ms=1200),
        )

        data = outcome.to_dict()

        assert set(data) == {
            "success",
            "result_type",
            "retry_count",
            "requires_approval",
            "message",
            "error",
            "warnings",
            "metrics",
        }
        assert data["result_type"] == "unclear"
        assert data["metrics"]["duration_ms"] == 1200

    def test_from_dict_ignores_unknown_keys(self):
        outcome = RunOutcome.from_dict({
            "success": True,
            "result_type": "partial_success",
            "artifacts": ["report.html"],
            "warnings": ["slow"],
        })

        assert outcome.category is ResultType.PARTIAL_SUCCESS
        assert outcome.warnings == ["slow"]
        assert not hasattr(outcome, "artifacts")


class TestIssue:
    def test_from_dict_keeps_matching_fields(self):
        issue = Issue.from_dict({
            "id": 7,
            "issue_type": "bug",
            "description": None,
            "labels": ["ashep-workflow:hotfix"],
            "assignee": "someone",
        })

        assert issue.id == "7"
        assert issue.description == ""
        assert issue.labels == ["ashep-workflow:hotfix"]
        assert issue.to_dict()["issue_type"] == "bug"
