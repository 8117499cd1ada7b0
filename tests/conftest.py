# tests/conftest.py

import pytest
from typer.testing import CliRunner

from phase_shepherd.config import LoopPreventionConfig, ShepherdConfig
from phase_shepherd.history import InMemoryRunHistory, RunRecord, TransitionRecord
from phase_shepherd.loop_prevention import LoopGuard
from phase_shepherd.policy.engine import PolicyEngine
from phase_shepherd.policy.loader import parse_policies
from phase_shepherd.transition_engine import TransitionEngine


POLICIES_DATA = {
    "default_policy": "default",
    "policies": {
        "default": {
            "description": "Linear plan -> implement -> test",
            "phases": [
                {"name": "plan", "capabilities": ["planning"]},
                {"name": "implement", "capabilities": ["coding"]},
                {"name": "test", "capabilities": ["testing"]},
            ],
        },
        "review": {
            "description": "Implementation with AI-routed review",
            "issue_types": ["feature"],
            "priority": 60,
            "retry": {
                "max_attempts": 3,
                "backoff_strategy": "linear",
                "initial_delay_ms": 1000,
                "max_delay_ms": 2500,
            },
            "loop_prevention": {"max_visits": 4, "max_transitions": 2},
            "fallback_agent": "generalist",
            "fallback_mappings": {"review": "senior-reviewer"},
            "phases": [
                {"name": "plan", "capabilities": ["planning"], "max_visits": 2},
                {
                    "name": "implement",
                    "capabilities": ["coding"],
                    "timeout_multiplier": 2.0,
                    "transitions": {"on_success": "review", "on_failure": "plan"},
                },
                {
                    "name": "review",
                    "capabilities": ["review"],
                    "fallback_agent": "review-bot",
                    "transitions": {
                        "on_success": "close",
                        "on_failure": {
                            "capability": "review-decision",
                            "allowed_destinations": ["plan", "implement", "close"],
                            "confidence_thresholds": {
                                "auto_advance": 0.8,
                                "require_approval": 0.6,
                            },
                        },
                        "on_partial_success": {
                            "capability": "review-decision",
                            "allowed_destinations": ["implement"],
                            "prompt": "Decide whether the partial work is enough.",
                        },
                    },
                },
            ],
        },
        "hotfix": {
            "issue_types": ["bug"],
            "priority": 90,
            "require_hitl": True,
            "stall_threshold_ms": 30000,
            "phases": [
                {"name": "fix", "require_approval": True},
                {"name": "verify"},
            ],
        },
    },
}


@pytest.fixture
def policies_data():
    """Raw policies mapping as it would come out of policies.yaml."""
    return POLICIES_DATA


@pytest.fixture
def policy_set(policies_data):
    return parse_policies(policies_data)


@pytest.fixture
def config(tmp_path):
    """Config rooted in a temporary repository."""
    return ShepherdConfig(repo_root=str(tmp_path))


@pytest.fixture
def policy_engine(policy_set, config):
    return PolicyEngine(policy_set, config)


@pytest.fixture
def history():
    return InMemoryRunHistory()


@pytest.fixture
def loop_guard(history):
    return LoopGuard(history, LoopPreventionConfig())


@pytest.fixture
def engine(policy_engine, loop_guard):
    return TransitionEngine(policy_engine, loop_guard)


@pytest.fixture
def record_runs(history):
    """Record ``count`` completed runs of a phase."""
    def _record(issue_id: str, phase: str, count: int, **kwargs):
        for i in range(count):
            history.record_run(
                RunRecord(run_id=f"{issue_id}-{phase}-{i}", issue_id=issue_id, phase=phase, **kwargs)
            )
    return _record


@pytest.fixture
def record_transitions(history):
    """Record transitions from a list of (from, to) pairs, oldest first."""
    def _record(issue_id: str, edges):
        for from_phase, to_phase in edges:
            history.record_transition(
                TransitionRecord(issue_id=issue_id, from_phase=from_phase, to_phase=to_phase)
            )
    return _record


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
