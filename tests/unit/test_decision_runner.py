"""Tests for DecisionRunner (async re-prompt loop)."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from phase_shepherd.config import DecisionAgentConfig
from phase_shepherd.decisions.analytics import DecisionEvent, DecisionEventLog
from phase_shepherd.decisions.prompt_builder import REPROMPT_NOTE, DecisionPromptBuilder
from phase_shepherd.decisions.runner import DecisionRunner
from phase_shepherd.errors import (
    DecisionAgentError,
    DecisionTimeoutError,
    RunHistoryUnavailableError,
)
from phase_shepherd.history import RunRecord
from phase_shepherd.logger import ShepherdLogger
from phase_shepherd.models import HITLReason, Issue, RunOutcome, TransitionType


ISSUE = Issue(id="bd-9", title="Harden login flow", issue_type="feature")


def reply(decision="jump_to_plan", confidence=0.9, reasoning="Design gap found"):
    return json.dumps({"decision": decision, "reasoning": reasoning, "confidence": confidence})


@pytest.fixture
def outcome():
    return RunOutcome(success=False, error="Reviewer rejected the change")


@pytest.fixture
def pending(engine, outcome):
    transition = engine.determine_transition("review", "review", outcome, ISSUE.id)
    assert transition.type is TransitionType.DYNAMIC_DECISION
    return transition


@pytest.fixture
def executor():
    mock = Mock()
    mock.execute = AsyncMock(return_value=reply())
    return mock


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def event_log():
    return DecisionEventLog()


@pytest.fixture
def make_runner(executor, engine, history, event_log, sleep):
    def _make(**config_kwargs):
        return DecisionRunner(
            executor,
            DecisionPromptBuilder(),
            engine,
            DecisionAgentConfig(**config_kwargs),
            history=history,
            event_log=event_log,
            sleep=sleep,
        )
    return _make


# =============================================================================
# Successful resolution
# =============================================================================


class TestRunResolves:
    """Valid replies resolve through the TransitionEngine."""

    @pytest.mark.asyncio
    async def test_first_reply_valid(self, make_runner, executor, sleep, pending, outcome, event_log):
        transition = await make_runner().run(ISSUE, "review", "review", pending, outcome)

        assert transition.type is TransitionType.JUMP_BACK
        assert transition.jump_target_phase == "plan"
        assert transition.confidence == 0.9
        assert transition.reason == "AI decision: Design gap found"
        executor.execute.assert_awaited_once()
        sleep.assert_not_awaited()

        [recorded] = event_log.events()
        assert recorded.action == "jump"
        assert recorded.target_phase == "plan"
        assert recorded.transition_type == "jump_back"
        assert recorded.auto_applied is True
        assert recorded.attempts == 1

    @pytest.mark.asyncio
    async def test_prompt_carries_whitelist(self, make_runner, executor, pending, outcome):
        await make_runner().run(ISSUE, "review", "review", pending, outcome)

        system_prompt, user_prompt = executor.execute.await_args.args
        assert "workflow decision agent" in system_prompt
        assert "# Workflow Decision: Harden login flow" in user_prompt
        assert "- **plan**\n- **implement**\n- **close**" in user_prompt
        assert "- Error: Reviewer rejected the change" in user_prompt

    @pytest.mark.asyncio
    async def test_reprompts_after_invalid_reply(self, make_runner, executor, sleep, pending, outcome):
        executor.execute.side_effect = ["no idea", reply(decision="advance_to_close")]

        transition = await make_runner().run(ISSUE, "review", "review", pending, outcome)

        assert transition.type is TransitionType.CLOSE
        assert executor.execute.await_count == 2
        sleep.assert_awaited_once_with(1.0)
        retry_prompt = executor.execute.await_args_list[1].args[1]
        assert REPROMPT_NOTE in retry_prompt
        assert "- Response is not valid JSON" in retry_prompt

    @pytest.mark.asyncio
    async def test_recovers_after_executor_error(self, make_runner, executor, pending, outcome, event_log):
        executor.execute.side_effect = [RuntimeError("agent crashed"), reply()]

        transition = await make_runner().run(ISSUE, "review", "review", pending, outcome)

        assert transition.type is TransitionType.JUMP_BACK
        assert event_log.events()[0].attempts == 2


# =============================================================================
# Exhausted attempts
# =============================================================================


class TestRunExhausted:
    """Bounded attempts with linear delay."""

    @pytest.mark.asyncio
    async def test_all_invalid_blocks(self, make_runner, executor, sleep, pending, outcome, event_log):
        executor.execute.return_value = '{"decision": "jump_to_deploy"}'

        transition = await make_runner(
            max_reprompts=2, reprompt_delay_seconds=0.5
        ).run(ISSUE, "review", "review", pending, outcome)

        assert transition.type is TransitionType.BLOCK
        assert transition.reason.startswith("Decision validation failed after 3 attempts: ")
        assert "Target phase 'deploy' is not in allowed destinations" in transition.reason
        assert transition.hitl_reason == HITLReason.MANUAL_INTERVENTION
        assert executor.execute.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]
        assert len(event_log) == 0

    @pytest.mark.asyncio
    async def test_zero_reprompts_single_attempt(self, make_runner, executor, pending, outcome):
        executor.execute.return_value = "garbage"

        transition = await make_runner(max_reprompts=0).run(
            ISSUE, "review", "review", pending, outcome
        )

        assert transition.reason.startswith("Decision validation failed after 1 attempts")
        executor.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_every_call_raises(self, make_runner, executor, pending, outcome):
        executor.execute.side_effect = RuntimeError("agent offline")

        with pytest.raises(DecisionAgentError) as exc_info:
            await make_runner(max_reprompts=1).run(ISSUE, "review", "review", pending, outcome)

        assert exc_info.value.attempts == 2
        assert "Decision agent execution failed: agent offline" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_last_call_raising_reports_executor_error(self, make_runner, executor, pending, outcome):
        executor.execute.side_effect = ["garbage", RuntimeError("agent offline")]

        transition = await make_runner(max_reprompts=1).run(
            ISSUE, "review", "review", pending, outcome
        )

        assert transition.type is TransitionType.BLOCK
        assert transition.reason == (
            "Decision validation failed after 2 attempts: "
            "Decision agent execution failed: agent offline"
        )


# =============================================================================
# Timeouts and cancellation
# =============================================================================


class TestRunInterrupted:
    """Timeouts raise, cancellation propagates, nothing is recorded."""

    @pytest.mark.asyncio
    async def test_timeout(self, make_runner, executor, pending, outcome, event_log):
        async def slow(system_prompt, user_prompt):
            await asyncio.sleep(5)
            return reply()

        executor.execute = slow

        with pytest.raises(DecisionTimeoutError) as exc_info:
            await make_runner(timeout_seconds=0.01).run(ISSUE, "review", "review", pending, outcome)

        assert exc_info.value.attempts == 1
        assert len(event_log) == 0

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, make_runner, executor, pending, outcome, event_log):
        executor.execute.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await make_runner().run(ISSUE, "review", "review", pending, outcome)

        assert len(event_log) == 0

    @pytest.mark.asyncio
    async def test_rejects_non_decision_transition(self, make_runner, engine, outcome):
        advance = engine.determine_transition("default", "plan", RunOutcome(success=True), ISSUE.id)

        with pytest.raises(DecisionAgentError, match="not a pending dynamic decision"):
            await make_runner().run(ISSUE, "default", "plan", advance, outcome)


# =============================================================================
# Confidence gating and analytics
# =============================================================================


class TestRunGating:
    """Thresholds applied by the engine, recorded by the runner."""

    @pytest.mark.asyncio
    async def test_medium_confidence_needs_approval(self, make_runner, executor, pending, outcome, event_log):
        executor.execute.return_value = reply(confidence=0.7)

        transition = await make_runner().run(ISSUE, "review", "review", pending, outcome)

        assert transition.type is TransitionType.BLOCK
        assert transition.reason == "Requires human approval"
        assert transition.hitl_reason == HITLReason.APPROVAL
        assert event_log.events()[0].auto_applied is False

    @pytest.mark.asyncio
    async def test_low_confidence_escalates(self, make_runner, executor, pending, outcome, event_log):
        executor.execute.return_value = reply(confidence=0.2)

        transition = await make_runner().run(ISSUE, "review", "review", pending, outcome)

        assert transition.escalated is True
        assert transition.reason == "Escalated: low-confidence decision"
        assert event_log.events()[0].transition_type == "block"

    @pytest.mark.asyncio
    async def test_logs_attempts(self, executor, engine, pending, outcome, sleep, tmp_path):
        event_logger = ShepherdLogger(tmp_path)
        executor.execute.side_effect = ["nope", reply()]
        runner = DecisionRunner(
            executor, DecisionPromptBuilder(), engine, event_logger=event_logger, sleep=sleep
        )

        await runner.run(ISSUE, "review", "review", pending, outcome)

        entries = event_logger.read_logs(ISSUE.id, event_type="decision_attempt")
        assert [e["data"]["valid"] for e in entries] == [False, True]
        assert entries[0]["level"] == "warn"
        assert entries[0]["data"]["component"] == "decision_runner"


# =============================================================================
# Prompt context
# =============================================================================


class TestGatherContext:
    """Recent decisions and history for the prompt."""

    def test_recent_decisions_and_history(self, make_runner, event_log, record_runs):
        event_log.append(DecisionEvent(
            issue_id=ISSUE.id, from_phase="review", action="jump", target_phase="plan",
            confidence=0.9, transition_type="jump_back", auto_applied=True, reasoning="gap",
        ))
        event_log.append(DecisionEvent(
            issue_id=ISSUE.id, from_phase="review", action="require_approval", target_phase=None,
            confidence=0.4, transition_type="block", auto_applied=False,
        ))
        event_log.append(DecisionEvent(
            issue_id="other", from_phase="review", action="jump", target_phase="implement",
            confidence=0.9, transition_type="jump_back", auto_applied=True,
        ))
        record_runs(ISSUE.id, "review", 2, duration_ms=300)

        context = make_runner().gather_context(ISSUE.id, "review")

        assert [d.decision for d in context.recent_decisions] == [
            "jump -> plan",
            "require_approval",
        ]
        assert context.recent_decisions[0].reasoning == "gap"
        assert [h.phase for h in context.phase_history] == ["review", "review"]
        assert context.performance_context.phase_visit_count == 2
        assert context.performance_context.total_duration_ms == 600

    def test_recent_decisions_limit(self, make_runner, event_log):
        for i in range(4):
            event_log.append(DecisionEvent(
                issue_id=ISSUE.id, from_phase="review", action="jump", target_phase=f"p{i}",
                confidence=0.9, transition_type="jump_back", auto_applied=True,
            ))

        context = make_runner(recent_decisions_limit=2).gather_context(ISSUE.id, "review")

        assert [d.decision for d in context.recent_decisions] == ["jump -> p2", "jump -> p3"]

    def test_without_sources(self, executor, engine):
        runner = DecisionRunner(executor, DecisionPromptBuilder(), engine)

        context = runner.gather_context(ISSUE.id, "review")

        assert context.recent_decisions == []
        assert context.phase_history == []
        assert context.performance_context is None

    def test_history_failure(self, executor, engine):
        history = Mock()
        history.get_runs.side_effect = OSError("disk gone")
        runner = DecisionRunner(executor, DecisionPromptBuilder(), engine, history=history)

        with pytest.raises(RunHistoryUnavailableError) as exc_info:
            runner.gather_context(ISSUE.id, "review")

        assert exc_info.value.query == "decision_context"
