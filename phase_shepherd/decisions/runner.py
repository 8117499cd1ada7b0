"""DecisionRunner resolves dynamic_decision transitions with a decision agent.

The runner owns the only long-latency step of the pipeline: it renders the
decision prompt, awaits the agent under a timeout, parses the reply and
re-prompts a bounded number of times before handing the final parse result
to the TransitionEngine.

Timeouts raise DecisionTimeoutError and cancellation propagates unchanged;
in both cases nothing is resolved and no analytics event is recorded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Protocol

from phase_shepherd.config import DecisionAgentConfig
from phase_shepherd.decisions.analytics import DecisionEvent, DecisionEventLog
from phase_shepherd.decisions.prompt_builder import (
    DecisionHistoryContext,
    DecisionPromptBuilder,
    DecisionSummary,
    PerformanceContext,
    PhaseHistoryEntry,
)
from phase_shepherd.decisions.response_parser import (
    DecisionValidationResult,
    parse_decision_response,
)
from phase_shepherd.errors import (
    DecisionAgentError,
    DecisionTimeoutError,
    RunHistoryUnavailableError,
)
from phase_shepherd.history import RunHistory
from phase_shepherd.models import Issue, RunOutcome, Transition, TransitionType
from phase_shepherd.transition_engine import TransitionEngine

if TYPE_CHECKING:
    from phase_shepherd.logger import ShepherdLogger


logger = logging.getLogger(__name__)

PHASE_HISTORY_LIMIT = 10


class DecisionExecutor(Protocol):
    """Runs one decision-agent call and returns its raw text."""

    async def execute(self, system_prompt: str, user_prompt: str) -> str:
        ...


class DecisionRunner:
    """Bounded re-prompt loop around a decision executor.

    Usage:
        runner = DecisionRunner(executor, prompt_builder, engine, config.decision)
        pending = engine.determine_transition(policy, phase, outcome, issue.id)
        if pending.type is TransitionType.DYNAMIC_DECISION:
            final = await runner.run(issue, policy, phase, pending, outcome)
    """

    def __init__(
        self,
        executor: DecisionExecutor,
        prompt_builder: DecisionPromptBuilder,
        engine: TransitionEngine,
        config: Optional[DecisionAgentConfig] = None,
        history: Optional[RunHistory] = None,
        event_log: Optional[DecisionEventLog] = None,
        event_logger: Optional[ShepherdLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the runner.

        Args:
            executor: Decision-agent executor.
            prompt_builder: Renders decision prompts.
            engine: Resolves the parsed decision into a Transition.
            config: Re-prompt, delay and timeout settings.
            history: Run history used for the prompt's phase history.
            event_log: Decision analytics stream (also feeds recent decisions).
            event_logger: Optional JSONL logger.
            sleep: Awaitable used between attempts.
        """
        self.executor = executor
        self.prompt_builder = prompt_builder
        self.engine = engine
        self.config = config or DecisionAgentConfig()
        self.history = history
        self.event_log = event_log
        self.event_logger = event_logger
        self._sleep = sleep

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
        issue_id: Optional[str] = None,
    ) -> None:
        """Log an event if logger is configured."""
        if self.event_logger:
            log_data = {"component": "decision_runner"}
            if data:
                log_data.update(data)
            self.event_logger.log(event_type, log_data, level=level, issue_id=issue_id)

    def gather_context(self, issue_id: str, current_phase: str) -> DecisionHistoryContext:
        """Collect recent decisions, phase history and timing for the prompt."""
        context = DecisionHistoryContext()

        if self.event_log is not None:
            limit = self.config.recent_decisions_limit
            events = self.event_log.events(issue_id)[-limit:] if limit > 0 else []
            context.recent_decisions = [
                DecisionSummary(
                    timestamp=event.timestamp,
                    decision=(
                        f"{event.action} -> {event.target_phase}"
                        if event.target_phase else event.action
                    ),
                    reasoning=event.reasoning,
                )
                for event in events
            ]

        if self.history is not None:
            try:
                runs = self.history.get_runs(issue_id, limit=PHASE_HISTORY_LIMIT)
                stats = self.history.get_phase_duration_stats(issue_id, current_phase)
            except Exception as e:
                raise RunHistoryUnavailableError("decision_context", e) from e
            context.phase_history = [PhaseHistoryEntry.from_run(run) for run in runs]
            context.performance_context = PerformanceContext.from_stats(stats)

        return context

    async def run(
        self,
        issue: Issue,
        policy_name: str,
        current_phase: str,
        pending: Transition,
        outcome: RunOutcome,
    ) -> Transition:
        """Consult the decision agent and resolve a pending dynamic decision.

        Args:
            issue: Issue being routed.
            policy_name: Policy the issue follows.
            current_phase: Phase that just finished.
            pending: dynamic_decision transition from the engine.
            outcome: Outcome of the phase run.

        Returns:
            The resolved Transition (advance, jump_back, close or block).

        Raises:
            DecisionTimeoutError: If an executor call times out.
            DecisionAgentError: If every executor call raised.
        """
        route = pending.decision
        if pending.type is not TransitionType.DYNAMIC_DECISION or route is None:
            raise DecisionAgentError("Transition is not a pending dynamic decision")

        base_prompt = self.prompt_builder.build_decision_instructions(
            issue,
            route,
            outcome,
            current_phase,
            self.gather_context(issue.id, current_phase),
        )

        max_attempts = self.config.max_reprompts + 1
        validation: Optional[DecisionValidationResult] = None
        errors: list[str] = []
        executor_failures = 0
        last_attempt_raised = False
        attempts = 0

        for attempt in range(max_attempts):
            if attempt > 0:
                delay = self.config.reprompt_delay_seconds * attempt
                logger.warning(
                    "Decision for %s failed (attempt %d/%d): %s. Re-prompting in %.1fs",
                    issue.id, attempt, max_attempts, "; ".join(errors), delay,
                )
                await self._sleep(delay)

            attempts = attempt + 1
            prompt = base_prompt.with_reprompt_note(attempt, errors)

            try:
                raw = await asyncio.wait_for(
                    self.executor.execute(prompt.system_prompt, prompt.user_prompt),
                    timeout=self.config.timeout_seconds,
                )
            except asyncio.TimeoutError:
                self._log(
                    "decision_timeout",
                    {"attempt": attempts, "timeout_seconds": self.config.timeout_seconds},
                    level="error",
                    issue_id=issue.id,
                )
                raise DecisionTimeoutError(self.config.timeout_seconds, attempts)
            except Exception as e:
                executor_failures += 1
                last_attempt_raised = True
                errors = [f"Decision agent execution failed: {e}"]
                self._log(
                    "decision_attempt",
                    {"attempt": attempts, "template": prompt.template_name, "error": str(e)},
                    level="warn",
                    issue_id=issue.id,
                )
                continue

            validation = parse_decision_response(
                raw, route.allowed_destinations, route.confidence_thresholds
            )
            last_attempt_raised = False
            self._log(
                "decision_attempt",
                {
                    "attempt": attempts,
                    "template": prompt.template_name,
                    "valid": validation.valid,
                    "errors": validation.errors,
                    "warnings": validation.warnings,
                },
                level="info" if validation.valid else "warn",
                issue_id=issue.id,
            )
            if validation.valid:
                break
            errors = validation.errors

        if validation is None or executor_failures == attempts:
            logger.error("Decision agent failed after %d attempts: %s", attempts, "; ".join(errors))
            raise DecisionAgentError(
                f"Decision agent failed after {attempts} attempts: {'; '.join(errors)}",
                attempts,
            )

        if last_attempt_raised:
            validation = DecisionValidationResult.failure(errors, validation.warnings)

        transition = self.engine.resolve_decision(
            policy_name, current_phase, pending, validation, issue.id, attempts
        )
        self._record(issue.id, current_phase, validation, transition, attempts)
        return transition

    def _record(
        self,
        issue_id: str,
        current_phase: str,
        validation: DecisionValidationResult,
        transition: Transition,
        attempts: int,
    ) -> None:
        response = validation.response
        if self.event_log is None or response is None:
            return
        self.event_log.append(
            DecisionEvent(
                issue_id=issue_id,
                from_phase=current_phase,
                action=response.action.value,
                target_phase=response.target_phase,
                confidence=response.confidence,
                transition_type=transition.type.value,
                auto_applied=not transition.is_blocked,
                attempts=attempts,
                reasoning=response.reasoning,
            )
        )
