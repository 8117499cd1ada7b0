"""
Transition Engine for Phase Shepherd.

Turns (policy, phase, outcome) into exactly one Transition:

1. Unknown policy/phase and approval gates block immediately.
2. The outcome category selects a TransitionBlock slot on the phase.
3. No slot: linear mode (advance/close on success, retry/block on failure).
4. DirectTarget: advance, jump_back or close.
5. DecisionRoute: dynamic_decision, resolved later by resolve_decision().
6. Every move into a phase is checked by the LoopGuard; a failing check
   replaces the candidate with a block carrying the check's reason.

The engine keeps no state between calls. Per-issue serialization is the
caller's responsibility.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from phase_shepherd.decisions.response_parser import DecisionAction, DecisionValidationResult
from phase_shepherd.errors import InvalidTransitionError
from phase_shepherd.loop_prevention import LoopGuard
from phase_shepherd.models import (
    CLOSE_TARGET,
    HITLReason,
    ResultType,
    RunOutcome,
    Transition,
    TransitionType,
)
from phase_shepherd.policy.engine import PolicyEngine
from phase_shepherd.policy.models import DecisionRoute, DirectTarget, Policy

if TYPE_CHECKING:
    from phase_shepherd.logger import ShepherdLogger


_MOVES = (TransitionType.ADVANCE, TransitionType.JUMP_BACK)


def block(reason: str, hitl_reason: str = HITLReason.MANUAL_INTERVENTION, **kwargs: Any) -> Transition:
    """Build a block transition tagged for human attention."""
    return Transition(type=TransitionType.BLOCK, reason=reason, hitl_reason=hitl_reason, **kwargs)


def validate_transition(policy: Policy, current_phase: str, transition: Transition) -> None:
    """
    Check a candidate transition against its policy.

    Raises:
        InvalidTransitionError: If the transition is structurally invalid.
    """
    if transition.type is TransitionType.JUMP_BACK and not transition.target_phase:
        raise InvalidTransitionError("jump_back transition requires jump_target_phase or next_phase")

    if transition.type is TransitionType.DYNAMIC_DECISION:
        if not isinstance(transition.decision, DecisionRoute):
            raise InvalidTransitionError("dynamic_decision transition requires a decision config")
        return

    if transition.type in _MOVES:
        target = transition.target_phase
        if target is None or policy.get_phase(target) is None:
            raise InvalidTransitionError(
                f"Target phase '{target}' not found in policy '{policy.name}'"
            )
        if transition.type is TransitionType.JUMP_BACK and target == current_phase:
            raise InvalidTransitionError(f"Cannot jump from phase '{current_phase}' to itself")


class TransitionEngine:
    """
    Decides the next step for an issue after each phase run.

    Usage:
        engine = TransitionEngine(policy_engine, LoopGuard(history, config.loop_prevention))
        transition = engine.determine_transition("default", "plan", outcome, "bd-12")
    """

    def __init__(
        self,
        policy_engine: PolicyEngine,
        loop_guard: LoopGuard,
        event_logger: Optional[ShepherdLogger] = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            policy_engine: Policy queries and cascading lookups.
            loop_guard: Loop-prevention checks over run history.
            event_logger: Optional JSONL logger for decisions.
        """
        self.policy_engine = policy_engine
        self.loop_guard = loop_guard
        self.event_logger = event_logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
        issue_id: Optional[str] = None,
    ) -> None:
        """Log an event if logger is configured."""
        if self.event_logger:
            log_data = {"component": "transition_engine"}
            if data:
                log_data.update(data)
            self.event_logger.log(event_type, log_data, level=level, issue_id=issue_id)

    # =========================================================================
    # Outcome routing
    # =========================================================================

    def determine_transition(
        self,
        policy_name: str,
        current_phase: str,
        outcome: RunOutcome,
        issue_id: str,
    ) -> Transition:
        """
        Decide what happens after a phase run.

        Args:
            policy_name: Policy the issue follows.
            current_phase: Phase that just finished.
            outcome: Result of the run.
            issue_id: Issue being transitioned (for loop-prevention queries).

        Returns:
            The Transition to apply.

        Raises:
            RunHistoryUnavailableError: If loop prevention cannot read history.
        """
        policy = self.policy_engine.get_policy(policy_name)
        phase = policy.get_phase(current_phase) if policy else None

        if policy is None:
            transition = block("Policy not found")
        elif phase is None:
            transition = block("Phase not found")
        elif outcome.requires_approval or phase.require_approval:
            transition = block("Human approval required", HITLReason.APPROVAL)
        else:
            category = outcome.category
            slot = phase.transitions.slot_for(category) if phase.transitions else None
            if slot is None:
                candidate = self._linear_transition(policy, current_phase, category, outcome)
            elif isinstance(slot, DirectTarget):
                candidate = self._direct_transition(policy, current_phase, slot, category)
            else:
                candidate = Transition(
                    type=TransitionType.DYNAMIC_DECISION,
                    reason=f"Decision required: {slot.capability}",
                    decision=slot,
                )
            transition = self._finalize(policy, current_phase, candidate, issue_id)

        self._log(
            "transition_decided",
            {
                "policy": policy_name,
                "from_phase": current_phase,
                "outcome": outcome.category.value,
                "transition": transition.to_dict(),
            },
            level="warn" if transition.is_blocked else "info",
            issue_id=issue_id,
        )
        return transition

    def _linear_transition(
        self,
        policy: Policy,
        current_phase: str,
        category: ResultType,
        outcome: RunOutcome,
    ) -> Transition:
        if category is ResultType.SUCCESS:
            next_phase = policy.next_phase_after(current_phase)
            if next_phase is None:
                return Transition(type=TransitionType.CLOSE, reason="All phases completed")
            return Transition(
                type=TransitionType.ADVANCE,
                next_phase=next_phase,
                reason="Phase completed successfully",
            )

        if category is ResultType.FAILURE:
            max_attempts = self.policy_engine.retry_policy(policy.name).max_attempts
            retry_count = outcome.retry_count or 0
            if retry_count < max_attempts - 1:
                return Transition(
                    type=TransitionType.RETRY,
                    reason=f"Retry {retry_count + 1}/{max_attempts}",
                )
            return block(f"Max retries exceeded ({max_attempts})")

        return block(
            f"No transition configured for {category.value} outcome in phase '{current_phase}'"
        )

    def _direct_transition(
        self,
        policy: Policy,
        current_phase: str,
        target: DirectTarget,
        category: ResultType,
    ) -> Transition:
        reason = f"Configured {category.value} transition"
        if target.is_close:
            return Transition(type=TransitionType.CLOSE, reason=reason)
        return self._move(policy, current_phase, target.phase, reason)

    def _move(
        self,
        policy: Policy,
        current_phase: str,
        target: str,
        reason: str,
        jump: Optional[bool] = None,
        confidence: Optional[float] = None,
    ) -> Transition:
        """Build advance/jump_back; direction follows the phase sequence unless given."""
        if jump is None:
            target_index = policy.index_of(target)
            jump = target_index != -1 and target_index <= policy.index_of(current_phase)
        if jump:
            return Transition(
                type=TransitionType.JUMP_BACK,
                next_phase=target,
                jump_target_phase=target,
                reason=reason,
                confidence=confidence,
            )
        return Transition(
            type=TransitionType.ADVANCE,
            next_phase=target,
            reason=reason,
            confidence=confidence,
        )

    def _finalize(
        self,
        policy: Policy,
        current_phase: str,
        candidate: Transition,
        issue_id: str,
    ) -> Transition:
        """Validate a candidate and run loop prevention on moves into a phase."""
        try:
            validate_transition(policy, current_phase, candidate)
        except InvalidTransitionError as e:
            return block(str(e), confidence=candidate.confidence)

        if candidate.type not in _MOVES:
            return candidate

        target = candidate.target_phase
        result = self.loop_guard.check(
            issue_id,
            current_phase,
            target,
            max_visits=self.policy_engine.resolve_max_visits(policy.name, target),
            max_transitions=self.policy_engine.resolve_max_transitions(policy.name),
        )
        if result.valid:
            return candidate

        hitl_reason = (
            HITLReason.LOOP_LIMIT
            if self.loop_guard.config.trigger_hitl
            else HITLReason.MANUAL_INTERVENTION
        )
        return block(result.reason or "Loop prevention blocked transition", hitl_reason,
                     confidence=candidate.confidence)

    # =========================================================================
    # Dynamic decisions
    # =========================================================================

    def resolve_decision(
        self,
        policy_name: str,
        current_phase: str,
        pending: Transition,
        validation: DecisionValidationResult,
        issue_id: str,
        attempts: int = 1,
    ) -> Transition:
        """
        Resolve a dynamic_decision with the decision agent's parsed response.

        Args:
            policy_name: Policy the issue follows.
            current_phase: Phase that just finished.
            pending: The dynamic_decision returned by determine_transition().
            validation: Result of parsing the agent's final response.
            issue_id: Issue being transitioned.
            attempts: How many agent calls were made.

        Returns:
            advance, jump_back, close or block.
        """
        transition = self._resolve(policy_name, current_phase, pending, validation, attempts, issue_id)
        response = validation.response
        self._log(
            "decision_resolved",
            {
                "policy": policy_name,
                "from_phase": current_phase,
                "attempts": attempts,
                "valid": validation.valid,
                "errors": validation.errors,
                "decision": response.to_dict() if response else None,
                "transition": transition.to_dict(),
            },
            level="warn" if transition.is_blocked else "info",
            issue_id=issue_id,
        )
        return transition

    def _resolve(
        self,
        policy_name: str,
        current_phase: str,
        pending: Transition,
        validation: DecisionValidationResult,
        attempts: int,
        issue_id: str,
    ) -> Transition:
        policy = self.policy_engine.get_policy(policy_name)
        if policy is None:
            return block("Policy not found")
        route = pending.decision
        if pending.type is not TransitionType.DYNAMIC_DECISION or route is None:
            return block("Transition is not a pending dynamic decision")

        response = validation.response
        if not validation.valid or response is None:
            return block(
                f"Decision validation failed after {attempts} attempts: "
                + "; ".join(validation.errors)
            )

        confidence = response.confidence
        if response.action is DecisionAction.REQUIRE_APPROVAL:
            return block("AI requested human approval", HITLReason.APPROVAL, confidence=confidence)

        target = response.target_phase
        if target is None or not route.allows(target):
            # The parser enforces the whitelist already; this guards hand-built results.
            return block(f"Target phase '{target}' is not an allowed destination",
                         confidence=confidence)

        thresholds = route.confidence_thresholds
        if confidence < thresholds.require_approval:
            return block("Escalated: low-confidence decision", HITLReason.APPROVAL,
                         confidence=confidence, escalated=True)
        if confidence < thresholds.auto_advance:
            return block("Requires human approval", HITLReason.APPROVAL, confidence=confidence)

        reason = f"AI decision: {response.reasoning}"
        if target == CLOSE_TARGET:
            return Transition(type=TransitionType.CLOSE, reason=reason, confidence=confidence)

        candidate = self._move(
            policy,
            current_phase,
            target,
            reason,
            jump=response.action is DecisionAction.JUMP,
            confidence=confidence,
        )
        return self._finalize(policy, current_phase, candidate, issue_id)
