"""
Policy Engine for Phase Shepherd.

This module handles:
- Matching an issue to a policy (explicit label > issue type > default)
- Phase sequence and phase configuration queries
- Timeout and retry-delay calculation
- Cascading lookups for visit limits and fallback agents

The engine wraps an immutable PolicySet. Reloading policies means
constructing a new engine.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from phase_shepherd.config import ShepherdConfig
from phase_shepherd.errors import InvalidWorkflowLabelError, PolicyNotFoundError
from phase_shepherd.models import Issue
from phase_shepherd.policy.cascade import first_defined
from phase_shepherd.policy.loader import load_policies
from phase_shepherd.policy.models import (
    BackoffStrategy,
    ConfidenceThresholds,
    Phase,
    Policy,
    PolicySet,
    RetryPolicy,
)

if TYPE_CHECKING:
    from phase_shepherd.logger import ShepherdLogger


logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_MS = 5000
DEFAULT_TIMEOUT_MS = 300000
DEFAULT_STALL_THRESHOLD_MS = 60000
DEFAULT_RETRY_POLICY = RetryPolicy()


class PolicyEngine:
    """
    Read-only queries over a loaded PolicySet.

    Holds no mutable state; safe to share between callers.
    """

    def __init__(
        self,
        policies: PolicySet,
        config: Optional[ShepherdConfig] = None,
        event_logger: Optional[ShepherdLogger] = None,
    ) -> None:
        """
        Initialize the Policy Engine.

        Args:
            policies: Validated policy set.
            config: Shepherd configuration (label strategy, global defaults).
            event_logger: Optional JSONL logger for routing warnings.
        """
        self.policies = policies
        self.config = config or ShepherdConfig()
        self.event_logger = event_logger

    @classmethod
    def from_config(
        cls,
        config: ShepherdConfig,
        event_logger: Optional[ShepherdLogger] = None,
    ) -> PolicyEngine:
        """Load the configured policies file and build an engine around it."""
        defaults = config.decision.default_thresholds
        policies = load_policies(
            config.policies_path,
            ConfidenceThresholds(
                auto_advance=defaults.auto_advance,
                require_approval=defaults.require_approval,
            ),
        )
        return cls(policies, config, event_logger)

    # =========================================================================
    # Policy lookup
    # =========================================================================

    def get_policy(self, name: Optional[str] = None) -> Optional[Policy]:
        """Get a policy by name, or the default policy when name is None."""
        return self.policies.get(name or self.policies.default_policy)

    def require_policy(self, name: str) -> Policy:
        """
        Get a policy by name.

        Raises:
            PolicyNotFoundError: If no policy has that name.
        """
        policy = self.policies.get(name)
        if policy is None:
            raise PolicyNotFoundError(name)
        return policy

    def policy_names(self) -> list[str]:
        return self.policies.names()

    @property
    def default_policy_name(self) -> str:
        return self.policies.default_policy

    def match_policy(self, issue: Issue) -> str:
        """
        Match a policy to an issue.

        Priority order:
        1. Explicit workflow label (e.g. ``ashep-workflow:<name>``)
        2. Issue type match (highest priority first, ties by declaration order)
        3. Default policy

        Raises:
            InvalidWorkflowLabelError: If the label names an unknown policy
                and the configured strategy is ``error``.
        """
        prefix = self.config.workflow.label_prefix
        label = next((lbl for lbl in issue.labels if lbl.startswith(prefix)), None)
        if label is not None:
            name = label[len(prefix):]
            if name in self.policies:
                return name
            self._handle_invalid_label(issue, label, name)

        if issue.issue_type:
            # Dict order is declaration order; max() keeps the first of equal keys.
            candidates = [
                policy for policy in self.policies.policies.values()
                if issue.issue_type in policy.issue_types
            ]
            if candidates:
                return max(candidates, key=lambda p: p.priority).name

        return self.policies.default_policy

    def _handle_invalid_label(self, issue: Issue, label: str, name: str) -> None:
        strategy = self.config.workflow.invalid_label_strategy
        if strategy == "error":
            raise InvalidWorkflowLabelError(label, name)
        if strategy == "warning":
            logger.warning(
                "Invalid workflow label %s on issue %s: policy '%s' does not exist. "
                "Falling back to default.",
                label, issue.id, name,
            )
            if self.event_logger:
                self.event_logger.warn(
                    "invalid_workflow_label",
                    {"label": label, "policy": name, "fallback": self.default_policy_name},
                    issue_id=issue.id,
                )
        # "ignore" falls through silently

    # =========================================================================
    # Phase queries
    # =========================================================================

    def get_phase_sequence(self, policy_name: Optional[str] = None) -> list[str]:
        """Get the ordered phase names of a policy (empty if unknown)."""
        policy = self.get_policy(policy_name)
        if not policy:
            return []
        return policy.phase_names

    def get_phase_config(self, policy_name: str, phase_name: str) -> Optional[Phase]:
        policy = self.get_policy(policy_name)
        if not policy:
            return None
        return policy.get_phase(phase_name)

    def get_next_phase(self, policy_name: str, current_phase: str) -> Optional[str]:
        """Get the next phase in sequence, or None for the last/unknown phase."""
        policy = self.get_policy(policy_name)
        if not policy:
            return None
        return policy.next_phase_after(current_phase)

    # =========================================================================
    # Timing
    # =========================================================================

    def calculate_timeout(self, policy_name: str, phase_name: str) -> float:
        """Timeout for a phase in ms: timeout_base * timeout_multiplier."""
        policy = self.get_policy(policy_name)
        if not policy:
            return float(DEFAULT_TIMEOUT_MS)

        phase = policy.get_phase(phase_name)
        multiplier = phase.timeout_multiplier if phase else 1.0
        return policy.timeout_base_ms * multiplier

    def retry_policy(self, policy_name: str) -> RetryPolicy:
        """The policy's retry settings, or the defaults."""
        policy = self.get_policy(policy_name)
        if policy and policy.retry:
            return policy.retry
        return DEFAULT_RETRY_POLICY

    def calculate_retry_delay(self, policy_name: str, attempt_number: int) -> int:
        """
        Calculate retry delay in ms for a 0-indexed attempt.

        exponential: initial * 2^attempt
        linear:      initial * (attempt + 1)
        fixed:       initial
        All capped at max_delay_ms.
        """
        policy = self.get_policy(policy_name)
        if not policy or not policy.retry:
            return DEFAULT_RETRY_DELAY_MS

        retry = policy.retry
        initial = retry.initial_delay_ms

        if retry.backoff_strategy is BackoffStrategy.EXPONENTIAL:
            delay = initial * (2 ** attempt_number)
        elif retry.backoff_strategy is BackoffStrategy.LINEAR:
            delay = initial * (attempt_number + 1)
        else:
            delay = initial

        return min(delay, retry.max_delay_ms)

    def get_stall_threshold(self, policy_name: str) -> int:
        policy = self.get_policy(policy_name)
        return policy.stall_threshold_ms if policy else DEFAULT_STALL_THRESHOLD_MS

    def requires_hitl(self, policy_name: str) -> bool:
        policy = self.get_policy(policy_name)
        return bool(policy and policy.require_hitl)

    # =========================================================================
    # Cascading lookups
    # =========================================================================

    def resolve_max_visits(self, policy_name: str, phase_name: str) -> int:
        """Effective max visits: phase override, else policy override, else global."""
        policy = self.get_policy(policy_name)
        phase = policy.get_phase(phase_name) if policy else None
        return first_defined(
            [
                lambda: phase.max_visits if phase else None,
                lambda: policy.loop_limits.max_visits if policy else None,
            ],
            default=self.config.loop_prevention.max_visits_default,
        )

    def resolve_max_transitions(self, policy_name: str) -> int:
        """Effective max transitions per ordered pair: policy override, else global."""
        policy = self.get_policy(policy_name)
        return first_defined(
            [lambda: policy.loop_limits.max_transitions if policy else None],
            default=self.config.loop_prevention.max_transitions_default,
        )

    def resolve_fallback_agent(
        self,
        policy_name: str,
        phase_name: str,
        capability: Optional[str] = None,
    ) -> Optional[str]:
        """
        Resolve the fallback agent for a phase.

        Lookup order: phase fallback_agent, policy fallback_mappings[capability],
        policy fallback_agent, global mappings[capability], global default_agent.
        Returns None when fallback is globally disabled.
        """
        fallback = self.config.fallback
        if not fallback.enabled:
            return None

        policy = self.get_policy(policy_name)
        phase = policy.get_phase(phase_name) if policy else None
        if capability is None and phase and phase.capabilities:
            capability = phase.capabilities[0]

        return first_defined([
            lambda: phase.fallback_agent if phase else None,
            lambda: policy.fallback_mappings.get(capability) if policy and capability else None,
            lambda: policy.fallback_agent if policy else None,
            lambda: fallback.mappings.get(capability) if capability else None,
            lambda: fallback.default_agent,
        ])
