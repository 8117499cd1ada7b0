"""
Policy data model.

Policies are loaded and validated once (see ``phase_shepherd.policy.loader``)
and never mutated afterwards; every class here is a frozen dataclass.

A TransitionBlock slot is a tagged variant: ``DirectTarget`` routes straight
to a phase (or ``close``), ``DecisionRoute`` hands routing to a decision
agent. The partial-success and unclear slots only accept ``DecisionRoute``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from phase_shepherd.models import CLOSE_TARGET, ResultType


class BackoffStrategy(Enum):
    """Retry delay growth."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for failed phase runs."""
    max_attempts: int = 3
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay_ms: int = 5000
    max_delay_ms: int = 300000


@dataclass(frozen=True)
class ConfidenceThresholds:
    """
    Confidence gates for decision-agent routing.

    confidence >= auto_advance            -> apply automatically
    require_approval <= confidence < auto -> human approval
    confidence < require_approval         -> escalate
    """
    auto_advance: float = 0.8
    require_approval: float = 0.6

    def to_dict(self) -> dict[str, float]:
        return {"auto_advance": self.auto_advance, "require_approval": self.require_approval}


@dataclass(frozen=True)
class DirectTarget:
    """Route straight to a phase, or to ``close``."""
    phase: str

    @property
    def is_close(self) -> bool:
        return self.phase == CLOSE_TARGET

    def to_dict(self) -> dict[str, Any]:
        return {"target": self.phase}


@dataclass(frozen=True)
class DecisionRoute:
    """
    Route chosen by a decision agent.

    ``allowed_destinations`` is the safety whitelist: the agent can never
    route anywhere else.
    """
    capability: str
    allowed_destinations: tuple[str, ...]
    confidence_thresholds: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    prompt: Optional[str] = None
    template: Optional[str] = None
    messaging: bool = False

    def allows(self, target: str) -> bool:
        """Check whether a target is whitelisted."""
        return target in self.allowed_destinations

    def to_dict(self) -> dict[str, Any]:
        return {
            "capability": self.capability,
            "allowed_destinations": list(self.allowed_destinations),
            "confidence_thresholds": self.confidence_thresholds.to_dict(),
            "prompt": self.prompt,
            "template": self.template,
            "messaging": self.messaging,
        }


Route = Union[DirectTarget, DecisionRoute]


@dataclass(frozen=True)
class TransitionBlock:
    """Per-outcome routing for a phase."""
    on_success: Optional[Route] = None
    on_failure: Optional[Route] = None
    on_partial_success: Optional[DecisionRoute] = None
    on_unclear: Optional[DecisionRoute] = None

    def slot_for(self, category: ResultType) -> Optional[Route]:
        """Return the route configured for an outcome category."""
        if category is ResultType.SUCCESS:
            return self.on_success
        if category is ResultType.FAILURE:
            return self.on_failure
        if category is ResultType.PARTIAL_SUCCESS:
            return self.on_partial_success
        return self.on_unclear

    def routes(self) -> list[tuple[str, Route]]:
        """All configured (slot name, route) pairs."""
        slots = [
            ("on_success", self.on_success),
            ("on_failure", self.on_failure),
            ("on_partial_success", self.on_partial_success),
            ("on_unclear", self.on_unclear),
        ]
        return [(name, route) for name, route in slots if route is not None]


@dataclass(frozen=True)
class Phase:
    """One step of a policy."""
    name: str
    description: Optional[str] = None
    capabilities: tuple[str, ...] = ()
    agent: Optional[str] = None
    model: Optional[str] = None                # "provider/model"
    timeout_multiplier: float = 1.0
    require_approval: bool = False
    max_visits: Optional[int] = None
    transitions: Optional[TransitionBlock] = None
    fallback_agent: Optional[str] = None


@dataclass(frozen=True)
class LoopLimits:
    """Policy-level loop-prevention overrides."""
    max_visits: Optional[int] = None
    max_transitions: Optional[int] = None


@dataclass(frozen=True)
class Policy:
    """A named workflow: an ordered list of phases plus defaults."""
    name: str
    phases: tuple[Phase, ...]
    description: Optional[str] = None
    issue_types: tuple[str, ...] = ()
    priority: int = 50
    retry: Optional[RetryPolicy] = None
    timeout_base_ms: int = 300000
    stall_threshold_ms: int = 60000
    require_hitl: bool = False
    loop_limits: LoopLimits = field(default_factory=LoopLimits)
    fallback_agent: Optional[str] = None
    fallback_mappings: dict[str, str] = field(default_factory=dict)

    @property
    def phase_names(self) -> list[str]:
        return [phase.name for phase in self.phases]

    def get_phase(self, name: str) -> Optional[Phase]:
        for phase in self.phases:
            if phase.name == name:
                return phase
        return None

    def index_of(self, name: str) -> int:
        """Position of a phase in the sequence, or -1."""
        for index, phase in enumerate(self.phases):
            if phase.name == name:
                return index
        return -1

    def next_phase_after(self, name: str) -> Optional[str]:
        """The phase following ``name``, or None for the last/unknown phase."""
        index = self.index_of(name)
        if index == -1 or index == len(self.phases) - 1:
            return None
        return self.phases[index + 1].name


@dataclass(frozen=True)
class PolicySet:
    """
    All loaded policies, in declaration order, plus the default policy name.

    Reloading means building a new PolicySet; this one never changes.
    """
    policies: dict[str, Policy]
    default_policy: str

    def get(self, name: str) -> Optional[Policy]:
        return self.policies.get(name)

    def names(self) -> list[str]:
        return list(self.policies)

    def __contains__(self, name: object) -> bool:
        return name in self.policies

    def __len__(self) -> int:
        return len(self.policies)
