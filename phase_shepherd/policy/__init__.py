"""
Workflow policies.

This package provides:
- The immutable policy model (policies, phases, transition routes)
- Loading and validating policies.yaml
- PolicyEngine queries: matching, sequencing, timing, cascading lookups
"""

from phase_shepherd.policy.engine import PolicyEngine
from phase_shepherd.policy.loader import load_policies, parse_policies
from phase_shepherd.policy.models import (
    BackoffStrategy,
    ConfidenceThresholds,
    DecisionRoute,
    DirectTarget,
    LoopLimits,
    Phase,
    Policy,
    PolicySet,
    RetryPolicy,
    TransitionBlock,
)

__all__ = [
    "BackoffStrategy",
    "ConfidenceThresholds",
    "DecisionRoute",
    "DirectTarget",
    "LoopLimits",
    "Phase",
    "Policy",
    "PolicyEngine",
    "PolicySet",
    "RetryPolicy",
    "TransitionBlock",
    "load_policies",
    "parse_policies",
]
