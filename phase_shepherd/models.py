"""
Core data models for Phase Shepherd.

This module defines the values exchanged with the orchestration loop:
- Issue as read from the issue tracker
- RunOutcome produced by an executor once per phase run
- Transition produced by the engine once per completed run
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from phase_shepherd.policy.models import DecisionRoute


CLOSE_TARGET = "close"


class ResultType(Enum):
    """Outcome categories a phase run can end in."""
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL_SUCCESS = "partial_success"
    UNCLEAR = "unclear"


class TransitionType(Enum):
    """Kinds of transition the engine can produce."""
    ADVANCE = "advance"
    RETRY = "retry"
    BLOCK = "block"
    CLOSE = "close"
    JUMP_BACK = "jump_back"
    DYNAMIC_DECISION = "dynamic_decision"


class HITLReason:
    """HITL reason constants placed on blocked issues."""
    APPROVAL = "approval"
    MANUAL_INTERVENTION = "manual-intervention"
    LOOP_LIMIT = "loop-limit"


@dataclass
class Issue:
    """
    An issue-tracker ticket as seen by the engine.

    Only the fields used for policy matching and decision prompts are kept.
    """
    id: str
    title: str = ""
    description: str = ""
    issue_type: Optional[str] = None
    priority: Optional[int] = None
    status: str = "open"
    labels: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        """Create from dictionary, ignoring tracker fields we do not use."""
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            description=data.get("description") or "",
            issue_type=data.get("issue_type"),
            priority=data.get("priority"),
            status=data.get("status", "open"),
            labels=list(data.get("labels") or []),
        )


@dataclass
class OutcomeMetrics:
    """Execution metrics reported with an outcome."""
    duration_ms: Optional[int] = None
    tokens_used: Optional[int] = None
    start_time_ms: Optional[int] = None
    end_time_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class RunOutcome:
    """
    Result of one phase execution.

    ``result_type`` is optional; when absent the category is derived from
    ``success`` (True -> success, False -> failure).
    """
    success: bool
    result_type: Optional[ResultType] = None
    retry_count: Optional[int] = None          # 0-indexed, caller-supplied
    requires_approval: bool = False
    message: Optional[str] = None
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    metrics: Optional[OutcomeMetrics] = None

    @property
    def category(self) -> ResultType:
        """Resolve the outcome category."""
        if self.result_type is not None:
            return self.result_type
        return ResultType.SUCCESS if self.success else ResultType.FAILURE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["result_type"] = self.result_type.value if self.result_type else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunOutcome:
        """Create from dictionary."""
        result_type = data.get("result_type")
        metrics = data.get("metrics")
        return cls(
            success=bool(data.get("success", False)),
            result_type=ResultType(result_type) if result_type else None,
            retry_count=data.get("retry_count"),
            requires_approval=bool(data.get("requires_approval", False)),
            message=data.get("message"),
            error=data.get("error"),
            warnings=list(data.get("warnings") or []),
            metrics=OutcomeMetrics(**metrics) if metrics else None,
        )


@dataclass(frozen=True)
class Transition:
    """
    The engine's decision for one completed phase run.

    For ``jump_back`` both ``next_phase`` and ``jump_target_phase`` name the
    target. ``dynamic_decision`` carries its unresolved route in ``decision``.
    """
    type: TransitionType
    reason: str
    next_phase: Optional[str] = None
    jump_target_phase: Optional[str] = None
    decision: Optional[DecisionRoute] = None
    confidence: Optional[float] = None
    escalated: bool = False
    hitl_reason: Optional[str] = None

    @property
    def target_phase(self) -> Optional[str]:
        """The phase this transition moves into, if any."""
        return self.jump_target_phase or self.next_phase

    @property
    def is_blocked(self) -> bool:
        """Whether the issue must wait for a human."""
        return self.type is TransitionType.BLOCK

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "type": self.type.value,
            "reason": self.reason,
            "next_phase": self.next_phase,
            "jump_target_phase": self.jump_target_phase,
            "decision": self.decision.to_dict() if self.decision else None,
            "confidence": self.confidence,
            "escalated": self.escalated,
            "hitl_reason": self.hitl_reason,
        }
