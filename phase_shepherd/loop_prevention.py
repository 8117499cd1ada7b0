"""
Loop prevention for Phase Shepherd.

Three independent checks keep the workflow graph bounded:
- Phase visit limit: an issue may enter a phase at most max_visits times
- Transition-pair limit: an ordered (from, to) pair may occur at most
  max_transitions times per issue
- Cycle detection: the last 2 x cycle_length transitions must not read the
  same forwards and backwards (an oscillating A -> B -> A -> B path)

Checks run in that order and the first failure wins. They only read run
history; any failure to read it raises RunHistoryUnavailableError instead of
letting the transition through.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence, TypeVar

from phase_shepherd.config import LoopPreventionConfig
from phase_shepherd.errors import RunHistoryUnavailableError
from phase_shepherd.history import RunHistory, TransitionRecord

if TYPE_CHECKING:
    from phase_shepherd.logger import ShepherdLogger


T = TypeVar("T")


class LoopCheck(Enum):
    """Which safeguard produced a result."""
    PHASE_VISITS = "phase_visits"
    TRANSITION_LIMIT = "transition_limit"
    CYCLE = "cycle"


@dataclass(frozen=True)
class LoopCheckResult:
    """Outcome of one or more loop-prevention checks."""
    valid: bool
    reason: Optional[str] = None
    check: Optional[LoopCheck] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def passed(cls) -> LoopCheckResult:
        return cls(valid=True)


def is_oscillating(records: Sequence[TransitionRecord]) -> bool:
    """
    Check whether a run of transitions reads the same forwards and backwards.

    Reading an edge sequence backwards reverses both the order and each edge,
    so ``[A->B, B->A, A->B, B->A]`` (path A B A B A) is oscillating while
    ``[A->B, B->C, C->D]`` is not.
    """
    if not records:
        return False
    edges = [record.edge for record in records]
    backwards = [(to_phase, from_phase) for from_phase, to_phase in reversed(edges)]
    return edges == backwards


def _describe_path(records: Sequence[TransitionRecord]) -> str:
    path = [records[0].from_phase] + [record.to_phase for record in records]
    return " -> ".join(path)


class LoopGuard:
    """
    Runs loop-prevention checks against run history.

    Holds configuration only; every answer is computed from history queries
    made at call time.
    """

    def __init__(
        self,
        history: RunHistory,
        config: Optional[LoopPreventionConfig] = None,
        event_logger: Optional[ShepherdLogger] = None,
    ) -> None:
        """
        Initialize the guard.

        Args:
            history: Read access to run history.
            config: Global loop-prevention settings.
            event_logger: Optional JSONL logger for blocked checks.
        """
        self.history = history
        self.config = config or LoopPreventionConfig()
        self.event_logger = event_logger

    def _query(self, name: str, query: Callable[[], T]) -> T:
        try:
            return query()
        except RunHistoryUnavailableError:
            raise
        except Exception as e:
            raise RunHistoryUnavailableError(name, e) from e

    def check_phase_visits(self, issue_id: str, phase: str, max_visits: int) -> LoopCheckResult:
        """Block entering ``phase`` once it has been visited ``max_visits`` times."""
        visits = self._query(
            "count_runs", lambda: self.history.count_runs(issue_id, phase)
        )
        if visits >= max_visits:
            return LoopCheckResult(
                valid=False,
                reason=f"Phase '{phase}' exceeded max_visits limit ({visits}/{max_visits})",
                check=LoopCheck.PHASE_VISITS,
                details={"phase": phase, "visits": visits, "max_visits": max_visits},
            )
        return LoopCheckResult.passed()

    def check_transition_limit(
        self,
        issue_id: str,
        from_phase: str,
        to_phase: str,
        max_transitions: int,
    ) -> LoopCheckResult:
        """Block the ordered pair ``from_phase -> to_phase`` once it hits its limit."""
        count = self._query(
            "count_transitions",
            lambda: self.history.count_transitions(issue_id, from_phase, to_phase),
        )
        if count >= max_transitions:
            return LoopCheckResult(
                valid=False,
                reason=(
                    f"Transition '{from_phase}' -> '{to_phase}' exceeded max_transitions "
                    f"limit ({count}/{max_transitions})"
                ),
                check=LoopCheck.TRANSITION_LIMIT,
                details={
                    "from_phase": from_phase,
                    "to_phase": to_phase,
                    "count": count,
                    "max_transitions": max_transitions,
                },
            )
        return LoopCheckResult.passed()

    def detect_cycle(self, issue_id: str, cycle_length: Optional[int] = None) -> LoopCheckResult:
        """
        Flag an oscillating workflow.

        Reads the last ``2 * cycle_length`` transitions (oldest first). Shorter
        histories are never flagged.
        """
        length = cycle_length or self.config.cycle_detection_length
        window = 2 * length
        records = self._query(
            "get_transition_history",
            lambda: self.history.get_transition_history(issue_id, window),
        )
        records = list(records)[-window:]
        if len(records) < window or not is_oscillating(records):
            return LoopCheckResult.passed()

        path = _describe_path(records)
        return LoopCheckResult(
            valid=False,
            reason=f"Oscillating cycle detected: {path}",
            check=LoopCheck.CYCLE,
            details={"cycle_length": length, "path": path},
        )

    def check(
        self,
        issue_id: str,
        from_phase: str,
        to_phase: str,
        max_visits: int,
        max_transitions: Optional[int] = None,
    ) -> LoopCheckResult:
        """
        Run every enabled check for a candidate move, first failure wins.

        Args:
            issue_id: Issue being transitioned.
            from_phase: Phase the issue is leaving.
            to_phase: Phase the candidate transition enters.
            max_visits: Effective visit limit for ``to_phase``.
            max_transitions: Effective pair limit (global default when None).
        """
        if not self.config.enabled:
            return LoopCheckResult.passed()

        if max_transitions is None:
            max_transitions = self.config.max_transitions_default

        checks: list[Callable[[], LoopCheckResult]] = [
            lambda: self.check_phase_visits(issue_id, to_phase, max_visits),
            lambda: self.check_transition_limit(issue_id, from_phase, to_phase, max_transitions),
        ]
        if self.config.cycle_detection_enabled:
            checks.append(lambda: self.detect_cycle(issue_id))

        for run_check in checks:
            result = run_check()
            if not result.valid:
                self._log_blocked(issue_id, from_phase, to_phase, result)
                return result

        return LoopCheckResult.passed()

    def _log_blocked(
        self,
        issue_id: str,
        from_phase: str,
        to_phase: str,
        result: LoopCheckResult,
    ) -> None:
        if self.event_logger:
            self.event_logger.warn(
                "loop_prevention_blocked",
                {
                    "from_phase": from_phase,
                    "to_phase": to_phase,
                    "check": result.check.value if result.check else None,
                    "reason": result.reason,
                    **result.details,
                },
                issue_id=issue_id,
            )
