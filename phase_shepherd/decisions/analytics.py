"""
Decision analytics.

One DecisionEvent is recorded per resolved dynamic decision. Every statistic
is computed by folding over the event stream; there are no running counters
to keep in sync.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from functools import reduce
from pathlib import Path
from typing import Any, Iterable, Optional

from phase_shepherd.errors import DecisionLogError

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.5
BUCKETS = ("high", "medium", "low")


def confidence_bucket(confidence: float) -> str:
    """high >= 0.8, medium 0.5 - 0.8, low < 0.5."""
    if confidence >= HIGH_CONFIDENCE:
        return "high"
    if confidence >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


@dataclass
class DecisionEvent:
    """A resolved decision-agent call."""
    issue_id: str
    from_phase: str
    action: str                                # advance | jump | require_approval
    target_phase: Optional[str]
    confidence: float
    transition_type: str
    auto_applied: bool
    attempts: int = 1
    reasoning: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecisionEvent:
        return cls(
            issue_id=data["issue_id"],
            from_phase=data["from_phase"],
            action=data["action"],
            target_phase=data.get("target_phase"),
            confidence=float(data.get("confidence", 0.0)),
            transition_type=data.get("transition_type", "block"),
            auto_applied=bool(data.get("auto_applied", False)),
            attempts=int(data.get("attempts", 1)),
            reasoning=data.get("reasoning", ""),
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class BucketStats:
    """
    Per-bucket counts.

    ``approved`` counts replies that did not ask for human approval;
    ``auto_applied`` counts transitions that were applied without a block.
    """
    total: int = 0
    approved: int = 0
    auto_applied: int = 0

    @property
    def approval_rate(self) -> float:
        return self.approved / self.total if self.total else 0.0

    @property
    def auto_applied_rate(self) -> float:
        return self.auto_applied / self.total if self.total else 0.0


@dataclass
class DecisionSummaryStats:
    """Aggregates over a decision-event stream."""
    total: int = 0
    by_action: dict[str, int] = field(default_factory=dict)
    confidence_buckets: dict[str, BucketStats] = field(
        default_factory=lambda: {name: BucketStats() for name in BUCKETS}
    )
    target_counts: dict[str, int] = field(default_factory=dict)
    average_confidence: float = 0.0

    def most_common_targets(self, limit: int = 5) -> list[tuple[str, int]]:
        """Targets by count descending, ties by name."""
        ordered = sorted(self.target_counts.items(), key=lambda item: (-item[1], item[0]))
        return ordered[:limit]

    def approval_rates(self) -> dict[str, float]:
        return {name: stats.approval_rate for name, stats in self.confidence_buckets.items()}

    def auto_applied_rates(self) -> dict[str, float]:
        return {name: stats.auto_applied_rate for name, stats in self.confidence_buckets.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_action": dict(self.by_action),
            "confidence_buckets": {
                name: stats.total for name, stats in self.confidence_buckets.items()
            },
            "approval_rates": self.approval_rates(),
            "auto_applied_rates": self.auto_applied_rates(),
            "most_common_targets": self.most_common_targets(),
            "average_confidence": self.average_confidence,
        }


@dataclass(frozen=True)
class _Acc:
    total: int
    confidence_sum: float
    actions: Counter
    targets: Counter
    bucket_totals: Counter
    bucket_approved: Counter
    bucket_applied: Counter


def _step(acc: _Acc, event: DecisionEvent) -> _Acc:
    bucket = confidence_bucket(event.confidence)
    one = Counter({bucket: 1})
    return _Acc(
        total=acc.total + 1,
        confidence_sum=acc.confidence_sum + event.confidence,
        actions=acc.actions + Counter({event.action: 1}),
        targets=acc.targets + (Counter({event.target_phase: 1}) if event.target_phase else Counter()),
        bucket_totals=acc.bucket_totals + one,
        bucket_approved=acc.bucket_approved + (one if event.action != "require_approval" else Counter()),
        bucket_applied=acc.bucket_applied + (one if event.auto_applied else Counter()),
    )


def summarize_decisions(events: Iterable[DecisionEvent]) -> DecisionSummaryStats:
    """Fold a decision-event stream into summary statistics."""
    empty = _Acc(0, 0.0, Counter(), Counter(), Counter(), Counter(), Counter())
    acc = reduce(_step, events, empty)
    return DecisionSummaryStats(
        total=acc.total,
        by_action=dict(acc.actions),
        confidence_buckets={
            name: BucketStats(
                total=acc.bucket_totals[name],
                approved=acc.bucket_approved[name],
                auto_applied=acc.bucket_applied[name],
            )
            for name in BUCKETS
        },
        target_counts=dict(acc.targets),
        average_confidence=acc.confidence_sum / acc.total if acc.total else 0.0,
    )


class DecisionEventLog:
    """Append-only decision-event stream, optionally persisted as JSONL."""

    def __init__(self, path: Optional[Path] = None) -> None:
        """
        Initialize the event log.

        Args:
            path: JSONL file to append to. Existing events are loaded.
        """
        self.path = Path(path) if path else None
        self._events: list[DecisionEvent] = []
        if self.path and self.path.exists():
            self._events = list(self.load(self.path))

    @staticmethod
    def load(path: Path) -> Iterable[DecisionEvent]:
        """
        Read events from a JSONL file.

        Raises:
            DecisionLogError: If a line is not JSON or lacks required fields.
        """
        with Path(path).open() as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    event = DecisionEvent.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    raise DecisionLogError(str(path), line_number, e) from e
                yield event

    def append(self, event: DecisionEvent) -> None:
        self._events.append(event)
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a") as f:
                f.write(json.dumps(event.to_dict()) + "\n")

    def events(self, issue_id: Optional[str] = None) -> list[DecisionEvent]:
        if issue_id is None:
            return list(self._events)
        return [event for event in self._events if event.issue_id == issue_id]

    def summary(self, issue_id: Optional[str] = None) -> DecisionSummaryStats:
        return summarize_decisions(self.events(issue_id))

    def __len__(self) -> int:
        return len(self._events)
