"""
Run history for Phase Shepherd.

The transition engine only reads history; recording runs and transitions is
the orchestration loop's job. This module defines:
- RunHistory, the read protocol the engine and loop prevention depend on
- RunRecord / TransitionRecord / PhaseDurationStats value types
- InMemoryRunHistory for tests and embedding
- JsonlRunHistory, an append-only JSONL store
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunRecord:
    """One execution of a phase for an issue."""
    run_id: str
    issue_id: str
    phase: str
    status: str = "completed"                  # pending | running | completed | failed
    attempt_number: int = 1
    duration_ms: int = 0
    error: Optional[str] = None
    started_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        return cls(**data)


@dataclass
class TransitionRecord:
    """A phase-to-phase move applied to an issue."""
    issue_id: str
    from_phase: str
    to_phase: str
    transition_type: str = "advance"
    timestamp: str = field(default_factory=_now_iso)

    @property
    def edge(self) -> tuple[str, str]:
        return (self.from_phase, self.to_phase)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransitionRecord:
        return cls(**data)


@dataclass
class PhaseDurationStats:
    """Aggregate timing for an (issue, phase) pair."""
    avg_ms: float = 0.0
    total_ms: int = 0
    visit_count: int = 0


class RunHistory(Protocol):
    """Read-only queries the engine makes against run history."""

    def count_runs(self, issue_id: str, phase: str, status: Optional[str] = None) -> int: ...

    def count_transitions(self, issue_id: str, from_phase: str, to_phase: str) -> int: ...

    def get_transition_history(self, issue_id: str, limit: int) -> list[TransitionRecord]: ...

    def get_phase_duration_stats(self, issue_id: str, phase: str) -> PhaseDurationStats: ...

    def get_runs(self, issue_id: str, limit: Optional[int] = None) -> list[RunRecord]: ...


class _HistoryQueries(ABC):
    """Query implementations shared by the concrete stores."""

    @abstractmethod
    def _iter_runs(self) -> Iterable[RunRecord]:
        """All recorded runs, oldest first."""

    @abstractmethod
    def _iter_transitions(self) -> Iterable[TransitionRecord]:
        """All recorded transitions, oldest first."""

    def count_runs(self, issue_id: str, phase: str, status: Optional[str] = None) -> int:
        return sum(
            1 for run in self._iter_runs()
            if run.issue_id == issue_id
            and run.phase == phase
            and (status is None or run.status == status)
        )

    def count_transitions(self, issue_id: str, from_phase: str, to_phase: str) -> int:
        return sum(
            1 for record in self._iter_transitions()
            if record.issue_id == issue_id and record.edge == (from_phase, to_phase)
        )

    def get_transition_history(self, issue_id: str, limit: int) -> list[TransitionRecord]:
        """The last ``limit`` transitions for an issue, oldest first."""
        records = [r for r in self._iter_transitions() if r.issue_id == issue_id]
        if limit <= 0:
            return []
        return records[-limit:]

    def get_phase_duration_stats(self, issue_id: str, phase: str) -> PhaseDurationStats:
        durations = [
            run.duration_ms for run in self._iter_runs()
            if run.issue_id == issue_id and run.phase == phase
        ]
        if not durations:
            return PhaseDurationStats()
        total = sum(durations)
        return PhaseDurationStats(
            avg_ms=total / len(durations),
            total_ms=total,
            visit_count=len(durations),
        )

    def get_runs(self, issue_id: str, limit: Optional[int] = None) -> list[RunRecord]:
        """Runs for an issue, oldest first; ``limit`` keeps the most recent."""
        runs = [run for run in self._iter_runs() if run.issue_id == issue_id]
        if limit is not None:
            runs = runs[-limit:] if limit > 0 else []
        return runs


class InMemoryRunHistory(_HistoryQueries):
    """Run history held in lists; insertion order is chronological order."""

    def __init__(self) -> None:
        self._runs: list[RunRecord] = []
        self._transitions: list[TransitionRecord] = []

    def _iter_runs(self) -> Iterable[RunRecord]:
        return iter(self._runs)

    def _iter_transitions(self) -> Iterable[TransitionRecord]:
        return iter(self._transitions)

    def record_run(self, run: RunRecord) -> None:
        self._runs.append(run)

    def record_transition(self, record: TransitionRecord) -> None:
        self._transitions.append(record)


class JsonlRunHistory(_HistoryQueries):
    """Persist runs and transitions to append-only JSONL files."""

    def __init__(self, history_dir: Path) -> None:
        """
        Initialize JSONL history.

        Args:
            history_dir: Directory for runs.jsonl and transitions.jsonl.
        """
        self._history_dir = Path(history_dir)
        self._history_dir.mkdir(parents=True, exist_ok=True)
        self._runs_path = self._history_dir / "runs.jsonl"
        self._transitions_path = self._history_dir / "transitions.jsonl"

    def _append(self, path: Path, data: dict[str, Any]) -> None:
        with path.open("a") as f:
            f.write(json.dumps(data) + "\n")

    def _read(self, path: Path) -> Iterable[dict[str, Any]]:
        if not path.exists():
            return
        with path.open() as f:
            for line in f:
                if not line.strip():
                    continue
                yield json.loads(line)

    def _iter_runs(self) -> Iterable[RunRecord]:
        return (RunRecord.from_dict(data) for data in self._read(self._runs_path))

    def _iter_transitions(self) -> Iterable[TransitionRecord]:
        return (
            TransitionRecord.from_dict(data)
            for data in self._read(self._transitions_path)
        )

    def record_run(self, run: RunRecord) -> None:
        self._append(self._runs_path, run.to_dict())

    def record_transition(self, record: TransitionRecord) -> None:
        self._append(self._transitions_path, record.to_dict())
