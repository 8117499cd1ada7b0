"""
Structured JSONL logging for Phase Shepherd.

This module provides:
- JSONL event logging for transition audit trails
- Log files organized by issue and date
- Log levels (debug, info, warn, error)
- Context manager for run-scoped logging
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ShepherdLogger:
    """
    JSONL event logger for Phase Shepherd.

    Writes structured log entries to <logs_dir>/<issue>-YYYY-MM-DD.jsonl.
    Entries logged without an issue go to shepherd-YYYY-MM-DD.jsonl.

    Each log entry is a JSON object with:
    - timestamp: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - issue_id: Issue identifier (may be null)
    - data: Additional event data (dict)
    """

    def __init__(self, logs_dir: Path) -> None:
        """
        Initialize the logger.

        Args:
            logs_dir: Directory for JSONL log files (created on first write).
        """
        self.logs_dir = Path(logs_dir)
        self._current_run_id: Optional[str] = None

    def _get_log_path(self, issue_id: Optional[str], date: Optional[str] = None) -> Path:
        """Get the log file path for an issue and day."""
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        stem = issue_id or "shepherd"
        return self.logs_dir / f"{stem}-{date}.jsonl"

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Write a log entry to the JSONL file."""
        log_path = self._get_log_path(entry.get("issue_id"))
        log_path.parent.mkdir(parents=True, exist_ok=True)

        with open(log_path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
        issue_id: Optional[str] = None,
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "transition_decided").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
            issue_id: Issue the event belongs to.
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "issue_id": issue_id,
            "data": data or {},
        }

        if self._current_run_id:
            entry["run_id"] = self._current_run_id

        self._write_entry(entry)

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None,
              issue_id: Optional[str] = None) -> None:
        """Log a debug event."""
        self.log(event_type, data, LogLevel.DEBUG, issue_id)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None,
             issue_id: Optional[str] = None) -> None:
        """Log an info event."""
        self.log(event_type, data, LogLevel.INFO, issue_id)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None,
             issue_id: Optional[str] = None) -> None:
        """Log a warning event."""
        self.log(event_type, data, LogLevel.WARN, issue_id)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None,
              issue_id: Optional[str] = None) -> None:
        """Log an error event."""
        self.log(event_type, data, LogLevel.ERROR, issue_id)

    @contextmanager
    def run_context(self, run_id: str) -> Iterator[ShepherdLogger]:
        """
        Context manager for run-scoped logging.

        All logs within this context will include the run_id.

        Example:
            with logger.run_context("run-001") as log:
                log.info("transition_decided", {"type": "advance"}, issue_id="bd-12")
        """
        old_run_id = self._current_run_id
        self._current_run_id = run_id
        try:
            yield self
        finally:
            self._current_run_id = old_run_id

    def read_logs(
        self,
        issue_id: Optional[str] = None,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Args:
            issue_id: Issue whose log to read. None reads the shared log.
            date: Date string (YYYY-MM-DD) to read. If None, reads today's logs.
            level: Filter by log level.
            event_type: Filter by event type.
            run_id: Filter by run ID.
            limit: Maximum number of entries to return.

        Returns:
            List of log entries matching the filters.
        """
        log_path = self._get_log_path(issue_id, date)
        if not log_path.exists():
            return []

        entries = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                if run_id and entry.get("run_id") != run_id:
                    continue

                entries.append(entry)

                if limit and len(entries) >= limit:
                    break

        return entries

    def get_log_files(self, issue_id: Optional[str] = None) -> list[Path]:
        """
        Get all log files for an issue (or the shared log).

        Returns:
            List of log file paths, sorted by date (newest first).
        """
        if not self.logs_dir.exists():
            return []

        pattern = f"{issue_id or 'shepherd'}-*.jsonl"
        files = list(self.logs_dir.glob(pattern))
        files.sort(reverse=True)
        return files
