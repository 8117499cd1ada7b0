"""
Error types for Phase Shepherd.

This module provides:
- ShepherdError as the common base class
- Policy load and routing errors
- Run-history and decision-agent failures surfaced to the orchestration loop
- Unreadable decision-event logs

Configuration file errors live in ``phase_shepherd.config`` as ``ConfigError``
and also derive from ShepherdError.
"""

from __future__ import annotations

from typing import Optional


class ShepherdError(Exception):
    """Base class for all Phase Shepherd errors."""
    pass


class PolicyValidationError(ShepherdError):
    """
    Raised when a policy file violates a load-time invariant.

    The whole policy set is rejected; nothing is partially loaded.
    """

    def __init__(self, message: str, policy: Optional[str] = None) -> None:
        if policy:
            message = f"Policy '{policy}': {message}"
        super().__init__(message)
        self.policy = policy


class PolicyNotFoundError(ShepherdError):
    """Raised when a policy name cannot be resolved."""

    def __init__(self, policy: str) -> None:
        super().__init__(f"Policy '{policy}' not found")
        self.policy = policy


class InvalidWorkflowLabelError(ShepherdError):
    """Raised when an explicit workflow label names an unknown policy."""

    def __init__(self, label: str, policy: str) -> None:
        super().__init__(
            f"Invalid workflow label: {label}. Policy '{policy}' does not exist."
        )
        self.label = label
        self.policy = policy


class InvalidTransitionError(ShepherdError):
    """Raised when a candidate transition is structurally invalid for its policy."""
    pass


class RunHistoryUnavailableError(ShepherdError):
    """
    Raised when a run-history query fails during a safety check.

    Loop prevention fails closed: the caller gets this error instead of a
    transition that skipped its checks.
    """

    def __init__(self, query: str, cause: Exception) -> None:
        super().__init__(f"Run history unavailable during {query}: {cause}")
        self.query = query
        self.cause = cause


class DecisionAgentError(ShepherdError):
    """Raised when the decision agent could not be executed at all."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class DecisionTimeoutError(DecisionAgentError):
    """Raised when a decision-agent call exceeds its timeout."""

    def __init__(self, timeout_seconds: float, attempts: int = 0) -> None:
        super().__init__(
            f"Decision agent timed out after {timeout_seconds:.1f}s",
            attempts=attempts,
        )
        self.timeout_seconds = timeout_seconds


class TemplateSyntaxError(ShepherdError):
    """Raised when a decision prompt template cannot be compiled."""

    def __init__(self, message: str, template: Optional[str] = None) -> None:
        if template:
            message = f"Template '{template}': {message}"
        super().__init__(message)
        self.template = template


class DecisionLogError(ShepherdError):
    """Raised when a line of a decision-event log cannot be read back."""

    def __init__(self, path: str, line_number: int, cause: Exception) -> None:
        super().__init__(f"Malformed decision event at {path}:{line_number}: {cause!r}")
        self.path = path
        self.line_number = line_number
        self.cause = cause
