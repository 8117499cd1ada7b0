"""
Decision response parsing.

Turns raw decision-agent text into a validated DecisionResponse through a
sanitize -> parse -> validate pipeline. Nothing in this module raises: every
failure is reported as an error string on a DecisionValidationResult.

Expected payload::

    {
      "decision": "advance_to_test" | "jump_to_plan" | "require_approval",
      "reasoning": "...",
      "confidence": 0.0 - 1.0,
      "recommendations": ["..."]
    }
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from phase_shepherd.policy.models import ConfidenceThresholds

REQUIRED_FIELDS = ("decision", "reasoning", "confidence")
KNOWN_FIELDS = frozenset(REQUIRED_FIELDS + ("recommendations",))

_FENCE_OPEN_RE = re.compile(r"^```[A-Za-z0-9_-]*[ \t]*\r?\n?")
_FENCE_CLOSE_RE = re.compile(r"\r?\n?```\s*$")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_ACTION_RE = re.compile(r"^(advance_to|jump_to)_(.+)$")


class DecisionAction(Enum):
    """The three shapes a decision can take."""
    ADVANCE = "advance"
    JUMP = "jump"
    REQUIRE_APPROVAL = "require_approval"


@dataclass(frozen=True)
class DecisionResponse:
    """A decision that passed validation."""
    action: DecisionAction
    target_phase: Optional[str]
    reasoning: str
    confidence: float
    recommendations: tuple[str, ...] = ()
    raw_decision: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "target_phase": self.target_phase,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "recommendations": list(self.recommendations),
            "decision": self.raw_decision,
        }


@dataclass
class DecisionValidationResult:
    """Outcome of parsing one decision-agent reply."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    response: Optional[DecisionResponse] = None

    @classmethod
    def failure(cls, errors: list[str], warnings: Optional[list[str]] = None) -> DecisionValidationResult:
        return cls(valid=False, errors=errors, warnings=warnings or [])


def parse_action(decision: str) -> tuple[Optional[DecisionAction], Optional[str]]:
    """
    Split a decision string into action and target phase.

    Returns (None, None) when the string matches none of the action shapes.
    """
    if decision == "require_approval":
        return DecisionAction.REQUIRE_APPROVAL, None
    match = _ACTION_RE.match(decision)
    if not match:
        return None, None
    action = DecisionAction.ADVANCE if match.group(1) == "advance_to" else DecisionAction.JUMP
    return action, match.group(2)


def _extract_object(text: str) -> Optional[str]:
    """
    Find the earliest-starting balanced ``{...}`` object in one pass.

    Braces inside JSON strings are skipped. Open braces that never close
    are left on the stack; the earliest span that did close wins.
    """
    opened: list[int] = []
    best: Optional[tuple[int, int]] = None
    in_string = False
    escaped = False
    for i, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            # Quotes in prose before the first brace are not strings.
            in_string = bool(opened)
        elif char == "{":
            opened.append(i)
        elif char == "}" and opened:
            start = opened.pop()
            if not opened:
                return text[start:i + 1]
            if best is None or start < best[0]:
                best = (start, i)
    if best is None:
        return None
    return text[best[0]:best[1] + 1]


def sanitize_response(raw: str) -> str:
    """
    Strip wrapping around the JSON payload.

    Removes markdown fences, cuts the first balanced JSON object out of any
    surrounding prose and drops control characters other than whitespace.
    """
    text = (raw or "").strip()
    text = _FENCE_OPEN_RE.sub("", text)
    text = _FENCE_CLOSE_RE.sub("", text).strip()

    if not (text.startswith("{") and text.endswith("}")):
        extracted = _extract_object(text)
        if extracted is not None:
            text = extracted

    return _CONTROL_RE.sub("", text)


def _load_json(raw: str) -> tuple[Optional[Any], Optional[str]]:
    """Parse trimmed text first, then the sanitized form."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return None, "Empty response from decision agent"

    try:
        return json.loads(trimmed), None
    except json.JSONDecodeError:
        pass

    sanitized = sanitize_response(trimmed)
    try:
        return json.loads(sanitized), None
    except json.JSONDecodeError as e:
        return None, f"Response is not valid JSON: {e.msg}"


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def parse_decision_response(
    raw: str,
    allowed_destinations: Sequence[str],
    thresholds: Optional[ConfidenceThresholds] = None,
) -> DecisionValidationResult:
    """
    Parse and validate a decision-agent reply.

    Args:
        raw: Raw text returned by the agent.
        allowed_destinations: Whitelist of phases (and ``close``) the agent
            may route to.
        thresholds: Used only to warn about low-confidence decisions.

    Returns:
        DecisionValidationResult; ``response`` is set only when valid.
    """
    thresholds = thresholds or ConfidenceThresholds()

    data, error = _load_json(raw)
    if error:
        return DecisionValidationResult.failure([error])
    if not isinstance(data, dict):
        return DecisionValidationResult.failure(["Response must be a JSON object"])

    errors: list[str] = []
    warnings: list[str] = []

    for name in REQUIRED_FIELDS:
        if name not in data:
            errors.append(f"Missing required field: {name}")

    action: Optional[DecisionAction] = None
    target: Optional[str] = None
    decision = data.get("decision")
    if "decision" in data:
        if not isinstance(decision, str) or not decision.strip():
            errors.append("Field 'decision' must be a non-empty string")
        else:
            decision = decision.strip()
            action, target = parse_action(decision)
            if action is None:
                errors.append(
                    f"Invalid decision '{decision}': expected advance_to_<phase>, "
                    "jump_to_<phase> or require_approval"
                )
            elif target is not None and target not in allowed_destinations:
                errors.append(
                    f"Target phase '{target}' is not in allowed destinations: "
                    f"{', '.join(allowed_destinations)}"
                )

    reasoning = data.get("reasoning")
    if "reasoning" in data and (not isinstance(reasoning, str) or not reasoning.strip()):
        errors.append("Field 'reasoning' must be a non-empty string")

    confidence = data.get("confidence")
    if "confidence" in data:
        if not _is_number(confidence):
            errors.append("Field 'confidence' must be a number")
        elif not 0.0 <= confidence <= 1.0:
            errors.append(f"Confidence {confidence} is outside the range [0, 1]")
        elif confidence < thresholds.require_approval:
            warnings.append(
                f"Confidence {confidence} is below the approval threshold "
                f"({thresholds.require_approval}); decision will be escalated"
            )

    recommendations = data.get("recommendations", [])
    if not isinstance(recommendations, list) or not all(
        isinstance(item, str) for item in recommendations
    ):
        errors.append("Field 'recommendations' must be a list of strings")

    unknown = sorted(set(data) - KNOWN_FIELDS)
    if unknown:
        warnings.append(f"Ignoring unknown fields: {', '.join(unknown)}")

    if errors:
        return DecisionValidationResult.failure(errors, warnings)

    return DecisionValidationResult(
        valid=True,
        warnings=warnings,
        response=DecisionResponse(
            action=action,
            target_phase=target,
            reasoning=reasoning.strip(),
            confidence=float(confidence),
            recommendations=tuple(recommendations),
            raw_decision=decision,
        ),
    )
