"""
Decision-agent protocol.

Prompt templates and rendering, response parsing and validation, the async
re-prompt runner and decision analytics.
"""

from phase_shepherd.decisions.analytics import DecisionEvent, DecisionEventLog, summarize_decisions
from phase_shepherd.decisions.prompt_builder import DecisionPrompt, DecisionPromptBuilder
from phase_shepherd.decisions.response_parser import (
    DecisionAction,
    DecisionResponse,
    DecisionValidationResult,
    parse_decision_response,
    sanitize_response,
)

__all__ = [
    "DecisionAction",
    "DecisionEvent",
    "DecisionEventLog",
    "DecisionPrompt",
    "DecisionPromptBuilder",
    "DecisionResponse",
    "DecisionValidationResult",
    "parse_decision_response",
    "sanitize_response",
    "summarize_decisions",
]
