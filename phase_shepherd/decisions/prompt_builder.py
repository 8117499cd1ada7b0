"""
Decision Prompt Builder.

This module handles:
- Loading decision prompt templates (decision-prompts.yaml)
- Selecting a template for a decision route (route template > capability >
  default template > bundled fallback)
- Assembling the template context: issue, outcome, whitelist, recent
  decisions, phase history and performance figures
- Rendering system and user prompts

Templates are compiled when the file is loaded, so a broken template fails
at startup rather than in the middle of a workflow.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import yaml

from phase_shepherd.config import ConfigError, ShepherdConfig
from phase_shepherd.decisions.templates import CompiledTemplate, compile_template
from phase_shepherd.defaults import get_default_templates_path
from phase_shepherd.history import PhaseDurationStats, RunRecord
from phase_shepherd.models import Issue, RunOutcome
from phase_shepherd.policy.models import ConfidenceThresholds, DecisionRoute

logger = logging.getLogger(__name__)

FALLBACK_TEMPLATE_NAME = "fallback-template"

DEFAULT_INSTRUCTIONS = (
    "Review the outcome of the current phase and choose the next phase from the "
    "allowed destinations, or request human approval if you are not sure."
)

REPROMPT_NOTE = (
    "Note: Previous attempts failed. Please provide a clearer, more explicit decision "
    "following the required format."
)


@dataclass(frozen=True)
class DecisionTemplate:
    """A named prompt template."""
    name: str
    system_prompt: str
    prompt_template: CompiledTemplate
    description: str = ""
    instructions: Optional[str] = None


@dataclass(frozen=True)
class DecisionTemplateSet:
    """All templates from one decision-prompts file."""
    templates: dict[str, DecisionTemplate]
    default_template: str = FALLBACK_TEMPLATE_NAME
    version: str = "1.0"

    def get(self, name: Optional[str]) -> Optional[DecisionTemplate]:
        if not name:
            return None
        return self.templates.get(name)

    def names(self) -> list[str]:
        return list(self.templates)


def parse_decision_templates(data: Any) -> DecisionTemplateSet:
    """
    Build a DecisionTemplateSet from parsed YAML.

    Raises:
        ConfigError: If the structure is wrong.
        TemplateSyntaxError: If a template does not compile.
    """
    if not isinstance(data, dict) or not isinstance(data.get("templates"), dict):
        raise ConfigError("Invalid decision prompts file: missing 'templates' mapping")

    templates: dict[str, DecisionTemplate] = {}
    for key, raw in data["templates"].items():
        if not isinstance(raw, dict) or not isinstance(raw.get("prompt_template"), str):
            raise ConfigError(f"Decision template '{key}' requires a prompt_template")
        templates[key] = DecisionTemplate(
            name=raw.get("name", key),
            description=raw.get("description", ""),
            system_prompt=raw.get("system_prompt", ""),
            prompt_template=compile_template(raw["prompt_template"], key),
            instructions=raw.get("instructions"),
        )

    return DecisionTemplateSet(
        templates=templates,
        default_template=data.get("default_template", FALLBACK_TEMPLATE_NAME),
        version=str(data.get("version", "1.0")),
    )


def load_decision_templates(path: Union[str, Path]) -> DecisionTemplateSet:
    """
    Load decision prompt templates from a YAML file.

    Raises:
        ConfigError: If the file is missing or invalid.
        TemplateSyntaxError: If a template does not compile.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Decision prompts file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in decision prompts file: {e}")

    return parse_decision_templates(data)


def load_builtin_templates() -> DecisionTemplateSet:
    """Load the templates bundled with the package."""
    return load_decision_templates(get_default_templates_path())


@dataclass
class DecisionSummary:
    """A past decision shown to the agent."""
    timestamp: str
    decision: str
    reasoning: str


@dataclass
class PhaseHistoryEntry:
    """A past phase run shown to the agent."""
    phase: str
    attempt_number: int
    status: str
    duration_ms: int
    error: Optional[str] = None

    @classmethod
    def from_run(cls, run: RunRecord) -> PhaseHistoryEntry:
        return cls(
            phase=run.phase,
            attempt_number=run.attempt_number,
            status=run.status,
            duration_ms=run.duration_ms,
            error=run.error,
        )


@dataclass
class PerformanceContext:
    """Aggregate timing for the current phase."""
    average_duration_ms: float
    total_duration_ms: int
    phase_visit_count: int

    @classmethod
    def from_stats(cls, stats: PhaseDurationStats) -> PerformanceContext:
        return cls(
            average_duration_ms=round(stats.avg_ms),
            total_duration_ms=stats.total_ms,
            phase_visit_count=stats.visit_count,
        )


@dataclass
class DecisionHistoryContext:
    """History-derived context, gathered by the caller before prompting."""
    recent_decisions: list[DecisionSummary] = field(default_factory=list)
    phase_history: list[PhaseHistoryEntry] = field(default_factory=list)
    performance_context: Optional[PerformanceContext] = None


@dataclass
class TemplateContext:
    """Everything a decision template can reference."""
    issue: Issue
    outcome: RunOutcome
    current_phase: str
    custom_instructions: str
    allowed_destinations: Sequence[str]
    confidence_thresholds: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    recent_decisions: list[DecisionSummary] = field(default_factory=list)
    phase_history: list[PhaseHistoryEntry] = field(default_factory=list)
    performance_context: Optional[PerformanceContext] = None

    def to_template_vars(self) -> dict[str, Any]:
        """Flatten into the plain mapping the template language reads."""
        return {
            "issue": self.issue.to_dict(),
            "outcome": self.outcome.to_dict(),
            "current_phase": self.current_phase,
            "custom_instructions": self.custom_instructions,
            "allowed_destinations": list(self.allowed_destinations),
            "confidence_thresholds": self.confidence_thresholds.to_dict(),
            "recent_decisions": [asdict(d) for d in self.recent_decisions],
            "phase_history": [asdict(h) for h in self.phase_history],
            "performance_context": (
                asdict(self.performance_context) if self.performance_context else None
            ),
        }


@dataclass(frozen=True)
class DecisionPrompt:
    """Rendered prompts for one decision-agent call."""
    system_prompt: str
    user_prompt: str
    template_name: str

    def with_reprompt_note(self, attempt: int, errors: Sequence[str]) -> DecisionPrompt:
        """Append the retry note used on attempts after the first."""
        if attempt <= 0:
            return self
        note = REPROMPT_NOTE
        if errors:
            note += "\nProblems with the previous response:\n" + "\n".join(
                f"- {error}" for error in errors
            )
        return DecisionPrompt(
            system_prompt=self.system_prompt,
            user_prompt=f"{self.user_prompt}\n\n{note}",
            template_name=self.template_name,
        )


class DecisionPromptBuilder:
    """
    Builds decision-agent prompts from templates.

    Construct one per loaded template set and pass it to whoever needs it.
    """

    def __init__(
        self,
        templates: Optional[DecisionTemplateSet] = None,
        recent_decisions_limit: int = 5,
    ) -> None:
        """
        Initialize the builder.

        Args:
            templates: Project templates. The bundled set is used when None.
            recent_decisions_limit: How many past decisions to show.
        """
        self._builtin = load_builtin_templates()
        self.templates = templates or self._builtin
        self.recent_decisions_limit = recent_decisions_limit

    def available_templates(self) -> list[str]:
        return self.templates.names()

    def get_template(self, name: Optional[str] = None) -> DecisionTemplate:
        """
        Get a template by name, falling back to the default template and then
        to the bundled fallback.
        """
        template = self.templates.get(name)
        if template is not None:
            return template

        if name:
            logger.debug("Decision template '%s' not found, using default", name)

        template = self.templates.get(self.templates.default_template)
        if template is not None:
            return template

        template = self._builtin.get(self._builtin.default_template)
        if template is None:
            raise ConfigError("Bundled decision prompts define no fallback template")
        return template

    def resolve_instructions(self, route: DecisionRoute, template: DecisionTemplate) -> str:
        """Instruction text: route prompt > template instructions > generic text."""
        for candidate in (route.prompt, template.instructions):
            if candidate and candidate.strip():
                return candidate.strip()
        return DEFAULT_INSTRUCTIONS

    def build_prompt(self, template_name: Optional[str], context: TemplateContext) -> DecisionPrompt:
        """Render a template against a context."""
        return self._render(self.get_template(template_name), context)

    def _render(self, template: DecisionTemplate, context: TemplateContext) -> DecisionPrompt:
        return DecisionPrompt(
            system_prompt=template.system_prompt.strip(),
            user_prompt=template.prompt_template.render(context.to_template_vars()).strip(),
            template_name=template.name,
        )

    def build_decision_instructions(
        self,
        issue: Issue,
        route: DecisionRoute,
        previous_outcome: RunOutcome,
        current_phase: str,
        context: Optional[DecisionHistoryContext] = None,
    ) -> DecisionPrompt:
        """
        Build the prompts for resolving a dynamic decision.

        Args:
            issue: The issue being routed.
            route: The decision route being resolved.
            previous_outcome: Outcome of the phase that just finished.
            current_phase: Phase that just finished.
            context: Recent decisions, phase history and performance figures.
        """
        context = context or DecisionHistoryContext()
        template = self.get_template(route.template or route.capability)
        template_context = TemplateContext(
            issue=issue,
            outcome=previous_outcome,
            current_phase=current_phase,
            custom_instructions=self.resolve_instructions(route, template),
            allowed_destinations=route.allowed_destinations,
            confidence_thresholds=route.confidence_thresholds,
            recent_decisions=context.recent_decisions[-self.recent_decisions_limit:]
            if self.recent_decisions_limit > 0 else [],
            phase_history=context.phase_history,
            performance_context=context.performance_context,
        )
        return self._render(template, template_context)

    @classmethod
    def from_config(cls, config: ShepherdConfig) -> DecisionPromptBuilder:
        """Use the project's decision-prompts.yaml when it exists."""
        path = config.decision_prompts_path
        templates = load_decision_templates(path) if path.exists() else None
        return cls(templates, config.decision.recent_decisions_limit)
