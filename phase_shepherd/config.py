"""
Configuration loading and validation for Phase Shepherd.

This module handles:
- Loading config.yaml from the shepherd directory
- Environment variable resolution (${VAR} syntax)
- Validation of ranged and enumerated fields
- Default values for optional fields

There is no module-level cache: callers load a ShepherdConfig once and pass
it to the components they construct.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from phase_shepherd.errors import ShepherdError


class ConfigError(ShepherdError):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


INVALID_LABEL_STRATEGIES = ("error", "warning", "ignore")
CUSTOM_VALIDATION_MODES = ("none", "alphanumeric", "alphanumeric-dash-underscore")

DEFAULT_HITL_REASONS = [
    "approval",
    "manual-intervention",
    "timeout",
    "error",
    "review-request",
    "loop-limit",
]


@dataclass
class WorkflowConfig:
    """Policy matching configuration."""
    invalid_label_strategy: str = "error"      # error | warning | ignore
    label_prefix: str = "ashep-workflow:"      # Explicit workflow label prefix


@dataclass
class LoopPreventionConfig:
    """Global loop-prevention defaults."""
    enabled: bool = True
    max_visits_default: int = 10               # Per (issue, phase)
    max_transitions_default: int = 5           # Per (issue, from -> to)
    cycle_detection_enabled: bool = True
    cycle_detection_length: int = 3            # 2-5
    trigger_hitl: bool = True                  # Tag loop blocks for human intervention


@dataclass
class ThresholdDefaults:
    """Confidence thresholds used when a decision route does not set its own."""
    auto_advance: float = 0.8
    require_approval: float = 0.6


@dataclass
class DecisionAgentConfig:
    """Decision agent execution configuration."""
    max_reprompts: int = 2                     # Extra attempts after the first
    reprompt_delay_seconds: float = 1.0        # Linear: delay * attempt
    timeout_seconds: float = 300.0             # Per executor call
    recent_decisions_limit: int = 5            # Decisions shown in the prompt
    default_thresholds: ThresholdDefaults = field(default_factory=ThresholdDefaults)


@dataclass
class AllowedReasonsConfig:
    """HITL reasons that may be placed on an issue."""
    predefined: list[str] = field(default_factory=lambda: list(DEFAULT_HITL_REASONS))
    allow_custom: bool = True
    custom_validation: str = "alphanumeric-dash-underscore"


@dataclass
class HITLConfig:
    """Human-in-the-loop configuration."""
    allowed_reasons: AllowedReasonsConfig = field(default_factory=AllowedReasonsConfig)


@dataclass
class FallbackConfig:
    """Global fallback agent configuration."""
    enabled: bool = False
    default_agent: Optional[str] = None
    mappings: dict[str, str] = field(default_factory=dict)  # capability -> agent id


@dataclass
class ShepherdConfig:
    """
    Main configuration for Phase Shepherd.

    This is the top-level config loaded from config.yaml.
    """
    # Paths
    repo_root: str = "."
    shepherd_dir: str = ".shepherd"
    policies_file: str = "policies.yaml"
    decision_prompts_file: str = "decision-prompts.yaml"

    # Nested configurations
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    loop_prevention: LoopPreventionConfig = field(default_factory=LoopPreventionConfig)
    decision: DecisionAgentConfig = field(default_factory=DecisionAgentConfig)
    hitl: HITLConfig = field(default_factory=HITLConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def shepherd_path(self) -> Path:
        """Absolute path to the shepherd directory."""
        return Path(self.repo_root) / self.shepherd_dir

    @property
    def policies_path(self) -> Path:
        """Absolute path to the policies file."""
        return self.shepherd_path / self.policies_file

    @property
    def decision_prompts_path(self) -> Path:
        """Absolute path to the decision prompt templates file."""
        return self.shepherd_path / self.decision_prompts_file

    @property
    def logs_path(self) -> Path:
        """Absolute path to the JSONL log directory."""
        return self.shepherd_path / "logs"

    @property
    def history_path(self) -> Path:
        """Absolute path to the run history directory."""
        return self.shepherd_path / "history"


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_workflow_config(data: dict[str, Any]) -> WorkflowConfig:
    """Parse workflow configuration from dict."""
    strategy = data.get("invalid_label_strategy", "error")
    if strategy not in INVALID_LABEL_STRATEGIES:
        raise ConfigError(
            f"workflow.invalid_label_strategy must be one of "
            f"{', '.join(INVALID_LABEL_STRATEGIES)} (got '{strategy}')"
        )
    return WorkflowConfig(
        invalid_label_strategy=strategy,
        label_prefix=data.get("label_prefix", "ashep-workflow:"),
    )


def _parse_loop_prevention_config(data: dict[str, Any]) -> LoopPreventionConfig:
    """Parse loop prevention configuration from dict."""
    config = LoopPreventionConfig(
        enabled=data.get("enabled", True),
        max_visits_default=data.get("max_visits_default", 10),
        max_transitions_default=data.get("max_transitions_default", 5),
        cycle_detection_enabled=data.get("cycle_detection_enabled", True),
        cycle_detection_length=data.get("cycle_detection_length", 3),
        trigger_hitl=data.get("trigger_hitl", True),
    )
    if config.max_visits_default < 1:
        raise ConfigError("loop_prevention.max_visits_default must be >= 1")
    if config.max_transitions_default < 1:
        raise ConfigError("loop_prevention.max_transitions_default must be >= 1")
    if not 2 <= config.cycle_detection_length <= 5:
        raise ConfigError("loop_prevention.cycle_detection_length must be between 2 and 5")
    return config


def _parse_decision_config(data: dict[str, Any]) -> DecisionAgentConfig:
    """Parse decision agent configuration from dict."""
    thresholds_data = data.get("default_thresholds", {})
    thresholds = ThresholdDefaults(
        auto_advance=thresholds_data.get("auto_advance", 0.8),
        require_approval=thresholds_data.get("require_approval", 0.6),
    )
    for name in ("auto_advance", "require_approval"):
        value = getattr(thresholds, name)
        if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
            raise ConfigError(f"decision.default_thresholds.{name} must be between 0.0 and 1.0")
    if thresholds.require_approval > thresholds.auto_advance:
        raise ConfigError(
            "decision.default_thresholds.require_approval must not exceed auto_advance"
        )

    config = DecisionAgentConfig(
        max_reprompts=data.get("max_reprompts", 2),
        reprompt_delay_seconds=data.get("reprompt_delay_seconds", 1.0),
        timeout_seconds=data.get("timeout_seconds", 300.0),
        recent_decisions_limit=data.get("recent_decisions_limit", 5),
        default_thresholds=thresholds,
    )
    if config.max_reprompts < 0:
        raise ConfigError("decision.max_reprompts must be >= 0")
    if config.timeout_seconds <= 0:
        raise ConfigError("decision.timeout_seconds must be > 0")
    return config


def _parse_hitl_config(data: dict[str, Any]) -> HITLConfig:
    """Parse HITL configuration from dict."""
    reasons = data.get("allowed_reasons", {})
    mode = reasons.get("custom_validation", "alphanumeric-dash-underscore")
    if mode not in CUSTOM_VALIDATION_MODES:
        raise ConfigError(
            f"hitl.allowed_reasons.custom_validation must be one of "
            f"{', '.join(CUSTOM_VALIDATION_MODES)} (got '{mode}')"
        )
    return HITLConfig(
        allowed_reasons=AllowedReasonsConfig(
            predefined=reasons.get("predefined", list(DEFAULT_HITL_REASONS)),
            allow_custom=reasons.get("allow_custom", True),
            custom_validation=mode,
        )
    )


def _parse_fallback_config(data: dict[str, Any]) -> FallbackConfig:
    """Parse fallback agent configuration from dict."""
    return FallbackConfig(
        enabled=data.get("enabled", False),
        default_agent=data.get("default_agent"),
        mappings=dict(data.get("mappings") or {}),
    )


def parse_config(data: dict[str, Any]) -> ShepherdConfig:
    """
    Build a ShepherdConfig from an already-parsed mapping.

    Raises:
        ConfigError: If any section is invalid.
    """
    data = _resolve_env_vars(data)

    return ShepherdConfig(
        repo_root=data.get("repo_root", "."),
        shepherd_dir=data.get("shepherd_dir", ".shepherd"),
        policies_file=data.get("policies_file", "policies.yaml"),
        decision_prompts_file=data.get("decision_prompts_file", "decision-prompts.yaml"),
        workflow=_parse_workflow_config(data.get("workflow") or {}),
        loop_prevention=_parse_loop_prevention_config(data.get("loop_prevention") or {}),
        decision=_parse_decision_config(data.get("decision") or {}),
        hitl=_parse_hitl_config(data.get("hitl") or {}),
        fallback=_parse_fallback_config(data.get("fallback") or {}),
    )


def load_config(config_path: Optional[str] = None) -> ShepherdConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for .shepherd/config.yaml in the current directory.

    Returns:
        ShepherdConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = str(Path(".shepherd") / "config.yaml")

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    return parse_config(raw_data)


def validate_hitl_reason(reason: str, config: Optional[HITLConfig] = None) -> bool:
    """
    Check whether a HITL reason may be placed on an issue.

    Predefined reasons are always accepted. Custom reasons are accepted only
    when allowed and when they match the configured pattern.
    """
    if config is None:
        return True

    allowed = config.allowed_reasons
    if reason in allowed.predefined:
        return True

    if not allowed.allow_custom:
        return False

    if allowed.custom_validation == "none":
        return True
    if allowed.custom_validation == "alphanumeric":
        return re.fullmatch(r"[a-z0-9]+", reason, re.IGNORECASE) is not None
    return re.fullmatch(r"[a-z][a-z0-9_-]*", reason, re.IGNORECASE) is not None
