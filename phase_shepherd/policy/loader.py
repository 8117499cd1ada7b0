"""
Policy file loading and validation.

This module handles:
- Loading policies.yaml (PyYAML safe_load)
- Converting raw mappings into frozen Policy objects
- Enforcing every load-time invariant

Loading is all-or-nothing: the first violation raises PolicyValidationError
and no PolicySet is produced.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Union

import yaml

from phase_shepherd.errors import PolicyValidationError
from phase_shepherd.models import CLOSE_TARGET
from phase_shepherd.policy.models import (
    BackoffStrategy,
    ConfidenceThresholds,
    DecisionRoute,
    DirectTarget,
    LoopLimits,
    Phase,
    Policy,
    PolicySet,
    RetryPolicy,
    Route,
    TransitionBlock,
)

TRANSITION_SLOTS = ("on_success", "on_failure", "on_partial_success", "on_unclear")
DECISION_ONLY_SLOTS = ("on_partial_success", "on_unclear")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _positive_int(value: Any, label: str, policy: str) -> int:
    if not _is_int(value) or value < 1:
        raise PolicyValidationError(f"{label} must be an integer >= 1 (got {value!r})", policy)
    return value


def _bool(value: Any, label: str, policy: str) -> bool:
    if not isinstance(value, bool):
        raise PolicyValidationError(f"{label} must be true or false (got {value!r})", policy)
    return value


def _parse_thresholds(
    data: Any,
    where: str,
    policy: str,
    defaults: ConfidenceThresholds,
) -> ConfidenceThresholds:
    """Parse and check a confidence_thresholds mapping."""
    if data is None:
        return defaults
    if not isinstance(data, dict):
        raise PolicyValidationError(f"{where}: confidence_thresholds must be a mapping", policy)

    auto_advance = data.get("auto_advance", defaults.auto_advance)
    require_approval = data.get("require_approval", defaults.require_approval)
    for name, value in (("auto_advance", auto_advance), ("require_approval", require_approval)):
        if not _is_number(value) or not 0.0 <= value <= 1.0:
            raise PolicyValidationError(
                f"{where}: confidence_thresholds.{name} must be between 0.0 and 1.0 (got {value!r})",
                policy,
            )
    if require_approval > auto_advance:
        raise PolicyValidationError(
            f"{where}: confidence_thresholds.require_approval ({require_approval}) "
            f"must not exceed auto_advance ({auto_advance})",
            policy,
        )
    return ConfidenceThresholds(
        auto_advance=float(auto_advance),
        require_approval=float(require_approval),
    )


def _parse_decision_route(
    data: dict[str, Any],
    where: str,
    policy: str,
    phase_names: set[str],
    default_thresholds: ConfidenceThresholds,
) -> DecisionRoute:
    """Parse a decision-agent route."""
    capability = data.get("capability")
    if not isinstance(capability, str) or not capability:
        raise PolicyValidationError(f"{where}: decision config requires a capability", policy)

    destinations = data.get("allowed_destinations")
    if not isinstance(destinations, list) or not destinations:
        raise PolicyValidationError(f"{where}: allowed_destinations must be a non-empty list", policy)
    for destination in destinations:
        if destination != CLOSE_TARGET and destination not in phase_names:
            raise PolicyValidationError(
                f"{where}: allowed destination '{destination}' is not a phase of this policy",
                policy,
            )

    for key in ("prompt", "template"):
        if data.get(key) is not None and not isinstance(data[key], str):
            raise PolicyValidationError(f"{where}: {key} must be a string", policy)

    return DecisionRoute(
        capability=capability,
        allowed_destinations=tuple(dict.fromkeys(destinations)),
        confidence_thresholds=_parse_thresholds(
            data.get("confidence_thresholds"), where, policy, default_thresholds
        ),
        prompt=data.get("prompt"),
        template=data.get("template"),
        messaging=_bool(data.get("messaging", False), f"{where}: messaging", policy),
    )


def _parse_route(
    slot: str,
    value: Union[str, dict[str, Any]],
    phase: str,
    where: str,
    policy: str,
    phase_names: set[str],
    default_thresholds: ConfidenceThresholds,
) -> Route:
    """Parse one TransitionBlock slot into its tagged variant."""
    slot_where = f"{where}.{slot}"
    if isinstance(value, str):
        if slot in DECISION_ONLY_SLOTS:
            raise PolicyValidationError(
                f"{slot_where} must be a decision config, not a direct target",
                policy,
            )
        if value != CLOSE_TARGET and value not in phase_names:
            raise PolicyValidationError(
                f"{slot_where}: target phase '{value}' not found",
                policy,
            )
        if value == phase:
            raise PolicyValidationError(
                f"{slot_where}: phase cannot route directly to itself",
                policy,
            )
        return DirectTarget(phase=value)

    if isinstance(value, dict):
        return _parse_decision_route(value, slot_where, policy, phase_names, default_thresholds)

    raise PolicyValidationError(
        f"{slot_where} must be a phase name or a decision config",
        policy,
    )


def _parse_transitions(
    data: Any,
    phase: str,
    where: str,
    policy: str,
    phase_names: set[str],
    default_thresholds: ConfidenceThresholds,
) -> Optional[TransitionBlock]:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise PolicyValidationError(f"{where}: transitions must be a mapping", policy)

    unknown = [key for key in data if key not in TRANSITION_SLOTS]
    if unknown:
        raise PolicyValidationError(
            f"{where}: unknown transition slot '{unknown[0]}'", policy
        )

    routes = {
        slot: _parse_route(slot, value, phase, where, policy, phase_names, default_thresholds)
        for slot, value in data.items()
        if value is not None
    }
    return TransitionBlock(**routes)


def _parse_phase(
    data: dict[str, Any],
    policy: str,
    phase_names: set[str],
    default_thresholds: ConfidenceThresholds,
) -> Phase:
    name = data["name"]
    where = f"phase '{name}'"

    multiplier = data.get("timeout_multiplier", 1.0)
    if not _is_number(multiplier) or multiplier <= 0:
        raise PolicyValidationError(f"{where}: timeout_multiplier must be > 0", policy)

    max_visits = data.get("max_visits")
    if max_visits is not None:
        _positive_int(max_visits, f"{where}: max_visits", policy)

    capabilities = data.get("capabilities") or []
    if not isinstance(capabilities, list):
        raise PolicyValidationError(f"{where}: capabilities must be a list", policy)

    return Phase(
        name=name,
        description=data.get("description"),
        capabilities=tuple(capabilities),
        agent=data.get("agent"),
        model=data.get("model"),
        timeout_multiplier=float(multiplier),
        require_approval=_bool(
            data.get("require_approval", False), f"{where}: require_approval", policy
        ),
        max_visits=max_visits,
        transitions=_parse_transitions(
            data.get("transitions"), name, where, policy, phase_names, default_thresholds
        ),
        fallback_agent=data.get("fallback_agent"),
    )


def _parse_retry(data: Any, policy: str) -> Optional[RetryPolicy]:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise PolicyValidationError("retry must be a mapping", policy)

    strategy = data.get("backoff_strategy", "exponential")
    try:
        backoff = BackoffStrategy(strategy)
    except ValueError:
        raise PolicyValidationError(
            f"retry.backoff_strategy must be exponential, linear or fixed (got {strategy!r})",
            policy,
        )

    initial = data.get("initial_delay_ms", 5000)
    maximum = data.get("max_delay_ms", 300000)
    for label, value in (("initial_delay_ms", initial), ("max_delay_ms", maximum)):
        if not _is_int(value) or value < 0:
            raise PolicyValidationError(f"retry.{label} must be an integer >= 0", policy)

    return RetryPolicy(
        max_attempts=_positive_int(data.get("max_attempts", 3), "retry.max_attempts", policy),
        backoff_strategy=backoff,
        initial_delay_ms=initial,
        max_delay_ms=maximum,
    )


def _parse_loop_limits(data: Any, policy: str) -> LoopLimits:
    if data is None:
        return LoopLimits()
    if not isinstance(data, dict):
        raise PolicyValidationError("loop_prevention must be a mapping", policy)

    max_visits = data.get("max_visits")
    max_transitions = data.get("max_transitions")
    if max_visits is not None:
        _positive_int(max_visits, "loop_prevention.max_visits", policy)
    if max_transitions is not None:
        _positive_int(max_transitions, "loop_prevention.max_transitions", policy)
    return LoopLimits(max_visits=max_visits, max_transitions=max_transitions)


def _parse_policy(
    name: str,
    data: Any,
    default_thresholds: ConfidenceThresholds,
) -> Policy:
    if not isinstance(data, dict):
        raise PolicyValidationError("definition must be a mapping", name)

    raw_phases = data.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        raise PolicyValidationError("must have at least one phase", name)

    # Phase names are collected first so routes can reference later phases.
    phase_names: set[str] = set()
    for raw in raw_phases:
        if not isinstance(raw, dict) or not raw.get("name"):
            raise PolicyValidationError("has a phase without a name", name)
        if raw["name"] == CLOSE_TARGET:
            raise PolicyValidationError("'close' is reserved and cannot be a phase name", name)
        if raw["name"] in phase_names:
            raise PolicyValidationError(f"duplicate phase name '{raw['name']}'", name)
        phase_names.add(raw["name"])

    phases = tuple(
        _parse_phase(raw, name, phase_names, default_thresholds) for raw in raw_phases
    )

    priority = data.get("priority", 50)
    if not _is_int(priority):
        raise PolicyValidationError("priority must be an integer", name)

    issue_types = data.get("issue_types") or []
    if not isinstance(issue_types, list):
        raise PolicyValidationError("issue_types must be a list", name)

    return Policy(
        name=name,
        phases=phases,
        description=data.get("description"),
        issue_types=tuple(issue_types),
        priority=priority,
        retry=_parse_retry(data.get("retry"), name),
        timeout_base_ms=_positive_int(
            data.get("timeout_base_ms", 300000), "timeout_base_ms", name
        ),
        stall_threshold_ms=_positive_int(
            data.get("stall_threshold_ms", 60000), "stall_threshold_ms", name
        ),
        require_hitl=_bool(data.get("require_hitl", False), "require_hitl", name),
        loop_limits=_parse_loop_limits(data.get("loop_prevention"), name),
        fallback_agent=data.get("fallback_agent"),
        fallback_mappings=dict(data.get("fallback_mappings") or {}),
    )


def parse_policies(
    data: Any,
    default_thresholds: Optional[ConfidenceThresholds] = None,
) -> PolicySet:
    """
    Build a validated PolicySet from a parsed policies mapping.

    Args:
        data: Parsed YAML content.
        default_thresholds: Thresholds for decision routes that omit them.

    Raises:
        PolicyValidationError: On the first invariant violation.
    """
    if default_thresholds is None:
        default_thresholds = ConfidenceThresholds()

    if not isinstance(data, dict) or not data.get("policies"):
        raise PolicyValidationError("Invalid policies file: missing 'policies' key")
    if not isinstance(data["policies"], dict):
        raise PolicyValidationError("Invalid policies file: 'policies' must be a mapping")

    policies: dict[str, Policy] = {}
    for name, raw in data["policies"].items():
        policies[str(name)] = _parse_policy(str(name), raw, default_thresholds)

    default_policy = data.get("default_policy")
    if default_policy is not None:
        if default_policy not in policies:
            raise PolicyValidationError(f"Default policy '{default_policy}' not found")
    elif "default" in policies:
        default_policy = "default"
    else:
        default_policy = next(iter(policies))

    return PolicySet(policies=policies, default_policy=default_policy)


def load_policies(
    path: Union[str, Path],
    default_thresholds: Optional[ConfidenceThresholds] = None,
) -> PolicySet:
    """
    Load and validate policies from a YAML file.

    Raises:
        PolicyValidationError: If the file is missing, unparsable or invalid.
    """
    path = Path(path)
    if not path.exists():
        raise PolicyValidationError(f"Policies file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise PolicyValidationError(f"Invalid YAML in policies file {path}: {e}")

    return parse_policies(data, default_thresholds)
