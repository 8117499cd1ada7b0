"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml

from phase_shepherd.config import (
    AllowedReasonsConfig,
    ConfigError,
    HITLConfig,
    ShepherdConfig,
    load_config,
    parse_config,
    validate_hitl_reason,
)


def write_config(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestDefaults:
    """Defaults applied when sections are missing."""

    def test_empty_mapping(self):
        config = parse_config({})

        assert config.workflow.invalid_label_strategy == "error"
        assert config.workflow.label_prefix == "ashep-workflow:"
        assert config.loop_prevention.max_visits_default == 10
        assert config.loop_prevention.max_transitions_default == 5
        assert config.loop_prevention.cycle_detection_length == 3
        assert config.decision.max_reprompts == 2
        assert config.decision.default_thresholds.auto_advance == 0.8
        assert config.fallback.enabled is False

    def test_paths(self, tmp_path):
        config = ShepherdConfig(repo_root=str(tmp_path))

        assert config.shepherd_path == tmp_path / ".shepherd"
        assert config.policies_path == tmp_path / ".shepherd" / "policies.yaml"
        assert config.decision_prompts_path.name == "decision-prompts.yaml"
        assert config.logs_path == tmp_path / ".shepherd" / "logs"

    def test_repo_root_made_absolute(self):
        assert Path(ShepherdConfig(repo_root=".").repo_root).is_absolute()


class TestLoadConfig:
    """Reading config.yaml."""

    def test_loads_sections(self, tmp_path):
        path = write_config(tmp_path, {
            "repo_root": str(tmp_path),
            "workflow": {"invalid_label_strategy": "warning"},
            "loop_prevention": {"max_visits_default": 4, "cycle_detection_length": 2},
            "decision": {
                "max_reprompts": 1,
                "timeout_seconds": 30,
                "default_thresholds": {"auto_advance": 0.9, "require_approval": 0.5},
            },
            "fallback": {"enabled": True, "default_agent": "generalist"},
        })

        config = load_config(path)

        assert config.repo_root == str(tmp_path)
        assert config.workflow.invalid_label_strategy == "warning"
        assert config.loop_prevention.max_visits_default == 4
        assert config.decision.timeout_seconds == 30
        assert config.decision.default_thresholds.require_approval == 0.5
        assert config.fallback.default_agent == "generalist"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(str(path)).decision.max_reprompts == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Configuration file not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("workflow: [")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(str(path))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="must contain a mapping"):
            load_config(str(path))

    def test_env_var_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHEPHERD_FALLBACK", "ops-agent")

        config = parse_config({"fallback": {"default_agent": "${SHEPHERD_FALLBACK}"}})

        assert config.fallback.default_agent == "ops-agent"

    def test_missing_env_var(self, monkeypatch):
        monkeypatch.delenv("SHEPHERD_UNSET_VAR", raising=False)

        with pytest.raises(ConfigError, match="SHEPHERD_UNSET_VAR"):
            parse_config({"fallback": {"default_agent": "${SHEPHERD_UNSET_VAR}"}})


class TestValidation:
    """Ranged and enumerated fields."""

    @pytest.mark.parametrize(
        "data,message",
        [
            ({"workflow": {"invalid_label_strategy": "panic"}}, "invalid_label_strategy"),
            ({"loop_prevention": {"max_visits_default": 0}}, "max_visits_default"),
            ({"loop_prevention": {"max_transitions_default": 0}}, "max_transitions_default"),
            ({"loop_prevention": {"cycle_detection_length": 6}}, "between 2 and 5"),
            ({"loop_prevention": {"cycle_detection_length": 1}}, "between 2 and 5"),
            ({"decision": {"max_reprompts": -1}}, "max_reprompts"),
            ({"decision": {"timeout_seconds": 0}}, "timeout_seconds"),
            ({"decision": {"default_thresholds": {"auto_advance": 2}}}, "auto_advance"),
            (
                {"decision": {"default_thresholds": {"auto_advance": 0.5, "require_approval": 0.7}}},
                "must not exceed",
            ),
            ({"hitl": {"allowed_reasons": {"custom_validation": "regex"}}}, "custom_validation"),
        ],
    )
    def test_rejects(self, data, message):
        with pytest.raises(ConfigError, match=message):
            parse_config(data)


class TestHITLReasons:
    """validate_hitl_reason."""

    def test_no_config_accepts_anything(self):
        assert validate_hitl_reason("anything at all")

    def test_predefined(self):
        assert validate_hitl_reason("loop-limit", HITLConfig())

    @pytest.mark.parametrize(
        "mode,reason,expected",
        [
            ("alphanumeric-dash-underscore", "needs_design-review", True),
            ("alphanumeric-dash-underscore", "9lives", False),
            ("alphanumeric-dash-underscore", "has space", False),
            ("alphanumeric", "security2", True),
            ("alphanumeric", "security-2", False),
            ("none", "Anything goes!", True),
        ],
    )
    def test_custom_modes(self, mode, reason, expected):
        config = HITLConfig(allowed_reasons=AllowedReasonsConfig(custom_validation=mode))

        assert validate_hitl_reason(reason, config) is expected

    def test_custom_disallowed(self):
        config = HITLConfig(allowed_reasons=AllowedReasonsConfig(allow_custom=False))

        assert validate_hitl_reason("approval", config)
        assert not validate_hitl_reason("custom-reason", config)
