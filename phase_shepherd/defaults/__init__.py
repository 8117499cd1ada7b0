"""Default decision prompt templates bundled with the phase_shepherd package.

Used whenever a project's decision-prompts.yaml is missing or does not
define the requested template.
"""
from pathlib import Path


def get_default_templates_path() -> Path:
    """Get the path to the bundled decision prompt templates."""
    return Path(__file__).parent / "decision-prompts.yaml"
