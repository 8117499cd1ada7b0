"""Rich rendering of a policy's phases and routing.

This module should NOT import from the CLI module to avoid circular imports.
"""
from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.text import Text
from rich.tree import Tree

from phase_shepherd.policy.models import DecisionRoute, DirectTarget, Phase, Policy, Route

# Slot display names and colors
SLOT_DISPLAY: dict[str, tuple[str, str]] = {
    "on_success": ("success", "green"),
    "on_failure": ("failure", "red"),
    "on_partial_success": ("partial", "yellow"),
    "on_unclear": ("unclear", "magenta"),
}


def format_route(slot: str, route: Route) -> Text:
    """Format one transition slot."""
    label, style = SLOT_DISPLAY.get(slot, (slot, "white"))
    text = Text(f"{label} -> ", style=style)
    if isinstance(route, DirectTarget):
        text.append(route.phase, style="bold" if route.is_close else "cyan")
        return text

    thresholds = route.confidence_thresholds
    text.append(f"decision[{route.capability}] ", style="bold")
    text.append(f"{{{', '.join(route.allowed_destinations)}}}", style="cyan")
    text.append(
        f" auto>={thresholds.auto_advance} approve>={thresholds.require_approval}",
        style="dim",
    )
    return text


def _phase_label(index: int, phase: Phase) -> Text:
    text = Text(f"{index + 1}. ", style="dim")
    text.append(phase.name, style="cyan bold")
    details = []
    if phase.capabilities:
        details.append(", ".join(phase.capabilities))
    if phase.max_visits is not None:
        details.append(f"max_visits={phase.max_visits}")
    if phase.timeout_multiplier != 1.0:
        details.append(f"timeout x{phase.timeout_multiplier}")
    if details:
        text.append(f" ({'; '.join(details)})", style="dim")
    if phase.require_approval:
        text.append(" [approval]", style="yellow bold")
    return text


def build_policy_tree(policy: Policy) -> Tree:
    """Build a tree: policy -> phases -> routing slots."""
    title = Text(policy.name, style="bold")
    if policy.description:
        title.append(f" - {policy.description}", style="dim")
    tree = Tree(title)

    for index, phase in enumerate(policy.phases):
        branch = tree.add(_phase_label(index, phase))
        if phase.transitions is None:
            next_phase = policy.next_phase_after(phase.name)
            branch.add(Text(f"linear -> {next_phase or 'close'}", style="dim"))
            continue
        for slot, route in phase.transitions.routes():
            branch.add(format_route(slot, route))

    return tree


def decision_routes(policy: Policy) -> list[tuple[str, str, DecisionRoute]]:
    """All (phase, slot, route) triples that hand routing to a decision agent."""
    found = []
    for phase in policy.phases:
        if phase.transitions is None:
            continue
        for slot, route in phase.transitions.routes():
            if isinstance(route, DecisionRoute):
                found.append((phase.name, slot, route))
    return found


def show_policy(policy: Policy, console: Optional[Console] = None) -> None:
    """Print a policy tree."""
    (console or Console()).print(build_policy_tree(policy))
