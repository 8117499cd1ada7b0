"""Command line interface for Phase Shepherd.

Commands:
    validate    Load config, policies and decision templates; report problems
    show        Print a policy's phases and routing as a tree
    match       Show which policy an issue would follow
    analytics   Summarize recorded decision-agent events
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from phase_shepherd import __version__
from phase_shepherd.config import ShepherdConfig, load_config
from phase_shepherd.decisions.analytics import DecisionEventLog
from phase_shepherd.decisions.prompt_builder import DecisionPromptBuilder
from phase_shepherd.errors import PolicyNotFoundError, ShepherdError
from phase_shepherd.models import Issue
from phase_shepherd.policy.engine import PolicyEngine
from phase_shepherd.policy.visualizer import decision_routes, show_policy

DEFAULT_CONFIG_PATH = Path(".shepherd") / "config.yaml"
DECISIONS_FILE = "decisions.jsonl"

app = typer.Typer(
    name="phase-shepherd",
    help="Phase transition engine for AI-agent issue workflows",
    add_completion=False,
)

console = Console()

ConfigOption = typer.Option(
    None, "--config", "-c", help="Path to config.yaml (default: .shepherd/config.yaml)"
)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"phase-shepherd version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Phase Shepherd - decide what happens after every workflow phase.
    """


def _load_config(config_path: Optional[str]) -> ShepherdConfig:
    """Load config; fall back to defaults when no file exists at the default path."""
    if config_path is None and not DEFAULT_CONFIG_PATH.exists():
        return ShepherdConfig()
    return load_config(config_path)


def _load_engine(config_path: Optional[str]) -> tuple[ShepherdConfig, PolicyEngine]:
    try:
        config = _load_config(config_path)
        return config, PolicyEngine.from_config(config)
    except ShepherdError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def validate(config_path: Optional[str] = ConfigOption) -> None:
    """Validate config, policies and decision prompt templates."""
    config, engine = _load_engine(config_path)
    try:
        builder = DecisionPromptBuilder.from_config(config)
    except ShepherdError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title="Policies", show_header=True, header_style="bold")
    table.add_column("Policy", style="cyan", no_wrap=True)
    table.add_column("Phases")
    table.add_column("Issue types")
    table.add_column("Priority", justify="right")
    table.add_column("Decisions", justify="center")

    for name in engine.policy_names():
        policy = engine.get_policy(name)
        label = f"{name} [dim](default)[/dim]" if name == engine.default_policy_name else name
        table.add_row(
            label,
            " -> ".join(policy.phase_names),
            ", ".join(policy.issue_types) or "-",
            str(policy.priority),
            str(len(decision_routes(policy))),
        )

    console.print(table)
    console.print(
        f"\n[green]Valid.[/green] {len(engine.policy_names())} policies, "
        f"templates: {', '.join(builder.available_templates())}"
    )


@app.command()
def show(
    policy_name: str = typer.Argument(..., help="Policy to display"),
    config_path: Optional[str] = ConfigOption,
) -> None:
    """Show a policy's phases and transition routing."""
    _, engine = _load_engine(config_path)
    try:
        policy = engine.require_policy(policy_name)
    except PolicyNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print(f"Available: {', '.join(engine.policy_names())}")
        raise typer.Exit(1)
    show_policy(policy, console)


@app.command()
def match(
    issue_type: Optional[str] = typer.Option(None, "--type", "-t", help="Issue type"),
    labels: Optional[list[str]] = typer.Option(None, "--label", "-l", help="Issue label (repeatable)"),
    issue_id: str = typer.Option("cli", "--issue", help="Issue id used in messages"),
    config_path: Optional[str] = ConfigOption,
) -> None:
    """Show which policy an issue would follow."""
    _, engine = _load_engine(config_path)
    issue = Issue(id=issue_id, issue_type=issue_type, labels=list(labels or []))
    try:
        name = engine.match_policy(issue)
    except ShepherdError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"Policy: [cyan]{name}[/cyan]")
    console.print(f"Phases: {' -> '.join(engine.get_phase_sequence(name))}")


@app.command()
def analytics(
    events_file: Optional[Path] = typer.Argument(
        None, help="Decision events JSONL (default: .shepherd/decisions.jsonl)"
    ),
    issue_id: Optional[str] = typer.Option(None, "--issue", "-i", help="Only this issue"),
    config_path: Optional[str] = ConfigOption,
) -> None:
    """Summarize decision-agent events."""
    if events_file is None:
        try:
            config = _load_config(config_path)
        except ShepherdError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        events_file = config.shepherd_path / DECISIONS_FILE

    if not events_file.exists():
        console.print(
            Panel(
                f"[dim]No decision events found at {events_file}.[/dim]",
                title="Decision Analytics",
                border_style="dim",
            )
        )
        return

    try:
        summary = DecisionEventLog(events_file).summary(issue_id)
    except ShepherdError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[bold]Decisions:[/bold] {summary.total}")
    if summary.total == 0:
        return
    console.print(f"[bold]Average confidence:[/bold] {summary.average_confidence:.2f}")

    actions = Table(title="By action", show_header=True, header_style="bold")
    actions.add_column("Action", style="cyan")
    actions.add_column("Count", justify="right")
    for action, count in sorted(summary.by_action.items()):
        actions.add_row(action, str(count))
    console.print(actions)

    buckets = Table(title="Confidence", show_header=True, header_style="bold")
    buckets.add_column("Bucket", style="cyan")
    buckets.add_column("Decisions", justify="right")
    buckets.add_column("Approved", justify="right")
    buckets.add_column("Auto-applied", justify="right")
    for name, stats in summary.confidence_buckets.items():
        buckets.add_row(
            name,
            str(stats.total),
            f"{stats.approval_rate:.0%}",
            f"{stats.auto_applied_rate:.0%}",
        )
    console.print(buckets)

    targets = summary.most_common_targets()
    if targets:
        console.print(
            "[bold]Most common targets:[/bold] "
            + ", ".join(f"{target} ({count})" for target, count in targets)
        )


if __name__ == "__main__":
    app()
