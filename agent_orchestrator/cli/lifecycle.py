"""Lifecycle commands.

Runs the reconciliation loop that polls sessions, moves their status and
fires reactions.
"""
from __future__ import annotations

import json
from typing import Optional

import typer

from agent_orchestrator.cli.common import get_console, get_managers
from agent_orchestrator.cli.display import format_status

# Create lifecycle command group
app = typer.Typer(
    name="lifecycle",
    help="Run the lifecycle reconciliation loop",
    no_args_is_help=True,
)

console = get_console()


@app.command()
def run(
    once: bool = typer.Option(
        False,
        "--once",
        help="Run a single tick and exit.",
    ),
    interval: Optional[float] = typer.Option(
        None,
        "--interval",
        "-i",
        help="Seconds between ticks (overrides lifecycle.interval_seconds).",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="With --once, print the tick result as JSON.",
    ),
) -> None:
    """
    Poll every live session and react to what changed.

    Examples:
        ao lifecycle run
        ao lifecycle run --once --json
    """
    managers = get_managers()
    lifecycle = managers.lifecycle
    if interval is not None:
        lifecycle.interval = interval

    if not once:
        console.print(
            f"[cyan]Lifecycle loop running every {lifecycle.interval:g}s. "
            "Press Ctrl-C to stop.[/cyan]"
        )
        lifecycle.run_forever()
        return

    try:
        result = lifecycle.tick()
    finally:
        lifecycle.stop()

    if as_json:
        console.print(json.dumps(result.to_dict(), indent=2), markup=False, soft_wrap=True)
    else:
        console.print(f"[cyan]Checked {result.checked} session(s).[/cyan]")
        for transition in result.transitions:
            console.print(
                f"  {transition.session_id}: ",
                format_status(transition.from_status),
                " -> ",
                format_status(transition.to_status),
                sep="",
            )
        for session_id in result.skipped:
            console.print(f"  [dim]{session_id}: previous check still running[/dim]")
        for error in result.errors:
            console.print(f"  [red]Error:[/red] {error}")
        if result.overran:
            console.print("[yellow]Tick overran its deadline.[/yellow]")
    if result.errors:
        raise typer.Exit(1)
