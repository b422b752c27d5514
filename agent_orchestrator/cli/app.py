"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app, callback, top-level
commands and sub-app registrations are all defined here.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from agent_orchestrator import __version__
from agent_orchestrator.cli.common import (
    build_managers,
    fail,
    get_console,
    get_managers,
    load_config_or_exit,
    set_config_path,
)
from agent_orchestrator.cli.display import build_sessions_table

SPAWN_ATTEMPTS = 3

# Create Typer app
app = typer.Typer(
    name="ao",
    help="Run fleets of coding agents, one per issue, and keep them moving",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"ao version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to agent-orchestrator.yaml (default: $AO_CONFIG or nearest file)",
    ),
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
    Agent Orchestrator - spawn and supervise coding agent sessions.

    Each worker gets its own worktree, branch and terminal; the lifecycle
    loop watches their PRs and reacts to CI failures and reviews.
    """
    if config:
        config_path = Path(config)
        if not config_path.is_file():
            console.print(f"[red]Error: Config file not found: {config}[/red]")
            raise typer.Exit(1)
        set_config_path(str(config_path.absolute()))

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Top-Level Commands
# =========================================================================


@app.command()
def status(
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Only show sessions of this project.",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print sessions as JSON.",
    ),
) -> None:
    """Show all live sessions with their status and activity."""
    from agent_orchestrator.config import ConfigError

    managers = get_managers()
    if project:
        try:
            managers.config.get_project(project)
        except ConfigError as e:
            fail(str(e))
    sessions = managers.sessions.list(project)

    if as_json:
        console.print(json.dumps([s.to_dict() for s in sessions], indent=2), markup=False, soft_wrap=True)
        return
    if not sessions:
        console.print("[dim]No sessions. Start one with: ao spawn <project> \\[issue][/dim]")
        return
    console.print(build_sessions_table(sessions, title="Agent Sessions"))


@app.command()
def spawn(
    project: str = typer.Argument(..., help="Project ID from the config."),
    issue: Optional[str] = typer.Argument(None, help="Issue reference (#123, 123 or URL)."),
    agent: Optional[str] = typer.Option(
        None,
        "--agent",
        "-a",
        help="Agent plugin to use instead of the project's (claude-code, codex).",
    ),
) -> None:
    """
    Spawn a worker session, optionally for an issue.

    Examples:
        ao spawn my-app 42
        ao spawn my-app --agent codex
    """
    from agent_orchestrator.config import ConfigError
    from agent_orchestrator.errors import OrchestratorError, ReservationConflict

    managers = get_managers()
    session = None
    for attempt in range(1, SPAWN_ATTEMPTS + 1):
        try:
            session = managers.sessions.spawn(project, issue_ref=issue, agent_override=agent)
            break
        except ReservationConflict as e:
            if attempt == SPAWN_ATTEMPTS:
                fail(str(e))
            console.print(f"[yellow]{e}; retrying with a new ID[/yellow]")
        except (OrchestratorError, ConfigError) as e:
            fail(str(e))

    console.print(f"[green]Spawned[/green] {session.id}")
    console.print(f"  Branch:    {session.branch}")
    console.print(f"  Worktree:  {session.workspace_path}")
    if session.runtime_handle is not None:
        console.print(f"  Runtime:   {session.runtime_handle.id}")


@app.command()
def send(
    session_id: str = typer.Argument(..., help="Session to send to."),
    message: Optional[list[str]] = typer.Argument(None, help="Message text."),
    file: Optional[Path] = typer.Option(
        None,
        "--file",
        "-f",
        help="Read the message from a file.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Seconds to wait for the agent to go idle (overrides delivery.busy_timeout_seconds).",
    ),
) -> None:
    """
    Send a message to a running session's agent.

    Waits for the agent to go idle, types the message and confirms that the
    agent picked it up.
    """
    from agent_orchestrator.config import ConfigError
    from agent_orchestrator.errors import DeliveryAmbiguous, OrchestratorError

    if file is not None:
        try:
            text = file.read_text()
        except OSError as e:
            fail(f"Cannot read {file}: {e}")
    else:
        text = " ".join(message or [])
    if not text.strip():
        fail("No message given (pass text or --file)")

    config = load_config_or_exit()
    if timeout is not None:
        config.delivery.busy_timeout_seconds = timeout

    managers = build_managers(config)
    try:
        confirmed = managers.sessions.send(session_id, text)
    except DeliveryAmbiguous as e:
        console.print(f"[yellow]Warning:[/yellow] {e}")
        raise typer.Exit(0)
    except (OrchestratorError, ConfigError) as e:
        fail(str(e))

    if confirmed:
        console.print(f"[green]Delivered[/green] to {session_id}")
    else:
        console.print(f"[yellow]Sent[/yellow] to {session_id}, but no processing was observed")


@app.command()
def start(
    project: str = typer.Argument(..., help="Project ID from the config."),
    prompt: Optional[str] = typer.Option(
        None,
        "--prompt",
        help="What to build; starts the orchestrator in discover-first mode.",
    ),
) -> None:
    """
    Start (or reuse) the project's orchestrator session.

    Without --prompt the orchestrator coordinates workers; with it the
    orchestrator explores the repository and builds directly.
    """
    from agent_orchestrator.config import ConfigError
    from agent_orchestrator.errors import OrchestratorError
    from agent_orchestrator.prompts import generate_orchestrator_prompt

    managers = get_managers()
    try:
        project_config = managers.config.get_project(project)
        system_prompt = generate_orchestrator_prompt(
            managers.config, project, project_config, prompt
        )
        session = managers.sessions.spawn_orchestrator(project, system_prompt, prompt)
    except (OrchestratorError, ConfigError) as e:
        fail(str(e))

    console.print(f"[green]Orchestrator[/green] {session.id} is running")
    if session.runtime_handle is not None:
        plugins, _ = managers.sessions.plugins_for(session)
        info = plugins.runtime.get_attach_info(session.runtime_handle)
        console.print(f"  Attach with: {info.command or info.target}", markup=False)


@app.command()
def events(
    session_id: Optional[str] = typer.Option(
        None,
        "--session",
        "-s",
        help="Only events of this session.",
    ),
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Only events of this project.",
    ),
    minutes: Optional[int] = typer.Option(
        None,
        "--minutes",
        "-m",
        help="Only events from the last N minutes.",
    ),
    limit: int = typer.Option(
        50,
        "--limit",
        "-n",
        help="Maximum number of events to show.",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print events as JSON.",
    ),
) -> None:
    """
    Show recorded lifecycle events, newest day first.

    Examples:
        ao events -s my-app-3
        ao events -p my-app --minutes 60
    """
    from datetime import datetime, timedelta, timezone

    from agent_orchestrator.cli.display import build_events_table

    managers = get_managers()
    persistence = managers.bus.persistence
    if persistence is None:
        fail("Event persistence is disabled")

    since = datetime.now(timezone.utc) - timedelta(minutes=minutes) if minutes else None
    found = persistence.query(
        session_id=session_id,
        project_id=project,
        since=since,
        limit=limit,
    )

    if as_json:
        console.print(json.dumps([e.to_dict() for e in found], indent=2), markup=False, soft_wrap=True)
        return
    if not found:
        console.print("[dim]No events recorded.[/dim]")
        return
    console.print(build_events_table(found, title="Lifecycle Events"))


# =========================================================================
# Sub-App Registration
# =========================================================================

# Import and register session commands
from agent_orchestrator.cli.session import app as session_app  # noqa: E402

app.add_typer(session_app, name="session")

# Import and register lifecycle commands
from agent_orchestrator.cli.lifecycle import app as lifecycle_app  # noqa: E402

app.add_typer(lifecycle_app, name="lifecycle")


# =========================================================================
# Entry Point
# =========================================================================


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
