"""Session commands.

Commands for listing, killing, restoring, cleaning up and attaching to sessions.
This module should NOT import heavy modules at the top level - use lazy imports inside functions.
"""
from __future__ import annotations

from typing import Optional

import typer

from agent_orchestrator.cli.common import fail, get_console, get_managers
from agent_orchestrator.cli.display import build_sessions_table, format_status

# Create session command group
app = typer.Typer(
    name="session",
    help="Inspect and control individual sessions",
    no_args_is_help=True,
)

console = get_console()


@app.command("ls")
def list_sessions(
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Only show sessions of this project.",
    ),
) -> None:
    """List live sessions."""
    managers = get_managers()
    if project:
        _require_project(managers.config, project)
    sessions = managers.sessions.list(project)
    if not sessions:
        console.print("[dim]No sessions.[/dim]")
        return
    console.print(build_sessions_table(sessions))


@app.command()
def kill(
    session_id: str = typer.Argument(..., help="Session to kill."),
) -> None:
    """Kill a session: stop its runtime, remove its worktree, archive its record."""
    from agent_orchestrator.errors import OrchestratorError

    managers = get_managers()
    try:
        managers.sessions.kill(session_id)
    except OrchestratorError as e:
        fail(str(e))
    console.print(f"[green]Killed[/green] {session_id}")


@app.command()
def restore(
    session_id: str = typer.Argument(..., help="Session to reattach to."),
) -> None:
    """Reattach to a session whose runtime is still alive."""
    from agent_orchestrator.config import ConfigError
    from agent_orchestrator.errors import OrchestratorError

    managers = get_managers()
    try:
        session = managers.sessions.restore(session_id)
    except (OrchestratorError, ConfigError) as e:
        fail(str(e))
    console.print(f"[green]Restored[/green] {session_id} (", format_status(session.status), ")",
                  sep="")


@app.command()
def cleanup(
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Only clean up sessions of this project.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show what would be killed without killing anything.",
    ),
) -> None:
    """
    Kill sessions whose work is finished.

    A session is finished when its PR is merged or closed, its issue is
    closed, or it never opened a PR and its agent has exited.

    Examples:
        ao session cleanup --dry-run
        ao session cleanup -p my-app
    """
    managers = get_managers()
    if project:
        _require_project(managers.config, project)
    result = managers.sessions.cleanup(project, dry_run=dry_run)

    verb = "Would kill" if dry_run else "Killed"
    for session_id in result.killed:
        console.print(f"  [green]{verb}[/green] {session_id}")
    for error in result.errors:
        console.print(f"  [red]Error:[/red] {error}")
    console.print(
        f"[cyan]{verb} {len(result.killed)} session(s); "
        f"{len(result.skipped)} left running.[/cyan]"
    )
    if result.errors:
        raise typer.Exit(1)


@app.command()
def attach(
    session_id: str = typer.Argument(..., help="Session to attach to."),
) -> None:
    """Print the command that attaches a terminal to the session."""
    from agent_orchestrator.config import ConfigError

    managers = get_managers()
    session = managers.sessions.load(session_id)
    if session is None:
        fail(f"Session '{session_id}' not found")
    if session.runtime_handle is None:
        fail(f"Session '{session_id}' has no runtime")
    try:
        plugins, _ = managers.sessions.plugins_for(session)
    except ConfigError as e:
        fail(str(e))
    info = plugins.runtime.get_attach_info(session.runtime_handle)
    console.print(info.command or info.target, markup=False)


def _require_project(config, project_id: str) -> None:
    from agent_orchestrator.config import ConfigError

    try:
        config.get_project(project_id)
    except ConfigError as e:
        fail(str(e))
