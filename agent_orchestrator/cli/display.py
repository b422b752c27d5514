"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for session statuses, activity, ages and
the event log.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from rich.table import Table
from rich.text import Text

from agent_orchestrator.events.types import OrchestratorEvent
from agent_orchestrator.models import ActivityState, Session, SessionStatus, parse_iso

# Status display names and colors
STATUS_DISPLAY: dict[SessionStatus, tuple[str, str]] = {
    SessionStatus.SPAWNING: ("Spawning", "dim"),
    SessionStatus.WORKING: ("Working", "cyan"),
    SessionStatus.PR_OPEN: ("PR Open", "blue"),
    SessionStatus.REVIEW_PENDING: ("Review Pending", "blue"),
    SessionStatus.CI_FAILED: ("CI Failed", "red"),
    SessionStatus.CHANGES_REQUESTED: ("Changes Requested", "yellow"),
    SessionStatus.APPROVED: ("Approved", "green"),
    SessionStatus.MERGEABLE: ("Mergeable", "green bold"),
    SessionStatus.MERGED: ("Merged", "green"),
    SessionStatus.NEEDS_INPUT: ("Needs Input", "yellow bold"),
    SessionStatus.STUCK: ("Stuck", "yellow bold"),
    SessionStatus.ERRORED: ("Errored", "red bold"),
    SessionStatus.CLEANUP: ("Cleaned Up", "dim"),
    SessionStatus.KILLED: ("Killed", "dim"),
    SessionStatus.DONE: ("Done", "green"),
    SessionStatus.TERMINATED: ("Terminated", "dim"),
}

ACTIVITY_DISPLAY: dict[ActivityState, tuple[str, str]] = {
    ActivityState.ACTIVE: ("active", "cyan"),
    ActivityState.IDLE: ("idle", "dim"),
    ActivityState.WAITING_INPUT: ("waiting", "yellow bold"),
    ActivityState.BLOCKED: ("blocked", "red"),
    ActivityState.EXITED: ("exited", "red"),
}


def format_status(status: SessionStatus) -> Text:
    """Format a session status as colored text."""
    display_name, style = STATUS_DISPLAY.get(status, (status.value, "white"))
    return Text(display_name, style=style)


def format_activity(activity: Optional[ActivityState]) -> Text:
    """Format an activity state as colored text."""
    if activity is None:
        return Text("-", style="dim")
    display_name, style = ACTIVITY_DISPLAY.get(activity, (activity.value, "white"))
    return Text(display_name, style=style)


def format_age(timestamp: Optional[str], now: Optional[datetime] = None) -> str:
    """Render the time since an ISO timestamp as 45s, 12m, 3h or 2d."""
    then = parse_iso(timestamp)
    if then is None:
        return "-"
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    seconds = max(0, int(((now or datetime.now(timezone.utc)) - then).total_seconds()))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def format_pr(pr_url: Optional[str]) -> str:
    """Short PR label (#123) or a dash."""
    if not pr_url:
        return "-"
    number = pr_url.rstrip("/").rsplit("/", 1)[-1]
    return f"#{number}" if number.isdigit() else pr_url


def build_sessions_table(sessions: list[Session], title: str = "Sessions") -> Table:
    """Build the session table shared by `ao status` and `ao session ls`."""
    table = Table(title=title)
    table.add_column("Session", style="cyan")
    table.add_column("Project")
    table.add_column("Status")
    table.add_column("Activity")
    table.add_column("Branch", style="dim")
    table.add_column("Issue")
    table.add_column("PR")
    table.add_column("Age", justify="right")

    for session in sessions:
        name = f"{session.id} [dim](orch)[/dim]" if session.is_orchestrator else session.id
        table.add_row(
            name,
            session.project_id,
            format_status(session.status),
            format_activity(session.activity),
            session.branch or "-",
            session.issue_ref or "-",
            format_pr(session.pr_ref),
            format_age(session.created_at),
        )
    return table


PRIORITY_STYLES = {
    "urgent": "red bold",
    "action": "green",
    "warning": "yellow",
    "info": "dim",
}


def build_events_table(events: list[OrchestratorEvent], title: str = "Events") -> Table:
    """Build the event log table for `ao events`."""
    table = Table(title=title)
    table.add_column("Age", justify="right")
    table.add_column("Event", style="cyan")
    table.add_column("Session")
    table.add_column("Priority")
    table.add_column("Message")

    for event in events:
        table.add_row(
            format_age(event.timestamp),
            event.event_type.value,
            event.session_id or "-",
            Text(event.priority, style=PRIORITY_STYLES.get(event.priority, "white")),
            Text(event.message or "-"),
        )
    return table
