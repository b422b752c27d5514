"""CLI package for agent-orchestrator.

Modules:
    app.py       - Main Typer app, top-level commands (status, spawn, send, start, events)
    session.py   - Session commands (ls, kill, restore, cleanup, attach)
    lifecycle.py - Lifecycle loop command (run)
    display.py   - Rich formatting utilities (format_status, format_age, tables)
    common.py    - Shared helpers (get_console, load_config_or_exit, build_managers)

Command Structure:
        ao status
        ao spawn my-app 42
        ao session ls -p my-app
        ao lifecycle run --once

Usage:
    from agent_orchestrator.cli import app, cli_main  # Main exports
    from agent_orchestrator.cli.display import format_status
    from agent_orchestrator.cli.common import get_console, build_managers
"""
from agent_orchestrator.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
