"""Common utilities and global state for the CLI.

Contains the console singleton, config loading and the manager factory.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, NoReturn, Optional

import typer
from rich.console import Console

if TYPE_CHECKING:
    from agent_orchestrator.config import OrchestratorConfig
    from agent_orchestrator.events.bus import EventBus
    from agent_orchestrator.lifecycle_manager import LifecycleManager
    from agent_orchestrator.plugins.registry import PluginRegistry
    from agent_orchestrator.session_manager import SessionManager

# ============================================================================
# Global State
# ============================================================================

# Config file override (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_config_path() -> Optional[str]:
    """Get the config file override if set."""
    return _config_path


def set_config_path(path: Optional[str]) -> None:
    """Set the config file override."""
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def fail(message: str) -> NoReturn:
    """Print an error in red and exit 1."""
    get_console().print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


# ============================================================================
# Config Helpers
# ============================================================================


def load_config_or_exit() -> "OrchestratorConfig":
    """Load config from --config, $AO_CONFIG or the nearest config file."""
    from agent_orchestrator.config import ConfigError, load_config

    try:
        return load_config(get_config_path())
    except ConfigError as e:
        fail(str(e))


# ============================================================================
# Manager Factory
# ============================================================================


@dataclass
class Managers:
    """Everything a command needs, wired against one config."""
    config: "OrchestratorConfig"
    registry: "PluginRegistry"
    bus: "EventBus"
    sessions: "SessionManager"
    lifecycle: "LifecycleManager"


def build_managers(config: "OrchestratorConfig") -> Managers:
    """Build the registry, event bus and both managers for a config."""
    from agent_orchestrator.config import ConfigError
    from agent_orchestrator.events.bus import EventBus
    from agent_orchestrator.lifecycle_manager import LifecycleManager
    from agent_orchestrator.logger import OrchestratorLogger
    from agent_orchestrator.plugins.registry import PluginRegistry
    from agent_orchestrator.session_manager import SessionManager

    try:
        registry = PluginRegistry.from_config(config)
    except ConfigError as e:
        fail(str(e))

    bus = EventBus(data_dir=config.events_path)
    sessions = SessionManager(
        config,
        registry,
        logger=OrchestratorLogger.for_config("session-manager", config),
        event_bus=bus,
    )
    lifecycle = LifecycleManager(
        config,
        registry,
        sessions,
        logger=OrchestratorLogger.for_config("lifecycle", config),
        event_bus=bus,
    )
    return Managers(
        config=config,
        registry=registry,
        bus=bus,
        sessions=sessions,
        lifecycle=lifecycle,
    )


def get_managers() -> Managers:
    """Load config and build managers, exiting 1 on a config problem."""
    return build_managers(load_config_or_exit())
