"""
Agent Orchestrator - session lifecycle engine for fleets of coding agents.

Spawns one agent per issue in its own worktree and terminal, then polls each
session's PR, CI and review state and reacts to what changed.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
