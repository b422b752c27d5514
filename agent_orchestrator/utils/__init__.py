"""Utility modules for the agent orchestrator."""

from agent_orchestrator.utils.fs import (
    FileSystemError,
    copy_file,
    create_exclusive,
    ensure_dir,
    read_file,
    remove_file,
    safe_write,
)
from agent_orchestrator.utils.shell import (
    CommandError,
    CommandResult,
    run_command,
    shell_escape,
)

__all__ = [
    "CommandError",
    "CommandResult",
    "FileSystemError",
    "copy_file",
    "create_exclusive",
    "ensure_dir",
    "read_file",
    "remove_file",
    "run_command",
    "safe_write",
    "shell_escape",
]
