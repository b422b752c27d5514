"""
Subprocess helpers shared by the concrete plugins.

Every external command (tmux, git, gh, ps) goes through run_command so that
each call carries a timeout and failures surface as CommandError with the
command's stderr attached.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence


class CommandError(Exception):
    """Raised when an external command fails, times out, or is missing."""

    def __init__(
        self,
        message: str,
        args: Sequence[str] = (),
        returncode: int = -1,
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out


@dataclass
class CommandResult:
    """Outcome of a finished command."""
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    args: Sequence[str],
    cwd: Optional[str] = None,
    timeout: float = 30,
    check: bool = True,
    env: Optional[dict[str, str]] = None,
) -> CommandResult:
    """
    Run a command and capture its output.

    Args:
        args: Command and arguments (never passed through a shell).
        cwd: Working directory.
        timeout: Seconds before the command is killed.
        check: Raise CommandError on a non-zero exit code.
        env: Full environment for the child, or None to inherit.

    Raises:
        CommandError: On timeout, missing binary, or (with check) non-zero exit.
    """
    try:
        result = subprocess.run(
            list(args),
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )
    except FileNotFoundError:
        raise CommandError(f"Command not found: {args[0]}", args)
    except subprocess.TimeoutExpired:
        raise CommandError(
            f"Command timed out after {timeout}s: {' '.join(args)}",
            args,
            timed_out=True,
        )

    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise CommandError(
            f"{args[0]} exited with {result.returncode}: {stderr[:500]}",
            args,
            returncode=result.returncode,
            stderr=stderr,
        )
    return CommandResult(result.returncode, result.stdout or "", result.stderr or "")


def shell_escape(value: str) -> str:
    """Quote a value for inclusion in a shell command line."""
    return shlex.quote(value)
