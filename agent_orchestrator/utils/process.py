"""Process detection for agents running inside tmux panes."""

from __future__ import annotations

import os
import re
from typing import TYPE_CHECKING, Any

import psutil

from agent_orchestrator.utils.shell import CommandError, run_command

if TYPE_CHECKING:
    from agent_orchestrator.models import RuntimeHandle


def is_agent_in_tmux_pane(
    target: str,
    process_name: str,
    timeout: float = 30,
) -> bool:
    """
    Check whether a process named process_name runs on one of target's ttys.

    Lists the pane ttys of the tmux session, then walks the process table
    for a matching command line on any of them.
    """
    try:
        panes = run_command(
            ["tmux", "list-panes", "-t", target, "-F", "#{pane_tty}"],
            timeout=timeout,
        )
    except CommandError:
        return False

    ttys = {line.strip() for line in panes.stdout.splitlines() if line.strip()}
    if not ttys:
        return False

    process_re = re.compile(rf"(?:^|/){re.escape(process_name)}(?:\s|$)")
    for proc in psutil.process_iter(["terminal", "cmdline"]):
        try:
            if proc.info.get("terminal") not in ttys:
                continue
            cmd_str = " ".join(proc.info.get("cmdline") or [])
            if process_re.search(cmd_str):
                return True
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return False


def is_pid_alive(data: dict[str, Any]) -> bool:
    """Signal-0 liveness check for handles that carry a "pid"."""
    try:
        pid = int(data.get("pid", 0))
    except (TypeError, ValueError):
        return False
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        return True
    except OSError:
        return False


def is_agent_running(handle: RuntimeHandle, process_name: str, timeout: float = 30) -> bool:
    """Whether process_name runs inside the runtime a handle points at."""
    if handle.runtime_name == "tmux" and handle.id:
        return is_agent_in_tmux_pane(handle.id, process_name, timeout=timeout)
    return is_pid_alive(handle.data)
