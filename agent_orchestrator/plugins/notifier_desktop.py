"""Desktop notifications via notify-send (Linux) or osascript (macOS)."""

from __future__ import annotations

import logging
import shutil
import sys
from typing import TYPE_CHECKING

from agent_orchestrator.plugins.base import Notifier
from agent_orchestrator.utils.shell import run_command

if TYPE_CHECKING:
    from agent_orchestrator.events.types import OrchestratorEvent

logger = logging.getLogger(__name__)

URGENCY = {"urgent": "critical", "action": "normal", "warning": "normal", "info": "low"}


def _applescript_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class DesktopNotifier(Notifier):
    """Pops a desktop notification; a missing notifier binary is logged, not raised."""

    name = "desktop"

    def __init__(self, command_timeout: float = 10) -> None:
        self.command_timeout = command_timeout

    def notify(self, event: OrchestratorEvent, priority: str) -> None:
        title = f"ao: {event.session_id or 'fleet'} [{priority}]"
        body = event.message or event.event_type.value

        if sys.platform == "darwin":
            script = (
                f"display notification {_applescript_string(body)} "
                f"with title {_applescript_string(title)}"
            )
            run_command(["osascript", "-e", script], timeout=self.command_timeout)
            return

        if shutil.which("notify-send") is None:
            logger.info("notify-send not available; %s: %s", title, body)
            return
        run_command(
            ["notify-send", "-u", URGENCY.get(priority, "normal"), title, body],
            timeout=self.command_timeout,
        )
