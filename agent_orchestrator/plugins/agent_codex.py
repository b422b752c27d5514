"""
Codex agent plugin.

Codex writes rollout transcripts to ~/.codex/sessions/YYYY/MM/DD/rollout-*.jsonl;
the newest one belonging to the session drives activity detection.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from agent_orchestrator.models import ActivityState, RuntimeHandle, Session
from agent_orchestrator.plugins.base import Agent, AgentLaunchConfig
from agent_orchestrator.utils.jsonl import read_last_jsonl_entry
from agent_orchestrator.utils.process import is_agent_running
from agent_orchestrator.utils.shell import shell_escape

logger = logging.getLogger(__name__)

ROLLOUT_LOOKBACK_DAYS = 7
ACTIVE_WINDOW_SECONDS = 30

# Rollout entry type -> activity
ROLLOUT_ACTIVITY = {
    "user_message": ActivityState.ACTIVE,
    "tool_use": ActivityState.ACTIVE,
    "tool_result": ActivityState.ACTIVE,
    "assistant_message": ActivityState.IDLE,
    "approval_request": ActivityState.WAITING_INPUT,
    "error": ActivityState.BLOCKED,
}


class CodexAgent(Agent):
    """Driver for the OpenAI `codex` CLI."""

    name = "codex"
    process_name = "codex"

    def __init__(
        self,
        command_timeout: float = 30,
        sessions_dir: Optional[Path] = None,
    ) -> None:
        self.command_timeout = command_timeout
        self.sessions_dir = sessions_dir or Path.home() / ".codex" / "sessions"

    def get_launch_command(self, config: AgentLaunchConfig) -> str:
        parts = ["codex"]
        if config.permissions == "skip":
            parts.extend(["--approval-mode", "full-auto"])
        if config.model:
            parts.extend(["--model", shell_escape(config.model)])
        if config.prompt:
            parts.extend(["--", shell_escape(config.prompt)])
        return " ".join(parts)

    def get_environment(self, config: AgentLaunchConfig) -> dict[str, str]:
        env = {
            "AO_SESSION_ID": config.session_id,
            "AO_PROJECT_ID": config.project_id,
        }
        if config.issue_id:
            env["AO_ISSUE_ID"] = config.issue_id
        if config.data_dir:
            env["AO_DATA_DIR"] = config.data_dir
        return env

    def detect_activity(self, terminal_output: str) -> ActivityState:
        # Codex's terminal has no reliable markers beyond "something is there".
        if not terminal_output.strip():
            return ActivityState.IDLE
        return ActivityState.ACTIVE

    def get_activity_state(self, session: Session) -> ActivityState:
        if session.runtime_handle is None:
            return ActivityState.EXITED
        if not self.is_process_running(session.runtime_handle):
            return ActivityState.EXITED

        rollout = self.find_latest_rollout(session.id)
        if rollout is None:
            return ActivityState.ACTIVE

        entry = read_last_jsonl_entry(rollout)
        if entry is None:
            return ActivityState.IDLE
        age = (datetime.now(timezone.utc) - entry.modified_at).total_seconds()
        if age > ACTIVE_WINDOW_SECONDS:
            return ActivityState.IDLE
        return ROLLOUT_ACTIVITY.get(entry.last_type or "", ActivityState.ACTIVE)

    def find_latest_rollout(self, session_id: str, now: Optional[datetime] = None) -> Optional[Path]:
        """Newest rollout file mentioning session_id, searching back a week."""
        now = now or datetime.now()
        for days_ago in range(ROLLOUT_LOOKBACK_DAYS):
            day = now - timedelta(days=days_ago)
            day_dir = self.sessions_dir / f"{day:%Y}" / f"{day:%m}" / f"{day:%d}"
            if not day_dir.is_dir():
                continue
            candidates = [
                p for p in day_dir.glob("rollout-*.jsonl")
                if session_id in p.name
                or (p.name[8:-6] and session_id.startswith(p.name[8:-6]))
            ]
            if candidates:
                return max(candidates, key=lambda p: p.stat().st_mtime)
        return None

    def is_process_running(self, handle: RuntimeHandle) -> bool:
        return is_agent_running(handle, self.process_name, timeout=self.command_timeout)
