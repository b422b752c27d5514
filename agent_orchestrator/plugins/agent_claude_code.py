"""
Claude Code agent plugin.

Activity comes from two places: a cheap heuristic over the terminal output
(used as the busy probe while sending), and the session transcript Claude
Code writes under ~/.claude/projects/<encoded workspace path>/.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from agent_orchestrator.models import ActivityState, RuntimeHandle, Session
from agent_orchestrator.plugins.base import Agent, AgentLaunchConfig
from agent_orchestrator.utils.fs import FileSystemError, read_file, safe_write
from agent_orchestrator.utils.jsonl import read_last_jsonl_entry
from agent_orchestrator.utils.process import is_agent_running
from agent_orchestrator.utils.shell import shell_escape

logger = logging.getLogger(__name__)

# Transcripts untouched for longer than this mean the agent is idle.
ACTIVE_WINDOW_SECONDS = 30

PROMPT_MARKERS = ("❯", "⏵⏵", "bypass permissions")
PERMISSION_PATTERNS = (
    re.compile(r"Do you want to (?:proceed|make this edit|create)", re.IGNORECASE),
    re.compile(r"\(y/n\)", re.IGNORECASE),
    re.compile(r"❯\s*1\.\s*Yes"),
)
BLOCKED_PATTERNS = (
    re.compile(r"API Error", re.IGNORECASE),
    re.compile(r"rate limit", re.IGNORECASE),
)


def encode_project_path(workspace_path: str) -> str:
    """Claude Code's directory name for a workspace: non-alphanumerics become '-'."""
    return re.sub(r"[^a-zA-Z0-9]", "-", workspace_path)


class ClaudeCodeAgent(Agent):
    """Driver for the `claude` CLI."""

    name = "claude-code"
    process_name = "claude"

    def __init__(
        self,
        command_timeout: float = 30,
        projects_dir: Optional[Path] = None,
    ) -> None:
        self.command_timeout = command_timeout
        self.projects_dir = projects_dir or Path.home() / ".claude" / "projects"

    def get_launch_command(self, config: AgentLaunchConfig) -> str:
        parts = ["claude"]
        if config.permissions == "skip":
            parts.append("--dangerously-skip-permissions")
        if config.model:
            parts.extend(["--model", shell_escape(config.model)])
        if config.system_prompt:
            parts.extend(["--append-system-prompt", shell_escape(config.system_prompt)])
        if config.prompt:
            # `--` keeps prompts starting with '-' from being read as flags.
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
        if not terminal_output.strip():
            return ActivityState.IDLE

        lines = [line for line in terminal_output.splitlines() if line.strip()]
        tail = "\n".join(lines[-8:])
        if any(p.search(tail) for p in PERMISSION_PATTERNS):
            return ActivityState.WAITING_INPUT
        if "esc to interrupt" in tail:
            return ActivityState.ACTIVE
        if any(marker in lines[-1] for marker in PROMPT_MARKERS):
            return ActivityState.IDLE
        if any(p.search(tail) for p in BLOCKED_PATTERNS):
            return ActivityState.BLOCKED
        return ActivityState.ACTIVE

    def get_activity_state(self, session: Session) -> ActivityState:
        if session.runtime_handle is None:
            return ActivityState.EXITED
        if not self.is_process_running(session.runtime_handle):
            return ActivityState.EXITED

        transcript = self._latest_transcript(session.workspace_path)
        if transcript is None:
            return ActivityState.ACTIVE
        entry = read_last_jsonl_entry(transcript)
        if entry is None:
            return ActivityState.IDLE

        age = (datetime.now(timezone.utc) - entry.modified_at).total_seconds()
        if entry.last_type == "permission_request":
            return ActivityState.WAITING_INPUT
        if entry.last_type == "error":
            return ActivityState.BLOCKED
        if age > ACTIVE_WINDOW_SECONDS:
            return ActivityState.IDLE
        return ActivityState.ACTIVE

    def _latest_transcript(self, workspace_path: str) -> Optional[Path]:
        if not workspace_path:
            return None
        project_dir = self.projects_dir / encode_project_path(workspace_path)
        if not project_dir.is_dir():
            return None
        transcripts = [p for p in project_dir.glob("*.jsonl") if p.is_file()]
        if not transcripts:
            return None
        return max(transcripts, key=lambda p: p.stat().st_mtime)

    def is_process_running(self, handle: RuntimeHandle) -> bool:
        return is_agent_running(handle, self.process_name, timeout=self.command_timeout)

    def post_launch_setup(self, session: Session) -> None:
        """
        Expose the session identity to Claude Code hooks.

        Merges the AO_* variables into <workspace>/.claude/settings.local.json,
        keeping whatever else the file holds.
        """
        if not session.workspace_path:
            return
        settings_path = Path(session.workspace_path) / ".claude" / "settings.local.json"
        settings: dict = {}
        if settings_path.exists():
            try:
                settings = json.loads(read_file(settings_path)) or {}
            except (FileSystemError, json.JSONDecodeError) as e:
                logger.warning("Replacing unreadable %s: %s", settings_path, e)
                settings = {}

        env = dict(settings.get("env") or {})
        env["AO_SESSION_ID"] = session.id
        env["AO_PROJECT_ID"] = session.project_id
        if session.issue_ref:
            env["AO_ISSUE_ID"] = session.issue_ref
        settings["env"] = env
        safe_write(settings_path, json.dumps(settings, indent=2) + "\n")
