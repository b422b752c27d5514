"""Tests for the Claude Code and Codex agent plugins and process detection."""

from __future__ import annotations

import json
import os
import time
from datetime import datetime
from unittest.mock import MagicMock, PropertyMock, patch

import psutil
import pytest

from agent_orchestrator.config import ProjectConfig
from agent_orchestrator.models import ActivityState, RuntimeHandle, Session
from agent_orchestrator.plugins.agent_claude_code import ClaudeCodeAgent, encode_project_path
from agent_orchestrator.plugins.agent_codex import CodexAgent
from agent_orchestrator.plugins.base import AgentLaunchConfig
from agent_orchestrator.utils.process import is_agent_in_tmux_pane, is_agent_running, is_pid_alive
from agent_orchestrator.utils.shell import CommandError, CommandResult


@pytest.fixture
def project():
    return ProjectConfig(name="app", repo="acme/app", path="/src/app")


def _launch(project, **overrides) -> AgentLaunchConfig:
    values = dict(session_id="app-1", project_id="app", project=project)
    values.update(overrides)
    return AgentLaunchConfig(**values)


def _write_transcript(path, entries, age_seconds=0.0):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(e) + "\n" for e in entries))
    stamp = time.time() - age_seconds
    os.utime(path, (stamp, stamp))


def _session(workspace, handle=True) -> Session:
    return Session(
        id="app-1",
        project_id="app",
        workspace_path=str(workspace),
        issue_ref="42",
        runtime_handle=RuntimeHandle("abc-app-1", "tmux") if handle else None,
    )


# =============================================================================
# Claude Code
# =============================================================================


class TestClaudeCodeLaunch:
    def test_minimal_command(self, project):
        assert ClaudeCodeAgent().get_launch_command(_launch(project)) == "claude"

    def test_full_command_is_shell_quoted(self, project):
        command = ClaudeCodeAgent().get_launch_command(_launch(
            project,
            permissions="skip",
            model="opus",
            system_prompt="You are the orchestrator",
            prompt="-fix it's broken",
        ))
        assert command == (
            "claude --dangerously-skip-permissions --model opus "
            "--append-system-prompt 'You are the orchestrator' "
            "-- '-fix it'\"'\"'s broken'"
        )

    def test_environment(self, project):
        env = ClaudeCodeAgent().get_environment(
            _launch(project, issue_id="42", data_dir="/data/.ao")
        )
        assert env == {
            "AO_SESSION_ID": "app-1",
            "AO_PROJECT_ID": "app",
            "AO_ISSUE_ID": "42",
            "AO_DATA_DIR": "/data/.ao",
        }

    def test_encode_project_path(self):
        assert encode_project_path("/Users/me/app.v2") == "-Users-me-app-v2"


class TestClaudeCodeDetectActivity:
    @pytest.mark.parametrize("output,state", [
        ("", ActivityState.IDLE),
        ("Edit app.py?\nDo you want to make this edit?\n❯ 1. Yes\n  2. No", ActivityState.WAITING_INPUT),
        ("Reading 3 files… (esc to interrupt)", ActivityState.ACTIVE),
        ("Done.\n❯ \n", ActivityState.IDLE),
        ("API Error: 529 overloaded", ActivityState.BLOCKED),
        ("Compiling...", ActivityState.ACTIVE),
    ])
    def test_heuristics(self, output, state):
        assert ClaudeCodeAgent().detect_activity(output) == state


class TestClaudeCodeActivityState:
    @pytest.fixture
    def agent(self, tmp_path):
        agent = ClaudeCodeAgent(projects_dir=tmp_path / "projects")
        with patch.object(ClaudeCodeAgent, "is_process_running", return_value=True):
            yield agent

    def _transcript(self, tmp_path, workspace):
        return tmp_path / "projects" / encode_project_path(str(workspace)) / "s.jsonl"

    def test_no_handle_is_exited(self, agent, tmp_path):
        assert agent.get_activity_state(_session(tmp_path, handle=False)) == ActivityState.EXITED

    def test_dead_process_is_exited(self, agent, tmp_path):
        with patch.object(ClaudeCodeAgent, "is_process_running", return_value=False):
            assert agent.get_activity_state(_session(tmp_path)) == ActivityState.EXITED

    def test_no_transcript_yet_is_active(self, agent, tmp_path):
        assert agent.get_activity_state(_session(tmp_path / "ws")) == ActivityState.ACTIVE

    @pytest.mark.parametrize("entry_type,age,state", [
        ("assistant", 0, ActivityState.ACTIVE),
        ("assistant", 120, ActivityState.IDLE),
        ("permission_request", 120, ActivityState.WAITING_INPUT),
        ("error", 0, ActivityState.BLOCKED),
    ])
    def test_transcript_drives_activity(self, agent, tmp_path, entry_type, age, state):
        workspace = tmp_path / "ws"
        _write_transcript(self._transcript(tmp_path, workspace),
                          [{"type": "user"}, {"type": entry_type}], age_seconds=age)

        assert agent.get_activity_state(_session(workspace)) == state

    def test_empty_transcript_is_idle(self, agent, tmp_path):
        workspace = tmp_path / "ws"
        path = self._transcript(tmp_path, workspace)
        path.parent.mkdir(parents=True)
        path.write_text("")

        assert agent.get_activity_state(_session(workspace)) == ActivityState.IDLE


class TestClaudeCodePostLaunch:
    def test_merges_session_env_into_settings(self, tmp_path):
        settings = tmp_path / ".claude" / "settings.local.json"
        settings.parent.mkdir()
        settings.write_text(json.dumps({"permissions": {"allow": ["Bash"]}, "env": {"A": "1"}}))

        ClaudeCodeAgent().post_launch_setup(_session(tmp_path))

        data = json.loads(settings.read_text())
        assert data["permissions"] == {"allow": ["Bash"]}
        assert data["env"] == {
            "A": "1",
            "AO_SESSION_ID": "app-1",
            "AO_PROJECT_ID": "app",
            "AO_ISSUE_ID": "42",
        }

    def test_replaces_unreadable_settings(self, tmp_path):
        settings = tmp_path / ".claude" / "settings.local.json"
        settings.parent.mkdir()
        settings.write_text("{broken")

        ClaudeCodeAgent().post_launch_setup(_session(tmp_path))

        assert json.loads(settings.read_text())["env"]["AO_SESSION_ID"] == "app-1"

    def test_no_workspace_is_noop(self):
        ClaudeCodeAgent().post_launch_setup(Session(id="app-1", project_id="app"))


# =============================================================================
# Codex
# =============================================================================


class TestCodex:
    def test_launch_command(self, project):
        command = CodexAgent().get_launch_command(
            _launch(project, permissions="skip", model="o3", prompt="hi there")
        )
        assert command == "codex --approval-mode full-auto --model o3 -- 'hi there'"

    def test_detect_activity(self):
        agent = CodexAgent()
        assert agent.detect_activity("  \n") == ActivityState.IDLE
        assert agent.detect_activity("> thinking") == ActivityState.ACTIVE

    def test_finds_newest_rollout_for_session(self, tmp_path):
        now = datetime.now()
        day_dir = tmp_path / f"{now:%Y}" / f"{now:%m}" / f"{now:%d}"
        older = day_dir / "rollout-2026-app-1.jsonl"
        newer = day_dir / "rollout-2027-app-1.jsonl"
        other = day_dir / "rollout-2027-app-2.jsonl"
        _write_transcript(older, [{"type": "user_message"}], age_seconds=60)
        _write_transcript(newer, [{"type": "user_message"}])
        _write_transcript(other, [{"type": "user_message"}])

        assert CodexAgent(sessions_dir=tmp_path).find_latest_rollout("app-1", now=now) == newer

    def test_no_rollout(self, tmp_path):
        assert CodexAgent(sessions_dir=tmp_path).find_latest_rollout("app-1") is None

    @pytest.mark.parametrize("entry_type,age,state", [
        ("approval_request", 0, ActivityState.WAITING_INPUT),
        ("assistant_message", 0, ActivityState.IDLE),
        ("tool_use", 0, ActivityState.ACTIVE),
        ("tool_use", 300, ActivityState.IDLE),
    ])
    def test_activity_from_rollout(self, tmp_path, entry_type, age, state):
        now = datetime.now()
        path = tmp_path / f"{now:%Y}" / f"{now:%m}" / f"{now:%d}" / "rollout-x-app-1.jsonl"
        _write_transcript(path, [{"type": entry_type}], age_seconds=age)
        agent = CodexAgent(sessions_dir=tmp_path)

        with patch.object(CodexAgent, "is_process_running", return_value=True):
            assert agent.get_activity_state(_session(tmp_path)) == state


# =============================================================================
# Process detection
# =============================================================================


class TestProcessDetection:
    PANES = CommandResult(0, "/dev/ttys001\n", "")

    @staticmethod
    def _proc(terminal, cmdline):
        proc = MagicMock()
        proc.info = {"terminal": terminal, "cmdline": cmdline}
        return proc

    def _table(self):
        return [
            self._proc("/dev/ttys001", ["/usr/local/bin/claude", "--model", "opus"]),
            self._proc("/dev/ttys002", ["codex"]),
            self._proc("/dev/ttys001", ["vim", "claude-notes.md"]),
            self._proc(None, ["launchd"]),
        ]

    @patch("agent_orchestrator.utils.process.psutil.process_iter")
    @patch("agent_orchestrator.utils.process.run_command")
    def test_agent_on_pane_tty(self, run_command, process_iter):
        run_command.return_value = self.PANES
        process_iter.return_value = self._table()
        assert is_agent_in_tmux_pane("abc-app-1", "claude") is True
        process_iter.assert_called_once_with(["terminal", "cmdline"])

    @patch("agent_orchestrator.utils.process.psutil.process_iter")
    @patch("agent_orchestrator.utils.process.run_command")
    def test_agent_on_other_tty_is_ignored(self, run_command, process_iter):
        run_command.return_value = self.PANES
        process_iter.return_value = self._table()
        assert is_agent_in_tmux_pane("abc-app-1", "codex") is False

    @patch("agent_orchestrator.utils.process.psutil.process_iter")
    @patch("agent_orchestrator.utils.process.run_command")
    def test_vanished_process_is_skipped(self, run_command, process_iter):
        run_command.return_value = self.PANES
        gone = MagicMock()
        type(gone).info = PropertyMock(side_effect=psutil.NoSuchProcess(123))
        process_iter.return_value = [gone] + self._table()
        assert is_agent_in_tmux_pane("abc-app-1", "claude") is True

    @patch("agent_orchestrator.utils.process.psutil.process_iter")
    @patch("agent_orchestrator.utils.process.run_command")
    def test_missing_tmux_session(self, run_command, process_iter):
        run_command.side_effect = CommandError("no server running")
        assert is_agent_in_tmux_pane("abc-app-1", "claude") is False
        process_iter.assert_not_called()

    def test_pid_handles(self):
        assert is_pid_alive({"pid": os.getpid()}) is True
        assert is_pid_alive({"pid": 0}) is False
        assert is_pid_alive({"pid": "nope"}) is False
        assert is_pid_alive({}) is False

    def test_non_tmux_handle_uses_pid(self):
        handle = RuntimeHandle("proc-1", "process", {"pid": os.getpid()})
        assert is_agent_running(handle, "claude") is True
