"""Tests for the tmux runtime and its message delivery protocol."""

from __future__ import annotations

import os
import threading

import pytest

from agent_orchestrator.config import DeliveryConfig
from agent_orchestrator.errors import DeliveryAmbiguous, DeliveryCancelled
from agent_orchestrator.models import RuntimeHandle
from agent_orchestrator.plugins.base import RuntimeCreateConfig
from agent_orchestrator.plugins.runtime_tmux import PASTE_THRESHOLD, TmuxRuntime, default_is_busy
from agent_orchestrator.utils.shell import CommandError, CommandResult

IDLE = "some output\n❯ "
BUSY = "Thinking...\n(esc to interrupt)"


class FakeTmux:
    """Records tmux invocations and replays scripted capture-pane output."""

    def __init__(self, outputs=None):
        self.calls: list[tuple[str, ...]] = []
        self.outputs = list(outputs or [])
        self.last_output = ""
        self.alive = True
        self.fail_on: str | None = None
        self.buffer_files: list[str] = []

    def __call__(self, *args: str, check: bool = True) -> CommandResult:
        self.calls.append(args)
        if args[0] == self.fail_on:
            raise CommandError(f"tmux {args[0]} failed", ["tmux", *args], returncode=1)
        if args[0] == "capture-pane":
            if self.outputs:
                self.last_output = self.outputs.pop(0)
            return CommandResult(0, self.last_output + "\n\n", "")
        if args[0] == "has-session":
            return CommandResult(0 if self.alive else 1, "", "")
        if args[0] == "load-buffer":
            path = args[-1]
            with open(path, encoding="utf-8") as f:
                self.buffer_files.append(f.read())
            self.last_path = path
        return CommandResult(0, "", "")

    def keys(self) -> list[tuple[str, ...]]:
        return [call[3:] for call in self.calls if call[0] == "send-keys"]


@pytest.fixture
def tmux(monkeypatch):
    fake = FakeTmux()
    monkeypatch.setattr(TmuxRuntime, "_tmux", lambda self, *a, check=True: fake(*a, check=check))
    return fake


@pytest.fixture
def runtime():
    delivery = DeliveryConfig(busy_timeout_seconds=0.05, poll_interval_seconds=0.01,
                              confirm_retries=3)
    return TmuxRuntime(delivery, settle_seconds=0)


@pytest.fixture
def handle():
    return RuntimeHandle(id="abc123-app-1", runtime_name="tmux", data={})


class TestDefaultIsBusy:
    @pytest.mark.parametrize("output", [
        "done\n❯ ",
        "user@host:~/app$ ",
        "⏵⏵ accept edits on",
        "  bypass permissions on (shift+tab to cycle)\n\n",
    ])
    def test_idle_prompts(self, output):
        assert default_is_busy(output) is False

    @pytest.mark.parametrize("output", [BUSY, "", "compiling..."])
    def test_busy_or_unknown(self, output):
        assert default_is_busy(output) is True


class TestLifecycle:
    def test_create_starts_session_and_launches(self, runtime, tmux):
        handle = runtime.create(RuntimeCreateConfig(
            session_id="abc123-app-1",
            workspace_path="/w/app-1",
            launch_command="claude",
            environment={"AO_SESSION": "app-1"},
        ))

        assert handle.id == "abc123-app-1"
        assert handle.runtime_name == "tmux"
        assert handle.data["workspacePath"] == "/w/app-1"
        assert tmux.calls[0] == ("new-session", "-d", "-s", "abc123-app-1", "-c", "/w/app-1",
                                 "-e", "AO_SESSION=app-1")
        assert tmux.calls[1] == ("send-keys", "-t", "abc123-app-1", "claude", "Enter")

    def test_create_rejects_unsafe_names(self, runtime, tmux):
        with pytest.raises(ValueError):
            runtime.create(RuntimeCreateConfig(session_id="a b;rm", workspace_path="/w",
                                               launch_command="x"))
        assert tmux.calls == []

    def test_failed_launch_kills_the_session(self, runtime, tmux):
        tmux.fail_on = "send-keys"

        with pytest.raises(CommandError):
            runtime.create(RuntimeCreateConfig(session_id="s-1", workspace_path="/w",
                                               launch_command="claude"))

        assert tmux.calls[-1] == ("kill-session", "-t", "s-1")

    def test_destroy_and_is_alive(self, runtime, tmux, handle):
        assert runtime.is_alive(handle) is True
        tmux.alive = False
        assert runtime.is_alive(handle) is False

        runtime.destroy(handle)
        assert tmux.calls[-1] == ("kill-session", "-t", handle.id)

    def test_is_alive_false_when_tmux_errors(self, runtime, tmux, handle):
        tmux.fail_on = "has-session"
        assert runtime.is_alive(handle) is False

    def test_get_output_strips_trailing_blank_lines(self, runtime, tmux, handle):
        tmux.outputs = ["line one\nline two"]
        assert runtime.get_output(handle, lines=20) == "line one\nline two"
        assert tmux.calls[-1] == ("capture-pane", "-t", handle.id, "-p", "-S", "-20")

    def test_attach_info(self, runtime, handle):
        info = runtime.get_attach_info(handle)
        assert info.type == "tmux"
        assert info.command == f"tmux attach -t {handle.id}"

    def test_metrics_uptime(self, runtime):
        assert runtime.get_metrics(RuntimeHandle("x", "tmux", {})).uptime_seconds == 0.0
        assert runtime.get_metrics(RuntimeHandle("x", "tmux", {"createdAt": "bad"})) \
            .uptime_seconds == 0.0


class TestSendMessage:
    """Tests for the busy-wait / clear / inject / submit / confirm protocol."""

    def test_idle_target_is_cleared_typed_and_submitted(self, runtime, tmux, handle):
        tmux.outputs = [IDLE, BUSY]

        assert runtime.send_message(handle, "fix the tests") is True
        assert tmux.keys() == [("C-u",), ("-l", "fix the tests"), ("Enter",)]

    def test_queued_marker_confirms_delivery(self, runtime, tmux, handle):
        tmux.outputs = [IDLE, "❯ \nPress up to edit queued messages"]
        assert runtime.send_message(handle, "hi") is True

    def test_unconfirmed_delivery_resubmits_then_gives_up(self, runtime, tmux, handle):
        tmux.outputs = [IDLE]

        assert runtime.send_message(handle, "hi") is False
        enters = [k for k in tmux.keys() if k == ("Enter",)]
        assert len(enters) == 3

    def test_waits_for_busy_target_to_go_idle(self, runtime, tmux, handle):
        runtime.busy_timeout = 5
        tmux.outputs = [BUSY, BUSY, IDLE, BUSY]

        assert runtime.send_message(handle, "hi") is True
        captures = [c for c in tmux.calls if c[0] == "capture-pane"]
        assert len(captures) == 4

    def test_still_busy_after_timeout_sends_anyway(self, runtime, tmux, handle):
        tmux.outputs = [BUSY]

        with pytest.raises(DeliveryAmbiguous):
            runtime.send_message(handle, "hi")

        assert ("-l", "hi") in tmux.keys()

    def test_cancel_during_busy_wait_sends_nothing(self, runtime, tmux, handle):
        runtime.busy_timeout = 5
        tmux.outputs = [BUSY]
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(DeliveryCancelled):
            runtime.send_message(handle, "hi", cancel=cancel)

        assert tmux.keys() == []

    def test_custom_probe_is_used(self, runtime, tmux, handle):
        seen = []

        def probe(output):
            seen.append(output)
            return len(seen) > 1

        tmux.outputs = [BUSY]
        assert runtime.send_message(handle, "hi", is_busy=probe) is True
        assert ("-l", "hi") in tmux.keys()

    def test_multiline_message_goes_through_paste_buffer(self, runtime, tmux, handle):
        tmux.outputs = [IDLE, BUSY]
        message = "first line\nsecond line"

        runtime.send_message(handle, message)

        commands = [c[0] for c in tmux.calls]
        assert "load-buffer" in commands
        assert "paste-buffer" in commands
        assert tmux.buffer_files == [message]
        assert not os.path.exists(tmux.last_path)
        assert not any(k[:1] == ("-l",) for k in tmux.keys())

    def test_long_message_goes_through_paste_buffer(self, runtime, tmux, handle):
        tmux.outputs = [IDLE, BUSY]

        runtime.send_message(handle, "x" * (PASTE_THRESHOLD + 1))

        assert tmux.buffer_files == ["x" * (PASTE_THRESHOLD + 1)]
