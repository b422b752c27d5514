"""
tmux runtime: one detached tmux session per orchestrator session.

Message delivery follows a busy-wait / clear / inject / submit / confirm
protocol so that a message typed into an agent that is mid-turn is not
silently mangled.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
import uuid
from typing import Optional

from agent_orchestrator.config import DeliveryConfig
from agent_orchestrator.errors import DeliveryAmbiguous, DeliveryCancelled
from agent_orchestrator.models import RuntimeHandle
from agent_orchestrator.plugins.base import (
    AttachInfo,
    BusyProbe,
    Runtime,
    RuntimeCreateConfig,
    RuntimeMetrics,
)
from agent_orchestrator.session_store import validate_session_id
from agent_orchestrator.utils.shell import CommandError, CommandResult, run_command

logger = logging.getLogger(__name__)

# Messages longer than this (or multi-line) are pasted through a tmux buffer.
PASTE_THRESHOLD = 200

IDLE_MARKERS = ("❯", "$", "⏵⏵", "bypass permissions")
BUSY_MARKER = "esc to interrupt"
QUEUED_MARKER = "Press up to edit queued messages"


def default_is_busy(output: str) -> bool:
    """
    Busy heuristic used when the agent supplies no probe.

    Idle if the last non-empty line shows a prompt or the permission-mode
    footer; otherwise busy (including when nothing can be told).
    """
    lines = [line for line in output.splitlines() if line.strip()]
    last_line = lines[-1] if lines else ""
    if any(marker in last_line for marker in IDLE_MARKERS):
        return False
    if BUSY_MARKER in output:
        return True
    return True


class TmuxRuntime(Runtime):
    """Runtime backed by the local tmux server."""

    name = "tmux"

    def __init__(
        self,
        delivery: Optional[DeliveryConfig] = None,
        command_timeout: float = 30,
        settle_seconds: float = 0.3,
    ) -> None:
        delivery = delivery or DeliveryConfig()
        self.busy_timeout = delivery.busy_timeout_seconds
        self.poll_interval = delivery.poll_interval_seconds
        self.confirm_retries = delivery.confirm_retries
        self.command_timeout = command_timeout
        self.settle_seconds = settle_seconds

    def _tmux(self, *args: str, check: bool = True) -> CommandResult:
        """Run a tmux subcommand."""
        return run_command(["tmux", *args], timeout=self.command_timeout, check=check)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create(self, config: RuntimeCreateConfig) -> RuntimeHandle:
        validate_session_id(config.session_id)
        name = config.session_id

        env_args: list[str] = []
        for key, value in config.environment.items():
            env_args.extend(["-e", f"{key}={value}"])

        self._tmux("new-session", "-d", "-s", name, "-c", config.workspace_path, *env_args)
        try:
            self._tmux("send-keys", "-t", name, config.launch_command, "Enter")
        except CommandError:
            self._tmux("kill-session", "-t", name, check=False)
            raise

        logger.debug("Created tmux session %s in %s", name, config.workspace_path)
        return RuntimeHandle(
            id=name,
            runtime_name=self.name,
            data={"createdAt": time.time(), "workspacePath": config.workspace_path},
        )

    def destroy(self, handle: RuntimeHandle) -> None:
        result = self._tmux("kill-session", "-t", handle.id, check=False)
        if not result.ok:
            logger.debug("tmux session %s already gone: %s", handle.id, result.stderr.strip())

    def is_alive(self, handle: RuntimeHandle) -> bool:
        try:
            return self._tmux("has-session", "-t", handle.id, check=False).ok
        except CommandError as e:
            logger.warning("tmux has-session failed for %s: %s", handle.id, e)
            return False

    def get_output(self, handle: RuntimeHandle, lines: int = 50) -> str:
        result = self._tmux(
            "capture-pane", "-t", handle.id, "-p", "-S", f"-{lines}", check=False
        )
        return result.stdout.rstrip() if result.ok else ""

    def get_metrics(self, handle: RuntimeHandle) -> RuntimeMetrics:
        created_at = handle.data.get("createdAt")
        try:
            uptime = max(0.0, time.time() - float(created_at)) if created_at else 0.0
        except (TypeError, ValueError):
            uptime = 0.0
        return RuntimeMetrics(uptime_seconds=uptime)

    def get_attach_info(self, handle: RuntimeHandle) -> AttachInfo:
        return AttachInfo(type="tmux", target=handle.id, command=f"tmux attach -t {handle.id}")

    # =========================================================================
    # Delivery
    # =========================================================================

    def send_message(
        self,
        handle: RuntimeHandle,
        message: str,
        is_busy: Optional[BusyProbe] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        probe = is_busy or default_is_busy
        cancel = cancel or threading.Event()

        sent_while_busy = self._wait_until_idle(handle, probe, cancel)

        self._tmux("send-keys", "-t", handle.id, "C-u")
        time.sleep(self.settle_seconds)
        self._inject(handle, message)
        time.sleep(self.settle_seconds)
        self._tmux("send-keys", "-t", handle.id, "Enter")

        confirmed = self._confirm_processing(handle, probe)
        if sent_while_busy:
            raise DeliveryAmbiguous(handle.id, self.busy_timeout)
        return confirmed

    def _wait_until_idle(
        self,
        handle: RuntimeHandle,
        probe: BusyProbe,
        cancel: threading.Event,
    ) -> bool:
        """
        Poll until the target looks idle or the busy timeout runs out.

        Returns:
            True if the target was still busy when the wait ended.

        Raises:
            DeliveryCancelled: If cancel is set before anything was sent.
        """
        deadline = time.monotonic() + self.busy_timeout
        busy = probe(self.get_output(handle, lines=5))
        while busy and time.monotonic() < deadline:
            if cancel.wait(self.poll_interval):
                raise DeliveryCancelled(handle.id)
            busy = probe(self.get_output(handle, lines=5))
        if cancel.is_set():
            raise DeliveryCancelled(handle.id)
        return busy

    def _inject(self, handle: RuntimeHandle, message: str) -> None:
        """Type the message; long or multi-line text goes through a paste buffer."""
        if "\n" not in message and len(message) <= PASTE_THRESHOLD:
            self._tmux("send-keys", "-t", handle.id, "-l", message)
            return

        buffer_name = f"ao-{uuid.uuid4().hex[:12]}"
        tmp_path = os.path.join(tempfile.gettempdir(), f"ao-send-{uuid.uuid4()}.txt")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(message)
            self._tmux("load-buffer", "-b", buffer_name, tmp_path)
            self._tmux("paste-buffer", "-d", "-b", buffer_name, "-t", handle.id)
        finally:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass

    def _confirm_processing(self, handle: RuntimeHandle, probe: BusyProbe) -> bool:
        """Re-submit until the target visibly picks the message up."""
        for attempt in range(self.confirm_retries):
            time.sleep(self.settle_seconds)
            output = self.get_output(handle, lines=10)
            if QUEUED_MARKER in output or probe(output):
                return True
            if attempt < self.confirm_retries - 1:
                self._tmux("send-keys", "-t", handle.id, "Enter")
        logger.info("Could not confirm delivery to %s", handle.id)
        return False
