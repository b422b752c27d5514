"""
Capability contracts consumed by the session lifecycle engine.

Each capability is a narrow abstract base class. Concrete implementations
(tmux, claude-code, git worktrees, GitHub, ...) live beside this module and
are selected by the registry; the managers only ever see these interfaces.

Every operation here is an I/O boundary: implementations must bound their
own subprocess/network calls with a timeout.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from agent_orchestrator.models import (
    ActivityState,
    CIStatus,
    MergeReadiness,
    PRInfo,
    PRState,
    ReviewComment,
    ReviewDecision,
    RuntimeHandle,
    Session,
)

if TYPE_CHECKING:
    from agent_orchestrator.config import ProjectConfig
    from agent_orchestrator.events.types import OrchestratorEvent


# =============================================================================
# Runtime
# =============================================================================


@dataclass
class RuntimeCreateConfig:
    """Everything a runtime needs to start a session's process."""
    session_id: str                    # Runtime-level name (already namespaced)
    workspace_path: str
    launch_command: str
    environment: dict[str, str] = field(default_factory=dict)


@dataclass
class RuntimeMetrics:
    uptime_seconds: float
    memory_mb: Optional[float] = None
    cpu_percent: Optional[float] = None


@dataclass
class AttachInfo:
    """How a human can attach to a running session."""
    type: str
    target: str
    command: Optional[str] = None


BusyProbe = Callable[[str], bool]


class Runtime(ABC):
    """Process/terminal control."""

    name: str = "runtime"

    @abstractmethod
    def create(self, config: RuntimeCreateConfig) -> RuntimeHandle:
        """Start the process and return its handle."""

    @abstractmethod
    def destroy(self, handle: RuntimeHandle) -> None:
        """Stop the process. Must not fail if it is already gone."""

    @abstractmethod
    def send_message(
        self,
        handle: RuntimeHandle,
        message: str,
        is_busy: Optional[BusyProbe] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """
        Deliver a message to the running process.

        Protocol:
        1. Poll until the target is idle, up to the configured busy timeout.
        2. Clear any partially typed input.
        3. Inject the message (atomically for long/multi-line content).
        4. Submit, then re-submit a bounded number of times until the target
           visibly starts processing.

        Returns:
            True if processing was confirmed, False if it could not be.

        Raises:
            DeliveryAmbiguous: The busy-wait ran out and the message was sent
                anyway.
            DeliveryCancelled: cancel was set during the busy-wait; nothing
                was sent.
        """

    @abstractmethod
    def get_output(self, handle: RuntimeHandle, lines: int = 50) -> str:
        """Recent terminal output ("" if unavailable)."""

    @abstractmethod
    def is_alive(self, handle: RuntimeHandle) -> bool:
        """Whether the runtime session still exists."""

    @abstractmethod
    def get_metrics(self, handle: RuntimeHandle) -> RuntimeMetrics:
        """Resource metrics for the session."""

    @abstractmethod
    def get_attach_info(self, handle: RuntimeHandle) -> AttachInfo:
        """Attach instructions for humans."""


# =============================================================================
# Agent
# =============================================================================


@dataclass
class AgentLaunchConfig:
    """Inputs for computing an agent's launch command and environment."""
    session_id: str
    project_id: str
    project: ProjectConfig
    issue_id: Optional[str] = None
    prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    permissions: str = "default"
    model: Optional[str] = None
    data_dir: Optional[str] = None


class Agent(ABC):
    """Coding-assistant driver."""

    name: str = "agent"
    process_name: str = "agent"

    @abstractmethod
    def get_launch_command(self, config: AgentLaunchConfig) -> str:
        """Shell command that starts the agent."""

    @abstractmethod
    def get_environment(self, config: AgentLaunchConfig) -> dict[str, str]:
        """Extra environment variables for the agent process."""

    @abstractmethod
    def detect_activity(self, terminal_output: str) -> ActivityState:
        """Classify recent terminal output (cheap, heuristic)."""

    @abstractmethod
    def get_activity_state(self, session: Session) -> ActivityState:
        """Richer activity detection (process + transcript inspection)."""

    @abstractmethod
    def is_process_running(self, handle: RuntimeHandle) -> bool:
        """Whether the agent process itself is running inside the runtime."""

    def post_launch_setup(self, session: Session) -> None:
        """Optional hook run after the runtime has started."""
        return None


# =============================================================================
# Workspace
# =============================================================================


@dataclass
class WorkspaceCreateConfig:
    project_id: str
    project: ProjectConfig
    session_id: str
    branch: str


@dataclass
class WorkspaceInfo:
    path: str
    branch: str
    session_id: str
    project_id: str


class Workspace(ABC):
    """Branch/checkout isolation."""

    name: str = "workspace"

    @abstractmethod
    def create(self, config: WorkspaceCreateConfig) -> WorkspaceInfo:
        """Create an isolated checkout. Must be safe to destroy afterwards."""

    def post_create(self, info: WorkspaceInfo, project: ProjectConfig) -> None:
        """Optional setup after creation (symlinks, install commands)."""
        return None

    @abstractmethod
    def destroy(self, workspace_path: str) -> None:
        """Remove the checkout. Idempotent."""


# =============================================================================
# Tracker
# =============================================================================


@dataclass
class Issue:
    id: str
    title: str
    description: str = ""
    url: str = ""
    state: str = "open"                 # open | closed
    labels: list[str] = field(default_factory=list)


class Tracker(ABC):
    """Issue source. Read-only with respect to the engine."""

    name: str = "tracker"

    @abstractmethod
    def get_issue(self, issue_ref: str, project: ProjectConfig) -> Issue:
        """Fetch an issue."""

    @abstractmethod
    def is_issue_done(self, issue_ref: str, project: ProjectConfig) -> bool:
        """Whether the issue is closed/resolved."""

    @abstractmethod
    def generate_prompt(self, issue_ref: str, project: ProjectConfig) -> str:
        """Task description for an agent working on the issue."""

    def branch_name(self, issue_ref: str, project: ProjectConfig) -> str:
        """Branch name for work on the issue."""
        return f"feat/{issue_ref.lstrip('#')}"


# =============================================================================
# SCM
# =============================================================================


class SCM(ABC):
    """Pull request, CI and review source."""

    name: str = "scm"

    @abstractmethod
    def detect_pr(self, session: Session, project: ProjectConfig) -> Optional[PRInfo]:
        """Find the PR opened from the session's branch, if any."""

    @abstractmethod
    def get_pr_state(self, pr: PRInfo) -> PRState:
        """open / merged / closed."""

    @abstractmethod
    def get_ci_summary(self, pr: PRInfo) -> CIStatus:
        """Rolled-up CI status."""

    @abstractmethod
    def get_review_decision(self, pr: PRInfo) -> ReviewDecision:
        """Overall review decision."""

    @abstractmethod
    def get_mergeability(self, pr: PRInfo) -> MergeReadiness:
        """Merge readiness, including conflict detection."""

    @abstractmethod
    def get_pending_comments(self, pr: PRInfo) -> list[ReviewComment]:
        """Unresolved review threads."""

    @abstractmethod
    def merge(self, pr: PRInfo, method: str = "squash") -> None:
        """Merge the PR."""


# =============================================================================
# Notifier
# =============================================================================


class Notifier(ABC):
    """Human-facing push channel. Fire-and-forget from the engine's view."""

    name: str = "notifier"

    @abstractmethod
    def notify(self, event: OrchestratorEvent, priority: str) -> None:
        """Deliver a notification."""
