"""
Core data models for the agent orchestrator.

This module defines:
- Enums for session status, activity, role and PR-side signals
- The Session entity and its mapping to the flat key=value record
- Value types describing runtime handles and pull requests
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now_iso() -> str:
    """Current UTC time as an ISO timestamp with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp written by utc_now_iso (None if unparseable)."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class SessionStatus(str, Enum):
    """
    Workflow status of a session.

    The terminal subset (merged, killed, done, terminated, cleanup) is never
    polled or transitioned again once reached.
    """
    SPAWNING = "spawning"
    WORKING = "working"
    PR_OPEN = "pr_open"
    REVIEW_PENDING = "review_pending"
    CI_FAILED = "ci_failed"
    CHANGES_REQUESTED = "changes_requested"
    APPROVED = "approved"
    MERGEABLE = "mergeable"
    MERGED = "merged"
    NEEDS_INPUT = "needs_input"
    STUCK = "stuck"
    ERRORED = "errored"
    CLEANUP = "cleanup"
    KILLED = "killed"
    DONE = "done"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, value: Optional[str], default: SessionStatus) -> SessionStatus:
        try:
            return cls(value) if value else default
        except ValueError:
            return default


TERMINAL_STATUSES = frozenset({
    SessionStatus.MERGED,
    SessionStatus.KILLED,
    SessionStatus.DONE,
    SessionStatus.TERMINATED,
    SessionStatus.CLEANUP,
})


class ActivityState(str, Enum):
    """Volatile engagement signal of the underlying process."""
    ACTIVE = "active"
    IDLE = "idle"
    WAITING_INPUT = "waiting_input"
    BLOCKED = "blocked"
    EXITED = "exited"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional[ActivityState]:
        try:
            return cls(value) if value else None
        except ValueError:
            return None


class SessionRole(str, Enum):
    """Role of a session within its project."""
    WORKER = "worker"
    ORCHESTRATOR = "orchestrator"


class PRState(str, Enum):
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class CIStatus(str, Enum):
    PASSING = "passing"
    FAILING = "failing"
    PENDING = "pending"
    NONE = "none"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    PENDING = "pending"
    NONE = "none"


@dataclass
class RuntimeHandle:
    """
    Opaque reference to a live process/terminal.

    Persisted as a JSON string under the record's runtimeHandle key.
    """
    id: str
    runtime_name: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {"id": self.id, "runtimeName": self.runtime_name, "data": self.data},
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> RuntimeHandle:
        """
        Parse a persisted handle.

        Records written before handles were JSON hold the bare tmux session
        name; those are read as tmux handles.
        """
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return cls(id=raw, runtime_name="tmux")
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError(f"Invalid runtime handle: {raw!r}")
        return cls(
            id=str(data["id"]),
            runtime_name=str(data.get("runtimeName", "tmux")),
            data=dict(data.get("data") or {}),
        )


@dataclass
class PRInfo:
    """A pull request as detected on the code-review platform."""
    number: int
    url: str
    title: str = ""
    owner: str = ""
    repo: str = ""
    branch: str = ""
    base_branch: str = ""
    is_draft: bool = False

    @classmethod
    def from_url(cls, url: str) -> PRInfo:
        """
        Build a minimal PRInfo from a persisted PR URL.

        Accepts https://github.com/<owner>/<repo>/pull/<n>; anything else keeps
        the URL with number 0.
        """
        parts = url.rstrip("/").split("/")
        if len(parts) >= 4 and parts[-2] == "pull" and parts[-1].isdigit():
            return cls(
                number=int(parts[-1]),
                url=url,
                owner=parts[-4],
                repo=parts[-3],
            )
        return cls(number=0, url=url)


@dataclass
class MergeReadiness:
    """Whether a PR can be merged, and why not."""
    mergeable: bool = False
    ci_passing: bool = False
    approved: bool = False
    no_conflicts: bool = True
    blockers: list[str] = field(default_factory=list)


@dataclass
class ReviewComment:
    """An unresolved review thread's leading comment."""
    author: str
    body: str
    path: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class PRSnapshot:
    """PR signals observed in one reconciliation pass."""
    state: PRState
    is_draft: bool = False
    ci_status: CIStatus = CIStatus.NONE
    review_decision: ReviewDecision = ReviewDecision.NONE
    unresolved_threads: int = 0
    has_conflicts: bool = False


# Record keys of the on-disk key=value format.
RECORD_KEYS = (
    "project",
    "role",
    "status",
    "activity",
    "branch",
    "worktree",
    "issue",
    "pr",
    "runtimeHandle",
    "summary",
    "agent",
    "createdAt",
    "lastActivityAt",
)


@dataclass
class Session:
    """
    One tracked unit of work bound to a branch, a workspace and a runtime.

    Persisted fields round-trip through to_record/from_record; keys the model
    does not know about are kept in metadata so they survive a rewrite.
    """
    id: str
    project_id: str
    status: SessionStatus = SessionStatus.SPAWNING
    role: SessionRole = SessionRole.WORKER
    activity: Optional[ActivityState] = None
    branch: str = ""
    workspace_path: str = ""
    issue_ref: Optional[str] = None
    pr_ref: Optional[str] = None
    runtime_handle: Optional[RuntimeHandle] = None
    summary: Optional[str] = None
    agent: Optional[str] = None
    created_at: Optional[str] = None
    last_activity_at: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_orchestrator(self) -> bool:
        return self.role == SessionRole.ORCHESTRATOR

    @property
    def pr(self) -> Optional[PRInfo]:
        return PRInfo.from_url(self.pr_ref) if self.pr_ref else None

    def to_record(self) -> dict[str, str]:
        """Flatten to the key=value record; empty values are dropped."""
        record = dict(self.metadata)
        record.update({
            "project": self.project_id,
            "role": self.role.value,
            "status": self.status.value,
            "activity": self.activity.value if self.activity else "",
            "branch": self.branch,
            "worktree": self.workspace_path,
            "issue": self.issue_ref or "",
            "pr": self.pr_ref or "",
            "runtimeHandle": self.runtime_handle.to_json() if self.runtime_handle else "",
            "summary": self.summary or "",
            "agent": self.agent or "",
            "createdAt": self.created_at or "",
            "lastActivityAt": self.last_activity_at or "",
        })
        return {k: v for k, v in record.items() if v}

    @classmethod
    def from_record(cls, session_id: str, record: dict[str, str]) -> Session:
        """
        Build a Session from a parsed record.

        Raises:
            ValueError: If the runtimeHandle field cannot be decoded.
        """
        handle_raw = record.get("runtimeHandle")
        return cls(
            id=session_id,
            project_id=record.get("project", ""),
            role=SessionRole.ORCHESTRATOR
            if record.get("role") == SessionRole.ORCHESTRATOR.value
            else SessionRole.WORKER,
            status=SessionStatus.parse(record.get("status"), SessionStatus.SPAWNING),
            activity=ActivityState.parse(record.get("activity")),
            branch=record.get("branch", ""),
            workspace_path=record.get("worktree", ""),
            issue_ref=record.get("issue") or None,
            pr_ref=record.get("pr") or None,
            runtime_handle=RuntimeHandle.from_json(handle_raw) if handle_raw else None,
            summary=record.get("summary") or None,
            agent=record.get("agent") or None,
            created_at=record.get("createdAt") or None,
            last_activity_at=record.get("lastActivityAt") or None,
            metadata={k: v for k, v in record.items() if k not in RECORD_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict (used by `ao status --json`)."""
        return {
            "id": self.id,
            "projectId": self.project_id,
            "role": self.role.value,
            "status": self.status.value,
            "activity": self.activity.value if self.activity else None,
            "branch": self.branch,
            "workspacePath": self.workspace_path,
            "issue": self.issue_ref,
            "pr": self.pr_ref,
            "runtimeHandle": self.runtime_handle.id if self.runtime_handle else None,
            "summary": self.summary,
            "agent": self.agent,
            "createdAt": self.created_at,
            "lastActivityAt": self.last_activity_at,
        }
