"""
Event types for the orchestrator event system.

Defines OrchestratorEvent and the EventType enum covering session lifecycle,
PR/CI/review transitions and reaction outcomes.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


class EventType(Enum):
    """All event types emitted by the engine."""

    # Session lifecycle
    SESSION_SPAWNED = "session.spawned"
    SESSION_WORKING = "session.working"
    SESSION_EXITED = "session.exited"
    SESSION_KILLED = "session.killed"
    SESSION_RESTORED = "session.restored"
    SESSION_STUCK = "session.stuck"
    SESSION_NEEDS_INPUT = "session.needs_input"
    SESSION_ERRORED = "session.errored"

    # PR lifecycle
    PR_CREATED = "pr.created"
    PR_CLOSED = "pr.closed"

    # CI / review
    CI_FAILING = "ci.failing"
    REVIEW_PENDING = "review.pending"
    REVIEW_CHANGES_REQUESTED = "review.changes_requested"
    REVIEW_APPROVED = "review.approved"

    # Merge
    MERGE_READY = "merge.ready"
    MERGE_COMPLETED = "merge.completed"

    # Reactions
    REACTION_TRIGGERED = "reaction.triggered"
    REACTION_ESCALATED = "reaction.escalated"

    # Fleet
    SUMMARY_ALL_COMPLETE = "summary.all_complete"


@dataclass
class OrchestratorEvent:
    """A single event about a session (or the whole fleet)."""

    event_type: EventType = EventType.SESSION_WORKING
    session_id: str = ""
    project_id: str = ""
    priority: str = "info"
    message: str = ""
    data: dict = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        d = asdict(self)
        d["event_type"] = self.event_type.value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestratorEvent":
        """Create from dict."""
        data = data.copy()
        data["event_type"] = EventType(data["event_type"])
        return cls(**data)

    def __str__(self) -> str:
        return f"[{self.timestamp}] {self.event_type.value} session={self.session_id}"
