"""
Reaction policy execution.

This module handles:
- Mapping status transitions to reaction event keys and event types
- Inferring notification priority for a transition
- Counting automatic attempts per (session, event key)
- Escalating to a human once automation has had its chance
- Routing notifications to the configured channels

Escalation triggers when the attempts for a key exceed escalate_after (a
count), when the time since the first attempt exceeds escalate_after (a
duration), or when the attempts exceed retries. An escalated key sends one
urgent notification and stays silent afterwards.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from agent_orchestrator.errors import DeliveryAmbiguous, OrchestratorError
from agent_orchestrator.events.types import EventType, OrchestratorEvent
from agent_orchestrator.models import SessionStatus

if TYPE_CHECKING:
    from agent_orchestrator.config import OrchestratorConfig, ReactionConfig
    from agent_orchestrator.events.bus import EventBus
    from agent_orchestrator.logger import OrchestratorLogger
    from agent_orchestrator.models import Session
    from agent_orchestrator.plugins.registry import PluginRegistry
    from agent_orchestrator.session_manager import SessionManager

_fallback_logger = logging.getLogger(__name__)

ALL_COMPLETE_KEY = "all-complete"

STATUS_EVENT_KEYS = {
    SessionStatus.CI_FAILED: "ci-failed",
    SessionStatus.CHANGES_REQUESTED: "changes-requested",
    SessionStatus.MERGEABLE: "approved-and-green",
    SessionStatus.STUCK: "agent-stuck",
    SessionStatus.NEEDS_INPUT: "agent-needs-input",
    SessionStatus.DONE: "agent-exited",
    SessionStatus.MERGED: "pr-merged",
    SessionStatus.REVIEW_PENDING: "review-pending",
}

STATUS_EVENT_TYPES = {
    SessionStatus.SPAWNING: EventType.SESSION_SPAWNED,
    SessionStatus.WORKING: EventType.SESSION_WORKING,
    SessionStatus.PR_OPEN: EventType.PR_CREATED,
    SessionStatus.REVIEW_PENDING: EventType.REVIEW_PENDING,
    SessionStatus.CI_FAILED: EventType.CI_FAILING,
    SessionStatus.CHANGES_REQUESTED: EventType.REVIEW_CHANGES_REQUESTED,
    SessionStatus.APPROVED: EventType.REVIEW_APPROVED,
    SessionStatus.MERGEABLE: EventType.MERGE_READY,
    SessionStatus.MERGED: EventType.MERGE_COMPLETED,
    SessionStatus.NEEDS_INPUT: EventType.SESSION_NEEDS_INPUT,
    SessionStatus.STUCK: EventType.SESSION_STUCK,
    SessionStatus.ERRORED: EventType.SESSION_ERRORED,
    SessionStatus.DONE: EventType.SESSION_EXITED,
    SessionStatus.KILLED: EventType.SESSION_KILLED,
    SessionStatus.CLEANUP: EventType.SESSION_KILLED,
    SessionStatus.TERMINATED: EventType.SESSION_KILLED,
}

_URGENT = {SessionStatus.STUCK, SessionStatus.NEEDS_INPUT, SessionStatus.ERRORED}
_ACTION = {SessionStatus.MERGEABLE, SessionStatus.APPROVED}
_WARNING = {SessionStatus.CI_FAILED, SessionStatus.CHANGES_REQUESTED}


def event_key_for(status: SessionStatus) -> Optional[str]:
    """Reaction key for entering status, or None if nothing reacts to it."""
    return STATUS_EVENT_KEYS.get(status)


def infer_priority(status: SessionStatus) -> str:
    """Notification priority for entering status."""
    if status in _URGENT:
        return "urgent"
    if status in _ACTION:
        return "action"
    if status in _WARNING:
        return "warning"
    return "info"


def transition_event(
    session: Session,
    old_status: SessionStatus,
    new_status: SessionStatus,
) -> OrchestratorEvent:
    """The event describing one status transition."""
    message = f"{session.id}: {old_status.value} -> {new_status.value}"
    if session.pr_ref:
        message = f"{message} ({session.pr_ref})"
    return OrchestratorEvent(
        event_type=STATUS_EVENT_TYPES.get(new_status, EventType.SESSION_WORKING),
        session_id=session.id,
        project_id=session.project_id,
        priority=infer_priority(new_status),
        message=message,
        data={"from": old_status.value, "to": new_status.value, "pr": session.pr_ref},
    )


class _TemplateValues(dict):
    """format_map mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_message(template: str, session: Session) -> str:
    """Fill {session_id}, {project_id}, {pr_url}, {branch}, {issue}, {status}."""
    values = _TemplateValues(
        session_id=session.id,
        project_id=session.project_id,
        pr_url=session.pr_ref or "",
        branch=session.branch,
        issue=session.issue_ref or "",
        status=session.status.value,
    )
    return template.format_map(values)


# =============================================================================
# Attempt tracking
# =============================================================================


class EscalationTrigger(Enum):
    """Why automation handed a reaction over to a human."""
    MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    RETRIES_EXHAUSTED = "retries_exhausted"


class ReactionOutcome(Enum):
    """What a dispatch ended up doing."""
    SENT = "sent"
    NOTIFIED = "notified"
    MERGED = "merged"
    ESCALATED = "escalated"
    SUPPRESSED = "suppressed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ReactionAttempt:
    """Attempt history for one (session, event key)."""
    attempts: int = 0
    first_attempt_at: Optional[float] = None
    escalated: bool = False


class ReactionTracker:
    """
    Thread-safe attempt counters keyed by (session_id, event_key).

    Counters survive transitions out of and back into a status, so a session
    bouncing between working and ci_failed still escalates. They are dropped
    when the session reaches a terminal status.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts: dict[tuple[str, str], ReactionAttempt] = {}

    def record_attempt(self, session_id: str, key: str) -> ReactionAttempt:
        """Count one more trigger and return a snapshot of the history."""
        with self._lock:
            attempt = self._attempts.setdefault((session_id, key), ReactionAttempt())
            attempt.attempts += 1
            if attempt.first_attempt_at is None:
                attempt.first_attempt_at = self._clock()
            return ReactionAttempt(attempt.attempts, attempt.first_attempt_at, attempt.escalated)

    def get(self, session_id: str, key: str) -> Optional[ReactionAttempt]:
        with self._lock:
            return self._attempts.get((session_id, key))

    def mark_escalated(self, session_id: str, key: str) -> bool:
        """Flag a key as escalated. Returns False if it already was."""
        with self._lock:
            attempt = self._attempts.setdefault((session_id, key), ReactionAttempt())
            if attempt.escalated:
                return False
            attempt.escalated = True
            return True

    def should_escalate(
        self,
        attempt: ReactionAttempt,
        reaction: ReactionConfig,
    ) -> Optional[EscalationTrigger]:
        """Escalation trigger for an attempt history, or None to keep automating."""
        max_attempts = reaction.escalate_after_attempts
        if max_attempts is not None and attempt.attempts > max_attempts:
            return EscalationTrigger.MAX_ATTEMPTS_EXCEEDED

        max_seconds = reaction.escalate_after_seconds
        if max_seconds is not None and attempt.first_attempt_at is not None:
            if self._clock() - attempt.first_attempt_at > max_seconds:
                return EscalationTrigger.TIMEOUT_EXCEEDED

        if reaction.retries is not None and attempt.attempts > reaction.retries:
            return EscalationTrigger.RETRIES_EXHAUSTED
        return None

    def clear_session(self, session_id: str) -> None:
        """Drop every counter for a session."""
        with self._lock:
            for key in [k for k in self._attempts if k[0] == session_id]:
                del self._attempts[key]

    def tracked_sessions(self) -> set[str]:
        with self._lock:
            return {session_id for session_id, _ in self._attempts}


# =============================================================================
# Dispatch
# =============================================================================

PluginCall = Callable[..., Any]


def _direct_call(plugin: str, operation: str, fn: Callable[..., Any], *args: Any,
                 session_id: Optional[str] = None) -> Any:
    return fn(*args)


class ReactionEngine:
    """
    Executes the reaction policy for status transitions.

    Plugin calls go through `call` so the Lifecycle Manager can bound them
    with its timeout pool.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: PluginRegistry,
        session_manager: SessionManager,
        tracker: Optional[ReactionTracker] = None,
        event_bus: Optional[EventBus] = None,
        logger: Optional[OrchestratorLogger] = None,
        call: PluginCall = _direct_call,
    ) -> None:
        self.config = config
        self.registry = registry
        self.session_manager = session_manager
        self.tracker = tracker or ReactionTracker()
        self._bus = event_bus
        self._logger = logger
        self._call = call

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)
        elif level in ("warn", "error"):
            _fallback_logger.warning("%s %s", event_type, data or {})

    def _emit(self, event: OrchestratorEvent) -> None:
        if self._bus:
            self._bus.emit(event)

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def notify(self, event: OrchestratorEvent, priority: str) -> int:
        """
        Send event to every channel routed for priority.

        A failing channel is logged and does not stop the others.

        Returns:
            Number of channels that accepted the notification.
        """
        delivered = 0
        for name in self.config.notifiers_for(priority):
            notifier = self.registry.notifiers.get(name)
            if notifier is None:
                self._log("notifier_missing", {"notifier": name}, level="warn")
                continue
            try:
                self._call(name, "notify", notifier.notify, event, priority,
                           session_id=event.session_id or None)
                delivered += 1
            except Exception as e:
                self._log("notify_failed", {
                    "notifier": name,
                    "session_id": event.session_id,
                    "error": str(e),
                }, level="warn")
        return delivered

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def dispatch(self, session: Session, event: OrchestratorEvent) -> ReactionOutcome:
        """
        Run the reaction for a session that just entered session.status.

        Callers invoke this once per persisted transition; re-observing the
        same status never reaches here.
        """
        status = session.status
        key = event_key_for(status)
        if key is None:
            return ReactionOutcome.SKIPPED

        reaction = self.config.reaction_for(session.project_id, key)
        if reaction is None:
            if event.priority != "info":
                self.notify(event, event.priority)
                return ReactionOutcome.NOTIFIED
            return ReactionOutcome.SKIPPED
        if not reaction.auto:
            return ReactionOutcome.SKIPPED

        previous = self.tracker.get(session.id, key)
        if previous is not None and previous.escalated:
            self._log("reaction_suppressed", {"session_id": session.id, "key": key}, level="debug")
            return ReactionOutcome.SUPPRESSED

        attempt = self.tracker.record_attempt(session.id, key)
        trigger = self.tracker.should_escalate(attempt, reaction)
        if trigger is not None:
            return self._escalate(session, key, attempt, trigger)

        self._emit(OrchestratorEvent(
            event_type=EventType.REACTION_TRIGGERED,
            session_id=session.id,
            project_id=session.project_id,
            priority=reaction.priority,
            message=f"{key}: {reaction.action} (attempt {attempt.attempts})",
            data={"key": key, "action": reaction.action, "attempt": attempt.attempts},
        ))

        if reaction.action == "send-to-agent":
            return self._send_to_agent(session, key, reaction)
        if reaction.action == "auto-merge":
            return self._auto_merge(session, key, event, reaction)
        self.notify(event, reaction.priority)
        return ReactionOutcome.NOTIFIED

    def _send_to_agent(self, session: Session, key: str, reaction: ReactionConfig) -> ReactionOutcome:
        message = render_message(reaction.message, session) if reaction.message else ""
        if not message:
            self._log("reaction_no_message", {"session_id": session.id, "key": key}, level="warn")
            return ReactionOutcome.SKIPPED
        try:
            confirmed = self.session_manager.send(session.id, message)
        except DeliveryAmbiguous as e:
            self._log("reaction_delivery_ambiguous", {
                "session_id": session.id,
                "key": key,
                "error": str(e),
            }, level="warn")
            return ReactionOutcome.SENT
        except OrchestratorError as e:
            self._log("reaction_send_failed", {
                "session_id": session.id,
                "key": key,
                "error": str(e),
            }, level="error")
            return ReactionOutcome.FAILED

        self._log("reaction_sent", {
            "session_id": session.id,
            "key": key,
            "confirmed": confirmed,
        })
        return ReactionOutcome.SENT

    def _auto_merge(
        self,
        session: Session,
        key: str,
        event: OrchestratorEvent,
        reaction: ReactionConfig,
    ) -> ReactionOutcome:
        pr = session.pr
        if session.status != SessionStatus.MERGEABLE or pr is None:
            self._log("auto_merge_skipped", {
                "session_id": session.id,
                "status": session.status.value,
            }, level="debug")
            return ReactionOutcome.SKIPPED

        project = self.config.get_project(session.project_id)
        scm = self.registry.for_project(project).scm
        try:
            self._call(scm.name, "merge", scm.merge, pr, session_id=session.id)
        except Exception as e:
            self._log("auto_merge_failed", {
                "session_id": session.id,
                "pr": pr.url,
                "error": str(e),
            }, level="error")
            self.notify(event, "action")
            return ReactionOutcome.FAILED

        self._log("auto_merged", {"session_id": session.id, "pr": pr.url, "key": key})
        return ReactionOutcome.MERGED

    def _escalate(
        self,
        session: Session,
        key: str,
        attempt: ReactionAttempt,
        trigger: EscalationTrigger,
    ) -> ReactionOutcome:
        if not self.tracker.mark_escalated(session.id, key):
            return ReactionOutcome.SUPPRESSED

        event = OrchestratorEvent(
            event_type=EventType.REACTION_ESCALATED,
            session_id=session.id,
            project_id=session.project_id,
            priority="urgent",
            message=(
                f"{session.id}: '{key}' needs a human after {attempt.attempts - 1} "
                f"automatic attempt(s) ({trigger.value})"
            ),
            data={"key": key, "attempts": attempt.attempts, "trigger": trigger.value},
        )
        self._emit(event)
        self._log("reaction_escalated", {
            "session_id": session.id,
            "key": key,
            "attempts": attempt.attempts,
            "trigger": trigger.value,
        }, level="warn")
        self.notify(event, "urgent")
        return ReactionOutcome.ESCALATED

    # -------------------------------------------------------------------------
    # Fleet
    # -------------------------------------------------------------------------

    def all_complete(self, session_count: int) -> ReactionOutcome:
        """Fire the all-complete reaction (callers guarantee once per quiet period)."""
        reaction = self.config.reactions.get(ALL_COMPLETE_KEY)
        event = OrchestratorEvent(
            event_type=EventType.SUMMARY_ALL_COMPLETE,
            priority=reaction.priority if reaction else "info",
            message=f"All {session_count} session(s) are complete",
            data={"sessions": session_count},
        )
        self._emit(event)
        if reaction is None or not reaction.auto or reaction.action != "notify":
            return ReactionOutcome.SKIPPED
        self.notify(event, reaction.priority)
        return ReactionOutcome.NOTIFIED

    def forget(self, session_id: str) -> None:
        """Drop attempt history for a session that reached a terminal status."""
        self.tracker.clear_session(session_id)
