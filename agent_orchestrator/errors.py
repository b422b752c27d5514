"""
Error taxonomy for the session lifecycle engine.

Expected conditions (an ID already taken, a session that does not exist) have
their own classes so callers can branch on them; everything a capability
plugin throws is wrapped in PluginError with the session and plugin context.
"""

from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""
    pass


class ReservationConflict(OrchestratorError):
    """
    Raised when a session ID is already reserved.

    Recoverable: the caller should pick a fresh ID and retry.
    """

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session ID '{session_id}' is already reserved")
        self.session_id = session_id


class NotFoundError(OrchestratorError):
    """Raised for operations on an unknown session or a dead runtime."""

    def __init__(self, session_id: str, reason: str = "") -> None:
        message = f"Session '{session_id}' not found"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.session_id = session_id
        self.reason = reason


class PluginError(OrchestratorError):
    """
    Wrapped failure from a capability plugin.

    The message always names the plugin, the operation and (when known) the
    session, followed by the underlying error text.
    """

    def __init__(
        self,
        plugin: str,
        operation: str,
        session_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
        message: Optional[str] = None,
    ) -> None:
        detail = message or (str(cause) if cause is not None else "failed")
        where = f" for session '{session_id}'" if session_id else ""
        super().__init__(f"{plugin}.{operation}{where}: {detail}")
        self.plugin = plugin
        self.operation = operation
        self.session_id = session_id
        self.cause = cause

    @property
    def timed_out(self) -> bool:
        return isinstance(self.cause, TimeoutError)


class DeliveryAmbiguous(OrchestratorError):
    """
    Raised when a message was sent while the target still looked busy.

    Non-fatal: the message was injected, but the busy-wait ran out first so
    receipt cannot be assumed.
    """

    def __init__(self, session_id: str, waited_seconds: float) -> None:
        super().__init__(
            f"Session '{session_id}' was still busy after {waited_seconds:g}s; "
            "message sent but may be lost"
        )
        self.session_id = session_id
        self.waited_seconds = waited_seconds


class DeliveryCancelled(OrchestratorError):
    """Raised when a send is cancelled during the busy-wait. Nothing was sent."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Delivery to session '{session_id}' was cancelled")
        self.session_id = session_id


class StaleRecord(OrchestratorError):
    """Raised when a persisted record is corrupt or partially written."""

    def __init__(self, session_id: str, path: str, reason: str = "") -> None:
        super().__init__(f"Stale record for '{session_id}' at {path}: {reason}")
        self.session_id = session_id
        self.path = path
        self.reason = reason


class SessionConflictError(OrchestratorError):
    """
    Raised when an operation would overwrite a live session.

    Covers re-prompting a running orchestrator and spawning a second worker
    for an issue that already has a live one.
    """

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(message)
        self.session_id = session_id
