"""
Structured JSONL logging for the agent orchestrator.

This module provides:
- JSONL event logging for debugging and audit trails
- Log files organized by component and date
- Log levels (debug, info, warn, error)
- Context manager for session-scoped logging
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Optional

if TYPE_CHECKING:
    from agent_orchestrator.config import OrchestratorConfig


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class OrchestratorLogger:
    """
    JSONL event logger.

    Writes structured log entries to <data_dir>/logs/<component>-YYYY-MM-DD.jsonl

    Each log entry is a JSON object with:
    - timestamp: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - component: Component that wrote the entry
    - data: Additional event data (dict)

    The lifecycle loop logs from worker threads, so writes are serialized.
    """

    def __init__(self, component: str, logs_path: Path | str) -> None:
        self.component = component
        self.logs_path = Path(logs_path)
        self._local = threading.local()
        self._write_lock = threading.Lock()

    @classmethod
    def for_config(cls, component: str, config: OrchestratorConfig) -> OrchestratorLogger:
        return cls(component, config.logs_path)

    @property
    def _current_session_id(self) -> Optional[str]:
        return getattr(self._local, "session_id", None)

    def _get_log_path(self, date: Optional[str] = None) -> Path:
        """Get the log file path for a date (today by default)."""
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.logs_path / f"{self.component}-{date}.jsonl"

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Append a log entry to today's JSONL file."""
        log_path = self._get_log_path()
        line = json.dumps(entry, default=str) + "\n"
        with self._write_lock:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a") as f:
                f.write(line)

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "session_spawned", "tick_complete").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "component": self.component,
            "data": data or {},
        }

        session_id = self._current_session_id
        if session_id:
            entry["session_id"] = session_id

        self._write_entry(entry)

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a debug event."""
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an info event."""
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a warning event."""
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an error event."""
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def session_context(self, session_id: str) -> Iterator[OrchestratorLogger]:
        """
        Context manager for session-scoped logging.

        All logs written by the current thread within this context include the
        session_id.

        Example:
            with logger.session_context("app-3") as log:
                log.info("status_changed", {"to": "ci_failed"})
        """
        previous = self._current_session_id
        self._local.session_id = session_id
        try:
            yield self
        finally:
            self._local.session_id = previous

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Args:
            date: Date string (YYYY-MM-DD) to read. If None, reads today's logs.
            level: Filter by log level.
            event_type: Filter by event type.
            session_id: Filter by session ID.
            limit: Maximum number of entries to return.
        """
        log_path = self._get_log_path(date)
        if not log_path.exists():
            return []

        entries = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                if session_id and entry.get("session_id") != session_id:
                    continue

                entries.append(entry)

                if limit and len(entries) >= limit:
                    break

        return entries
