"""
Event persistence for the orchestrator event system.

Persists events to daily JSONL files for debugging and replay, with queries
by session, project, time range and event type.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from agent_orchestrator.events.types import EventType, OrchestratorEvent
from agent_orchestrator.models import parse_iso


class EventPersistence:
    """Persist events to JSONL files."""

    def __init__(self, data_dir: Path) -> None:
        """
        Args:
            data_dir: Orchestrator data directory (events/ is created inside).
        """
        self._events_dir = Path(data_dir) / "events"
        self._events_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _get_log_path(self) -> Path:
        """Get today's event log path."""
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._events_dir / f"events-{date_str}.jsonl"

    def append(self, event: OrchestratorEvent) -> None:
        """Append event to today's log."""
        line = json.dumps(event.to_dict(), default=str) + "\n"
        with self._lock:
            with self._get_log_path().open("a") as f:
                f.write(line)

    def query(
        self,
        session_id: Optional[str] = None,
        project_id: Optional[str] = None,
        event_types: Optional[list[EventType]] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[OrchestratorEvent]:
        """
        Query events with filters, newest log file first.

        Args:
            session_id: Filter by session ID.
            project_id: Filter by project ID.
            event_types: Filter by event types.
            since: Only return events at or after this (aware) time.
            limit: Maximum number of events to return.
        """
        events: list[OrchestratorEvent] = []

        log_files = sorted(self._events_dir.glob("events-*.jsonl"), reverse=True)

        for log_file in log_files:
            with log_file.open() as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        event = OrchestratorEvent.from_dict(json.loads(line))
                    except (json.JSONDecodeError, KeyError, ValueError, TypeError):
                        continue

                    if session_id and event.session_id != session_id:
                        continue
                    if project_id and event.project_id != project_id:
                        continue
                    if event_types and event.event_type not in event_types:
                        continue
                    if since:
                        ts = parse_iso(event.timestamp)
                        if ts is None or ts < since:
                            continue

                    events.append(event)

                    if len(events) >= limit:
                        return events

        return events

    def get_by_session(self, session_id: str, limit: int = 50) -> list[OrchestratorEvent]:
        """Get events for a specific session."""
        return self.query(session_id=session_id, limit=limit)
