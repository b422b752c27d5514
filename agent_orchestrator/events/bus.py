"""
Event bus for the orchestrator event system.

Lightweight synchronous bus routing events to subscribers. The lifecycle
manager emits from worker threads, so handlers must be thread-safe.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from agent_orchestrator.events.persistence import EventPersistence
from agent_orchestrator.events.types import EventType, OrchestratorEvent

EventHandler = Callable[[OrchestratorEvent], None]

logger = logging.getLogger(__name__)


class EventBus:
    """Lightweight event bus for routing orchestrator events."""

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        persist: bool = True,
    ) -> None:
        """
        Args:
            data_dir: Orchestrator data directory for persistence.
            persist: Whether to persist events to disk.
        """
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._global_handlers: list[EventHandler] = []
        self._lock = threading.Lock()
        if persist and data_dir:
            self._persistence: Optional[EventPersistence] = EventPersistence(data_dir)
        else:
            self._persistence = None

    @property
    def persistence(self) -> Optional[EventPersistence]:
        return self._persistence

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to a specific event type."""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to all events (for logging, dashboards)."""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Unsubscribe from event type."""
        with self._lock:
            if event_type in self._handlers:
                self._handlers[event_type] = [
                    h for h in self._handlers[event_type] if h != handler
                ]

    def emit(self, event: OrchestratorEvent) -> None:
        """Persist an event, then hand it to every subscriber."""
        if self._persistence:
            try:
                self._persistence.append(event)
            except OSError as e:
                logger.warning("Failed to persist event %s: %s", event.event_id, e)

        with self._lock:
            handlers = list(self._global_handlers) + list(self._handlers.get(event.event_type, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # A failing subscriber must not break the emitter.
                logger.exception("Event handler failed for %s", event.event_type.value)
