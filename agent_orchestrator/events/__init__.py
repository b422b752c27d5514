"""
Event infrastructure for the orchestrator.

Every status transition and reaction outcome is emitted as an
OrchestratorEvent so that logs, notifiers and any external feed observe the
same stream.
"""

from agent_orchestrator.events.types import EventType, OrchestratorEvent
from agent_orchestrator.events.bus import EventBus
from agent_orchestrator.events.persistence import EventPersistence

__all__ = [
    "EventType",
    "OrchestratorEvent",
    "EventBus",
    "EventPersistence",
]
