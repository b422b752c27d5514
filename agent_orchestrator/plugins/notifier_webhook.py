"""Webhook notifier: POSTs each notification as JSON."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import requests

from agent_orchestrator.plugins.base import Notifier

if TYPE_CHECKING:
    from agent_orchestrator.events.types import OrchestratorEvent


class WebhookNotifier(Notifier):
    """
    Sends notifications to an HTTP endpoint.

    Payload:
        {"priority": "...", "event": {<OrchestratorEvent.to_dict()>}}

    Raises requests.RequestException on transport errors or non-2xx replies;
    the caller decides whether that matters.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        timeout_seconds: float = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def notify(self, event: OrchestratorEvent, priority: str) -> None:
        response = self._session.post(
            self.url,
            json={"priority": priority, "event": event.to_dict()},
            headers=self.headers,
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
