"""Failure notifier -- posts task_failed events to a chat webhook.

Subscribes to the event bus on construction. Does nothing unless
``notify_webhook_url`` is configured. Delivery problems are logged and
never reach the scheduler.
"""

from __future__ import annotations

import logging

import httpx

from foreman.config import Settings
from foreman.events import Event, EventBus

logger = logging.getLogger(__name__)


class FailureNotifier:
    def __init__(
        self,
        bus: EventBus,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._http = http_client
        bus.on("task_failed", self.on_task_failed)

    async def on_task_failed(self, event: Event) -> None:
        url = self._settings.notify_webhook_url
        if not url:
            return

        task = (event.task_id or "?")[:8]
        text = (
            f"Task {task} failed "
            f"({event.data.get('task_type', 'unknown')}, {event.data.get('dedupe_key', '-')})\n\n"
            f"Error: {str(event.data.get('error', ''))[:300]}"
        )
        try:
            client = self._http or httpx.AsyncClient()
            try:
                response = await client.post(
                    url,
                    json={"text": text},
                    timeout=self._settings.notify_timeout,
                )
                response.raise_for_status()
            finally:
                if self._http is None:
                    await client.aclose()
        except httpx.HTTPError:
            logger.warning("Failure notification for task %s not delivered", task, exc_info=True)
