"""Task dispatcher -- routes a parsed payload variant to its handler.

Handlers are async callables taking the payload and returning nothing;
raising signals failure. Hosts register one handler per task type, e.g.
``dispatcher.register("chat_reply", reply_to_chat)``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from foreman.queue.payloads import NoopPayload, Payload, UnknownPayload

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Any], Awaitable[None]]


class UnknownTaskType(LookupError):
    """No handler is registered for a payload's task type."""


class TaskDispatcher:
    """Maps task types to handlers.

    ``NoopPayload`` (the stand-in for malformed rows) completes without a
    handler. ``UnknownPayload`` goes to a handler registered under its raw
    task type if there is one, else to the fallback.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}
        self._fallback: TaskHandler | None = None

    def register(self, task_type: str, handler: TaskHandler) -> None:
        if task_type in self._handlers:
            logger.warning("Replacing handler for task type %s", task_type)
        self._handlers[task_type] = handler

    def set_fallback(self, handler: TaskHandler | None) -> None:
        """Handler for unknown/legacy payloads with no registered type."""
        self._fallback = handler

    def registered(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, payload: Payload) -> None:
        if isinstance(payload, NoopPayload):
            logger.info("No-op task %s (%s)", payload.run_id, payload.reason)
            return

        handler = self._handlers.get(payload.task_type or "")
        if handler is None and isinstance(payload, UnknownPayload):
            handler = self._fallback
        if handler is None:
            raise UnknownTaskType(f"No handler registered for task type {payload.task_type!r}")
        await handler(payload)
