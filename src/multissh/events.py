"""Session event bus."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Events published by the session manager.

    Payloads (positional, after the kind):

    - SESSION_CREATED: snapshot
    - SESSION_CONNECTED / SESSION_DISCONNECTED / SESSION_CLOSED: session_id
    - SESSION_ERROR: session_id, message
    - ACTIVE_SESSION_CHANGED: session_id or None
    - SESSION_DATA: session_id, bytes
    - SESSION_RECONNECTING: session_id, attempt, delay_ms
    - FILE_TRANSFER_PROGRESS: task_id, progress, transferred
    """

    SESSION_CREATED = "session-created"
    SESSION_CONNECTED = "session-connected"
    SESSION_DISCONNECTED = "session-disconnected"
    SESSION_ERROR = "session-error"
    SESSION_CLOSED = "session-closed"
    ACTIVE_SESSION_CHANGED = "active-session-changed"
    SESSION_DATA = "session-data"
    SESSION_RECONNECTING = "session-reconnecting"
    FILE_TRANSFER_PROGRESS = "file-transfer-progress"


Handler = Callable[..., Any]


class EventBus:
    """Fire-and-forget publish/subscribe keyed by event kind.

    Handlers run synchronously in subscription order. Coroutine handlers are
    scheduled on the running loop. A failing handler is logged and skipped.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, kind: EventKind | str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        kind = EventKind(kind)
        self._handlers[kind].append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(kind, handler)

        return unsubscribe

    def unsubscribe(self, kind: EventKind | str, handler: Handler) -> None:
        handlers = self._handlers.get(EventKind(kind), [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, kind: EventKind, *args: Any) -> None:
        """Deliver an event to every current subscriber of its kind."""
        for handler in list(self._handlers.get(kind, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_handler_done)
            except Exception:
                logger.exception("Event handler for %s failed", kind.value)

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event handler failed: %s", task.exception())
