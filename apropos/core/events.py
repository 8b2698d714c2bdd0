"""In-process alert and lifecycle event fan-out.

The bridge publishes events here; notification storage and UI live outside the core
and subscribe to the hub.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Literal, Optional

from apropos.constants import EVENT_HISTORY_LIMIT

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    AGENT_QUESTION = "session.agent_question"
    AGENT_IDLE = "session.agent_idle"
    SESSION_STARTED = "session.started"
    SESSION_STOPPED = "session.stopped"
    SESSION_LAUNCH_FAILED = "session.launch_failed"


Severity = Literal["info", "warning", "error"]


@dataclass(frozen=True)
class SessionEvent:
    type: EventType
    payload: dict[str, object]
    severity: Severity = "info"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity,
            "payload": self.payload,
            "createdAt": self.created_at.isoformat(),
        }


EventHandler = Callable[[SessionEvent], Awaitable[object]]


class EventHub:
    """Async fan-out of session events to subscribers.

    Keeps a bounded list of recent events so late subscribers (and tests) can inspect
    what was published.
    """

    def __init__(self, history_limit: int = EVENT_HISTORY_LIMIT) -> None:
        self._handlers: list[EventHandler] = []
        self._recent: deque[SessionEvent] = deque(maxlen=history_limit)

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)
        logger.debug("Subscribed event handler (total: %d)", len(self._handlers))

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def clear(self) -> None:
        """Clear all handlers and history (primarily for tests)."""
        self._handlers.clear()
        self._recent.clear()

    def recent(self, event_type: Optional[EventType] = None) -> list[SessionEvent]:
        if event_type is None:
            return list(self._recent)
        return [event for event in self._recent if event.type == event_type]

    async def publish(
        self,
        event_type: EventType,
        payload: dict[str, object],
        severity: Severity = "info",
    ) -> SessionEvent:
        """Record an event and deliver it to every subscriber.

        Handler failures are logged and never propagate to the publisher.
        """
        event = SessionEvent(type=event_type, payload=payload, severity=severity)
        self._recent.append(event)
        logger.info("Event %s: %s", event_type.value, payload.get("sessionId") or payload.get("projectId"))

        if not self._handlers:
            return event

        results = await asyncio.gather(*(handler(event) for handler in self._handlers), return_exceptions=True)
        for index, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error("Event handler %d failed for %s: %s", index, event_type.value, result, exc_info=result)
        return event
