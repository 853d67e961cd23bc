"""In-process event hub for presentation adapters.

The core never pushes UI state; it publishes discrete events (level-ups,
unlocked rewards, scheduling denials) that subscribers render as they like.
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from forgeflow.core.clock import SystemClock

if TYPE_CHECKING:
    from forgeflow.core.clock import Clock

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TIMER_REJECTED = "timer_rejected"
    MISSION_COMPLETED = "mission_completed"
    LEVELED_UP = "leveled_up"
    REWARDS_UNLOCKED = "rewards_unlocked"
    SCHEDULING_DENIED = "scheduling_denied"
    SCHEDULING_FAILED = "scheduling_failed"


@dataclass(frozen=True)
class CoreEvent:
    event_id: int
    event_type: EventType
    message: str
    timestamp: datetime
    related_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[CoreEvent], "Awaitable[None] | None"]


class EventHub:
    """Pub/sub hub with bounded history. Listeners may be sync or async."""

    def __init__(self, clock: Clock | None = None, *, history_limit: int = 256) -> None:
        self._clock = clock or SystemClock()
        self._events: deque[CoreEvent] = deque(maxlen=history_limit)
        self._listeners: dict[int, Listener] = {}
        self._next_event_id = 1
        self._next_listener_id = 1

    def subscribe(self, listener: Listener) -> int:
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = listener
        return listener_id

    def unsubscribe(self, listener_id: int) -> None:
        self._listeners.pop(listener_id, None)

    async def publish(
        self,
        event_type: EventType,
        message: str,
        *,
        related_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> CoreEvent:
        event = CoreEvent(
            event_id=self._next_event_id,
            event_type=event_type,
            message=message,
            timestamp=self._clock.now(),
            related_id=related_id,
            payload=payload or {},
        )
        self._next_event_id += 1
        self._events.append(event)

        for listener in list(self._listeners.values()):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("Event listener failed on %s: %s", event.event_type.value, exc)

        return event

    def list_recent(self, *, limit: int = 50) -> list[CoreEvent]:
        if limit <= 0:
            return []
        return list(self._events)[-limit:]
