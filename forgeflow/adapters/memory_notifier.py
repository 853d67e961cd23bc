"""In-process notification center — implements NotificationPort.

Keeps pending requests in a dict keyed by identifier and hands them out
once they fall due. Used for local runs without a delivery channel and
as the reference behaviour in tests.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from forgeflow.core.clock import SystemClock
from forgeflow.ports.notification_port import CalendarTrigger, NotificationRequest

if TYPE_CHECKING:
    from forgeflow.core.clock import Clock
    from forgeflow.ports.notification_port import SchedulingError

logger = logging.getLogger(__name__)


class InMemoryNotificationCenter:
    """Dict-backed implementation of NotificationPort."""

    def __init__(
        self,
        clock: Clock | None = None,
        fail_with: SchedulingError | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._pending: dict[str, tuple[NotificationRequest, datetime]] = {}
        # Set to make every add() raise, e.g. SchedulingDenied("not allowed")
        self.fail_with = fail_with

    async def add(self, request: NotificationRequest) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self._pending[request.identifier] = (request, self._clock.now())

    def remove_pending(self, identifiers: list[str]) -> None:
        for identifier in identifiers:
            self._pending.pop(identifier, None)

    def remove_all(self) -> None:
        self._pending.clear()

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def get(self, identifier: str) -> NotificationRequest | None:
        entry = self._pending.get(identifier)
        return entry[0] if entry else None

    def fire_date(self, identifier: str) -> datetime | None:
        entry = self._pending.get(identifier)
        if entry is None:
            return None
        request, registered_at = entry
        if isinstance(request.trigger, CalendarTrigger):
            return request.trigger.fire_date()
        return registered_at + timedelta(seconds=request.trigger.seconds)

    def deliver_due(self) -> list[NotificationRequest]:
        """Pop and return every request whose trigger has fired, oldest first."""
        now = self._clock.now()
        due = sorted(
            (fire, identifier)
            for identifier in self._pending
            if (fire := self.fire_date(identifier)) is not None and fire <= now
        )
        delivered = [self._pending.pop(identifier)[0] for _, identifier in due]
        for request in delivered:
            logger.info("Delivered %s: %s", request.identifier, request.content.title)
        return delivered
