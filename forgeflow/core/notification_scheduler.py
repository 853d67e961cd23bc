"""
ForgeFlow — Notification Scheduler.

Owns the identity and lifetime of every notification the app schedules:
todo reminders (one per todo, addressed by its stable notification id)
and one-shot mission-complete alerts.

This module is provider-agnostic: it depends on the NotificationPort and
AuthorizationPort protocols, not on a specific delivery channel.
Failures at the delivery boundary come back as a ScheduleResult and are
never retried here.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timezone, tzinfo
from enum import Enum
from typing import TYPE_CHECKING

from forgeflow.data.models import TodoPriority
from forgeflow.ports.notification_port import (
    CalendarTrigger,
    IntervalTrigger,
    InterruptionLevel,
    NotificationContent,
    NotificationRequest,
    SchedulingDenied,
    SchedulingError,
)

if TYPE_CHECKING:
    from forgeflow.core.clock import Clock
    from forgeflow.data.models import TodoItem
    from forgeflow.ports.authorization_port import AuthorizationPort
    from forgeflow.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

MISSION_ID_PREFIX = "mission_"

# priority -> (title, interruption level)
_REMINDER_PRESENTATION: dict[TodoPriority, tuple[str, InterruptionLevel]] = {
    TodoPriority.CRITICAL: ("🚨 CRITICAL Deadline", InterruptionLevel.CRITICAL),
    TodoPriority.HIGH: ("⚠️ High Priority Reminder", InterruptionLevel.TIME_SENSITIVE),
    TodoPriority.MEDIUM: ("⚡ ForgeFlow Reminder", InterruptionLevel.ACTIVE),
    TodoPriority.LOW: ("📌 Task Reminder", InterruptionLevel.PASSIVE),
}


class ScheduleStatus(Enum):
    SCHEDULED = "scheduled"
    SKIPPED = "skipped"      # completed or past-due: nothing to remind about
    DENIED = "denied"        # user has not granted notification permission
    FAILED = "failed"        # delivery subsystem error


@dataclass(frozen=True)
class ScheduleResult:
    status: ScheduleStatus
    notification_id: str
    error_message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (ScheduleStatus.SCHEDULED, ScheduleStatus.SKIPPED)


def build_reminder_content(todo: TodoItem) -> NotificationContent:
    """Title and urgency tier follow the todo's priority."""
    title, level = _REMINDER_PRESENTATION[todo.priority]
    return NotificationContent(
        title=title,
        body=todo.title,
        subtitle=todo.notes.strip(),
        interruption_level=level,
    )


def build_session_complete_content(mission_title: str, xp_awarded: int) -> NotificationContent:
    body = f"{mission_title} deployed."
    if xp_awarded > 0:
        body += f" +{xp_awarded} XP awarded."
    return NotificationContent(
        title="🏁 Mission Complete",
        body=body,
        interruption_level=InterruptionLevel.TIME_SENSITIVE,
    )


class NotificationScheduler:
    """Schedules, replaces and cancels notifications keyed by stable ids."""

    def __init__(
        self,
        center: NotificationPort,
        authorization: AuthorizationPort,
        clock: Clock,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._center = center
        self._authorization = authorization
        self._clock = clock
        self._tz = tz

    async def schedule_reminder(self, todo: TodoItem) -> ScheduleResult:
        """(Re)schedule the single reminder for ``todo``.

        Always clears the previous one first, so a todo never has two
        live reminders. Completed or past-due todos end up with none.
        """
        notification_id = todo.notification_id
        self.cancel(notification_id)

        if todo.is_completed:
            logger.debug("Todo %s completed, reminder cleared", todo.id)
            return ScheduleResult(ScheduleStatus.SKIPPED, notification_id)

        fire_date = todo.reminder_date
        if fire_date <= self._clock.now():
            logger.debug("Todo %s reminder date %s already passed", todo.id, fire_date.isoformat())
            return ScheduleResult(ScheduleStatus.SKIPPED, notification_id)

        request = NotificationRequest(
            identifier=notification_id,
            content=build_reminder_content(todo),
            trigger=CalendarTrigger.from_datetime(fire_date, self._tz),
        )
        result = await self._register(request)
        if result.status is ScheduleStatus.SCHEDULED:
            logger.info("Reminder scheduled for todo %s at %s", todo.id, fire_date.isoformat())
        return result

    async def schedule_session_complete(
        self,
        delay_seconds: float,
        mission_title: str,
        xp_awarded: int = 0,
    ) -> ScheduleResult:
        """One-shot mission-complete alert under a fresh identifier.

        A non-positive delay means deliver immediately.
        """
        notification_id = f"{MISSION_ID_PREFIX}{uuid.uuid4().hex}"
        request = NotificationRequest(
            identifier=notification_id,
            content=build_session_complete_content(mission_title, xp_awarded),
            trigger=IntervalTrigger(seconds=max(0.0, float(delay_seconds))),
        )
        result = await self._register(request)
        if result.status is ScheduleStatus.SCHEDULED:
            logger.info("Mission alert %s scheduled in %.0fs", notification_id, max(0.0, delay_seconds))
        return result

    def cancel(self, notification_id: str) -> None:
        """Remove a pending notification; unknown ids are a no-op."""
        self._center.remove_pending([notification_id])

    def cancel_all(self) -> None:
        self._center.remove_all()
        logger.info("All pending notifications cancelled")

    async def request_permission(self) -> bool:
        granted = await self._authorization.request()
        logger.info("Notifications %s", "enabled" if granted else "denied")
        return granted

    async def _register(self, request: NotificationRequest) -> ScheduleResult:
        if not await self._authorization.is_granted():
            logger.info("Notification %s not scheduled: permission not granted", request.identifier)
            return ScheduleResult(ScheduleStatus.DENIED, request.identifier, "permission not granted")

        try:
            await self._center.add(request)
        except SchedulingDenied as exc:
            logger.warning("Notification %s denied: %s", request.identifier, exc)
            return ScheduleResult(ScheduleStatus.DENIED, request.identifier, str(exc))
        except SchedulingError as exc:
            logger.error("Failed to schedule notification %s: %s", request.identifier, exc)
            return ScheduleResult(ScheduleStatus.FAILED, request.identifier, str(exc))

        return ScheduleResult(ScheduleStatus.SCHEDULED, request.identifier)
