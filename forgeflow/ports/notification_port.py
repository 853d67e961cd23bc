"""Notification port — abstract interface to the notification delivery subsystem.

Core modules depend on this protocol, never on a specific delivery provider.
The delivery subsystem is a mapping of identifier -> pending request; adding
a request under an existing identifier replaces it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Protocol


class InterruptionLevel(str, Enum):
    """How assertively a notification is presented."""

    PASSIVE = "passive"
    ACTIVE = "active"
    TIME_SENSITIVE = "time_sensitive"
    CRITICAL = "critical"


class SchedulingError(Exception):
    """Raised when the delivery subsystem refuses or fails a registration."""


class SchedulingDenied(SchedulingError):
    """The user has not granted permission to deliver notifications."""


class SchedulingFailed(SchedulingError):
    """Transient delivery-subsystem failure; the caller may retry manually."""


@dataclass(frozen=True)
class CalendarTrigger:
    """Fire once at a wall-clock minute in ``tz``."""

    year: int
    month: int
    day: int
    hour: int
    minute: int
    tz: tzinfo = timezone.utc
    repeats: bool = False

    @classmethod
    def from_datetime(cls, instant: datetime, tz: tzinfo = timezone.utc) -> CalendarTrigger:
        """Trigger for the first whole minute at or after ``instant``.

        Rounds up, so a future instant never yields a past fire date.
        """
        local = instant.astimezone(tz)
        if local.second or local.microsecond:
            local = local.replace(second=0, microsecond=0) + timedelta(minutes=1)
        return cls(
            year=local.year,
            month=local.month,
            day=local.day,
            hour=local.hour,
            minute=local.minute,
            tz=tz,
        )

    def fire_date(self) -> datetime:
        return datetime(self.year, self.month, self.day, self.hour, self.minute, tzinfo=self.tz)


@dataclass(frozen=True)
class IntervalTrigger:
    """Fire once after ``seconds`` from registration."""

    seconds: float
    repeats: bool = False


Trigger = CalendarTrigger | IntervalTrigger


@dataclass(frozen=True)
class NotificationContent:
    title: str
    body: str
    subtitle: str = ""
    interruption_level: InterruptionLevel = InterruptionLevel.ACTIVE
    badge: int | None = 1


@dataclass(frozen=True)
class NotificationRequest:
    identifier: str
    content: NotificationContent
    trigger: Trigger


class NotificationPort(Protocol):
    """Abstract delivery interface used by the notification scheduler."""

    async def add(self, request: NotificationRequest) -> None:
        """Register (or replace) a pending request. Raises SchedulingError."""

    def remove_pending(self, identifiers: list[str]) -> None:
        """Drop pending requests; unknown identifiers are ignored."""

    def remove_all(self) -> None:
        """Drop every pending request owned by this application."""

    def pending_ids(self) -> list[str]: ...
