"""
ForgeFlow — Data Models.

Quests carry the focus timer, todos carry reminders, and the player
profile aggregates progression. All instants are timezone-aware UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class TodoPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def xp_reward(self) -> int:
        return _PRIORITY_XP[self]

    @property
    def sort_order(self) -> int:
        return _PRIORITY_ORDER[self]


_PRIORITY_XP = {
    TodoPriority.LOW: 5,
    TodoPriority.MEDIUM: 10,
    TodoPriority.HIGH: 20,
    TodoPriority.CRITICAL: 40,
}

_PRIORITY_ORDER = {
    TodoPriority.CRITICAL: 0,
    TodoPriority.HIGH: 1,
    TodoPriority.MEDIUM: 2,
    TodoPriority.LOW: 3,
}


class ReminderOffset(str, Enum):
    """How long before the due date a todo reminder fires."""

    AT_TIME = "at_time"
    FIVE_MIN = "5m"
    FIFTEEN_MIN = "15m"
    THIRTY_MIN = "30m"
    ONE_HOUR = "1h"
    ONE_DAY = "1d"

    @property
    def seconds(self) -> int:
        return _OFFSET_SECONDS[self]


_OFFSET_SECONDS = {
    ReminderOffset.AT_TIME: 0,
    ReminderOffset.FIVE_MIN: 5 * 60,
    ReminderOffset.FIFTEEN_MIN: 15 * 60,
    ReminderOffset.THIRTY_MIN: 30 * 60,
    ReminderOffset.ONE_HOUR: 60 * 60,
    ReminderOffset.ONE_DAY: 24 * 60 * 60,
}


class QuestDifficulty(str, Enum):
    """Sub-quest difficulty; sets the XP paid when it is ticked off."""

    ROUTINE = "routine"
    COMPLEX = "complex"
    LEGACY = "legacy"

    @property
    def xp_reward(self) -> int:
        return _DIFFICULTY_XP[self]


_DIFFICULTY_XP = {
    QuestDifficulty.ROUTINE: 10,
    QuestDifficulty.COMPLEX: 25,
    QuestDifficulty.LEGACY: 50,
}


@dataclass
class Quest:
    """A trackable unit of focus work with a pausable timer.

    ``is_timer_active`` is True exactly when ``last_started_at`` is set.
    ``time_spent`` only holds closed sessions; the running session is
    added on read (see ``forgeflow.core.session_timer.live_elapsed``).
    """

    title: str
    id: str = field(default_factory=_new_id)
    details: str = ""
    is_boss_quest: bool = False
    is_timer_active: bool = False
    last_started_at: datetime | None = None
    time_spent: float = 0.0                  # seconds
    is_completed: bool = False
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    notification_ids: list[str] = field(default_factory=list)  # completion alerts
    subquest_bonus_claimed: bool = False


@dataclass
class SubQuest:
    """A step of a quest with its own timer and a difficulty-based XP payout.

    Timer fields follow the same rules as on ``Quest``; the time tracked
    here counts toward the parent quest's total.
    """

    quest_id: str
    title: str
    id: str = field(default_factory=_new_id)
    difficulty: QuestDifficulty = QuestDifficulty.ROUTINE
    is_completed: bool = False
    is_timer_active: bool = False
    last_started_at: datetime | None = None
    time_spent: float = 0.0                  # seconds
    reward_claimed: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TodoItem:
    """A reminder-bearing task, independent of quest timing."""

    title: str
    due_date: datetime
    id: str = field(default_factory=_new_id)
    notes: str = ""
    priority: TodoPriority = TodoPriority.MEDIUM
    reminder_offset: ReminderOffset = ReminderOffset.AT_TIME
    is_completed: bool = False
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    reward_claimed: bool = False             # XP is paid out once per todo

    @property
    def reminder_date(self) -> datetime:
        return self.due_date - timedelta(seconds=self.reminder_offset.seconds)

    @property
    def notification_id(self) -> str:
        """Stable across edits, so re-scheduling replaces instead of duplicating."""
        return f"todo_{self.id}"

    def is_overdue(self, now: datetime) -> bool:
        return not self.is_completed and self.due_date < now


@dataclass
class PlayerProfile:
    """Aggregate progression state.

    ``experience`` is lifetime experience; ``level`` is derived from it
    by the leveling curve and can be re-checked with
    ``forgeflow.core.leveling.reconcile_level``.
    """

    id: int = 1
    name: str = "New Developer"
    level: int = 1
    experience: int = 0
    nanobytes: int = 0
    total_focus_seconds: float = 0.0
    unlocked_rewards: list[str] = field(default_factory=lambda: ["theme_default"])
    notifications_enabled: bool = False


@dataclass
class FocusSession:
    """One closed timer interval, logged every time a quest timer stops."""

    quest_id: str
    quest_title: str
    duration: float                          # seconds
    ended_at: datetime
    id: int | None = None
