"""Session timer — pure quest timer bookkeeping.

Mutates only the timer fields of the quest or sub-quest it is given.
Misuse (starting a running quest, stopping an idle one) is reported
through the returned status and leaves the quest untouched; notifications
and rewards are the coordinator's business.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable

from forgeflow.data.models import Quest, SubQuest

logger = logging.getLogger(__name__)

# Quests and sub-quests share the same timer fields
Timed = Quest | SubQuest


class TimerStatus(Enum):
    STARTED = "started"
    STOPPED = "stopped"
    ALREADY_ACTIVE = "already_active"
    NOT_ACTIVE = "not_active"


@dataclass(frozen=True)
class TimerResult:
    status: TimerStatus
    elapsed: float = 0.0     # seconds added to time_spent by a stop

    @property
    def ok(self) -> bool:
        return self.status in (TimerStatus.STARTED, TimerStatus.STOPPED)


def _session_seconds(started_at: datetime, now: datetime) -> float:
    """Seconds between start and now, clamped at zero for clock skew."""
    return max(0.0, (now - started_at).total_seconds())


def start(quest: Timed, now: datetime) -> TimerResult:
    """Open a session at ``now`` unless one is already running."""
    if quest.is_timer_active:
        return TimerResult(TimerStatus.ALREADY_ACTIVE)

    quest.last_started_at = now
    quest.is_timer_active = True
    logger.debug("Quest %s timer started at %s", quest.id, now.isoformat())
    return TimerResult(TimerStatus.STARTED)


def stop(quest: Timed, now: datetime) -> TimerResult:
    """Close the running session and fold it into ``time_spent``."""
    if not quest.is_timer_active or quest.last_started_at is None:
        return TimerResult(TimerStatus.NOT_ACTIVE)

    elapsed = _session_seconds(quest.last_started_at, now)
    quest.time_spent += elapsed
    quest.is_timer_active = False
    quest.last_started_at = None
    logger.debug("Quest %s timer stopped, +%.1fs (total %.1fs)", quest.id, elapsed, quest.time_spent)
    return TimerResult(TimerStatus.STOPPED, elapsed=elapsed)


def live_elapsed(quest: Timed, now: datetime) -> float:
    """Closed sessions plus the running one. Never persisted."""
    running = 0.0
    if quest.is_timer_active and quest.last_started_at is not None:
        running = _session_seconds(quest.last_started_at, now)
    return quest.time_spent + running


def reset(quest: Timed) -> None:
    """Explicit reset: forget all tracked time, including a running session."""
    quest.time_spent = 0.0
    quest.is_timer_active = False
    quest.last_started_at = None


def total_elapsed(quest: Quest, subquests: Iterable[SubQuest], now: datetime) -> float:
    """Quest time plus the time tracked on each of its sub-quests."""
    return live_elapsed(quest, now) + sum(live_elapsed(s, now) for s in subquests)
