"""
ForgeFlow — Mission Coordinator.

Stateless-per-call service that orchestrates quest and todo transitions:
timer bookkeeping -> rewards -> notification commands -> events for the
presentation layer.

Quest session states: Idle -> Running -> Idle (paused, resumable) or
Idle (completed). Every mutation of one entity runs under that entity's
asyncio.Lock, so a double start or overlapping stop cannot corrupt
time_spent; different entities proceed concurrently. Sub-quests share
their parent quest's lock, since completing a quest closes their timers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from forgeflow.core import leveling, session_timer
from forgeflow.core.events import EventType
from forgeflow.core.notification_scheduler import ScheduleResult, ScheduleStatus
from forgeflow.core.session_timer import TimerResult, TimerStatus
from forgeflow.data.models import FocusSession

if TYPE_CHECKING:
    from forgeflow.core.clock import Clock
    from forgeflow.core.events import EventHub
    from forgeflow.core.leveling import Reward
    from forgeflow.core.notification_scheduler import NotificationScheduler
    from forgeflow.data.db import ProfileDB, QuestDB, TodoDB
    from forgeflow.data.models import PlayerProfile, Quest, SubQuest, TodoItem

logger = logging.getLogger(__name__)

# Untouched open quests mutate into bosses after this long
BOSS_PROMOTION_AGE = timedelta(days=3)


@dataclass(frozen=True)
class MissionOutcome:
    """What a stop request did."""

    quest_id: str
    timer: TimerResult
    completed: bool = False
    reward: Reward | None = None
    alert: ScheduleResult | None = None


@dataclass(frozen=True)
class SubQuestOutcome:
    """What a sub-quest tick or un-tick did."""

    subquest: SubQuest
    reward: Reward | None = None


class MissionCoordinator:
    """Single entry point for UI-layer events that change quests or todos."""

    def __init__(
        self,
        quests: QuestDB,
        todos: TodoDB,
        profiles: ProfileDB,
        scheduler: NotificationScheduler,
        events: EventHub,
        clock: Clock,
        *,
        profile_id: int = 1,
        xp_per_minute: int = leveling.XP_PER_MINUTE,
        boss_multiplier: int = leveling.BOSS_MULTIPLIER,
    ) -> None:
        self._quests = quests
        self._todos = todos
        self._profiles = profiles
        self._scheduler = scheduler
        self._events = events
        self._clock = clock
        self._profile_id = profile_id
        self._xp_per_minute = xp_per_minute
        self._boss_multiplier = boss_multiplier
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def profile(self) -> PlayerProfile:
        return leveling.reconcile_level(self._profiles.get_or_create(self._profile_id))

    def live_elapsed(self, quest_id: str) -> float | None:
        """Pull-based display value: tracked seconds of the quest and its
        sub-quests, including running sessions."""
        quest = self._quests.get_quest(quest_id)
        if quest is None:
            return None
        subquests = self._quests.list_subquests(quest_id)
        return session_timer.total_elapsed(quest, subquests, self._clock.now())

    # ------------------------------------------------------------------
    # Quest transitions
    # ------------------------------------------------------------------

    async def on_start_requested(self, quest_id: str) -> TimerResult | None:
        """Idle -> Running. No notification side effect."""
        async with self._lock_for(f"quest:{quest_id}"):
            quest = self._quests.get_quest(quest_id)
            if quest is None:
                logger.warning("Start requested for unknown quest %s", quest_id)
                return None
            if quest.is_completed:
                logger.info("Quest %s already completed, start ignored", quest_id)
                return None

            result = session_timer.start(quest, self._clock.now())
            if not result.ok:
                await self._reject(quest, result)
                return result

            self._quests.save_quest(quest)
            logger.info("Quest %s '%s' running", quest.id, quest.title)
            return result

    async def on_stop_requested(
        self,
        quest_id: str,
        *,
        complete: bool = False,
        completion_delay: float = 0.0,
    ) -> MissionOutcome | None:
        """Running -> Idle, either paused or completed.

        A paused quest may still be completed: the NOT_ACTIVE stop is then
        not an error. Completing awards XP, persists the profile, and
        schedules a mission-complete alert after ``completion_delay``.
        """
        async with self._lock_for(f"quest:{quest_id}"):
            quest = self._quests.get_quest(quest_id)
            if quest is None:
                logger.warning("Stop requested for unknown quest %s", quest_id)
                return None
            if quest.is_completed:
                logger.info("Quest %s already completed, stop ignored", quest_id)
                return None

            now = self._clock.now()
            result = session_timer.stop(quest, now)

            if result.status is TimerStatus.STOPPED:
                self._quests.log_session(FocusSession(
                    quest_id=quest.id,
                    quest_title=quest.title,
                    duration=result.elapsed,
                    ended_at=now,
                ))
            elif not complete:
                await self._reject(quest, result)
                return MissionOutcome(quest_id=quest.id, timer=result)

            if not complete:
                self._quests.save_quest(quest)
                self._add_focus_time(result.elapsed)
                logger.info("Quest %s paused after %.0fs", quest.id, result.elapsed)
                return MissionOutcome(quest_id=quest.id, timer=result)

            subquests = self._quests.list_subquests(quest.id)
            sub_seconds = sum(self._stop_subquest(s, quest, now) for s in subquests)
            reward = self._award_quest(quest, subquests, result.elapsed + sub_seconds)
            quest.is_completed = True
            quest.completed_at = now

            alert = await self._scheduler.schedule_session_complete(
                completion_delay, quest.title, reward.xp_gained,
            )
            if alert.status is ScheduleStatus.SCHEDULED:
                quest.notification_ids.append(alert.notification_id)
            self._quests.save_quest(quest)
            logger.info("Quest %s completed: +%d XP", quest.id, reward.xp_gained)

        await self._report_schedule(alert, related_id=quest.id)
        await self._events.publish(
            EventType.MISSION_COMPLETED,
            f"{quest.title} completed: +{reward.xp_gained} XP",
            related_id=quest.id,
            payload={"xp_gained": reward.xp_gained, "time_spent": quest.time_spent},
        )
        await self._announce(reward, related_id=quest.id)
        return MissionOutcome(
            quest_id=quest.id, timer=result, completed=True, reward=reward, alert=alert,
        )

    async def on_boss_flag_changed(self, quest_id: str, is_boss: bool) -> Quest | None:
        async with self._lock_for(f"quest:{quest_id}"):
            quest = self._quests.get_quest(quest_id)
            if quest is None:
                return None
            quest.is_boss_quest = is_boss
            self._quests.save_quest(quest)
            return quest

    async def promote_stale_quests(self) -> list[str]:
        """Open quests ignored for longer than BOSS_PROMOTION_AGE become bosses."""
        cutoff = self._clock.now() - BOSS_PROMOTION_AGE
        promoted: list[str] = []
        for quest in self._quests.list_quests():
            if quest.is_boss_quest or quest.created_at > cutoff:
                continue
            if await self.on_boss_flag_changed(quest.id, True) is not None:
                promoted.append(quest.id)
                logger.info("Quest %s '%s' promoted to boss", quest.id, quest.title)
        return promoted

    async def on_reset_requested(self, quest_id: str) -> Quest | None:
        """Forget all time tracked on an open quest and its sub-quests.

        A running session is discarded without being logged.
        """
        async with self._lock_for(f"quest:{quest_id}"):
            quest = self._quests.get_quest(quest_id)
            if quest is None or quest.is_completed:
                logger.info("Reset ignored for quest %s", quest_id)
                return None
            session_timer.reset(quest)
            self._quests.save_quest(quest)
            for subquest in self._quests.list_subquests(quest_id):
                session_timer.reset(subquest)
                self._quests.save_subquest(subquest)
            logger.info("Quest %s timer reset", quest_id)
            return quest

    async def on_quest_deleted(self, quest_id: str) -> bool:
        """Delete the quest and cancel every notification it owns."""
        key = f"quest:{quest_id}"
        async with self._lock_for(key):
            quest = self._quests.get_quest(quest_id)
            if quest is None:
                return False
            for notification_id in quest.notification_ids:
                self._scheduler.cancel(notification_id)
            deleted = self._quests.delete_quest(quest_id)
        if deleted:
            self._locks.pop(key, None)
        return deleted

    # ------------------------------------------------------------------
    # Sub-quest transitions (serialized on the parent quest's lock)
    # ------------------------------------------------------------------

    def _parent_key(self, subquest_id: str) -> str | None:
        subquest = self._quests.get_subquest(subquest_id)
        if subquest is None:
            logger.warning("Unknown sub-quest %s", subquest_id)
            return None
        return f"quest:{subquest.quest_id}"

    def _open_subquest(self, subquest_id: str) -> tuple[Quest, SubQuest] | None:
        subquest = self._quests.get_subquest(subquest_id)
        if subquest is None:
            return None
        quest = self._quests.get_quest(subquest.quest_id)
        if quest is None or quest.is_completed:
            logger.info("Sub-quest %s belongs to a closed quest, ignored", subquest_id)
            return None
        return quest, subquest

    async def on_subquest_start_requested(self, subquest_id: str) -> TimerResult | None:
        key = self._parent_key(subquest_id)
        if key is None:
            return None
        async with self._lock_for(key):
            found = self._open_subquest(subquest_id)
            if found is None:
                return None
            _, subquest = found
            if subquest.is_completed:
                logger.info("Sub-quest %s already done, start ignored", subquest_id)
                return None

            result = session_timer.start(subquest, self._clock.now())
            if not result.ok:
                await self._reject(subquest, result)
                return result
            self._quests.save_subquest(subquest)
            return result

    async def on_subquest_stop_requested(self, subquest_id: str) -> TimerResult | None:
        key = self._parent_key(subquest_id)
        if key is None:
            return None
        async with self._lock_for(key):
            found = self._open_subquest(subquest_id)
            if found is None:
                return None
            quest, subquest = found

            if not subquest.is_timer_active:
                result = session_timer.stop(subquest, self._clock.now())
                await self._reject(subquest, result)
                return result

            elapsed = self._stop_subquest(subquest, quest, self._clock.now())
            self._add_focus_time(elapsed)
            return TimerResult(TimerStatus.STOPPED, elapsed=elapsed)

    async def on_subquest_toggled(self, subquest_id: str, completed: bool = True) -> SubQuestOutcome | None:
        """Tick (or un-tick) a sub-quest.

        Difficulty XP is paid on the first tick only and never refunded.
        The tick that leaves no open step on the quest also pays the clear
        bonus, once per quest. Ticking stops a running sub-quest timer.
        """
        key = self._parent_key(subquest_id)
        if key is None:
            return None
        reward = None
        async with self._lock_for(key):
            found = self._open_subquest(subquest_id)
            if found is None:
                return None
            quest, subquest = found

            if completed and not subquest.is_completed:
                elapsed = self._stop_subquest(subquest, quest, self._clock.now())
                self._add_focus_time(elapsed)
                subquest.is_completed = True

                siblings = self._quests.list_subquests(quest.id)
                clears = not quest.subquest_bonus_claimed and all(
                    s.is_completed or s.id == subquest.id for s in siblings
                )
                first = not subquest.reward_claimed
                if first or clears:
                    reward = self._award_subquest(subquest, first, clears)
                subquest.reward_claimed = True
                if clears:
                    quest.subquest_bonus_claimed = True
                    self._quests.save_quest(quest)
            elif not completed and subquest.is_completed:
                subquest.is_completed = False

            self._quests.save_subquest(subquest)

        if reward is not None:
            logger.info("Sub-quest %s ticked: +%d XP", subquest_id, reward.xp_gained)
            await self._announce(reward, related_id=subquest_id)
        return SubQuestOutcome(subquest=subquest, reward=reward)

    async def on_subquest_deleted(self, subquest_id: str) -> bool:
        key = self._parent_key(subquest_id)
        if key is None:
            return False
        async with self._lock_for(key):
            return self._quests.delete_subquest(subquest_id)

    # ------------------------------------------------------------------
    # Todo transitions
    # ------------------------------------------------------------------

    async def on_todo_edited(self, todo: TodoItem) -> ScheduleResult:
        """Persist ``todo`` and make its reminder match the latest state."""
        async with self._lock_for(f"todo:{todo.id}"):
            self._todos.save_todo(todo)
            result = await self._scheduler.schedule_reminder(todo)
        await self._report_schedule(result, related_id=todo.id)
        return result

    async def on_todo_completed(self, todo_id: str, completed: bool = True) -> ScheduleResult | None:
        """Tick (or un-tick) a todo.

        The first completion pays out the priority XP; re-ticking after an
        un-tick does not pay again, and un-ticking never refunds.
        """
        reward = None
        async with self._lock_for(f"todo:{todo_id}"):
            todo = self._todos.get_todo(todo_id)
            if todo is None:
                logger.warning("Completion toggled for unknown todo %s", todo_id)
                return None

            if completed and not todo.is_completed:
                todo.is_completed = True
                todo.completed_at = self._clock.now()
                if not todo.reward_claimed:
                    reward = self._award_todo(todo)
                    todo.reward_claimed = True
            elif not completed and todo.is_completed:
                todo.is_completed = False
                todo.completed_at = None

            self._todos.save_todo(todo)
            result = await self._scheduler.schedule_reminder(todo)

        await self._report_schedule(result, related_id=todo_id)
        if reward is not None:
            await self._announce(reward, related_id=todo_id)
        return result

    async def on_todo_deleted(self, todo_id: str) -> bool:
        key = f"todo:{todo_id}"
        async with self._lock_for(key):
            todo = self._todos.get_todo(todo_id)
            if todo is None:
                return False
            self._scheduler.cancel(todo.notification_id)
            deleted = self._todos.delete_todo(todo_id)
        if deleted:
            self._locks.pop(key, None)
        return deleted

    async def reschedule_all_reminders(self) -> list[ScheduleResult]:
        """Re-issue reminders for every open todo, e.g. at start-up or after opt-in."""
        todos = self._todos.list_todos()

        async def _one(todo: TodoItem) -> ScheduleResult:
            async with self._lock_for(f"todo:{todo.id}"):
                return await self._scheduler.schedule_reminder(todo)

        results = list(await asyncio.gather(*(_one(t) for t in todos)))
        scheduled = sum(1 for r in results if r.status is ScheduleStatus.SCHEDULED)
        logger.info("Rescheduled %d of %d open todo reminders", scheduled, len(todos))
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _add_focus_time(self, seconds: float) -> None:
        if seconds <= 0:
            return
        profile = self._profiles.get_or_create(self._profile_id)
        profile.total_focus_seconds += seconds
        self._profiles.save_profile(profile)

    def _stop_subquest(self, subquest: SubQuest, quest: Quest, now: datetime) -> float:
        """Close a running sub-quest session, log and persist it; returns its seconds."""
        result = session_timer.stop(subquest, now)
        if result.status is not TimerStatus.STOPPED:
            return 0.0
        self._quests.log_session(FocusSession(
            quest_id=quest.id,
            quest_title=f"{quest.title} / {subquest.title}",
            duration=result.elapsed,
            ended_at=now,
        ))
        self._quests.save_subquest(subquest)
        return result.elapsed

    def _award_subquest(self, subquest: SubQuest, first: bool, clears: bool) -> Reward:
        profile = leveling.reconcile_level(self._profiles.get_or_create(self._profile_id))
        reward = leveling.compute_subquest_reward(
            subquest, profile, first_completion=first, clears_quest=clears,
        )
        self._profiles.save_profile(leveling.apply_reward(profile, reward))
        return reward

    def _award_quest(self, quest: Quest, subquests: list[SubQuest], session_seconds: float) -> Reward:
        # Must not await between profile read and save.
        profile = leveling.reconcile_level(self._profiles.get_or_create(self._profile_id))
        reward = leveling.compute_reward(
            quest, profile, self._clock.now(),
            subquests=subquests,
            xp_per_minute=self._xp_per_minute,
            boss_multiplier=self._boss_multiplier,
        )
        profile = leveling.apply_reward(profile, reward)
        profile.total_focus_seconds += session_seconds
        self._profiles.save_profile(profile)
        return reward

    def _award_todo(self, todo: TodoItem) -> Reward:
        profile = leveling.reconcile_level(self._profiles.get_or_create(self._profile_id))
        reward = leveling.compute_todo_reward(todo, profile)
        self._profiles.save_profile(leveling.apply_reward(profile, reward))
        return reward

    async def _announce(self, reward: Reward, related_id: str) -> None:
        if not reward.leveled_up:
            return
        await self._events.publish(
            EventType.LEVELED_UP,
            f"Level {reward.new_level} reached",
            related_id=related_id,
            payload={"previous_level": reward.previous_level, "new_level": reward.new_level},
        )
        if reward.unlocked_rewards:
            await self._events.publish(
                EventType.REWARDS_UNLOCKED,
                ", ".join(leveling.reward_name(k) for k in reward.unlocked_rewards),
                related_id=related_id,
                payload={"rewards": list(reward.unlocked_rewards)},
            )

    async def _reject(self, quest: Quest | SubQuest, result: TimerResult) -> None:
        logger.info("Quest %s: timer request ignored (%s)", quest.id, result.status.value)
        await self._events.publish(
            EventType.TIMER_REJECTED,
            f"{quest.title}: {result.status.value.replace('_', ' ')}",
            related_id=quest.id,
            payload={"status": result.status.value},
        )

    async def _report_schedule(self, result: ScheduleResult, related_id: str) -> None:
        if result.status is ScheduleStatus.DENIED:
            await self._events.publish(
                EventType.SCHEDULING_DENIED,
                "Notifications are off; use /notify on to receive reminders",
                related_id=related_id,
                payload={"notification_id": result.notification_id},
            )
        elif result.status is ScheduleStatus.FAILED:
            await self._events.publish(
                EventType.SCHEDULING_FAILED,
                f"Could not schedule notification: {result.error_message}",
                related_id=related_id,
                payload={"notification_id": result.notification_id},
            )
