"""Tests for forgeflow.core.coordinator — quest/todo transitions end to end.

Real SQLite stores (temp files), in-memory notification center, manual clock.
"""

import asyncio
from datetime import timedelta

import pytest

from forgeflow.core.coordinator import BOSS_PROMOTION_AGE, MissionCoordinator
from forgeflow.core.events import EventType
from forgeflow.core.notification_scheduler import NotificationScheduler, ScheduleStatus
from forgeflow.core.session_timer import TimerStatus
from forgeflow.data.models import QuestDifficulty, TodoItem, TodoPriority
from forgeflow.ports.notification_port import SchedulingFailed


def _event_types(events):
    return [e.event_type for e in events.list_recent()]


# ---------------------------------------------------------------------------
# Quest sessions
# ---------------------------------------------------------------------------


class TestQuestSession:
    @pytest.mark.asyncio
    async def test_start_persists_running_state(self, coordinator, quest_db, center):
        quest = quest_db.add_quest("Write tests")
        result = await coordinator.on_start_requested(quest.id)

        assert result.status is TimerStatus.STARTED
        stored = quest_db.get_quest(quest.id)
        assert stored.is_timer_active is True
        assert stored.last_started_at is not None
        assert center.pending_ids() == []

    @pytest.mark.asyncio
    async def test_double_start_rejected(self, coordinator, quest_db, events):
        quest = quest_db.add_quest("Write tests")
        await coordinator.on_start_requested(quest.id)
        result = await coordinator.on_start_requested(quest.id)

        assert result.status is TimerStatus.ALREADY_ACTIVE
        assert EventType.TIMER_REJECTED in _event_types(events)

    @pytest.mark.asyncio
    async def test_concurrent_starts_serialized(self, coordinator, quest_db):
        quest = quest_db.add_quest("Race")
        results = await asyncio.gather(
            coordinator.on_start_requested(quest.id),
            coordinator.on_start_requested(quest.id),
        )
        statuses = sorted(r.status.value for r in results)
        assert statuses == ["already_active", "started"]

    @pytest.mark.asyncio
    async def test_pause_of_idle_quest_rejected(self, coordinator, quest_db, events):
        quest = quest_db.add_quest("Idle")
        outcome = await coordinator.on_stop_requested(quest.id)

        assert outcome.timer.status is TimerStatus.NOT_ACTIVE
        assert outcome.completed is False
        assert quest_db.list_sessions(quest.id) == []
        assert EventType.TIMER_REJECTED in _event_types(events)

    @pytest.mark.asyncio
    async def test_pause_resume_complete(self, coordinator, quest_db, profile_db, center, clock):
        quest = quest_db.add_quest("Refactor billing")

        await coordinator.on_start_requested(quest.id)
        clock.advance(300)
        pause = await coordinator.on_stop_requested(quest.id)
        assert pause.timer.elapsed == 300.0

        clock.advance(150)
        assert coordinator.live_elapsed(quest.id) == 300.0
        clock.advance(150)
        assert coordinator.live_elapsed(quest.id) == 300.0

        await coordinator.on_start_requested(quest.id)
        clock.advance(300)
        outcome = await coordinator.on_stop_requested(quest.id, complete=True)

        stored = quest_db.get_quest(quest.id)
        assert stored.time_spent == 600.0
        assert stored.is_completed is True
        assert stored.is_timer_active is False
        assert outcome.reward.xp_gained == 20
        assert outcome.alert.status is ScheduleStatus.SCHEDULED
        assert stored.notification_ids == [outcome.alert.notification_id]
        assert center.pending_ids() == [outcome.alert.notification_id]

        profile = profile_db.get_profile(1)
        assert profile.experience == 20
        assert profile.total_focus_seconds == 600.0
        assert [s.duration for s in quest_db.list_sessions(quest.id)] == [300.0, 300.0]

    @pytest.mark.asyncio
    async def test_complete_paused_quest(self, coordinator, quest_db, clock):
        quest = quest_db.add_quest("Docs")
        await coordinator.on_start_requested(quest.id)
        clock.advance(minutes=10)
        await coordinator.on_stop_requested(quest.id)

        outcome = await coordinator.on_stop_requested(quest.id, complete=True)
        assert outcome.completed is True
        assert outcome.timer.status is TimerStatus.NOT_ACTIVE
        assert outcome.reward.xp_gained == 20

    @pytest.mark.asyncio
    async def test_complete_twice_is_noop(self, coordinator, quest_db, profile_db, clock):
        quest = quest_db.add_quest("Once")
        await coordinator.on_start_requested(quest.id)
        clock.advance(minutes=5)
        await coordinator.on_stop_requested(quest.id, complete=True)

        assert await coordinator.on_stop_requested(quest.id, complete=True) is None
        assert await coordinator.on_start_requested(quest.id) is None
        assert profile_db.get_profile(1).experience == 10

    @pytest.mark.asyncio
    async def test_deferred_completion_alert(self, coordinator, quest_db, center, clock):
        quest = quest_db.add_quest("Pomodoro")
        await coordinator.on_start_requested(quest.id)
        outcome = await coordinator.on_stop_requested(quest.id, complete=True, completion_delay=1500)

        assert center.get(outcome.alert.notification_id).trigger.seconds == 1500.0
        assert center.deliver_due() == []
        clock.advance(1500)
        assert [r.identifier for r in center.deliver_due()] == [outcome.alert.notification_id]

    @pytest.mark.asyncio
    async def test_boss_completion_levels_up(self, coordinator, quest_db, profile_db, events, clock):
        quest = quest_db.add_quest("Kill legacy module", is_boss_quest=True)
        await coordinator.on_start_requested(quest.id)
        clock.advance(minutes=25)
        outcome = await coordinator.on_stop_requested(quest.id, complete=True)

        assert outcome.reward.xp_gained == 100
        assert outcome.reward.leveled_up is True
        profile = profile_db.get_profile(1)
        assert profile.level == 2
        assert profile.unlocked_rewards.count("theme_terminal") == 1

        types = _event_types(events)
        assert types.count(EventType.LEVELED_UP) == 1
        assert types.count(EventType.REWARDS_UNLOCKED) == 1
        assert EventType.MISSION_COMPLETED in types

    @pytest.mark.asyncio
    async def test_unknown_quest(self, coordinator):
        assert await coordinator.on_start_requested("nope") is None
        assert await coordinator.on_stop_requested("nope") is None
        assert coordinator.live_elapsed("nope") is None
        assert await coordinator.on_quest_deleted("nope") is False


class TestQuestDeletion:
    @pytest.mark.asyncio
    async def test_delete_cancels_owned_notifications(self, coordinator, quest_db, center):
        quest = quest_db.add_quest("Spike")
        await coordinator.on_start_requested(quest.id)
        await coordinator.on_stop_requested(quest.id, complete=True, completion_delay=600)
        assert len(center.pending_ids()) == 1

        assert await coordinator.on_quest_deleted(quest.id) is True
        assert center.pending_ids() == []
        assert quest_db.get_quest(quest.id) is None

    @pytest.mark.asyncio
    async def test_delete_leaves_other_notifications(self, coordinator, quest_db, center, clock):
        other = TodoItem(title="Call bank", due_date=clock.now() + timedelta(hours=1))
        await coordinator.on_todo_edited(other)
        quest = quest_db.add_quest("Spike")

        await coordinator.on_quest_deleted(quest.id)
        assert center.pending_ids() == [other.notification_id]

    @pytest.mark.asyncio
    async def test_delete_releases_quest_lock(self, coordinator, quest_db):
        quest = quest_db.add_quest("Spike")
        await coordinator.on_start_requested(quest.id)
        assert f"quest:{quest.id}" in coordinator._locks

        await coordinator.on_quest_deleted(quest.id)
        assert f"quest:{quest.id}" not in coordinator._locks

    @pytest.mark.asyncio
    async def test_delete_removes_subquests(self, coordinator, quest_db):
        quest = quest_db.add_quest("Spike")
        sub = quest_db.add_subquest(quest.id, "Read docs")

        assert await coordinator.on_quest_deleted(quest.id) is True
        assert quest_db.get_subquest(sub.id) is None


class TestBossPromotion:
    @pytest.mark.asyncio
    async def test_stale_quests_become_bosses(self, coordinator, quest_db, clock):
        old = quest_db.add_quest("Old debt")
        old.created_at = clock.now() - BOSS_PROMOTION_AGE - timedelta(minutes=1)
        quest_db.save_quest(old)
        fresh = quest_db.add_quest("Fresh")
        fresh.created_at = clock.now()
        quest_db.save_quest(fresh)

        promoted = await coordinator.promote_stale_quests()
        assert promoted == [old.id]
        assert quest_db.get_quest(old.id).is_boss_quest is True
        assert quest_db.get_quest(fresh.id).is_boss_quest is False


class TestQuestReset:
    @pytest.mark.asyncio
    async def test_reset_clears_quest_and_subquests(self, coordinator, quest_db, clock):
        quest = quest_db.add_quest("Restart")
        sub = quest_db.add_subquest(quest.id, "Outline")
        await coordinator.on_start_requested(quest.id)
        clock.advance(minutes=4)
        await coordinator.on_stop_requested(quest.id)
        await coordinator.on_start_requested(quest.id)
        await coordinator.on_subquest_start_requested(sub.id)
        clock.advance(minutes=2)

        reset = await coordinator.on_reset_requested(quest.id)

        assert reset.time_spent == 0.0
        stored = quest_db.get_quest(quest.id)
        assert stored.is_timer_active is False
        assert stored.last_started_at is None
        stored_sub = quest_db.get_subquest(sub.id)
        assert stored_sub.time_spent == 0.0
        assert stored_sub.is_timer_active is False
        assert coordinator.live_elapsed(quest.id) == 0.0
        # Only the closed session before the reset was logged
        assert [s.duration for s in quest_db.list_sessions(quest.id)] == [240.0]

    @pytest.mark.asyncio
    async def test_reset_ignores_completed_or_unknown(self, coordinator, quest_db, clock):
        quest = quest_db.add_quest("Shipped")
        await coordinator.on_start_requested(quest.id)
        clock.advance(minutes=5)
        await coordinator.on_stop_requested(quest.id, complete=True)

        assert await coordinator.on_reset_requested(quest.id) is None
        assert quest_db.get_quest(quest.id).time_spent == 300.0
        assert await coordinator.on_reset_requested("missing") is None


# ---------------------------------------------------------------------------
# Sub-quests
# ---------------------------------------------------------------------------


class TestSubQuests:
    @pytest.mark.asyncio
    async def test_timer_start_stop(self, coordinator, quest_db, profile_db, clock):
        quest = quest_db.add_quest("Migrate DB")
        sub = quest_db.add_subquest(quest.id, "Write migration")

        assert (await coordinator.on_subquest_start_requested(sub.id)).status is TimerStatus.STARTED
        clock.advance(minutes=3)
        result = await coordinator.on_subquest_stop_requested(sub.id)

        assert result.status is TimerStatus.STOPPED
        assert result.elapsed == 180.0
        assert quest_db.get_subquest(sub.id).time_spent == 180.0
        assert profile_db.get_profile(1).total_focus_seconds == 180.0
        sessions = quest_db.list_sessions(quest.id)
        assert [s.quest_title for s in sessions] == ["Migrate DB / Write migration"]

    @pytest.mark.asyncio
    async def test_timer_misuse_rejected(self, coordinator, quest_db, events):
        quest = quest_db.add_quest("Migrate DB")
        sub = quest_db.add_subquest(quest.id, "Write migration")

        result = await coordinator.on_subquest_stop_requested(sub.id)
        assert result.status is TimerStatus.NOT_ACTIVE
        await coordinator.on_subquest_start_requested(sub.id)
        result = await coordinator.on_subquest_start_requested(sub.id)
        assert result.status is TimerStatus.ALREADY_ACTIVE
        assert _event_types(events).count(EventType.TIMER_REJECTED) == 2

    @pytest.mark.asyncio
    async def test_tick_pays_difficulty_once(self, coordinator, quest_db, profile_db):
        quest = quest_db.add_quest("Release")
        hard = quest_db.add_subquest(quest.id, "Cut branch", QuestDifficulty.COMPLEX)
        quest_db.add_subquest(quest.id, "Announce")

        outcome = await coordinator.on_subquest_toggled(hard.id)
        assert outcome.reward.xp_gained == 25
        assert outcome.subquest.is_completed is True

        await coordinator.on_subquest_toggled(hard.id, completed=False)
        outcome = await coordinator.on_subquest_toggled(hard.id)
        assert outcome.reward is None
        assert profile_db.get_profile(1).experience == 25

    @pytest.mark.asyncio
    async def test_untick_does_not_refund(self, coordinator, quest_db, profile_db):
        quest = quest_db.add_quest("Release")
        sub = quest_db.add_subquest(quest.id, "Tag", QuestDifficulty.LEGACY)
        quest_db.add_subquest(quest.id, "Announce")
        await coordinator.on_subquest_toggled(sub.id)

        outcome = await coordinator.on_subquest_toggled(sub.id, completed=False)
        assert outcome.reward is None
        assert quest_db.get_subquest(sub.id).is_completed is False
        assert profile_db.get_profile(1).experience == 50

    @pytest.mark.asyncio
    async def test_clear_bonus_paid_once(self, coordinator, quest_db, profile_db):
        quest = quest_db.add_quest("Release")
        first = quest_db.add_subquest(quest.id, "Tag")
        last = quest_db.add_subquest(quest.id, "Announce")

        await coordinator.on_subquest_toggled(first.id)
        outcome = await coordinator.on_subquest_toggled(last.id)
        assert outcome.reward.xp_gained == 10 + 50
        assert quest_db.get_quest(quest.id).subquest_bonus_claimed is True

        await coordinator.on_subquest_toggled(last.id, completed=False)
        outcome = await coordinator.on_subquest_toggled(last.id)
        assert outcome.reward is None
        assert profile_db.get_profile(1).experience == 70

    @pytest.mark.asyncio
    async def test_clear_does_not_complete_quest(self, coordinator, quest_db):
        quest = quest_db.add_quest("Release")
        sub = quest_db.add_subquest(quest.id, "Only step")
        await coordinator.on_subquest_toggled(sub.id)

        assert quest_db.get_quest(quest.id).is_completed is False

    @pytest.mark.asyncio
    async def test_tick_stops_running_timer(self, coordinator, quest_db, clock):
        quest = quest_db.add_quest("Release")
        sub = quest_db.add_subquest(quest.id, "Tag")
        await coordinator.on_subquest_start_requested(sub.id)
        clock.advance(minutes=2)

        outcome = await coordinator.on_subquest_toggled(sub.id)
        assert outcome.subquest.is_timer_active is False
        assert quest_db.get_subquest(sub.id).time_spent == 120.0

    @pytest.mark.asyncio
    async def test_completion_counts_subquest_time(self, coordinator, quest_db, profile_db, clock):
        quest = quest_db.add_quest("Release")
        done = quest_db.add_subquest(quest.id, "Tag")
        running = quest_db.add_subquest(quest.id, "Announce")

        await coordinator.on_start_requested(quest.id)
        await coordinator.on_subquest_start_requested(done.id)
        clock.advance(minutes=5)
        await coordinator.on_subquest_stop_requested(done.id)
        await coordinator.on_subquest_start_requested(running.id)
        clock.advance(minutes=5)
        assert coordinator.live_elapsed(quest.id) == 600.0 + 300.0 + 300.0

        outcome = await coordinator.on_stop_requested(quest.id, complete=True)
        # 10 min on the quest, 5 + 5 on the sub-quests
        assert outcome.reward.xp_gained == 40
        stored = quest_db.get_subquest(running.id)
        assert stored.is_timer_active is False
        assert stored.time_spent == 300.0
        assert profile_db.get_profile(1).total_focus_seconds == 1200.0

    @pytest.mark.asyncio
    async def test_closed_quest_ignores_subquests(self, coordinator, quest_db):
        quest = quest_db.add_quest("Release")
        sub = quest_db.add_subquest(quest.id, "Tag")
        await coordinator.on_stop_requested(quest.id, complete=True)

        assert await coordinator.on_subquest_start_requested(sub.id) is None
        assert await coordinator.on_subquest_toggled(sub.id) is None

    @pytest.mark.asyncio
    async def test_delete_and_unknown(self, coordinator, quest_db):
        quest = quest_db.add_quest("Release")
        sub = quest_db.add_subquest(quest.id, "Tag")

        assert await coordinator.on_subquest_deleted(sub.id) is True
        assert quest_db.get_subquest(sub.id) is None
        assert await coordinator.on_subquest_deleted(sub.id) is False
        assert await coordinator.on_subquest_toggled("missing") is None
        assert await coordinator.on_subquest_start_requested("missing") is None


# ---------------------------------------------------------------------------
# Todos
# ---------------------------------------------------------------------------


class TestTodos:
    @pytest.mark.asyncio
    async def test_edit_persists_and_reschedules(self, coordinator, todo_db, center, clock):
        todo = TodoItem(title="Renew domain", due_date=clock.now() + timedelta(days=2))
        await coordinator.on_todo_edited(todo)

        todo.priority = TodoPriority.HIGH
        todo.due_date = clock.now() + timedelta(days=1)
        result = await coordinator.on_todo_edited(todo)

        assert result.status is ScheduleStatus.SCHEDULED
        assert center.pending_ids() == [todo.notification_id]
        assert center.fire_date(todo.notification_id) == clock.now() + timedelta(days=1)
        assert todo_db.get_todo(todo.id).priority is TodoPriority.HIGH

    @pytest.mark.asyncio
    async def test_complete_cancels_and_awards_once(self, coordinator, todo_db, profile_db, center, clock):
        todo = TodoItem(
            title="Patch CVE",
            due_date=clock.now() + timedelta(hours=3),
            priority=TodoPriority.CRITICAL,
        )
        await coordinator.on_todo_edited(todo)

        result = await coordinator.on_todo_completed(todo.id)
        assert result.status is ScheduleStatus.SKIPPED
        assert center.pending_ids() == []
        assert profile_db.get_profile(1).experience == 40

        await coordinator.on_todo_completed(todo.id)
        await coordinator.on_todo_completed(todo.id, completed=False)
        await coordinator.on_todo_completed(todo.id)
        assert profile_db.get_profile(1).experience == 40

    @pytest.mark.asyncio
    async def test_uncomplete_reschedules(self, coordinator, todo_db, center, clock):
        todo = TodoItem(title="Email", due_date=clock.now() + timedelta(hours=1))
        await coordinator.on_todo_edited(todo)
        await coordinator.on_todo_completed(todo.id)
        result = await coordinator.on_todo_completed(todo.id, completed=False)

        assert result.status is ScheduleStatus.SCHEDULED
        assert center.pending_ids() == [todo.notification_id]
        assert todo_db.get_todo(todo.id).completed_at is None

    @pytest.mark.asyncio
    async def test_delete_cancels_reminder(self, coordinator, todo_db, center, clock):
        todo = TodoItem(title="Email", due_date=clock.now() + timedelta(hours=1))
        await coordinator.on_todo_edited(todo)

        assert await coordinator.on_todo_deleted(todo.id) is True
        assert center.pending_ids() == []
        assert todo_db.get_todo(todo.id) is None
        assert f"todo:{todo.id}" not in coordinator._locks

    @pytest.mark.asyncio
    async def test_unknown_todo(self, coordinator):
        assert await coordinator.on_todo_completed("missing") is None
        assert await coordinator.on_todo_deleted("missing") is False

    @pytest.mark.asyncio
    async def test_reschedule_all(self, coordinator, todo_db, center, clock):
        future = TodoItem(title="Future", due_date=clock.now() + timedelta(hours=1))
        past = TodoItem(title="Past", due_date=clock.now() - timedelta(hours=1))
        done = TodoItem(title="Done", due_date=clock.now() + timedelta(hours=1), is_completed=True)
        for t in (future, past, done):
            todo_db.save_todo(t)

        results = await coordinator.reschedule_all_reminders()
        assert len(results) == 2
        assert center.pending_ids() == [future.notification_id]


class TestSchedulingDenied:
    @pytest.mark.asyncio
    async def test_denied_surfaces_event_and_keeps_state(
        self, quest_db, todo_db, profile_db, center, events, clock,
    ):
        from forgeflow.adapters.authorization import StaticAuthorization

        scheduler = NotificationScheduler(center, StaticAuthorization(granted=False), clock)
        coordinator = MissionCoordinator(quest_db, todo_db, profile_db, scheduler, events, clock)

        todo = TodoItem(title="Ping", due_date=clock.now() + timedelta(hours=1))
        result = await coordinator.on_todo_edited(todo)
        assert result.status is ScheduleStatus.DENIED
        assert todo_db.get_todo(todo.id) is not None
        assert EventType.SCHEDULING_DENIED in _event_types(events)

        quest = quest_db.add_quest("Offline")
        await coordinator.on_start_requested(quest.id)
        clock.advance(minutes=3)
        outcome = await coordinator.on_stop_requested(quest.id, complete=True)
        assert outcome.alert.status is ScheduleStatus.DENIED
        stored = quest_db.get_quest(quest.id)
        assert stored.is_completed is True
        assert stored.notification_ids == []
        assert profile_db.get_profile(1).experience == 6


class TestSchedulingFailed:
    @pytest.mark.asyncio
    async def test_failure_surfaces_event_and_keeps_state(
        self, coordinator, quest_db, todo_db, profile_db, center, events, clock,
    ):
        center.fail_with = SchedulingFailed("queue offline")

        todo = TodoItem(title="Ping", due_date=clock.now() + timedelta(hours=1))
        result = await coordinator.on_todo_edited(todo)
        assert result.status is ScheduleStatus.FAILED
        assert result.error_message == "queue offline"
        assert todo_db.get_todo(todo.id) is not None
        assert center.pending_ids() == []

        failed = [e for e in events.list_recent() if e.event_type is EventType.SCHEDULING_FAILED]
        assert len(failed) == 1
        assert "queue offline" in failed[0].message
        assert failed[0].related_id == todo.id

        quest = quest_db.add_quest("Offline")
        await coordinator.on_start_requested(quest.id)
        clock.advance(minutes=3)
        outcome = await coordinator.on_stop_requested(quest.id, complete=True, completion_delay=60)
        assert outcome.alert.status is ScheduleStatus.FAILED
        stored = quest_db.get_quest(quest.id)
        assert stored.is_completed is True
        assert stored.notification_ids == []
        assert profile_db.get_profile(1).experience == 6
        assert _event_types(events).count(EventType.SCHEDULING_FAILED) == 2
