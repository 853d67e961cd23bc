"""
ForgeFlow — Telegram Bot.

Telegram is the presentation layer and the notification channel: commands
drive the mission coordinator, core events come back as chat messages,
and reminders are delivered through the bot's job queue.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Sequence, TypeVar
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes

from forgeflow.config import settings
from forgeflow.core import session_timer
from forgeflow.core.events import EventType
from forgeflow.core.leveling import level_progress, quest_progress, reward_name, xp_to_next_level
from forgeflow.core.notification_scheduler import ScheduleStatus
from forgeflow.data.models import QuestDifficulty, ReminderOffset, TodoItem, TodoPriority

if TYPE_CHECKING:
    from forgeflow.core.coordinator import MissionCoordinator
    from forgeflow.core.events import CoreEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Events worth a chat message; the rest are only logged
_ANNOUNCED_EVENTS = {
    EventType.LEVELED_UP: "⬆️ SYSTEM OPTIMIZED — {message}",
    EventType.REWARDS_UNLOCKED: "🛡️ Unlocked: {message}",
    EventType.SCHEDULING_DENIED: "🔕 {message}",
    EventType.SCHEDULING_FAILED: "⚠️ {message}",
    EventType.TIMER_REJECTED: "⏱️ {message}",
}


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Formatting & parsing helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """H:MM:SS above an hour, MM:SS below."""
    t = int(abs(seconds))
    h, m, s = t // 3600, (t % 3600) // 60, t % 60
    if h > 0:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m:02d}:{s:02d}"


def short_id(entity_id: str) -> str:
    return entity_id[:6]


def resolve_prefix(items: Sequence[T], token: str, key: Callable[[T], str]) -> T | None:
    """Return the single item whose id starts with ``token``, else None."""
    token = token.strip().lower()
    if not token:
        return None
    matches = [item for item in items if key(item).startswith(token)]
    return matches[0] if len(matches) == 1 else None


@dataclass
class ParsedTodo:
    due_date: datetime
    priority: TodoPriority
    reminder_offset: ReminderOffset
    title: str
    notes: str = ""


def parse_todo_args(args: Sequence[str], tz: tzinfo = timezone.utc) -> ParsedTodo | None:
    """Parse ``YYYY-MM-DD HH:MM [priority] [-offset] title [| notes]``.

    Date and time are local to ``tz``; the returned due date is UTC.
    Returns None on malformed input.
    """
    if len(args) < 3:
        return None
    try:
        local = datetime.strptime(f"{args[0]} {args[1]}", "%Y-%m-%d %H:%M")
    except ValueError:
        return None

    rest = list(args[2:])
    priority = TodoPriority.MEDIUM
    if rest and rest[0].lower() in {p.value for p in TodoPriority}:
        priority = TodoPriority(rest.pop(0).lower())

    offset = ReminderOffset.AT_TIME
    if rest and rest[0].startswith("-"):
        try:
            offset = ReminderOffset(rest[0][1:].lower())
        except ValueError:
            return None
        rest.pop(0)

    text = " ".join(rest)
    title, _, notes = text.partition("|")
    if not title.strip():
        return None

    return ParsedTodo(
        due_date=local.replace(tzinfo=tz).astimezone(timezone.utc),
        priority=priority,
        reminder_offset=offset,
        title=title.strip(),
        notes=notes.strip(),
    )


def _coordinator(context: ContextTypes.DEFAULT_TYPE) -> MissionCoordinator:
    return context.bot_data["coordinator"]


# ---------------------------------------------------------------------------
# Commands: quests
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(
        "⚡ ForgeFlow online.\n\n" + _HELP_TEXT
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(_HELP_TEXT)


_HELP_TEXT = (
    "/quest <title> — register a quest\n"
    "/boss <title> — register a boss quest (double XP)\n"
    "/quests — open quests with tracked time\n"
    "/go <id> — start or resume the timer\n"
    "/pause <id> — pause the timer\n"
    "/complete <id> [minutes] — complete; alert now or after N minutes\n"
    "/drop <id> — delete a quest\n"
    "/reset <id> — clear a quest's tracked time\n"
    "/sub <quest id> [routine|complex|legacy] <title> — add a sub-quest\n"
    "/subs <quest id> — list sub-quests\n"
    "/subgo <id> · /subpause <id> — sub-quest timer\n"
    "/tick <id> · /untick <id> — (un)complete a sub-quest\n"
    "/todo <YYYY-MM-DD> <HH:MM> [low|medium|high|critical] [-5m|-15m|-30m|-1h|-1d] <title> [| notes]\n"
    "/todos — open todos\n"
    "/done <id> · /undo <id> · /deltodo <id>\n"
    "/profile — level and progress\n"
    "/notify on|off — reminder delivery"
)


async def _add_quest(update: Update, context: ContextTypes.DEFAULT_TYPE, boss: bool) -> None:
    title = " ".join(context.args or []).strip()
    if not title:
        await update.message.reply_text("Usage: /quest <title>")
        return
    quest = context.bot_data["quests"].add_quest(title, is_boss_quest=boss)
    label = "👹 Boss quest" if boss else "🗡️ Quest"
    await update.message.reply_text(f"{label} registered: {quest.title} [{short_id(quest.id)}]")


@authorized_only
async def cmd_quest(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _add_quest(update, context, boss=False)


@authorized_only
async def cmd_boss(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _add_quest(update, context, boss=True)


@authorized_only
async def cmd_quests(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    coordinator = _coordinator(context)
    await coordinator.promote_stale_quests()
    quests_db = context.bot_data["quests"]
    quests = quests_db.list_quests()
    if not quests:
        await update.message.reply_text("No open quests. Register one with /quest <title>.")
        return

    lines = []
    for q in quests:
        elapsed = coordinator.live_elapsed(q.id) or 0.0
        state = "▶️" if q.is_timer_active else "⏸️"
        boss = " 👹" if q.is_boss_quest else ""
        subs = quests_db.list_subquests(q.id)
        steps = f" · {quest_progress(q, subs):.0%} of {len(subs)} subs" if subs else ""
        lines.append(f"{state} [{short_id(q.id)}] {q.title}{boss} — {format_duration(elapsed)}{steps}")
    await update.message.reply_text("\n".join(lines))


async def _quest_from_args(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not context.args:
        await update.message.reply_text("Which quest? Pass its id from /quests.")
        return None
    quest = resolve_prefix(context.bot_data["quests"].list_quests(), context.args[0], key=lambda q: q.id)
    if quest is None:
        await update.message.reply_text(f"No single open quest matches '{context.args[0]}'.")
    return quest


@authorized_only
async def cmd_go(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    quest = await _quest_from_args(update, context)
    if quest is None:
        return
    result = await _coordinator(context).on_start_requested(quest.id)
    if result is not None and result.ok:
        await update.message.reply_text(
            f"▶️ {quest.title} — timer running. "
            f"Suggested block: {settings.DEFAULT_FOCUS_MINUTES} min."
        )


@authorized_only
async def cmd_pause(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    quest = await _quest_from_args(update, context)
    if quest is None:
        return
    outcome = await _coordinator(context).on_stop_requested(quest.id)
    if outcome is not None and outcome.timer.ok:
        total = _coordinator(context).live_elapsed(quest.id) or 0.0
        await update.message.reply_text(
            f"⏸️ {quest.title} paused (+{format_duration(outcome.timer.elapsed)}, "
            f"total {format_duration(total)})"
        )


@authorized_only
async def cmd_complete(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    quest = await _quest_from_args(update, context)
    if quest is None:
        return
    delay = 0.0
    if len(context.args) > 1:
        try:
            delay = max(0.0, float(context.args[1]) * 60)
        except ValueError:
            await update.message.reply_text("Delay must be a number of minutes.")
            return

    outcome = await _coordinator(context).on_stop_requested(
        quest.id, complete=True, completion_delay=delay,
    )
    if outcome is None or outcome.reward is None:
        return
    await update.message.reply_text(
        f"✅ {quest.title} deployed. +{outcome.reward.xp_gained} XP, "
        f"+{outcome.reward.nanobytes_gained} nanobytes."
    )


@authorized_only
async def cmd_drop(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    quest = await _quest_from_args(update, context)
    if quest is None:
        return
    if await _coordinator(context).on_quest_deleted(quest.id):
        await update.message.reply_text(f"🗑️ {quest.title} deleted.")


@authorized_only
async def cmd_reset(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    quest = await _quest_from_args(update, context)
    if quest is None:
        return
    if await _coordinator(context).on_reset_requested(quest.id) is not None:
        await update.message.reply_text(f"🔄 {quest.title} timer reset to 00:00.")


# ---------------------------------------------------------------------------
# Commands: sub-quests
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_sub(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    quest = await _quest_from_args(update, context)
    if quest is None:
        return
    rest = list(context.args[1:])
    difficulty = QuestDifficulty.ROUTINE
    if rest and rest[0].lower() in {d.value for d in QuestDifficulty}:
        difficulty = QuestDifficulty(rest.pop(0).lower())
    title = " ".join(rest).strip()
    if not title:
        await update.message.reply_text("Usage: /sub <quest id> [routine|complex|legacy] <title>")
        return

    subquest = context.bot_data["quests"].add_subquest(quest.id, title, difficulty)
    await update.message.reply_text(
        f"➕ {quest.title} / {subquest.title} [{short_id(subquest.id)}] "
        f"({difficulty.value}, {difficulty.xp_reward} XP)"
    )


@authorized_only
async def cmd_subs(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    quest = await _quest_from_args(update, context)
    if quest is None:
        return
    subquests = context.bot_data["quests"].list_subquests(quest.id)
    if not subquests:
        await update.message.reply_text(f"{quest.title} has no sub-quests.")
        return

    now = datetime.now(timezone.utc)
    lines = [f"{quest.title} — {quest_progress(quest, subquests):.0%}"]
    for s in subquests:
        mark = "✅" if s.is_completed else ("▶️" if s.is_timer_active else "▫️")
        elapsed = format_duration(session_timer.live_elapsed(s, now))
        lines.append(f"{mark} [{short_id(s.id)}] {s.title} ({s.difficulty.value}) — {elapsed}")
    await update.message.reply_text("\n".join(lines))


async def _subquest_from_args(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not context.args:
        await update.message.reply_text("Which sub-quest? Pass its id from /subs.")
        return None
    subquests = context.bot_data["quests"].list_subquests()
    subquest = resolve_prefix(subquests, context.args[0], key=lambda s: s.id)
    if subquest is None:
        await update.message.reply_text(f"No single sub-quest matches '{context.args[0]}'.")
    return subquest


@authorized_only
async def cmd_subgo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    subquest = await _subquest_from_args(update, context)
    if subquest is None:
        return
    result = await _coordinator(context).on_subquest_start_requested(subquest.id)
    if result is not None and result.ok:
        await update.message.reply_text(f"▶️ {subquest.title} — timer running.")


@authorized_only
async def cmd_subpause(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    subquest = await _subquest_from_args(update, context)
    if subquest is None:
        return
    result = await _coordinator(context).on_subquest_stop_requested(subquest.id)
    if result is not None and result.ok:
        await update.message.reply_text(
            f"⏸️ {subquest.title} paused (+{format_duration(result.elapsed)})"
        )


@authorized_only
async def cmd_tick(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    subquest = await _subquest_from_args(update, context)
    if subquest is None:
        return
    outcome = await _coordinator(context).on_subquest_toggled(subquest.id, completed=True)
    if outcome is None:
        return
    bonus = f" (+{outcome.reward.xp_gained} XP)" if outcome.reward else ""
    await update.message.reply_text(f"✅ {subquest.title}{bonus}")


@authorized_only
async def cmd_untick(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    subquest = await _subquest_from_args(update, context)
    if subquest is None:
        return
    if await _coordinator(context).on_subquest_toggled(subquest.id, completed=False) is not None:
        await update.message.reply_text(f"↩️ {subquest.title} reopened.")


# ---------------------------------------------------------------------------
# Commands: todos
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_todo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    parsed = parse_todo_args(context.args or [], ZoneInfo(settings.TIMEZONE))
    if parsed is None:
        await update.message.reply_text(
            "Usage: /todo 2025-03-01 17:00 [priority] [-15m] <title> [| notes]"
        )
        return

    todo = TodoItem(
        title=parsed.title,
        notes=parsed.notes,
        due_date=parsed.due_date,
        priority=parsed.priority,
        reminder_offset=parsed.reminder_offset,
    )
    result = await _coordinator(context).on_todo_edited(todo)
    when = todo.reminder_date.astimezone(ZoneInfo(settings.TIMEZONE)).strftime("%Y-%m-%d %H:%M")
    if result.status is ScheduleStatus.SCHEDULED:
        note = f"reminder at {when}"
    elif result.status is ScheduleStatus.SKIPPED:
        note = "reminder time already passed"
    else:
        note = "no reminder scheduled"
    await update.message.reply_text(f"📝 [{short_id(todo.id)}] {todo.title} — {note}")


@authorized_only
async def cmd_todos(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    todos = context.bot_data["todos"].list_todos()
    if not todos:
        await update.message.reply_text("No open todos.")
        return
    tz = ZoneInfo(settings.TIMEZONE)
    now = datetime.now(timezone.utc)
    lines = []
    for t in todos:
        due = t.due_date.astimezone(tz).strftime("%m-%d %H:%M")
        overdue = " ⏰ overdue" if t.is_overdue(now) else ""
        lines.append(f"[{short_id(t.id)}] {t.priority.value.upper()} {t.title} — {due}{overdue}")
    await update.message.reply_text("\n".join(lines))


async def _todo_from_args(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not context.args:
        await update.message.reply_text("Which todo? Pass its id from /todos.")
        return None
    todos = context.bot_data["todos"].list_todos(include_completed=True)
    todo = resolve_prefix(todos, context.args[0], key=lambda t: t.id)
    if todo is None:
        await update.message.reply_text(f"No single todo matches '{context.args[0]}'.")
    return todo


@authorized_only
async def cmd_done(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    todo = await _todo_from_args(update, context)
    if todo is None:
        return
    await _coordinator(context).on_todo_completed(todo.id, completed=True)
    bonus = "" if todo.reward_claimed else f" (+{todo.priority.xp_reward} XP)"
    await update.message.reply_text(f"✅ {todo.title}{bonus}")


@authorized_only
async def cmd_undo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    todo = await _todo_from_args(update, context)
    if todo is None:
        return
    await _coordinator(context).on_todo_completed(todo.id, completed=False)
    await update.message.reply_text(f"↩️ {todo.title} reopened.")


@authorized_only
async def cmd_deltodo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    todo = await _todo_from_args(update, context)
    if todo is None:
        return
    if await _coordinator(context).on_todo_deleted(todo.id):
        await update.message.reply_text(f"🗑️ {todo.title} deleted.")


# ---------------------------------------------------------------------------
# Commands: profile & notifications
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_profile(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    profile = _coordinator(context).profile()
    rewards = ", ".join(reward_name(k) for k in profile.unlocked_rewards) or "none"
    await update.message.reply_text(
        f"LVL {profile.level} — {profile.experience} XP "
        f"({level_progress(profile.experience):.0%}, {xp_to_next_level(profile.experience)} to next)\n"
        f"Nanobytes: {profile.nanobytes}\n"
        f"Focus time: {format_duration(profile.total_focus_seconds)}\n"
        f"Unlocked: {rewards}"
    )


@authorized_only
async def cmd_notify(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    choice = (context.args[0].lower() if context.args else "")
    scheduler = context.bot_data["scheduler"]
    if choice == "on":
        await scheduler.request_permission()
        results = await _coordinator(context).reschedule_all_reminders()
        count = sum(1 for r in results if r.status is ScheduleStatus.SCHEDULED)
        await update.message.reply_text(f"🔔 Notifications on. {count} reminder(s) scheduled.")
    elif choice == "off":
        await context.bot_data["authorization"].revoke()
        scheduler.cancel_all()
        await update.message.reply_text("🔕 Notifications off. Pending reminders cleared.")
    else:
        await update.message.reply_text("Usage: /notify on|off")


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


def _make_event_listener(app: Application, chat_id: int) -> Callable[[CoreEvent], Coroutine[Any, Any, None]]:
    """Forward user-facing core events to the owner's chat."""

    async def _on_event(event: CoreEvent) -> None:
        template = _ANNOUNCED_EVENTS.get(event.event_type)
        if template is None:
            return
        await app.bot.send_message(chat_id=chat_id, text=template.format(message=event.message))

    return _on_event


async def _on_startup(app: Application) -> None:
    """Jobs do not survive restarts: rebuild pending reminders from the store."""
    coordinator: MissionCoordinator = app.bot_data["coordinator"]
    await coordinator.promote_stale_quests()
    await coordinator.reschedule_all_reminders()


def build_app() -> Application:
    """Build the Telegram Application and wire the core services."""
    from forgeflow.adapters.authorization import ProfileAuthorization
    from forgeflow.adapters.telegram_notifier import TelegramNotificationCenter
    from forgeflow.core.clock import SystemClock
    from forgeflow.core.coordinator import MissionCoordinator
    from forgeflow.core.events import EventHub
    from forgeflow.core.notification_scheduler import NotificationScheduler
    from forgeflow.data.db import ProfileDB, QuestDB, TodoDB

    if not settings.ALLOWED_USER_IDS:
        print("ERROR: ALLOWED_USER_IDS must list at least one Telegram user id", file=sys.stderr)
        sys.exit(1)
    owner_id = settings.ALLOWED_USER_IDS[0]

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).post_init(_on_startup).build()

    quests = QuestDB()
    todos = TodoDB()
    profiles = ProfileDB()
    profiles.get_or_create(owner_id)

    clock = SystemClock()
    authorization = ProfileAuthorization(profiles, owner_id)
    scheduler = NotificationScheduler(
        TelegramNotificationCenter(app.job_queue, chat_id=owner_id),
        authorization,
        clock,
        tz=ZoneInfo(settings.TIMEZONE),
    )
    events = EventHub(clock)
    events.subscribe(_make_event_listener(app, owner_id))

    app.bot_data["quests"] = quests
    app.bot_data["todos"] = todos
    app.bot_data["scheduler"] = scheduler
    app.bot_data["authorization"] = authorization
    app.bot_data["events"] = events
    app.bot_data["coordinator"] = MissionCoordinator(
        quests, todos, profiles, scheduler, events, clock,
        profile_id=owner_id,
        xp_per_minute=settings.XP_PER_MINUTE,
        boss_multiplier=settings.BOSS_MULTIPLIER,
    )

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("quest", cmd_quest))
    app.add_handler(CommandHandler("boss", cmd_boss))
    app.add_handler(CommandHandler("quests", cmd_quests))
    app.add_handler(CommandHandler("go", cmd_go))
    app.add_handler(CommandHandler("pause", cmd_pause))
    app.add_handler(CommandHandler("complete", cmd_complete))
    app.add_handler(CommandHandler("drop", cmd_drop))
    app.add_handler(CommandHandler("reset", cmd_reset))
    app.add_handler(CommandHandler("sub", cmd_sub))
    app.add_handler(CommandHandler("subs", cmd_subs))
    app.add_handler(CommandHandler("subgo", cmd_subgo))
    app.add_handler(CommandHandler("subpause", cmd_subpause))
    app.add_handler(CommandHandler("tick", cmd_tick))
    app.add_handler(CommandHandler("untick", cmd_untick))
    app.add_handler(CommandHandler("todo", cmd_todo))
    app.add_handler(CommandHandler("todos", cmd_todos))
    app.add_handler(CommandHandler("done", cmd_done))
    app.add_handler(CommandHandler("undo", cmd_undo))
    app.add_handler(CommandHandler("deltodo", cmd_deltodo))
    app.add_handler(CommandHandler("profile", cmd_profile))
    app.add_handler(CommandHandler("notify", cmd_notify))

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting ForgeFlow bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
