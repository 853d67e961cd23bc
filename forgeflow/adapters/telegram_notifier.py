"""Telegram notification adapter — implements NotificationPort.

Each pending notification is a one-shot job on the bot's JobQueue, named
after the notification identifier, that sends a chat message when it
fires. Passive-tier notifications are sent silently.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from telegram.error import TelegramError

from forgeflow.ports.notification_port import (
    CalendarTrigger,
    InterruptionLevel,
    NotificationContent,
    NotificationRequest,
    SchedulingFailed,
)

if TYPE_CHECKING:
    from telegram.ext import ContextTypes, JobQueue

logger = logging.getLogger(__name__)


def format_notification(content: NotificationContent) -> str:
    lines = [content.title]
    if content.subtitle:
        lines.append(content.subtitle)
    lines.append(content.body)
    return "\n".join(lines)


class TelegramNotificationCenter:
    """JobQueue-backed implementation of NotificationPort for one chat."""

    def __init__(self, job_queue: JobQueue | None, chat_id: int) -> None:
        self._job_queue = job_queue
        self._chat_id = chat_id

    async def add(self, request: NotificationRequest) -> None:
        if self._job_queue is None:
            raise SchedulingFailed("Telegram job queue is not available")

        self.remove_pending([request.identifier])

        trigger = request.trigger
        when = trigger.fire_date() if isinstance(trigger, CalendarTrigger) else trigger.seconds
        try:
            self._job_queue.run_once(
                _deliver,
                when=when,
                name=request.identifier,
                chat_id=self._chat_id,
                data=request,
            )
        except Exception as exc:
            raise SchedulingFailed(f"Could not queue {request.identifier}: {exc}") from exc

    def remove_pending(self, identifiers: list[str]) -> None:
        if self._job_queue is None:
            return
        for identifier in identifiers:
            for job in self._job_queue.get_jobs_by_name(identifier):
                job.schedule_removal()

    def remove_all(self) -> None:
        if self._job_queue is None:
            return
        for job in self._job_queue.jobs():
            if isinstance(job.data, NotificationRequest):
                job.schedule_removal()

    def pending_ids(self) -> list[str]:
        if self._job_queue is None:
            return []
        return [
            job.name for job in self._job_queue.jobs()
            if isinstance(job.data, NotificationRequest)
        ]


async def _deliver(context: ContextTypes.DEFAULT_TYPE) -> None:
    """JobQueue callback: send the notification to its chat."""
    job = context.job
    request: NotificationRequest = job.data
    try:
        await context.bot.send_message(
            chat_id=job.chat_id,
            text=format_notification(request.content),
            disable_notification=request.content.interruption_level == InterruptionLevel.PASSIVE,
        )
        logger.info("Notification %s delivered to %d", request.identifier, job.chat_id)
    except TelegramError as exc:
        logger.error("Failed to deliver notification %s: %s", request.identifier, exc)
