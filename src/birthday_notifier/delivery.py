from __future__ import annotations

import logging
from typing import Protocol

from telegram.error import Forbidden
from telegram.ext import CallbackContext, JobQueue

from birthday_notifier.models import PendingReminder, ReminderEntry

LOGGER = logging.getLogger(__name__)


class NotificationDeliveryService(Protocol):
    async def get_pending(self) -> list[PendingReminder]: ...

    async def add(self, entry: ReminderEntry) -> None: ...

    async def remove_by_id(self, identifiers: list[str]) -> None: ...

    async def remove_all(self) -> None: ...


def format_reminder_message(entry: ReminderEntry) -> str:
    return f"{entry.title}\n{entry.body}"


def _as_pending(entry: ReminderEntry) -> PendingReminder:
    return PendingReminder(
        id=entry.id,
        trigger_instant=entry.trigger_instant,
        title=entry.title,
        body=entry.body,
    )


class TelegramNotificationDeliveryService:
    """Holds reminders as one-shot JobQueue jobs that message the owner chat.

    Each job is named after its reminder id, so adding an entry whose id is
    already pending replaces the earlier job.
    """

    def __init__(self, job_queue: JobQueue, chat_id: int) -> None:
        self._job_queue = job_queue
        self._chat_id = chat_id

    async def get_pending(self) -> list[PendingReminder]:
        return [
            _as_pending(job.data)
            for job in self._job_queue.jobs()
            if isinstance(job.data, ReminderEntry)
        ]

    async def add(self, entry: ReminderEntry) -> None:
        self._remove_jobs(entry.id)
        self._job_queue.run_once(
            self._deliver,
            when=entry.trigger_instant,
            data=entry,
            name=entry.id,
            chat_id=self._chat_id,
        )

    async def remove_by_id(self, identifiers: list[str]) -> None:
        for identifier in identifiers:
            self._remove_jobs(identifier)

    async def remove_all(self) -> None:
        for job in self._job_queue.jobs():
            if isinstance(job.data, ReminderEntry):
                job.schedule_removal()

    def _remove_jobs(self, identifier: str) -> None:
        for job in self._job_queue.get_jobs_by_name(identifier):
            if isinstance(job.data, ReminderEntry):
                job.schedule_removal()

    @staticmethod
    async def _deliver(context: CallbackContext) -> None:
        entry: ReminderEntry = context.job.data
        try:
            await context.bot.send_message(chat_id=context.job.chat_id, text=format_reminder_message(entry))
        except Forbidden:
            LOGGER.warning("Reminder %s not delivered: chat %s blocked the bot", entry.id, context.job.chat_id)
            return
        LOGGER.info("Delivered reminder %s", entry.id)


class InMemoryNotificationDeliveryService:
    """Delivery service that keeps pending reminders in a dict.

    With ``authorized=False`` it behaves like a service whose user declined
    notifications: additions are accepted but never show up as pending.
    """

    def __init__(self, pending: list[ReminderEntry] | None = None, *, authorized: bool = True) -> None:
        self.authorized = authorized
        self.entries: dict[str, ReminderEntry] = {entry.id: entry for entry in pending or []}
        self.foreign: dict[str, PendingReminder] = {}
        self.added_ids: list[str] = []
        self.removed_ids: list[str] = []

    async def get_pending(self) -> list[PendingReminder]:
        return [_as_pending(entry) for entry in self.entries.values()] + list(self.foreign.values())

    async def add(self, entry: ReminderEntry) -> None:
        self.added_ids.append(entry.id)
        if self.authorized:
            self.entries[entry.id] = entry

    async def remove_by_id(self, identifiers: list[str]) -> None:
        for identifier in identifiers:
            self.removed_ids.append(identifier)
            self.entries.pop(identifier, None)
            self.foreign.pop(identifier, None)

    async def remove_all(self) -> None:
        self.removed_ids.extend(self.entries)
        self.removed_ids.extend(self.foreign)
        self.entries.clear()
        self.foreign.clear()
