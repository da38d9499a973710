from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from birthday_notifier.delivery import NotificationDeliveryService
from birthday_notifier.models import REMINDER_OFFSETS, PendingReminder, ReminderEntry

LOGGER = logging.getLogger(__name__)

_MANAGED_ID_RE = re.compile(
    r"(?P<event_id>.+)-(?P<offset>{})".format("|".join(str(offset) for offset in REMINDER_OFFSETS))
)


@dataclass(frozen=True)
class ReconcileDiff:
    to_add: list[ReminderEntry] = field(default_factory=list)
    to_remove: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def is_managed_reminder_id(identifier: str) -> bool:
    return _MANAGED_ID_RE.fullmatch(identifier) is not None


def _is_stale(entry: ReminderEntry, pending: PendingReminder) -> bool:
    if pending.trigger_instant != entry.trigger_instant:
        return True
    # Services that only report {id, trigger} are compared on the trigger alone.
    if pending.title is not None and pending.title != entry.title:
        return True
    if pending.body is not None and pending.body != entry.body:
        return True
    return False


def reconcile(desired: list[ReminderEntry], pending: list[PendingReminder]) -> ReconcileDiff:
    pending_by_id = {reminder.id: reminder for reminder in pending}
    desired_ids = {entry.id for entry in desired}

    to_add = [
        entry
        for entry in desired
        if entry.id not in pending_by_id or _is_stale(entry, pending_by_id[entry.id])
    ]
    to_remove = sorted(
        identifier
        for identifier in pending_by_id
        if identifier not in desired_ids and is_managed_reminder_id(identifier)
    )

    LOGGER.info("Diff computed: %s to add, %s to remove", len(to_add), len(to_remove))
    return ReconcileDiff(to_add=to_add, to_remove=to_remove)


async def apply_diff(diff: ReconcileDiff, delivery: NotificationDeliveryService) -> None:
    if diff.is_empty:
        return

    try:
        if diff.to_remove:
            await delivery.remove_by_id(diff.to_remove)
        for entry in diff.to_add:
            await delivery.add(entry)
    except Exception:
        LOGGER.exception(
            "Apply failed: %s additions and %s removals requested",
            len(diff.to_add),
            len(diff.to_remove),
        )
        raise

    LOGGER.info("Apply succeeded: added %s, removed %s", len(diff.to_add), len(diff.to_remove))
