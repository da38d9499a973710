from __future__ import annotations

import logging
from datetime import datetime, time, timedelta

from birthday_notifier.date_logic import next_occurrence
from birthday_notifier.models import REMINDER_OFFSETS, Event, ReminderEntry

LOGGER = logging.getLogger(__name__)

REMINDER_COPY = {
    7: ("🎉 Upcoming Birthday!", "{name} turns {age} in 7 days!"),
    1: ("🎉 Upcoming Birthday Tomorrow!", "{name} turns {age} tomorrow!"),
    0: ("🎉 Happy Birthday Today!", "{name} turns {age} today!"),
}


def reminder_id(event_id: str, offset_days: int) -> str:
    return f"{event_id}-{offset_days}"


def reminder_copy(offset_days: int, name: str, age: int) -> tuple[str, str]:
    title, body = REMINDER_COPY[offset_days]
    return title, body.format(name=name, age=age)


def compute_plan(
    events: list[Event],
    notification_time: time,
    horizon: timedelta,
    now: datetime,
    leap_day_rule: str = "feb28",
) -> list[ReminderEntry]:
    """Build the reminders that should be pending with the delivery service.

    A reminder is kept only when it fires after ``now`` and falls on or before
    the last day of the horizon window. The result depends on nothing but the
    arguments, so repeated calls produce identical entries.
    """
    today = now.date()
    last_day = (now + horizon).date()
    plan: list[ReminderEntry] = []

    for event in events:
        if not event.notifications_enabled:
            continue

        occurrence = next_occurrence(event, today, leap_day_rule)
        for offset_days in REMINDER_OFFSETS:
            candidate = occurrence.date - timedelta(days=offset_days)
            trigger = datetime.combine(candidate, notification_time, tzinfo=now.tzinfo)
            if trigger <= now or trigger.date() > last_day:
                continue

            title, body = reminder_copy(offset_days, event.name, occurrence.age_at_occurrence)
            plan.append(
                ReminderEntry(
                    id=reminder_id(event.id, offset_days),
                    event_id=event.id,
                    offset_days=offset_days,
                    title=title,
                    body=body,
                    trigger_instant=trigger,
                )
            )

    plan.sort(key=lambda entry: (entry.trigger_instant, entry.id))
    LOGGER.info("Plan computed: %s reminders for %s events", len(plan), len(events))
    return plan
