from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from birthday_notifier.delivery import NotificationDeliveryService
from birthday_notifier.models import Event, NotificationSettings
from birthday_notifier.notification_scheduler import ReconcileDiff, apply_diff, reconcile
from birthday_notifier.planner import compute_plan

LOGGER = logging.getLogger(__name__)


class EventStore(Protocol):
    def load(self) -> list[Event]: ...

    def save(self, events: list[Event]) -> None: ...


class SettingsStore(Protocol):
    def load_settings(self) -> NotificationSettings: ...


class ReminderService:
    """Runs one reconciliation pass: load, plan, diff against pending, apply.

    Passes are serialised; a trigger arriving mid-pass waits for the running
    one and then reconciles against the state it left behind.
    """

    def __init__(
        self,
        *,
        event_store: EventStore,
        settings_store: SettingsStore,
        delivery: NotificationDeliveryService,
    ) -> None:
        self._event_store = event_store
        self._settings_store = settings_store
        self._delivery = delivery
        self._lock = asyncio.Lock()

    async def refresh(self, now: datetime) -> ReconcileDiff:
        async with self._lock:
            events = await asyncio.to_thread(self._event_store.load)
            settings = self._settings_store.load_settings()

            plan = compute_plan(
                events,
                settings.notification_time,
                timedelta(days=settings.horizon_days),
                now,
                settings.leap_day_rule,
            )
            pending = await self._delivery.get_pending()
            diff = reconcile(plan, pending)
            await apply_diff(diff, self._delivery)

        LOGGER.info("Reconciled %s events at %s", len(events), now.isoformat())
        return diff


def now_in_timezone(timezone_name: str) -> datetime:
    tz = ZoneInfo(timezone_name)
    return datetime.now(tz)
