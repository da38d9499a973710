from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time


# Days before the occurrence: a week-ahead nudge, a day-ahead nudge, the day itself.
REMINDER_OFFSETS = (7, 1, 0)

DEFAULT_NOTIFICATION_TIME = "09:00"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_HORIZON_DAYS = 30
DEFAULT_LEAP_DAY_RULE = "feb28"


@dataclass(frozen=True)
class Event:
    id: str
    name: str
    birth_date: date
    notifications_enabled: bool = True


@dataclass(frozen=True)
class Occurrence:
    event_id: str
    date: date
    age_at_occurrence: int


@dataclass(frozen=True)
class ReminderEntry:
    id: str
    event_id: str
    offset_days: int
    title: str
    body: str
    trigger_instant: datetime


@dataclass(frozen=True)
class PendingReminder:
    id: str
    trigger_instant: datetime
    title: str | None = None
    body: str | None = None


@dataclass(frozen=True)
class RefreshRequest:
    identifier: str
    earliest_begin: datetime


@dataclass(frozen=True)
class NotificationSettings:
    timezone: str
    notification_time: time
    horizon_days: int
    leap_day_rule: str


@dataclass(frozen=True)
class AppConfig:
    timezone: str
    notification_time: str
    leap_day_rule: str
    horizon_days: int
    events: list[Event]
