from __future__ import annotations

import logging
import os
import tempfile
import tomllib
import uuid
from datetime import date, datetime, time
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from birthday_notifier.models import (
    DEFAULT_HORIZON_DAYS,
    DEFAULT_LEAP_DAY_RULE,
    DEFAULT_NOTIFICATION_TIME,
    DEFAULT_TIMEZONE,
    AppConfig,
    Event,
    NotificationSettings,
)

LOGGER = logging.getLogger(__name__)

ALLOWED_LEAP_DAY_RULES = {"feb28", "mar1"}
MAX_HORIZON_DAYS = 366


def _toml_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def parse_notification_time(value: str) -> str:
    pieces = value.split(":")
    if len(pieces) != 2:
        raise ValueError("notification_time must be in HH:MM format")

    hour, minute = pieces
    if not hour.isdigit() or not minute.isdigit():
        raise ValueError("notification_time must contain numeric hour/minute")

    hour_i = int(hour)
    minute_i = int(minute)
    if hour_i < 0 or hour_i > 23 or minute_i < 0 or minute_i > 59:
        raise ValueError("notification_time must be a valid 24-hour time")

    return f"{hour_i:02d}:{minute_i:02d}"


def parse_time_string(value: str) -> time:
    hour, minute = parse_notification_time(value).split(":")
    return time(hour=int(hour), minute=int(minute))


def _parse_birth_date(value: object) -> date:
    if isinstance(value, datetime):
        raise ValueError("birth_date must be a date without a time component")
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValueError(f"Invalid birth_date: {value!r}") from exc


def validate_config(config: AppConfig) -> AppConfig:
    timezone = config.timezone.strip()
    if not timezone:
        raise ValueError("timezone must not be empty")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {timezone}") from exc

    notification_time = parse_notification_time(config.notification_time)

    leap_day_rule = config.leap_day_rule.strip().lower()
    if leap_day_rule not in ALLOWED_LEAP_DAY_RULES:
        raise ValueError(f"leap_day_rule must be one of {sorted(ALLOWED_LEAP_DAY_RULES)}")

    if config.horizon_days < 1 or config.horizon_days > MAX_HORIZON_DAYS:
        raise ValueError(f"horizon_days must be between 1 and {MAX_HORIZON_DAYS}")

    seen_ids: set[str] = set()
    validated_events: list[Event] = []
    for event in config.events:
        name = event.name.strip()
        if not name:
            raise ValueError("event name must not be empty")

        if event.birth_date.year < 1900 or event.birth_date.year > 3000:
            raise ValueError("birth_date year must be between 1900 and 3000")

        event_id = event.id.strip()
        if event_id:
            if event_id in seen_ids:
                raise ValueError(f"Duplicate event id: {event_id}")
            seen_ids.add(event_id)

        validated_events.append(
            Event(
                id=event_id,
                name=name,
                birth_date=event.birth_date,
                notifications_enabled=bool(event.notifications_enabled),
            )
        )

    return AppConfig(
        timezone=timezone,
        notification_time=notification_time,
        leap_day_rule=leap_day_rule,
        horizon_days=int(config.horizon_days),
        events=validated_events,
    )


def load_config(path: Path) -> AppConfig:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with path.open("rb") as file_obj:
        data = tomllib.load(file_obj)

    rows = data.get("events", [])
    if not isinstance(rows, list):
        raise ValueError("events must be an array of tables")

    horizon_days = data.get("horizon_days", DEFAULT_HORIZON_DAYS)
    if isinstance(horizon_days, bool) or not isinstance(horizon_days, int):
        raise ValueError("horizon_days must be an integer")

    events: list[Event] = []
    for row in rows:
        if not isinstance(row, dict):
            raise ValueError("each entry in events must be a table")
        events.append(
            Event(
                id=str(row.get("id", "")),
                name=str(row.get("name", "")),
                birth_date=_parse_birth_date(row.get("birth_date", "")),
                notifications_enabled=bool(row.get("notifications_enabled", True)),
            )
        )

    config = AppConfig(
        timezone=str(data.get("timezone", DEFAULT_TIMEZONE)),
        notification_time=str(data.get("notification_time", DEFAULT_NOTIFICATION_TIME)),
        leap_day_rule=str(data.get("leap_day_rule", DEFAULT_LEAP_DAY_RULE)),
        horizon_days=horizon_days,
        events=events,
    )
    return validate_config(config)


def render_config(config: AppConfig) -> str:
    validated = validate_config(config)

    lines: list[str] = [
        f'timezone = "{_toml_escape(validated.timezone)}"',
        f'notification_time = "{validated.notification_time}"',
        f'leap_day_rule = "{validated.leap_day_rule}"',
        f"horizon_days = {validated.horizon_days}",
        "",
        "# Reminders fire 7 days before, 1 day before and on the day, at notification_time.",
        "",
    ]

    for event in validated.events:
        lines.append("[[events]]")
        if event.id:
            lines.append(f'id = "{_toml_escape(event.id)}"')
        lines.append(f'name = "{_toml_escape(event.name)}"')
        lines.append(f"birth_date = {event.birth_date.isoformat()}")
        if not event.notifications_enabled:
            lines.append("notifications_enabled = false")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def save_config_atomic(path: Path, config: AppConfig) -> None:
    rendered = render_config(config)
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        delete=False,
    ) as temp_file:
        temp_file.write(rendered)
        temp_name = temp_file.name

    os.replace(temp_name, path)


def default_config() -> AppConfig:
    return AppConfig(
        timezone=DEFAULT_TIMEZONE,
        notification_time=DEFAULT_NOTIFICATION_TIME,
        leap_day_rule=DEFAULT_LEAP_DAY_RULE,
        horizon_days=DEFAULT_HORIZON_DAYS,
        events=[],
    )


def ensure_default_config(path: Path) -> None:
    if path.exists():
        return
    save_config_atomic(path, default_config())


def settings_from_config(config: AppConfig) -> NotificationSettings:
    return NotificationSettings(
        timezone=config.timezone,
        notification_time=parse_time_string(config.notification_time),
        horizon_days=config.horizon_days,
        leap_day_rule=config.leap_day_rule,
    )


class TomlConfigStore:
    """Event store and notification settings backed by one TOML document.

    Background readers never see an exception: a missing or broken document
    yields no events and the default settings.
    """

    def __init__(self, config_path: Path) -> None:
        self._config_path = config_path

    def load(self) -> list[Event]:
        try:
            config = load_config(self._config_path)
            return self._identify(config)
        except (OSError, tomllib.TOMLDecodeError, ValueError) as exc:
            LOGGER.warning("Event store load failed, continuing with no events: %s", exc)
            return []

    def save(self, events: list[Event]) -> None:
        try:
            config = load_config(self._config_path)
        except FileNotFoundError:
            config = default_config()

        save_config_atomic(
            self._config_path,
            AppConfig(
                timezone=config.timezone,
                notification_time=config.notification_time,
                leap_day_rule=config.leap_day_rule,
                horizon_days=config.horizon_days,
                events=list(events),
            ),
        )

    def load_settings(self) -> NotificationSettings:
        try:
            config = load_config(self._config_path)
        except (OSError, tomllib.TOMLDecodeError, ValueError) as exc:
            LOGGER.warning("Settings load failed, using defaults: %s", exc)
            config = default_config()
        return settings_from_config(config)

    def save_notification_time(self, value: str) -> str:
        normalized = parse_notification_time(value.strip())
        try:
            config = load_config(self._config_path)
        except FileNotFoundError:
            config = default_config()

        save_config_atomic(
            self._config_path,
            AppConfig(
                timezone=config.timezone,
                notification_time=normalized,
                leap_day_rule=config.leap_day_rule,
                horizon_days=config.horizon_days,
                events=config.events,
            ),
        )
        LOGGER.info("Saved notification time %s", normalized)
        return normalized

    def _identify(self, config: AppConfig) -> list[Event]:
        # Ids are written back so reminders keep their identifiers across runs.
        if all(event.id for event in config.events):
            return config.events

        events = [
            event
            if event.id
            else Event(
                id=str(uuid.uuid4()),
                name=event.name,
                birth_date=event.birth_date,
                notifications_enabled=event.notifications_enabled,
            )
            for event in config.events
        ]
        save_config_atomic(
            self._config_path,
            AppConfig(
                timezone=config.timezone,
                notification_time=config.notification_time,
                leap_day_rule=config.leap_day_rule,
                horizon_days=config.horizon_days,
                events=events,
            ),
        )
        LOGGER.info("Assigned ids to %s events", sum(1 for event in config.events if not event.id))
        return events
