from __future__ import annotations

from datetime import date

from birthday_notifier.models import Event, Occurrence


class InvalidBirthdayError(ValueError):
    pass


def is_leap_year(year: int) -> bool:
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def occurrence_date_for_year(birth_date: date, year: int, leap_day_rule: str) -> date:
    if birth_date.month == 2 and birth_date.day == 29 and not is_leap_year(year):
        if leap_day_rule == "feb28":
            return date(year, 2, 28)
        if leap_day_rule == "mar1":
            return date(year, 3, 1)
        raise InvalidBirthdayError(f"Unsupported leap day rule: {leap_day_rule}")
    return date(year, birth_date.month, birth_date.day)


def next_occurrence(event: Event, today: date, leap_day_rule: str = "feb28") -> Occurrence:
    """Return the occurrence on or after ``today``.

    A birthday falling on ``today`` is the next occurrence, not the last one.
    """
    occurrence = occurrence_date_for_year(event.birth_date, today.year, leap_day_rule)
    if occurrence < today:
        occurrence = occurrence_date_for_year(event.birth_date, today.year + 1, leap_day_rule)
    return Occurrence(
        event_id=event.id,
        date=occurrence,
        age_at_occurrence=occurrence.year - event.birth_date.year,
    )


def last_occurrence(event: Event, today: date, leap_day_rule: str = "feb28") -> Occurrence:
    """Return the most recent occurrence strictly before ``today``."""
    occurrence = occurrence_date_for_year(event.birth_date, today.year, leap_day_rule)
    if occurrence >= today:
        occurrence = occurrence_date_for_year(event.birth_date, today.year - 1, leap_day_rule)
    return Occurrence(
        event_id=event.id,
        date=occurrence,
        age_at_occurrence=occurrence.year - event.birth_date.year,
    )


def days_until(occurrence: Occurrence, today: date) -> int:
    return (occurrence.date - today).days


def days_since(occurrence: Occurrence, today: date) -> int:
    return (today - occurrence.date).days
