"""
Timezone utilities for the nutrition portal.

Appointments are stored as a local calendar date plus an ``HH:MM`` timeslot.
They are interpreted in the practice timezone, while comparisons happen on
timezone-aware datetimes.
"""

import calendar
from datetime import date, datetime, time, timezone
from typing import Optional

import pytz

from .config import settings
from .constants import TIMESLOT_FORMAT
from .exceptions import ValidationException


def get_practice_timezone() -> pytz.BaseTzInfo:
    """Return the practice timezone as a pytz timezone object."""
    return pytz.timezone(settings.practice_timezone)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def practice_today(now: Optional[datetime] = None) -> date:
    """
    Get 'today' in the practice timezone.

    Args:
        now: Optional reference instant (defaults to the current time)

    Returns:
        Today's date as seen by the practice
    """
    reference = ensure_aware(now) if now is not None else utc_now()
    return reference.astimezone(get_practice_timezone()).date()


def parse_timeslot(timeslot: str) -> time:
    """Parse an ``HH:MM`` timeslot string."""
    try:
        return datetime.strptime(timeslot.strip(), TIMESLOT_FORMAT).time()
    except (AttributeError, ValueError):
        raise ValidationException(
            f"Invalid timeslot '{timeslot}', expected HH:MM",
            code="INVALID_TIMESLOT",
            details={"timeslot": timeslot},
        )


def appointment_start(appointment_date: date, timeslot: str) -> datetime:
    """Combine an appointment date and timeslot into an aware datetime."""
    tz = get_practice_timezone()
    naive = datetime.combine(appointment_date, parse_timeslot(timeslot))
    return tz.localize(naive)


def hours_until(start: datetime, now: datetime) -> float:
    """Hours from ``now`` until ``start`` (negative once the start has passed)."""
    delta = ensure_aware(start) - ensure_aware(now)
    return delta.total_seconds() / 3600


def add_months(value: date, months: int = 1) -> date:
    """Add calendar months keeping the day of month, clamped to the target month length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)
