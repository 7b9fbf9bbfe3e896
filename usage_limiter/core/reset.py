"""
Reset schedule calculations.

Maps a named reset frequency and the last reset timestamp to the
next reset timestamp.

Calendar Convention:
Month and year offsets clamp to the last day of the target month,
so Jan 31 + 1 month is Feb 28 (or 29) and Feb 29 + 1 year is Feb 28.
"""

import calendar
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Union

from .errors import InvalidResetFrequency


class ResetFrequency(Enum):
    """Supported reset frequencies."""
    EVERY_SECOND = "every second"
    EVERY_MINUTE = "every minute"
    EVERY_HOUR = "every hour"
    EVERY_DAY = "every day"
    EVERY_WEEK = "every week"
    EVERY_TWO_WEEKS = "every two weeks"
    EVERY_MONTH = "every month"
    EVERY_QUARTER = "every quarter"
    EVERY_SIX_MONTHS = "every six months"
    EVERY_YEAR = "every year"

    @classmethod
    def options(cls) -> List[str]:
        """Return every recognized frequency token."""
        return [frequency.value for frequency in cls]

    @classmethod
    def parse(cls, value: Union["ResetFrequency", str]) -> "ResetFrequency":
        """Resolve a token or member into a ResetFrequency.

        Raises:
            InvalidResetFrequency: If the token is not recognized
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise InvalidResetFrequency(value)


# Fixed offsets; calendar based frequencies are handled by month count
_FIXED_OFFSETS = {
    ResetFrequency.EVERY_SECOND: timedelta(seconds=1),
    ResetFrequency.EVERY_MINUTE: timedelta(minutes=1),
    ResetFrequency.EVERY_HOUR: timedelta(hours=1),
    ResetFrequency.EVERY_DAY: timedelta(days=1),
    ResetFrequency.EVERY_WEEK: timedelta(weeks=1),
    ResetFrequency.EVERY_TWO_WEEKS: timedelta(weeks=2),
}

_MONTH_OFFSETS = {
    ResetFrequency.EVERY_MONTH: 1,
    ResetFrequency.EVERY_QUARTER: 3,
    ResetFrequency.EVERY_SIX_MONTHS: 6,
    ResetFrequency.EVERY_YEAR: 12,
}


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_reset(
    frequency: Union[ResetFrequency, str],
    last_reset: Union[datetime, str]
) -> datetime:
    """Calculate the next reset timestamp.

    Args:
        frequency: ResetFrequency member or its string token
        last_reset: Last reset as datetime or ISO-8601 string

    Returns:
        Timestamp strictly after last_reset

    Raises:
        InvalidResetFrequency: If frequency is not recognized
    """
    resolved = ResetFrequency.parse(frequency)

    if isinstance(last_reset, str):
        last_reset = datetime.fromisoformat(last_reset)

    if resolved in _FIXED_OFFSETS:
        return last_reset + _FIXED_OFFSETS[resolved]
    return add_months(last_reset, _MONTH_OFFSETS[resolved])
