from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import RecurringInterval


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    # day-of-month is kept where the target month has it, else snapped to the last day
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def calculate_next_date(start: date, interval: RecurringInterval) -> date:
    """Next occurrence after ``start`` for the given interval.

    Month and year steps preserve the day of month where valid and snap to the
    last day of the target month otherwise (Jan 31 -> Feb 29 in a leap year,
    Feb 29 -> Feb 28 the following year).
    """
    interval = RecurringInterval(interval)
    if interval == RecurringInterval.daily:
        return start + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return start + timedelta(weeks=1)
    if interval == RecurringInterval.monthly:
        return _add_months(start, 1)
    return _add_months(start, 12)


def next_recurring_date(
    start: date,
    is_recurring: bool,
    interval: Optional[RecurringInterval],
) -> Optional[date]:
    if is_recurring and interval:
        return calculate_next_date(start, interval)
    return None
