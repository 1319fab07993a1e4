import calendar
import math
from datetime import datetime, timedelta


def add_months(value: datetime, months: int = 1) -> datetime:
    """Shift by calendar months, clamping the day to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def days_remaining(period_end: datetime, now: datetime) -> int:
    """Whole days left until ``period_end``; partial days count as a full day."""
    remaining = (period_end - now) / timedelta(days=1)
    return max(math.ceil(remaining), 0)


def month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
