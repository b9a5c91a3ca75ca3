import calendar
import math
from datetime import datetime, timezone

SECONDS_PER_DAY = 24 * 60 * 60


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_billing_cycle(value: datetime, billing_cycle: str) -> datetime:
    """Advance a datetime by one billing cycle ('monthly' or 'yearly')"""
    cycle = getattr(billing_cycle, "value", billing_cycle)
    if cycle == "monthly":
        return add_months(value, 1)
    if cycle == "yearly":
        return add_months(value, 12)
    raise ValueError(f"Invalid billing cycle: {billing_cycle}")


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, rounded up and floored at zero"""
    seconds = (end - start).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def days_since(value: datetime, now: datetime = None) -> float:
    """Fractional days elapsed since value"""
    now = now or utcnow()
    return (now - value).total_seconds() / SECONDS_PER_DAY
