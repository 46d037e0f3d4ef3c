"""Billing interval arithmetic"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from redemption_engine.models.product import IntervalType

logger = logging.getLogger(__name__)

# Fixed-length intervals; month and year are calendar based
FIXED_INTERVALS = {
    IntervalType.ONE_MINUTE.value: timedelta(minutes=1),
    IntervalType.FIVE_MINUTES.value: timedelta(minutes=5),
    IntervalType.DAILY.value: timedelta(days=1),
    IntervalType.WEEK.value: timedelta(days=7),
}


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months. Days past the end of the target month roll over into the following one."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    return value.replace(year=year, month=month, day=1) + timedelta(days=value.day - 1)


def _advance(value: datetime, interval_type: Optional[str], units: int) -> datetime:
    if interval_type in FIXED_INTERVALS:
        return value + FIXED_INTERVALS[interval_type] * units
    if interval_type == IntervalType.YEAR.value:
        return add_months(value, 12 * units)
    if interval_type != IntervalType.MONTH.value:
        logger.debug(f"Unknown interval type {interval_type!r}, falling back to monthly")
    return add_months(value, units)


def calculate_next_redemption(interval_type: Optional[str], from_time: datetime) -> datetime:
    """Timestamp one billing interval after from_time.

    Unrecognized interval types are treated as monthly.
    """
    return _advance(from_time, interval_type, 1)


def calculate_period_end(start: datetime, interval_type: Optional[str], term_length: int) -> datetime:
    """End of a subscription period lasting term_length intervals from start"""
    return _advance(start, interval_type, term_length)
