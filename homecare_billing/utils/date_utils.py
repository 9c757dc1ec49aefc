"""Date manipulation utilities"""

import calendar
from datetime import date, datetime, time
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

DEFAULT_BILLING_TIMEZONE = "Asia/Tokyo"


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    """First and last calendar day of a month"""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def to_billing_clock(moment: datetime, timezone: str = DEFAULT_BILLING_TIMEZONE) -> datetime:
    """
    Wall-clock time in the billing time zone, returned naive.

    Aware timestamps are converted; naive ones are taken to be recorded in
    billing local time already (SQLite drops offsets).
    """
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(ZoneInfo(timezone)).replace(tzinfo=None)


def in_clock_range(moment: time, start: time, end: time) -> bool:
    """Half-open [start, end) clock range; start > end wraps past midnight"""
    if start <= end:
        return start <= moment < end
    return moment >= start or moment < end


def duration_minutes(
    start: Optional[datetime],
    end: Optional[datetime],
    timezone: str = DEFAULT_BILLING_TIMEZONE,
) -> Optional[int]:
    """Whole minutes between two timestamps, None if either is missing"""
    if start is None or end is None:
        return None
    delta = to_billing_clock(end, timezone) - to_billing_clock(start, timezone)
    return int(delta.total_seconds() // 60)
