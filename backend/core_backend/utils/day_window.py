"""
Business day window.

Every "today" query (today's orders, today's paid order, today's group sum)
filters date_added against the window returned by today_window(). By default
the business day runs from local midnight to the next local midnight; the
GROUPEAT DAY_START_HOUR / DAY_END_HOUR settings pin it to fixed hours of the
current day instead.
"""
from datetime import date, datetime, time, timedelta
from typing import NamedTuple, Optional

from django.utils import timezone

from core_backend.config import app_settings


class DayWindow(NamedTuple):
    start: datetime
    end: datetime

    def __contains__(self, moment) -> bool:
        return self.start <= moment <= self.end


def now() -> datetime:
    return timezone.now()


def _local(moment: Optional[datetime]) -> datetime:
    return timezone.localtime(moment if moment is not None else now())


def _at_hour(day: date, hour: int) -> datetime:
    # Build each boundary through the zone so its UTC offset is the one in
    # effect at that hour, also on DST change days.
    return timezone.make_aware(datetime.combine(day, time(hour)), timezone.get_current_timezone())


def today_window(now: Optional[datetime] = None) -> DayWindow:
    """
    Return the (start, end) bounds of the current business day as aware
    datetimes in the active time zone. Both ends are inclusive.
    """
    today = _local(now).date()

    start_hour = app_settings.DAY_START_HOUR
    end_hour = app_settings.DAY_END_HOUR

    start = _at_hour(today, start_hour or 0)

    if end_hour is None:
        end = _at_hour(today + timedelta(days=1), 0)
    else:
        end = _at_hour(today, end_hour)

    return DayWindow(start, end)


def is_order_time(now: Optional[datetime] = None) -> bool:
    """
    Orders are accepted all day unless both fixed hours are configured, in
    which case only between the start hour (inclusive) and the end hour.
    """
    start_hour = app_settings.DAY_START_HOUR
    end_hour = app_settings.DAY_END_HOUR

    if start_hour is None or end_hour is None:
        return True

    return start_hour <= _local(now).hour < end_hour
