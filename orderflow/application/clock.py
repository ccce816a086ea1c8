"""Business-day arithmetic; stored timestamps are naive UTC."""

from datetime import datetime, time, timedelta, timezone
from typing import Tuple
from zoneinfo import ZoneInfo


def to_local(moment: datetime, tz: ZoneInfo) -> datetime:
    return moment.replace(tzinfo=timezone.utc).astimezone(tz)


def to_utc_naive(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def day_bounds(now: datetime, tz: ZoneInfo, offset_days: int = 0) -> Tuple[datetime, datetime]:
    """UTC [start, end) of the local calendar day ``offset_days`` after ``now``'s."""
    local_day = to_local(now, tz).date() + timedelta(days=offset_days)
    start = datetime.combine(local_day, time.min, tzinfo=tz)
    return to_utc_naive(start), to_utc_naive(start + timedelta(days=1))


def month_start(now: datetime, tz: ZoneInfo) -> datetime:
    local = to_local(now, tz)
    return to_utc_naive(datetime(local.year, local.month, 1, tzinfo=tz))


def local_date_label(now: datetime, tz: ZoneInfo, offset_days: int = 0) -> str:
    return (to_local(now, tz).date() + timedelta(days=offset_days)).strftime("%d/%m/%Y")
