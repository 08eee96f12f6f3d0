"""Time utilities (UTC now, settlement-day boundaries)."""
from __future__ import annotations
from datetime import date, datetime, time, timezone, timedelta
from zoneinfo import ZoneInfo

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (sqlite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

def local_day_bounds(day: date, tz_name: str) -> tuple[datetime, datetime]:
    """First and last instant of ``day`` in ``tz_name``, end inclusive."""
    tz = ZoneInfo(tz_name)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day, time.max, tzinfo=tz)
    return start, end

def settlement_day_for(run_date: date) -> date:
    """A run on ``run_date`` settles the previous calendar day."""
    return run_date - timedelta(days=1)

def local_today(tz_name: str, now: datetime | None = None) -> date:
    return (now or utc_now()).astimezone(ZoneInfo(tz_name)).date()

def next_local_time(now: datetime, hour: int, minute: int, tz_name: str) -> datetime:
    """Next occurrence (strictly after ``now``) of hour:minute local time."""
    tz = ZoneInfo(tz_name)
    local_now = ensure_aware(now).astimezone(tz)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), time(hour, minute), tzinfo=tz)
    return candidate

__all__ = [
    "utc_now",
    "ensure_aware",
    "local_day_bounds",
    "settlement_day_for",
    "local_today",
    "next_local_time",
]
