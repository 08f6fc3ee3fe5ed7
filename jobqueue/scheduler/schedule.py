import re
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from jobqueue.domain.errors import ScheduleError
from jobqueue.domain.models import utcnow

_INTERVAL_RE = re.compile(r"^every\s+(\d+)\s+(second|minute|hour|day|week)s?$", re.IGNORECASE)

_UNITS = {
    "second": timedelta(seconds=1),
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}


def parse_interval(schedule: str) -> Optional[timedelta]:
    """'every 5 minutes' -> timedelta(minutes=5). None if not interval syntax."""
    match = _INTERVAL_RE.match(schedule.strip())
    if not match:
        return None

    count = int(match.group(1))
    if count <= 0:
        raise ScheduleError(f"Invalid schedule: \"{schedule}\" (interval must be positive)")
    return count * _UNITS[match.group(2).lower()]


def get_zone(timezone: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise ScheduleError(f"Unknown timezone: \"{timezone}\"") from e


def next_fire_time(schedule: str, timezone: str = "UTC", after: Optional[datetime] = None) -> datetime:
    """
    Returns the first fire time strictly after `after` (default now) as aware UTC.

    Interval schedules are relative to `after`; cron expressions are evaluated
    in the given IANA timezone.
    """
    after = after or utcnow()
    if after.tzinfo is None:
        after = after.replace(tzinfo=dt_timezone.utc)

    zone = get_zone(timezone)

    interval = parse_interval(schedule)
    if interval is not None:
        return (after + interval).astimezone(dt_timezone.utc)

    if not croniter.is_valid(schedule):
        raise ScheduleError(
            f"Invalid schedule format: \"{schedule}\". Use cron expression (e.g., \"0 9 * * *\") "
            f"or interval (e.g., \"every 5 minutes\")"
        )

    local_after = after.astimezone(zone)
    return croniter(schedule, local_after).get_next(datetime).astimezone(dt_timezone.utc)


def validate_schedule(schedule: str, timezone: str = "UTC") -> None:
    next_fire_time(schedule, timezone)
