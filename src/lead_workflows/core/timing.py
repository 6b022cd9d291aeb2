"""Wake-time arithmetic for wait, wait-until and business-hours rules."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from ..schemas import WorkflowSettings

__all__ = [
    "Clock",
    "WEEKDAYS",
    "apply_business_hours",
    "next_time_of_day",
    "parse_time_of_day",
    "utcnow",
    "wait_duration",
]

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
}


def wait_duration(amount: float, unit: str) -> timedelta:
    """Return the delay for ``amount`` ``unit``s; unknown units count as minutes."""

    return timedelta(seconds=amount * _UNIT_SECONDS.get(unit, 60))


def parse_time_of_day(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(int(hours), int(minutes))


def _local(day: date, at: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=zone)


def _first_after(now: datetime, days: list[date], at: time, zone: ZoneInfo) -> datetime:
    """Earliest instant of ``at`` on one of ``days`` that lies strictly after ``now``.

    Instants are compared in UTC. A wall time repeated by a DST fall-back is
    tried at both of its offsets (``fold`` 0 then 1).
    """

    for day in days:
        for fold in (0, 1):
            candidate = _local(day, at, zone).replace(fold=fold).astimezone(timezone.utc)
            if candidate > now:
                return candidate
    raise ValueError(f"No occurrence of {at} after {now.isoformat()}")


def next_time_of_day(
    now: datetime,
    at: time,
    *,
    weekday: str | None = None,
    tz: str = "UTC",
) -> datetime:
    """Next occurrence of ``at`` (optionally on ``weekday``) strictly after ``now``.

    The calculation happens in the workflow timezone and the result is
    returned in UTC.
    """

    zone = ZoneInfo(tz)
    now = now.astimezone(timezone.utc)
    day = now.astimezone(zone).date()

    if weekday is None:
        return _first_after(now, [day, day + timedelta(days=1)], at, zone)

    target = WEEKDAYS.index(weekday.lower())
    day += timedelta(days=(target - day.weekday()) % 7)
    return _first_after(now, [day, day + timedelta(days=7)], at, zone)


def apply_business_hours(moment: datetime, settings: WorkflowSettings) -> datetime:
    """Push ``moment`` into the next business window when the workflow requires it."""

    if not settings.business_hours_only:
        return moment

    zone = ZoneInfo(settings.timezone)
    start = time(settings.business_hours_start)
    end_hour = settings.business_hours_end
    local = moment.astimezone(zone)

    # At most one hop to the window start plus two weekend days.
    for _ in range(8):
        if settings.skip_weekends and local.weekday() >= 5:
            local = _local(local.date() + timedelta(days=7 - local.weekday()), start, zone)
            continue
        if local.hour < settings.business_hours_start:
            local = _local(local.date(), start, zone)
            continue
        if local.hour >= end_hour:
            local = _local(local.date() + timedelta(days=1), start, zone)
            continue
        break

    return local.astimezone(timezone.utc)


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
