"""Single conversion boundary between stored UTC instants and local wall-clock time.

Everything persisted is naive UTC. User input (wall-clock datetimes, due dates)
and anything shown back to the user goes through the helpers below with the
owner's zone, so "today" and "due at 09:00" are never computed in server time.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import settings


try:
    DEFAULT_ZONE = ZoneInfo(getattr(settings, "TIMEZONE", "America/Sao_Paulo"))
except (ZoneInfoNotFoundError, ValueError):
    DEFAULT_ZONE = ZoneInfo("America/Sao_Paulo")


def resolve_zone(name: str | None) -> ZoneInfo:
    """Return the user's zone, falling back to the deployment zone."""
    if not name:
        return DEFAULT_ZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return DEFAULT_ZONE


def to_utc_naive(value: datetime, zone: ZoneInfo | None = None) -> datetime:
    """Normalize to naive UTC.

    Aware values are converted directly. Naive values are interpreted as wall
    clock in ``zone`` (deployment zone when omitted).
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=zone or DEFAULT_ZONE)
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalize an instant to naive UTC; naive values are already UTC and pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def as_aware_utc(value: datetime) -> datetime:
    """Attach UTC to a stored naive UTC value (aware values are converted)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_local(value: datetime, zone: ZoneInfo | None = None) -> datetime:
    """Stored UTC instant -> aware local datetime."""
    return as_aware_utc(value).astimezone(zone or DEFAULT_ZONE)


def local_today(now: datetime, zone: ZoneInfo | None = None) -> date:
    """Calendar date of ``now`` in the given zone."""
    return to_local(now, zone).date()


def parse_wall_time(value: str) -> time:
    hour, _, minute = value.partition(":")
    return time(int(hour), int(minute or 0))


def local_date_at(day: date, wall_time: time, zone: ZoneInfo | None = None) -> datetime:
    """Naive UTC instant of ``day`` at ``wall_time`` local time."""
    local = datetime.combine(day, wall_time, tzinfo=zone or DEFAULT_ZONE)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def due_instant(due_date: date, zone: ZoneInfo | None = None) -> datetime:
    """Naive UTC instant at which an instance due on ``due_date`` is considered due."""
    return local_date_at(due_date, parse_wall_time(settings.INSTANCE_DUE_TIME), zone)


def local_day_bounds(day: date, zone: ZoneInfo | None = None) -> tuple[datetime, datetime]:
    """Naive UTC [start, end) covering the local calendar day."""
    start = local_date_at(day, time(0, 0), zone)
    end = local_date_at(day + timedelta(days=1), time(0, 0), zone)
    return start, end
