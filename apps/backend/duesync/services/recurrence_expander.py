"""
Recurrence expansion

Pure functions turning a recurring rule into concrete due dates. No I/O, no
clock: callers pass the window explicitly.

Rules:
- The window is half-open ``[window_start, window_end)``.
- The rule's own ``start_date``/``end_date`` bounds are inclusive.
- Monthly rules clamp to the last day of short months (31 -> Feb 28/29).
- Yearly rules anchored on Feb 29 fall on Feb 28 in non-leap years.
- ``day_of_week`` uses 0 = Sunday .. 6 = Saturday.
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import Any, Iterator, Sequence

from ..core.config import settings
from ..exceptions import RuleValidationError
from ..models import RecurringFrequency


MAX_REMINDER_OFFSET_MINUTES = 60 * 24 * 30


def python_weekday(day_of_week: int) -> int:
    """Convert 0=Sunday numbering to ``date.weekday()`` numbering (0=Monday)."""
    return (day_of_week - 1) % 7


def _frequency(rule: Any) -> RecurringFrequency:
    return RecurringFrequency(rule.frequency)


def _clamped(year: int, month: int, day: int) -> date:
    days_in_month = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, days_in_month))


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def _iter_occurrences(rule: Any, lo: date, hi: date) -> Iterator[date]:
    """Yield occurrences in the inclusive range ``[lo, hi]`` ignoring ``is_active``."""
    start = rule.start_date
    if start > lo:
        lo = start
    if rule.end_date is not None and rule.end_date < hi:
        hi = rule.end_date
    if lo > hi:
        return

    frequency = _frequency(rule)

    if frequency == RecurringFrequency.DAILY:
        current = lo
        while current <= hi:
            yield current
            current += timedelta(days=1)
        return

    if frequency == RecurringFrequency.WEEKLY:
        weekday = python_weekday(rule.day_of_week)
        current = lo + timedelta((weekday - lo.weekday()) % 7)
        while current <= hi:
            yield current
            current += timedelta(days=7)
        return

    if frequency == RecurringFrequency.MONTHLY:
        year, month = lo.year, lo.month
        candidate = _clamped(year, month, rule.day_of_month)
        if candidate < lo:
            year, month = _next_month(year, month)
            candidate = _clamped(year, month, rule.day_of_month)
        while candidate <= hi:
            yield candidate
            year, month = _next_month(year, month)
            candidate = _clamped(year, month, rule.day_of_month)
        return

    if frequency == RecurringFrequency.YEARLY:
        month, day = start.month, start.day
        year = lo.year
        candidate = _clamped(year, month, day)
        if candidate < lo:
            year += 1
            candidate = _clamped(year, month, day)
        while candidate <= hi:
            yield candidate
            year += 1
            candidate = _clamped(year, month, day)
        return

    if frequency == RecurringFrequency.CUSTOM:
        step = rule.interval_days
        offset = (lo - start).days
        k = -(-offset // step) if offset > 0 else 0
        current = start + timedelta(days=k * step)
        while current <= hi:
            yield current
            current += timedelta(days=step)
        return


def expand(rule: Any, window_start: date, window_end: date) -> list[date]:
    """Due dates of ``rule`` inside ``[window_start, window_end)``, ascending."""
    if not rule.is_active:
        return []
    if window_end <= window_start:
        return []
    if window_end <= rule.start_date:
        return []
    if rule.end_date is not None and rule.end_date < window_start:
        return []
    return list(_iter_occurrences(rule, window_start, window_end - timedelta(days=1)))


def preview(rule: Any, start: date, end: date) -> list[date]:
    """Occurrences in the inclusive range ``[start, end]`` regardless of pause state."""
    if end < start:
        return []
    return list(_iter_occurrences(rule, start, end))


def is_occurrence(rule: Any, day: date) -> bool:
    return day in preview(rule, day, day)


def generation_window(today: date, horizon_days: int | None = None) -> tuple[date, date]:
    horizon = settings.GENERATION_HORIZON_DAYS if horizon_days is None else horizon_days
    return today, today + timedelta(days=horizon)


def validate_rule_parameters(
    frequency: RecurringFrequency | str,
    *,
    day_of_month: int | None = None,
    day_of_week: int | None = None,
    interval_days: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> None:
    """Raise RuleValidationError unless exactly the parameter ``frequency`` needs is set."""
    try:
        frequency = RecurringFrequency(frequency)
    except ValueError as exc:
        raise RuleValidationError(f"unknown frequency: {frequency}") from exc

    params = {
        "day_of_month": day_of_month,
        "day_of_week": day_of_week,
        "interval_days": interval_days,
    }
    required = {
        RecurringFrequency.MONTHLY: "day_of_month",
        RecurringFrequency.WEEKLY: "day_of_week",
        RecurringFrequency.CUSTOM: "interval_days",
    }.get(frequency)

    for name, value in params.items():
        if name == required and value is None:
            raise RuleValidationError(f"{name} is required for {frequency.value} rules")
        if name != required and value is not None:
            raise RuleValidationError(f"{name} is not allowed for {frequency.value} rules")

    if day_of_month is not None and not (1 <= day_of_month <= 31):
        raise RuleValidationError("day_of_month must be between 1 and 31")
    if day_of_week is not None and not (0 <= day_of_week <= 6):
        raise RuleValidationError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
    if interval_days is not None and interval_days < 1:
        raise RuleValidationError("interval_days must be at least 1")
    if start_date is not None and end_date is not None and end_date < start_date:
        raise RuleValidationError("end_date must not be before start_date")


def normalize_reminder_offsets(offsets: Sequence[int] | None, default: Sequence[int] | None = None) -> list[int]:
    """De-duplicate and order offsets from farthest to nearest."""
    if offsets is None:
        offsets = settings.RULE_REMINDER_OFFSETS if default is None else default
    cleaned: set[int] = set()
    for value in offsets:
        minutes = int(value)
        if minutes < 0 or minutes > MAX_REMINDER_OFFSET_MINUTES:
            raise RuleValidationError(
                f"reminder offsets must be between 0 and {MAX_REMINDER_OFFSET_MINUTES} minutes"
            )
        cleaned.add(minutes)
    return sorted(cleaned, reverse=True)
