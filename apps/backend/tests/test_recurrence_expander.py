from __future__ import annotations

from datetime import date
from types import SimpleNamespace

import pytest

from duesync.exceptions import RuleValidationError
from duesync.services.recurrence_expander import (
    expand,
    generation_window,
    is_occurrence,
    normalize_reminder_offsets,
    preview,
    validate_rule_parameters,
)


def _rule(frequency: str, start: date, **kw):
    values = {
        "frequency": frequency,
        "start_date": start,
        "end_date": None,
        "day_of_month": None,
        "day_of_week": None,
        "interval_days": None,
        "is_active": True,
    }
    values.update(kw)
    return SimpleNamespace(**values)


def test_monthly_day_31_clamps_to_short_months():
    rule = _rule("monthly", date(2024, 1, 31), day_of_month=31)
    assert expand(rule, date(2024, 1, 1), date(2024, 5, 1)) == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
    ]
    # non-leap year falls on the 28th
    assert expand(rule, date(2025, 2, 1), date(2025, 3, 1)) == [date(2025, 2, 28)]


def test_weekly_uses_sunday_as_zero():
    rule = _rule("weekly", date(2024, 3, 1), day_of_week=0)
    dates = expand(rule, date(2024, 3, 1), date(2024, 4, 1))
    assert dates == [date(2024, 3, 3), date(2024, 3, 10), date(2024, 3, 17), date(2024, 3, 24), date(2024, 3, 31)]
    assert all(d.weekday() == 6 for d in dates)


def test_custom_interval_is_anchored_on_start_date():
    rule = _rule("custom", date(2024, 1, 1), interval_days=10)
    assert expand(rule, date(2024, 1, 15), date(2024, 2, 15)) == [
        date(2024, 1, 21),
        date(2024, 1, 31),
        date(2024, 2, 10),
    ]


def test_yearly_feb_29_falls_back_to_feb_28():
    rule = _rule("yearly", date(2024, 2, 29))
    assert preview(rule, date(2024, 1, 1), date(2028, 12, 31)) == [
        date(2024, 2, 29),
        date(2025, 2, 28),
        date(2026, 2, 28),
        date(2027, 2, 28),
        date(2028, 2, 29),
    ]


def test_window_is_half_open_and_end_date_inclusive():
    rule = _rule("monthly", date(2024, 1, 10), day_of_month=10)
    assert expand(rule, date(2024, 3, 10), date(2024, 4, 10)) == [date(2024, 3, 10)]

    daily = _rule("daily", date(2024, 3, 1), end_date=date(2024, 3, 3))
    assert expand(daily, date(2024, 3, 1), date(2024, 3, 10)) == [
        date(2024, 3, 1),
        date(2024, 3, 2),
        date(2024, 3, 3),
    ]


def test_window_before_start_or_after_end_is_empty():
    rule = _rule("daily", date(2024, 3, 10), end_date=date(2024, 3, 20))
    assert expand(rule, date(2024, 3, 1), date(2024, 3, 10)) == []
    assert expand(rule, date(2024, 3, 21), date(2024, 4, 1)) == []
    assert expand(rule, date(2024, 3, 15), date(2024, 3, 15)) == []


def test_paused_rule_expands_to_nothing_but_still_previews():
    rule = _rule("monthly", date(2024, 1, 5), day_of_month=5, is_active=False)
    assert expand(rule, date(2024, 1, 1), date(2024, 4, 1)) == []
    assert preview(rule, date(2024, 1, 1), date(2024, 3, 5)) == [date(2024, 1, 5), date(2024, 2, 5), date(2024, 3, 5)]
    assert is_occurrence(rule, date(2024, 2, 5))
    assert not is_occurrence(rule, date(2024, 2, 6))


def test_generation_window_spans_the_horizon():
    assert generation_window(date(2024, 3, 25), 45) == (date(2024, 3, 25), date(2024, 5, 9))


@pytest.mark.parametrize(
    "frequency,params,message",
    [
        ("monthly", {}, "day_of_month is required"),
        ("weekly", {"day_of_week": 1, "day_of_month": 3}, "day_of_month is not allowed"),
        ("weekly", {"day_of_week": 7}, "between 0 (Sunday) and 6"),
        ("custom", {"interval_days": 0}, "at least 1"),
        ("daily", {"interval_days": 2}, "interval_days is not allowed"),
        ("hourly", {}, "unknown frequency"),
    ],
)
def test_invalid_frequency_parameters_are_rejected(frequency, params, message):
    with pytest.raises(RuleValidationError) as excinfo:
        validate_rule_parameters(frequency, **params)
    assert message in str(excinfo.value)


def test_end_date_before_start_is_rejected():
    with pytest.raises(RuleValidationError):
        validate_rule_parameters("daily", start_date=date(2024, 3, 2), end_date=date(2024, 3, 1))


def test_reminder_offsets_are_deduplicated_farthest_first():
    assert normalize_reminder_offsets([60, 1440, 60, 0]) == [1440, 60, 0]
    assert normalize_reminder_offsets(None, default=[30]) == [30]
    with pytest.raises(RuleValidationError):
        normalize_reminder_offsets([-5])
