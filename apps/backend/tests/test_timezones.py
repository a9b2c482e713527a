from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from duesync.core.timezones import (
    DEFAULT_ZONE,
    as_naive_utc,
    due_instant,
    local_day_bounds,
    local_today,
    resolve_zone,
    to_local,
    to_utc_naive,
)
from duesync.services.messages import format_amount, format_local, lead_time


SAO_PAULO = resolve_zone("America/Sao_Paulo")
TOKYO = resolve_zone("Asia/Tokyo")


def test_today_follows_the_owner_zone_across_midnight():
    # 02:30 UTC is still the previous evening in Sao Paulo and mid-morning in Tokyo
    now = datetime(2024, 3, 26, 2, 30, tzinfo=timezone.utc)
    assert local_today(now, SAO_PAULO) == date(2024, 3, 25)
    assert local_today(now, TOKYO) == date(2024, 3, 26)


def test_naive_instants_are_already_utc():
    assert as_naive_utc(datetime(2024, 3, 25, 12, 0)) == datetime(2024, 3, 25, 12, 0)
    assert as_naive_utc(datetime(2024, 3, 25, 9, 0, tzinfo=SAO_PAULO)) == datetime(2024, 3, 25, 12, 0)


def test_naive_input_is_wall_clock_in_the_given_zone():
    assert to_utc_naive(datetime(2024, 3, 25, 23, 30), SAO_PAULO) == datetime(2024, 3, 26, 2, 30)
    aware = datetime(2024, 3, 25, 23, 30, tzinfo=timezone.utc)
    assert to_utc_naive(aware, SAO_PAULO) == datetime(2024, 3, 25, 23, 30)
    assert to_local(datetime(2024, 3, 26, 2, 30), SAO_PAULO).hour == 23


def test_due_instant_and_day_bounds():
    assert due_instant(date(2024, 3, 26), SAO_PAULO) == datetime(2024, 3, 26, 12, 0)
    assert local_day_bounds(date(2024, 3, 25), TOKYO) == (datetime(2024, 3, 24, 15, 0), datetime(2024, 3, 25, 15, 0))


def test_unknown_zone_falls_back_to_the_default():
    assert resolve_zone("Mars/Olympus") is DEFAULT_ZONE
    assert resolve_zone(None) is DEFAULT_ZONE


def test_message_formatting_helpers():
    assert lead_time(1440) == "1 dia"
    assert lead_time(2880) == "2 dias"
    assert lead_time(120) == "2 horas"
    assert lead_time(45) == "45 minutos"
    assert lead_time(90) == "1 hora e 30 minutos"
    assert lead_time(1500) == "1 dia"
    assert format_amount(Decimal("1234.5")) == "R$ 1.234,50"
    local = to_local(datetime(2024, 3, 25, 17, 0), SAO_PAULO)
    assert format_local(local) == "segunda-feira, 25 de março de 2024 às 14:00"
