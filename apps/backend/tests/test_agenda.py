from __future__ import annotations

from datetime import datetime, timezone

import pytest

from duesync import models
from duesync.services.agenda import AgendaService
from duesync.services.notifications import DeliveryStatus
from duesync.services.sync_coordinator import CommitmentService


def _enable_agenda(db, user):
    user.profile.daily_agenda_enabled = True
    db.commit()


def test_agenda_is_sent_once_per_local_day(db_session, user, clock, dispatcher):
    _enable_agenda(db_session, user)
    service = CommitmentService(db_session, clock=clock)
    # naive input is wall clock in the owner's zone
    service.create(user, {"title": "Dentista", "scheduled_at": datetime(2024, 3, 25, 15, 0), "location": "Centro"})
    service.create(user, {"title": "Amanha", "scheduled_at": datetime(2024, 3, 26, 10, 0)})

    agenda = AgendaService(db_session, dispatcher, clock)
    assert agenda.send_if_due(user.id) is True
    assert agenda.send_if_due(user.id) is False

    text = dispatcher.texts[0]
    assert text.startswith("📅 *Sua agenda para hoje:*")
    assert "☀️ 15:00 - Dentista" in text
    assert "📍 Centro" in text
    assert "Amanha" not in text
    delivery = db_session.query(models.AgendaDelivery).one()
    assert (delivery.local_date.isoformat(), delivery.commitments_count) == ("2024-03-25", 1)


def test_agenda_waits_for_the_local_send_hour(db_session, user, clock, dispatcher):
    _enable_agenda(db_session, user)
    # 09:00 UTC is 06:00 in Sao Paulo
    clock.set(datetime(2024, 3, 25, 9, 0, tzinfo=timezone.utc))

    assert AgendaService(db_session, dispatcher, clock).send_if_due(user.id) is False
    assert dispatcher.sent == []


def test_empty_agenda_and_failed_delivery_retry(db_session, user, clock, dispatcher):
    _enable_agenda(db_session, user)
    agenda = AgendaService(db_session, dispatcher, clock)

    dispatcher.status = DeliveryStatus.FAILED
    assert agenda.send_if_due(user.id) is False
    assert db_session.query(models.AgendaDelivery).count() == 0

    dispatcher.status = DeliveryStatus.DELIVERED
    assert agenda.send_if_due(user.id) is True
    assert "🎉 *Bom dia!*" in dispatcher.texts[-1]


def test_crashing_delivery_releases_the_day(db_session, user, clock, dispatcher):
    _enable_agenda(db_session, user)

    class _Broken:
        def send(self, user_id, message):
            raise RuntimeError("socket closed")

    with pytest.raises(RuntimeError):
        AgendaService(db_session, _Broken(), clock).send_if_due(user.id)
    assert db_session.query(models.AgendaDelivery).count() == 0

    assert AgendaService(db_session, dispatcher, clock).send_if_due(user.id) is True
    assert db_session.query(models.AgendaDelivery).count() == 1


def test_agenda_disabled_sends_nothing(db_session, user, clock, dispatcher):
    assert AgendaService(db_session, dispatcher, clock).send_if_due(user.id) is False
    assert dispatcher.sent == []
