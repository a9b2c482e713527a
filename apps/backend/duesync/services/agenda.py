"""Daily agenda digest: one message per user per local day, after AGENDA_SEND_HOUR."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..core.clock import Clock, SystemClock
from ..core.config import settings
from ..core.timezones import as_naive_utc, local_day_bounds, resolve_zone, to_local
from . import messages
from .notifications import DeliveryStatus, NotificationDispatcher


logger = logging.getLogger(__name__)


class AgendaService:
    def __init__(self, db: Session, dispatcher: NotificationDispatcher, clock: Clock | None = None):
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()

    def send_if_due(self, user_id: int, now: datetime | None = None) -> bool:
        """Send today's agenda unless already sent (or claimed) for the user's local date."""
        now = as_naive_utc(now or self.clock.now())
        profile = (
            self.db.query(models.UserProfile).filter(models.UserProfile.user_id == user_id).one_or_none()
        )
        if profile is None or not profile.daily_agenda_enabled or not profile.phone_number:
            return False
        zone = resolve_zone(profile.timezone)
        local_now = to_local(now, zone)
        if local_now.hour < settings.AGENDA_SEND_HOUR:
            return False

        today = local_now.date()
        delivery = models.AgendaDelivery(user_id=user_id, local_date=today)
        self.db.add(delivery)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        start, end = local_day_bounds(today, zone)
        try:
            commitments = (
                self.db.query(models.Commitment)
                .filter(
                    models.Commitment.user_id == user_id,
                    models.Commitment.deleted_at.is_(None),
                    models.Commitment.scheduled_at >= start,
                    models.Commitment.scheduled_at < end,
                )
                .order_by(models.Commitment.scheduled_at)
                .all()
            )
            result = self.dispatcher.send(user_id, messages.daily_agenda(commitments, zone))
        except Exception:
            self._release(delivery)
            raise
        if result.status != DeliveryStatus.DELIVERED:
            self._release(delivery)
            logger.warning("daily agenda for user %s not delivered: %s", user_id, result.reason)
            return False

        delivery.sent_at = as_naive_utc(self.clock.now())
        delivery.commitments_count = len(commitments)
        self.db.commit()
        logger.info("daily agenda sent to user %s (%d commitments)", user_id, len(commitments))
        return True

    def _release(self, delivery: models.AgendaDelivery) -> None:
        """Drop the day's claim so the next tick tries again."""
        self.db.rollback()
        self.db.delete(delivery)
        self.db.commit()
