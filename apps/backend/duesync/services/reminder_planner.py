"""
Reminder planning and dispatch

Each (entity, offset) pair has one ReminderDelivery row. A row moves
pending -> dispatching -> sent through compare-and-set updates, so two ticks
racing over the same reminder send it at most once. A crash between the
provider accepting the message and the ``sent`` update leaves the row in
``dispatching``; it is reclaimed after the claim TTL and sent again
(at-least-once).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from .. import models
from ..core.clock import Clock, SystemClock
from ..core.config import settings
from ..core.timezones import as_naive_utc, due_instant, resolve_zone
from . import messages
from .notifications import DeliveryResult, DeliveryStatus, NotificationDispatcher


logger = logging.getLogger(__name__)

COMMITMENT = "commitment"
INSTANCE = "instance"

# widest offset accepted by normalize_reminder_offsets, plus slack for zone shifts
_LOOKAHEAD = timedelta(days=32)


@dataclass(frozen=True)
class DueReminder:
    reminder_id: int
    user_id: int
    target: str
    target_id: int
    minutes_before: int
    anchor: datetime
    fire_at: datetime
    expired: bool = False


@dataclass
class DispatchReport:
    sent: int = 0
    failed: int = 0
    expired: int = 0
    superseded: int = 0
    lost_claims: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.expired + self.superseded


def fire_time(anchor: datetime, minutes_before: int) -> datetime:
    return anchor - timedelta(minutes=minutes_before)


class ReminderPlanner:
    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        claim_ttl_seconds: int | None = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.claim_ttl = timedelta(
            seconds=settings.REMINDER_CLAIM_TTL_SECONDS if claim_ttl_seconds is None else claim_ttl_seconds
        )
        self._zones: dict[int, ZoneInfo] = {}

    # ------------------------------------------------------------ planning

    def zone_for(self, user_id: int) -> ZoneInfo:
        if user_id not in self._zones:
            tz_name = (
                self.db.query(models.UserProfile.timezone)
                .filter(models.UserProfile.user_id == user_id)
                .scalar()
            )
            self._zones[user_id] = resolve_zone(tz_name)
        return self._zones[user_id]

    def _claimable(self, now: datetime):
        Reminder = models.ReminderDelivery
        return or_(
            Reminder.status == models.ReminderStatus.PENDING,
            and_(
                Reminder.status == models.ReminderStatus.DISPATCHING,
                Reminder.claimed_at < now - self.claim_ttl,
            ),
        )

    def due_reminders(self, now: datetime | None = None, user_id: int | None = None) -> list[DueReminder]:
        """Claimable reminders whose fire time has been reached, ordered by fire time."""
        now = as_naive_utc(now or self.clock.now())
        Reminder = models.ReminderDelivery
        due: list[DueReminder] = []

        q = (
            self.db.query(Reminder, models.Commitment)
            .join(models.Commitment, Reminder.commitment_id == models.Commitment.id)
            .filter(
                self._claimable(now),
                models.Commitment.deleted_at.is_(None),
                models.Commitment.scheduled_at <= now + _LOOKAHEAD,
            )
        )
        if user_id is not None:
            q = q.filter(Reminder.user_id == user_id)
        for reminder, commitment in q.all():
            fire_at = fire_time(commitment.scheduled_at, reminder.minutes_before)
            if fire_at <= now:
                due.append(
                    DueReminder(
                        reminder_id=reminder.id,
                        user_id=reminder.user_id,
                        target=COMMITMENT,
                        target_id=commitment.id,
                        minutes_before=reminder.minutes_before,
                        anchor=commitment.scheduled_at,
                        fire_at=fire_at,
                        expired=commitment.scheduled_at < now,
                    )
                )

        q = (
            self.db.query(Reminder, models.RecurringInstance)
            .join(models.RecurringInstance, Reminder.instance_id == models.RecurringInstance.id)
            .join(models.RecurringRule, models.RecurringInstance.rule_id == models.RecurringRule.id)
            .filter(
                self._claimable(now),
                models.RecurringRule.is_active.is_(True),
                models.RecurringInstance.status.in_(list(models.OPEN_INSTANCE_STATUSES)),
                models.RecurringInstance.due_date <= (now + _LOOKAHEAD).date(),
            )
        )
        if user_id is not None:
            q = q.filter(Reminder.user_id == user_id)
        for reminder, instance in q.all():
            anchor = due_instant(instance.due_date, self.zone_for(instance.user_id))
            fire_at = fire_time(anchor, reminder.minutes_before)
            if fire_at <= now:
                due.append(
                    DueReminder(
                        reminder_id=reminder.id,
                        user_id=reminder.user_id,
                        target=INSTANCE,
                        target_id=instance.id,
                        minutes_before=reminder.minutes_before,
                        anchor=anchor,
                        fire_at=fire_at,
                        expired=anchor < now,
                    )
                )

        due.sort(key=lambda r: (r.fire_at, r.reminder_id))
        return due

    # ------------------------------------------------------------ dispatch

    def dispatch_due(self, now: datetime | None = None, user_id: int | None = None) -> DispatchReport:
        if self.dispatcher is None:
            raise RuntimeError("ReminderPlanner.dispatch_due requires a dispatcher")
        now = as_naive_utc(now or self.clock.now())
        report = DispatchReport()

        groups: dict[tuple[str, int], list[DueReminder]] = defaultdict(list)
        for reminder in self.due_reminders(now, user_id):
            groups[(reminder.target, reminder.target_id)].append(reminder)

        for (target, target_id), group in groups.items():
            for reminder in group:
                if reminder.expired and self._skip(reminder.reminder_id, now, "expired"):
                    report.expired += 1
            live = sorted((r for r in group if not r.expired), key=lambda r: r.minutes_before)
            if not live:
                continue

            chosen, superseded = live[0], live[1:]
            stamp = self.claim(chosen.reminder_id, now)
            if stamp is None:
                report.lost_claims += 1
                continue
            for reminder in superseded:
                if self._skip(reminder.reminder_id, now, "superseded"):
                    report.superseded += 1

            try:
                outcome = self._deliver(chosen, now)
            except Exception as exc:  # keep the rest of the batch going
                logger.exception("reminder %s delivery crashed", chosen.reminder_id)
                self.db.rollback()
                self.release(chosen.reminder_id, stamp, f"{exc.__class__.__name__}: {exc}")
                report.failed += 1
                report.errors.append(f"reminder {chosen.reminder_id}: {exc}")
                continue

            if outcome is None:
                self._finish_skipped(chosen.reminder_id, stamp, "not_eligible")
                continue
            if outcome.delivered:
                if self.mark_sent(chosen.reminder_id, stamp, as_naive_utc(self.clock.now())):
                    report.sent += 1
                    logger.info(
                        "reminder %s sent (%s %s, %d min before)",
                        chosen.reminder_id, target, target_id, chosen.minutes_before,
                    )
                continue
            self.release(chosen.reminder_id, stamp, outcome.reason or outcome.status.value)
            report.failed += 1
            report.errors.append(f"reminder {chosen.reminder_id}: {outcome.reason or outcome.status.value}")
        return report

    def _deliver(self, due: DueReminder, now: datetime) -> Optional[DeliveryResult]:
        """Render and send. Returns None when the entity is no longer eligible."""
        zone = self.zone_for(due.user_id)
        # the text reports the time actually left, not the configured offset
        remaining = max(0, round((due.anchor - now).total_seconds() / 60))
        if due.target == COMMITMENT:
            commitment = self.db.get(models.Commitment, due.target_id)
            if commitment is None or commitment.deleted_at is not None:
                return None
            message = messages.commitment_reminder(commitment, due.minutes_before, zone, remaining)
        else:
            instance = self.db.get(models.RecurringInstance, due.target_id)
            if instance is None or instance.effective_status not in models.OPEN_INSTANCE_STATUSES:
                return None
            message = messages.instance_reminder(instance, due.minutes_before, zone, remaining)

        result = self.dispatcher.send(due.user_id, message)
        if result.status == DeliveryStatus.TEMPLATE_REJECTED:
            logger.info("template rejected for reminder %s; retrying as plain text", due.reminder_id)
            result = self.dispatcher.send(due.user_id, message.plain())
        return result

    # ---------------------------------------------------- state transitions

    def claim(self, reminder_id: int, now: datetime) -> Optional[datetime]:
        """pending (or stale dispatching) -> dispatching. Returns the claim stamp or None if lost."""
        Reminder = models.ReminderDelivery
        stamp = as_naive_utc(now)
        updated = (
            self.db.query(Reminder)
            .filter(Reminder.id == reminder_id, self._claimable(stamp))
            .update(
                {
                    Reminder.status: models.ReminderStatus.DISPATCHING,
                    Reminder.claimed_at: stamp,
                    Reminder.attempts: Reminder.attempts + 1,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return stamp if updated == 1 else None

    def mark_sent(self, reminder_id: int, stamp: datetime, sent_at: datetime) -> bool:
        return self._finish(
            reminder_id,
            stamp,
            {
                models.ReminderDelivery.status: models.ReminderStatus.SENT,
                models.ReminderDelivery.sent_at: sent_at,
                models.ReminderDelivery.last_error: None,
            },
        )

    def release(self, reminder_id: int, stamp: datetime, error: str) -> bool:
        return self._finish(
            reminder_id,
            stamp,
            {
                models.ReminderDelivery.status: models.ReminderStatus.PENDING,
                models.ReminderDelivery.claimed_at: None,
                models.ReminderDelivery.last_error: error[:500],
            },
        )

    def _finish_skipped(self, reminder_id: int, stamp: datetime, reason: str) -> bool:
        return self._finish(
            reminder_id,
            stamp,
            {
                models.ReminderDelivery.status: models.ReminderStatus.SKIPPED,
                models.ReminderDelivery.skip_reason: reason,
            },
        )

    def _finish(self, reminder_id: int, stamp: datetime, values: dict) -> bool:
        Reminder = models.ReminderDelivery
        updated = (
            self.db.query(Reminder)
            .filter(
                Reminder.id == reminder_id,
                Reminder.status == models.ReminderStatus.DISPATCHING,
                Reminder.claimed_at == stamp,
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        if updated != 1:
            logger.warning("reminder %s claim was taken over before it could be finished", reminder_id)
        return updated == 1

    def _skip(self, reminder_id: int, now: datetime, reason: str) -> bool:
        Reminder = models.ReminderDelivery
        updated = (
            self.db.query(Reminder)
            .filter(Reminder.id == reminder_id, self._claimable(now))
            .update(
                {Reminder.status: models.ReminderStatus.SKIPPED, Reminder.skip_reason: reason},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    # ------------------------------------------------------ commitment rows

    def schedule_commitment_reminders(self, commitment: models.Commitment, offsets: Iterable[int]) -> None:
        """Attach one pending row per offset (caller commits)."""
        existing = {r.minutes_before for r in commitment.reminders}
        for offset in offsets:
            if offset not in existing:
                commitment.reminders.append(
                    models.ReminderDelivery(user_id=commitment.user_id, minutes_before=offset)
                )

    def reset_commitment_reminders(self, commitment_id: int) -> int:
        """Re-arm every reminder of a rescheduled commitment (caller commits)."""
        Reminder = models.ReminderDelivery
        return (
            self.db.query(Reminder)
            .filter(Reminder.commitment_id == commitment_id)
            .update(
                {
                    Reminder.status: models.ReminderStatus.PENDING,
                    Reminder.sent_at: None,
                    Reminder.claimed_at: None,
                    Reminder.skip_reason: None,
                    Reminder.last_error: None,
                },
                synchronize_session=False,
            )
        )

