"""
Recurring rule / instance persistence

Responsibilities:
- rule CRUD and pause/resume
- idempotent instance generation keyed by (rule_id, due_date)
- instance status transitions (pay, postpone) as compare-and-set updates
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..core.clock import Clock, SystemClock
from ..core.timezones import as_naive_utc, to_utc_naive
from ..exceptions import (
    InstanceConflict,
    InstanceNotFound,
    InvalidTransition,
    RuleNotFound,
    RuleValidationError,
)
from .recurrence_expander import (
    expand,
    generation_window,
    normalize_reminder_offsets,
    validate_rule_parameters,
)


logger = logging.getLogger(__name__)

_FREQUENCY_PARAMS = ("day_of_month", "day_of_week", "interval_days")
_RULE_FIELDS = (
    "title",
    "description",
    "amount",
    "kind",
    "category_id",
    "frequency",
    "day_of_month",
    "day_of_week",
    "interval_days",
    "start_date",
    "end_date",
    "reminder_offsets",
)
_REQUIRED_RULE_FIELDS = ("title", "amount", "kind", "frequency", "start_date", "reminder_offsets")


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value)).quantize(Decimal("0.01"))


class InstanceStore:
    """Persistence for recurring rules and their generated instances."""

    def __init__(self, db: Session, clock: Clock | None = None):
        self.db = db
        self.clock = clock or SystemClock()

    # ---------------------------------------------------------------- rules

    def create_rule(self, owner: models.User, payload: Any) -> models.RecurringRule:
        data = payload.model_dump() if hasattr(payload, "model_dump") else dict(payload)
        validate_rule_parameters(
            data["frequency"],
            day_of_month=data.get("day_of_month"),
            day_of_week=data.get("day_of_week"),
            interval_days=data.get("interval_days"),
            start_date=data.get("start_date"),
            end_date=data.get("end_date"),
        )
        rule = models.RecurringRule(
            user_id=owner.id,
            organization_id=owner.organization_id,
            title=data["title"],
            description=data.get("description"),
            amount=_to_decimal(data["amount"]),
            kind=data.get("kind") or models.EntryKind.EXPENSE,
            category_id=data.get("category_id"),
            frequency=data["frequency"],
            day_of_month=data.get("day_of_month"),
            day_of_week=data.get("day_of_week"),
            interval_days=data.get("interval_days"),
            start_date=data["start_date"],
            end_date=data.get("end_date"),
            is_active=data.get("is_active", True),
            reminder_offsets=normalize_reminder_offsets(data.get("reminder_offsets")),
        )
        self.db.add(rule)
        self.db.commit()
        self.db.refresh(rule)
        logger.info("rule %s created for user %s (%s)", rule.id, owner.id, rule.frequency.value)
        return rule

    def get_rule(self, rule_id: int) -> models.RecurringRule:
        rule = self.db.get(models.RecurringRule, rule_id)
        if rule is None:
            raise RuleNotFound(f"recurring rule {rule_id} not found")
        return rule

    def list_rules(self, owner_ids: Sequence[int], *, active: bool | None = None) -> list[models.RecurringRule]:
        q = self.db.query(models.RecurringRule).filter(models.RecurringRule.user_id.in_(list(owner_ids)))
        if active is not None:
            q = q.filter(models.RecurringRule.is_active == active)
        return q.order_by(models.RecurringRule.id).all()

    def update_rule(self, rule_id: int, changes: dict[str, Any]) -> models.RecurringRule:
        """Apply a partial update. Already generated instances are left untouched."""
        for name in _REQUIRED_RULE_FIELDS:
            if name in changes and changes[name] is None:
                raise RuleValidationError(f"{name} cannot be null")
        rule = self.get_rule(rule_id)
        merged = {name: getattr(rule, name) for name in _RULE_FIELDS}
        merged.update({k: v for k, v in changes.items() if k in _RULE_FIELDS})

        # switching frequency drops parameters the new frequency does not use
        if changes.get("frequency") is not None:
            for param in _FREQUENCY_PARAMS:
                if param not in changes:
                    merged[param] = None
        validate_rule_parameters(
            merged["frequency"],
            day_of_month=merged["day_of_month"],
            day_of_week=merged["day_of_week"],
            interval_days=merged["interval_days"],
            start_date=merged["start_date"],
            end_date=merged["end_date"],
        )

        for name in _RULE_FIELDS:
            value = merged[name]
            if name == "amount":
                value = _to_decimal(value)
            elif name == "reminder_offsets":
                value = normalize_reminder_offsets(value)
            setattr(rule, name, value)
        self.db.commit()
        self.db.refresh(rule)
        return rule

    def delete_rule(self, rule_id: int) -> dict[str, int]:
        """Delete the rule, its still-scheduled instances, and detach the rest."""
        rule = self.get_rule(rule_id)
        scheduled_ids = [
            row[0]
            for row in self.db.query(models.RecurringInstance.id)
            .filter(
                models.RecurringInstance.rule_id == rule.id,
                models.RecurringInstance.status == models.InstanceStatus.SCHEDULED,
            )
            .all()
        ]
        if scheduled_ids:
            self.db.query(models.ReminderDelivery).filter(
                models.ReminderDelivery.instance_id.in_(scheduled_ids)
            ).delete(synchronize_session=False)
            self.db.query(models.RecurringInstance).filter(
                models.RecurringInstance.id.in_(scheduled_ids)
            ).delete(synchronize_session=False)
        detached_ids = [
            row[0]
            for row in self.db.query(models.RecurringInstance.id)
            .filter(models.RecurringInstance.rule_id == rule.id)
            .all()
        ]
        if detached_ids:
            self.db.query(models.RecurringInstance).filter(
                models.RecurringInstance.id.in_(detached_ids)
            ).update({models.RecurringInstance.rule_id: None}, synchronize_session=False)
            # detached instances no longer remind
            self.db.query(models.ReminderDelivery).filter(
                models.ReminderDelivery.instance_id.in_(detached_ids),
                models.ReminderDelivery.status == models.ReminderStatus.PENDING,
            ).update(
                {
                    models.ReminderDelivery.status: models.ReminderStatus.SKIPPED,
                    models.ReminderDelivery.skip_reason: "rule_deleted",
                },
                synchronize_session=False,
            )
        detached = len(detached_ids)
        self.db.expire_all()
        self.db.delete(rule)
        self.db.commit()
        self.db.expire_all()
        logger.info("rule %s deleted: %d scheduled removed, %d detached", rule_id, len(scheduled_ids), detached)
        return {"deleted_instances": len(scheduled_ids), "detached_instances": detached}

    def pause_rule(self, rule_id: int) -> models.RecurringRule:
        return self._set_active(rule_id, False)

    def resume_rule(self, rule_id: int) -> models.RecurringRule:
        return self._set_active(rule_id, True)

    def _set_active(self, rule_id: int, active: bool) -> models.RecurringRule:
        rule = self.get_rule(rule_id)
        self.db.query(models.RecurringRule).filter(models.RecurringRule.id == rule.id).update(
            {models.RecurringRule.is_active: active}, synchronize_session=False
        )
        self.db.commit()
        self.db.refresh(rule)
        return rule

    # ------------------------------------------------------------ instances

    def ensure_instances(self, rule: models.RecurringRule, due_dates: Iterable[date]) -> int:
        """Create a scheduled instance for every date not already covered.

        Covered means some instance of the rule currently sits on that date.
        Repeating the call with overlapping dates creates nothing new; a
        concurrent insert that wins the unique constraint is treated as
        already existing.
        """
        rule_id = rule.id
        wanted = sorted(set(due_dates))
        if not wanted:
            return 0

        current = (
            self.db.query(models.RecurringRule)
            .filter(models.RecurringRule.id == rule_id)
            .populate_existing()
            .one_or_none()
        )
        if current is None or not current.is_active:
            logger.info("rule %s missing or paused; skipping generation", rule_id)
            return 0

        existing = {
            row[0]
            for row in self.db.query(models.RecurringInstance.due_date)
            .filter(
                models.RecurringInstance.rule_id == rule_id,
                models.RecurringInstance.due_date.in_(wanted),
            )
            .all()
        }
        snapshot = {
            "user_id": current.user_id,
            "title": current.title,
            "kind": current.kind,
            "category_id": current.category_id,
            "amount": current.amount,
            "offsets": list(current.reminder_offsets or []),
        }

        created = 0
        for due in wanted:
            if due in existing:
                continue
            instance = models.RecurringInstance(
                rule_id=rule_id,
                user_id=snapshot["user_id"],
                title=snapshot["title"],
                kind=snapshot["kind"],
                category_id=snapshot["category_id"],
                due_date=due,
                slot_date=due,
                amount=snapshot["amount"],
                status=models.InstanceStatus.SCHEDULED,
            )
            instance.reminders = [
                models.ReminderDelivery(user_id=snapshot["user_id"], minutes_before=offset)
                for offset in snapshot["offsets"]
            ]
            self.db.add(instance)
            try:
                self.db.commit()
            except IntegrityError:
                # lost the race (or the rule vanished underneath us)
                self.db.rollback()
                if self.db.get(models.RecurringRule, rule_id) is None:
                    logger.info("rule %s deleted during generation", rule_id)
                    break
                continue
            created += 1

        if created:
            last = wanted[-1]
            self.db.query(models.RecurringRule).filter(
                models.RecurringRule.id == rule_id,
                or_(
                    models.RecurringRule.last_generated_on.is_(None),
                    models.RecurringRule.last_generated_on < last,
                ),
            ).update({models.RecurringRule.last_generated_on: last}, synchronize_session=False)
            self.db.commit()
            logger.debug("rule %s: %d instance(s) generated", rule_id, created)
        return created

    def generate_for_user(self, user_id: int, today: date, horizon_days: int | None = None) -> int:
        """Expand every active rule of the user over the generation window."""
        window_start, window_end = generation_window(today, horizon_days)
        rules = self.list_rules([user_id], active=True)
        total = 0
        for rule in rules:
            dates = expand(rule, window_start, window_end)
            total += self.ensure_instances(rule, dates)
        return total

    def get_instance(self, instance_id: int) -> models.RecurringInstance:
        instance = self.db.get(models.RecurringInstance, instance_id)
        if instance is None:
            raise InstanceNotFound(f"instance {instance_id} not found")
        return instance

    def list_instances(
        self,
        owner_ids: Sequence[int],
        *,
        start: date | None = None,
        end: date | None = None,
        status: models.InstanceStatus | None = None,
    ) -> list[models.RecurringInstance]:
        """Instances by owner, optionally bounded by inclusive due dates and effective status."""
        Rule = models.RecurringRule
        Instance = models.RecurringInstance
        q = (
            self.db.query(Instance)
            .outerjoin(Rule, Instance.rule_id == Rule.id)
            .filter(Instance.user_id.in_(list(owner_ids)))
        )
        if start is not None:
            q = q.filter(Instance.due_date >= start)
        if end is not None:
            q = q.filter(Instance.due_date <= end)
        if status is not None:
            open_statuses = list(models.OPEN_INSTANCE_STATUSES)
            if status == models.InstanceStatus.PAUSED:
                q = q.filter(Instance.status.in_(open_statuses), Rule.is_active.is_(False))
            elif status in open_statuses:
                q = q.filter(
                    Instance.status == status,
                    or_(Rule.id.is_(None), Rule.is_active.is_(True)),
                )
            else:
                q = q.filter(Instance.status == status)
        return q.order_by(Instance.due_date, Instance.id).all()

    def pay_instance(
        self,
        instance_id: int,
        *,
        paid_at: datetime | None = None,
        transaction_id: str | None = None,
    ) -> models.RecurringInstance:
        instance = self.get_instance(instance_id)
        if instance.rule_id is None:
            raise InvalidTransition("the rule of this instance was deleted")
        paid_at = to_utc_naive(paid_at) if paid_at is not None else as_naive_utc(self.clock.now())

        updated = (
            self.db.query(models.RecurringInstance)
            .filter(
                models.RecurringInstance.id == instance_id,
                models.RecurringInstance.rule_id.isnot(None),
                models.RecurringInstance.status.in_(list(models.OPEN_INSTANCE_STATUSES)),
            )
            .update(
                {
                    models.RecurringInstance.status: models.InstanceStatus.PAID,
                    models.RecurringInstance.paid_at: paid_at,
                    models.RecurringInstance.transaction_id: transaction_id,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            raise InvalidTransition(f"instance {instance_id} is already {instance.status.value}")

        self.db.query(models.ReminderDelivery).filter(
            models.ReminderDelivery.instance_id == instance_id,
            models.ReminderDelivery.status == models.ReminderStatus.PENDING,
        ).update(
            {
                models.ReminderDelivery.status: models.ReminderStatus.SKIPPED,
                models.ReminderDelivery.skip_reason: "paid",
            },
            synchronize_session=False,
        )
        self.db.commit()
        self.db.refresh(instance)
        logger.info("instance %s paid", instance_id)
        return instance

    def postpone_instance(
        self,
        instance_id: int,
        new_due_date: date,
        notes: str | None = None,
    ) -> models.RecurringInstance:
        """Move an open instance to ``new_due_date`` and re-arm its reminders.

        The vacated date is no longer covered, so a later expansion over it
        generates a fresh scheduled instance.
        """
        instance = self.get_instance(instance_id)
        if instance.status not in models.OPEN_INSTANCE_STATUSES:
            raise InvalidTransition(f"instance {instance_id} is already {instance.status.value}")

        if instance.rule_id is not None:
            clash = (
                self.db.query(models.RecurringInstance.id)
                .filter(
                    models.RecurringInstance.rule_id == instance.rule_id,
                    models.RecurringInstance.due_date == new_due_date,
                    models.RecurringInstance.id != instance_id,
                )
                .first()
            )
            if clash is not None:
                raise InstanceConflict(f"another instance is already due on {new_due_date.isoformat()}")

        try:
            updated = (
                self.db.query(models.RecurringInstance)
                .filter(
                    models.RecurringInstance.id == instance_id,
                    models.RecurringInstance.status.in_(list(models.OPEN_INSTANCE_STATUSES)),
                    models.RecurringInstance.due_date == instance.due_date,
                )
                .update(
                    {
                        models.RecurringInstance.status: models.InstanceStatus.POSTPONED,
                        models.RecurringInstance.due_date: new_due_date,
                        models.RecurringInstance.notes: notes,
                    },
                    synchronize_session=False,
                )
            )
        except IntegrityError as exc:
            self.db.rollback()
            raise InstanceConflict(f"another instance is already due on {new_due_date.isoformat()}") from exc
        if updated != 1:
            self.db.rollback()
            raise InvalidTransition(f"instance {instance_id} changed concurrently")

        self._reset_reminders(models.ReminderDelivery.instance_id == instance_id)
        self.db.commit()
        self.db.refresh(instance)
        logger.info("instance %s postponed to %s", instance_id, new_due_date.isoformat())
        return instance

    def _reset_reminders(self, criterion) -> int:
        return (
            self.db.query(models.ReminderDelivery)
            .filter(criterion)
            .update(
                {
                    models.ReminderDelivery.status: models.ReminderStatus.PENDING,
                    models.ReminderDelivery.sent_at: None,
                    models.ReminderDelivery.claimed_at: None,
                    models.ReminderDelivery.skip_reason: None,
                    models.ReminderDelivery.last_error: None,
                },
                synchronize_session=False,
            )
        )
