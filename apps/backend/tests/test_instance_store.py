from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from duesync import models
from duesync.exceptions import InstanceConflict, InstanceNotFound, InvalidTransition, RuleValidationError
from duesync.services.instance_store import InstanceStore


TODAY = date(2024, 3, 25)


def _monthly_rule(store: InstanceStore, user, day: int = 28, **kw) -> models.RecurringRule:
    payload = {
        "title": "Aluguel",
        "amount": 1500.5,
        "kind": models.EntryKind.EXPENSE,
        "frequency": models.RecurringFrequency.MONTHLY,
        "day_of_month": day,
        "start_date": date(2024, 1, 1),
    }
    payload.update(kw)
    return store.create_rule(user, payload)


def _instances(db, rule_id=None):
    q = db.query(models.RecurringInstance)
    if rule_id is not None:
        q = q.filter(models.RecurringInstance.rule_id == rule_id)
    return q.order_by(models.RecurringInstance.due_date).all()


def test_generation_is_idempotent(db_session, user, clock):
    store = InstanceStore(db_session, clock)
    rule = _monthly_rule(store, user)

    assert store.generate_for_user(user.id, TODAY, horizon_days=45) == 2
    assert store.generate_for_user(user.id, TODAY, horizon_days=45) == 0

    instances = _instances(db_session, rule.id)
    assert [i.due_date for i in instances] == [date(2024, 3, 28), date(2024, 4, 28)]
    assert all(i.amount == Decimal("1500.50") for i in instances)
    assert [r.minutes_before for r in instances[0].reminders] == [1440, 60]
    db_session.refresh(rule)
    assert rule.last_generated_on == date(2024, 4, 28)


def test_parallel_generation_creates_one_instance_per_date(db_session, session_factory, user, clock):
    rule = _monthly_rule(InstanceStore(db_session, clock), user)
    dates = [date(2024, 3, 28), date(2024, 4, 28)]

    with session_factory() as other:
        other_rule = other.get(models.RecurringRule, rule.id)
        assert InstanceStore(other, clock).ensure_instances(other_rule, dates) == 2
    assert InstanceStore(db_session, clock).ensure_instances(rule, dates + dates) == 0
    assert len(_instances(db_session, rule.id)) == 2


def test_amount_is_snapshotted_at_generation(db_session, user, clock):
    store = InstanceStore(db_session, clock)
    rule = _monthly_rule(store, user)
    store.generate_for_user(user.id, TODAY, horizon_days=10)

    store.update_rule(rule.id, {"amount": 99})
    store.generate_for_user(user.id, TODAY, horizon_days=45)

    amounts = [i.amount for i in _instances(db_session, rule.id)]
    assert amounts == [Decimal("1500.50"), Decimal("99.00")]


def test_pay_is_terminal_and_skips_pending_reminders(db_session, user, clock):
    store = InstanceStore(db_session, clock)
    _monthly_rule(store, user)
    store.generate_for_user(user.id, TODAY, horizon_days=10)
    instance = _instances(db_session)[0]

    paid = store.pay_instance(instance.id, transaction_id="txn-1")
    assert paid.status == models.InstanceStatus.PAID
    assert paid.transaction_id == "txn-1"
    assert paid.paid_at == clock.now().replace(tzinfo=None)
    assert {(r.status, r.skip_reason) for r in paid.reminders} == {(models.ReminderStatus.SKIPPED, "paid")}

    with pytest.raises(InvalidTransition):
        store.pay_instance(instance.id)
    with pytest.raises(InvalidTransition):
        store.postpone_instance(instance.id, date(2024, 4, 2))
    with pytest.raises(InstanceNotFound):
        store.pay_instance(9999)


def test_postpone_vacates_the_old_slot(db_session, user, clock):
    store = InstanceStore(db_session, clock)
    rule = _monthly_rule(store, user)
    store.generate_for_user(user.id, TODAY, horizon_days=10)
    instance = _instances(db_session, rule.id)[0]
    reminder = instance.reminders[0]
    reminder.status = models.ReminderStatus.SENT
    db_session.commit()

    moved = store.postpone_instance(instance.id, date(2024, 4, 2), notes="salario atrasou")
    assert moved.status == models.InstanceStatus.POSTPONED
    assert moved.due_date == date(2024, 4, 2)
    assert moved.slot_date == date(2024, 3, 28)
    assert moved.notes == "salario atrasou"
    assert all(r.status == models.ReminderStatus.PENDING for r in moved.reminders)

    # the 28th is no longer covered, so it regenerates as a fresh instance
    assert store.generate_for_user(user.id, TODAY, horizon_days=10) == 1
    due_dates = [(i.due_date, i.status) for i in _instances(db_session, rule.id)]
    assert due_dates == [
        (date(2024, 3, 28), models.InstanceStatus.SCHEDULED),
        (date(2024, 4, 2), models.InstanceStatus.POSTPONED),
    ]


def test_postpone_onto_an_occupied_date_conflicts(db_session, user, clock):
    store = InstanceStore(db_session, clock)
    rule = _monthly_rule(store, user)
    store.generate_for_user(user.id, TODAY, horizon_days=45)
    first, second = _instances(db_session, rule.id)

    with pytest.raises(InstanceConflict):
        store.postpone_instance(first.id, second.due_date)
    db_session.refresh(first)
    assert first.status == models.InstanceStatus.SCHEDULED
    assert first.due_date == date(2024, 3, 28)


def test_paused_rule_reports_paused_and_stops_generating(db_session, user, clock):
    store = InstanceStore(db_session, clock)
    rule = _monthly_rule(store, user)
    store.generate_for_user(user.id, TODAY, horizon_days=10)

    store.pause_rule(rule.id)
    assert store.generate_for_user(user.id, TODAY, horizon_days=45) == 0
    paused = store.list_instances([user.id], status=models.InstanceStatus.PAUSED)
    assert [i.effective_status for i in paused] == [models.InstanceStatus.PAUSED]
    assert paused[0].status == models.InstanceStatus.SCHEDULED
    assert store.list_instances([user.id], status=models.InstanceStatus.SCHEDULED) == []

    store.resume_rule(rule.id)
    assert store.generate_for_user(user.id, TODAY, horizon_days=45) == 1
    assert len(store.list_instances([user.id], status=models.InstanceStatus.SCHEDULED)) == 2


def test_delete_rule_keeps_history(db_session, user, clock):
    store = InstanceStore(db_session, clock)
    rule = _monthly_rule(store, user)
    store.generate_for_user(user.id, TODAY, horizon_days=45)
    first, second = _instances(db_session, rule.id)
    store.pay_instance(first.id)
    store.postpone_instance(second.id, date(2024, 5, 2))

    result = store.delete_rule(rule.id)
    assert result == {"deleted_instances": 0, "detached_instances": 2}

    remaining = _instances(db_session)
    assert [i.rule_id for i in remaining] == [None, None]
    detached = next(i for i in remaining if i.status == models.InstanceStatus.POSTPONED)
    assert {r.skip_reason for r in detached.reminders} == {"rule_deleted"}
    with pytest.raises(InvalidTransition):
        store.pay_instance(detached.id)


def test_delete_rule_removes_scheduled_instances(db_session, user, clock):
    store = InstanceStore(db_session, clock)
    rule = _monthly_rule(store, user)
    store.generate_for_user(user.id, TODAY, horizon_days=45)

    assert store.delete_rule(rule.id) == {"deleted_instances": 2, "detached_instances": 0}
    assert _instances(db_session) == []
    assert db_session.query(models.ReminderDelivery).count() == 0


def test_update_rule_switching_frequency_drops_old_parameters(db_session, user, clock):
    store = InstanceStore(db_session, clock)
    rule = _monthly_rule(store, user)

    updated = store.update_rule(rule.id, {"frequency": models.RecurringFrequency.WEEKLY, "day_of_week": 1})
    assert updated.day_of_month is None
    assert updated.day_of_week == 1

    with pytest.raises(RuleValidationError):
        store.update_rule(rule.id, {"day_of_month": 5})


def test_update_rule_rejects_clearing_required_fields(db_session, user, clock):
    store = InstanceStore(db_session, clock)
    rule = _monthly_rule(store, user)

    with pytest.raises(RuleValidationError):
        store.update_rule(rule.id, {"amount": None})
    with pytest.raises(RuleValidationError):
        store.update_rule(rule.id, {"title": None})

    db_session.expire_all()
    assert (rule.title, rule.amount) == ("Aluguel", Decimal("1500.50"))
