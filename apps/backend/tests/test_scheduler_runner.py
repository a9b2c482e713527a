from __future__ import annotations

import threading
from datetime import date, timedelta

from duesync import models
from duesync.services.instance_store import InstanceStore
from duesync.services.scheduler_runner import SchedulerRunner
from duesync.services.sync_coordinator import CommitmentService, SyncCoordinator

from conftest import FakeCalendar


def _runner(session_factory, clock, dispatcher, adapter_factory, **kw) -> SchedulerRunner:
    kw.setdefault("deadline_seconds", 60)
    return SchedulerRunner(
        session_factory,
        dispatcher_factory=lambda db: dispatcher,
        adapter_factory=adapter_factory,
        clock=clock,
        max_workers=4,
        **kw,
    )


def _member(db, email: str = "member@example.com") -> models.User:
    member = models.User(email=email, is_active=True)
    db.add(member)
    db.flush()
    db.add(models.UserProfile(user_id=member.id, timezone="America/Sao_Paulo", daily_agenda_enabled=False))
    db.commit()
    return member


def _rule(db, owner, clock, day: int = 26):
    return InstanceStore(db, clock).create_rule(
        owner,
        {
            "title": "Internet",
            "amount": 99.9,
            "frequency": models.RecurringFrequency.MONTHLY,
            "day_of_month": day,
            "start_date": date(2024, 1, 1),
            "reminder_offsets": [1440],
        },
    )


def test_tick_generates_reminds_and_reports(db_session, session_factory, user, clock, dispatcher, adapter_factory):
    _rule(db_session, user, clock)
    CommitmentService(db_session, clock=clock).create(
        user, {"title": "Dentista", "scheduled_at": clock.now() + timedelta(minutes=30), "reminder_offsets": [60]}
    )

    report = _runner(session_factory, clock, dispatcher, adapter_factory).run_tick()

    assert [o.user_id for o in report.users] == [user.id]
    outcome = report.users[0]
    assert outcome.status == "ok"
    assert outcome.instances_created == 2
    assert outcome.reminders_sent == 2
    assert outcome.sync_status == "not_connected"
    assert report.deferred == [] and report.failed == []
    assert len(dispatcher.sent) == 2


def test_only_users_with_pending_work_are_eligible(db_session, session_factory, user, clock, dispatcher, adapter_factory):
    member = _member(db_session)
    idle = _member(db_session, "idle@example.com")
    _rule(db_session, member, clock)
    inactive = db_session.get(models.User, idle.id)
    inactive.is_active = False
    _rule(db_session, inactive, clock)

    runner = _runner(session_factory, clock, dispatcher, adapter_factory)
    with session_factory() as db:
        assert runner.eligible_users(db) == [member.id]


def test_failing_user_does_not_abort_the_tick(db_session, session_factory, user, clock, dispatcher, calendar):
    member = _member(db_session)
    _rule(db_session, user, clock)
    _rule(db_session, member, clock)
    broken = FakeCalendar()
    broken.fail_with = RuntimeError("boom")
    factory = lambda connection: broken if connection.user_id == member.id else calendar  # noqa: E731
    coordinator = SyncCoordinator(db_session, factory, clock)
    coordinator.connect(user.id, access_token="tok-1")
    coordinator.connect(member.id, access_token="tok-2")

    report = _runner(session_factory, clock, dispatcher, factory).run_tick()

    by_user = {o.user_id: o for o in report.users}
    assert by_user[user.id].status == "ok"
    assert by_user[user.id].sync_status == "ok"
    assert by_user[member.id].status == "partial"
    assert by_user[member.id].instances_created == 2
    assert by_user[member.id].errors == ["sync: RuntimeError: boom"]


def test_users_past_the_deadline_are_deferred(db_session, session_factory, user, clock, dispatcher, adapter_factory):
    _rule(db_session, user, clock)

    report = _runner(session_factory, clock, dispatcher, adapter_factory, deadline_seconds=0).run_tick()

    assert report.deferred == [user.id]
    assert dispatcher.sent == []
    assert db_session.query(models.RecurringInstance).count() == 0


def test_revoked_connection_is_reported_without_failing(db_session, session_factory, user, clock, dispatcher, adapter_factory):
    _rule(db_session, user, clock)
    coordinator = SyncCoordinator(db_session, adapter_factory, clock)
    connection = coordinator.connect(user.id, access_token="tok")
    coordinator.revoke(connection.id, "invalid_grant")

    outcome = _runner(session_factory, clock, dispatcher, adapter_factory).run_for_user(user.id)

    assert outcome.status == "ok"
    assert outcome.sync_status == "reconnect_required"
    assert outcome.errors == []


def test_concurrent_runs_for_one_user_send_each_reminder_once(
    db_session, session_factory, user, clock, dispatcher, adapter_factory
):
    CommitmentService(db_session, clock=clock).create(
        user, {"title": "Dentista", "scheduled_at": clock.now() + timedelta(minutes=30), "reminder_offsets": [60]}
    )
    runner = _runner(session_factory, clock, dispatcher, adapter_factory)
    barrier = threading.Barrier(3)

    def _run():
        barrier.wait()
        runner.run_for_user(user.id)

    threads = [threading.Thread(target=_run) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(dispatcher.sent) == 1
