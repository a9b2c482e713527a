"""
Periodic scheduler tick

Per tick:
- pick eligible users (active rule, open reminder, unsynced commitment, active calendar connection, daily agenda)
- process users in parallel on a bounded thread pool, one DB session per user
- per user: generation -> reminders -> agenda -> calendar sync
- a failing step is recorded in that user's outcome and never aborts the batch
- no user starts after the tick deadline; those are reported as deferred
"""

from __future__ import annotations

import concurrent.futures
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, sessionmaker

from .. import models
from ..core.clock import Clock, SystemClock
from ..core.config import settings
from ..core.database import SessionLocal
from ..core.timezones import as_naive_utc, local_today, resolve_zone
from ..exceptions import ReconnectRequired
from .agenda import AgendaService
from .instance_store import InstanceStore
from .notifications import NotificationDispatcher, WhatsAppDispatcher
from .reminder_planner import ReminderPlanner
from .sync_coordinator import AdapterFactory, SyncCoordinator


logger = logging.getLogger(__name__)

DispatcherFactory = Callable[[Session], NotificationDispatcher]


@dataclass
class UserOutcome:
    user_id: int
    status: str = "ok"  # ok | partial | failed | deferred
    instances_created: int = 0
    reminders_sent: int = 0
    reminders_skipped: int = 0
    reminders_failed: int = 0
    agenda_sent: bool = False
    sync_status: Optional[str] = None
    errors: list[str] = field(default_factory=list)


@dataclass
class TickReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    users: list[UserOutcome] = field(default_factory=list)

    @property
    def deferred(self) -> list[int]:
        return [o.user_id for o in self.users if o.status == "deferred"]

    @property
    def failed(self) -> list[int]:
        return [o.user_id for o in self.users if o.status == "failed"]


def whatsapp_dispatcher(db: Session) -> NotificationDispatcher:
    def _lookup(user_id: int) -> str | None:
        return (
            db.query(models.UserProfile.phone_number)
            .filter(models.UserProfile.user_id == user_id)
            .scalar()
        )

    return WhatsAppDispatcher(_lookup)


class SchedulerRunner:
    STEPS = ("generation", "reminders", "agenda", "sync")

    def __init__(
        self,
        session_factory: sessionmaker | Callable[[], Session] = SessionLocal,
        *,
        dispatcher_factory: DispatcherFactory | None = None,
        adapter_factory: AdapterFactory | None = None,
        clock: Clock | None = None,
        max_workers: int | None = None,
        deadline_seconds: float | None = None,
    ):
        self.session_factory = session_factory
        self.dispatcher_factory = dispatcher_factory or whatsapp_dispatcher
        self.adapter_factory = adapter_factory
        self.clock = clock or SystemClock()
        self.max_workers = max_workers or settings.SCHEDULER_MAX_WORKERS
        self.deadline_seconds = settings.TICK_DEADLINE_SECONDS if deadline_seconds is None else deadline_seconds

    # --------------------------------------------------------------- ticks

    def eligible_users(self, db: Session) -> list[int]:
        User = models.User
        q = db.query(User.id).filter(User.is_active.is_(True)).filter(
            or_(
                User.id.in_(db.query(models.RecurringRule.user_id).filter(models.RecurringRule.is_active.is_(True))),
                User.id.in_(
                    db.query(models.ReminderDelivery.user_id).filter(
                        models.ReminderDelivery.status.in_(
                            [models.ReminderStatus.PENDING, models.ReminderStatus.DISPATCHING]
                        )
                    )
                ),
                User.id.in_(
                    db.query(models.Commitment.user_id).filter(
                        or_(
                            models.Commitment.deleted_at.isnot(None),
                            models.Commitment.sync_state != models.SyncState.LINKED,
                        )
                    )
                ),
                User.id.in_(
                    db.query(models.CalendarConnection.user_id).filter(
                        models.CalendarConnection.status == models.ConnectionStatus.ACTIVE
                    )
                ),
                User.id.in_(
                    db.query(models.UserProfile.user_id).filter(
                        models.UserProfile.daily_agenda_enabled.is_(True),
                        models.UserProfile.phone_number.isnot(None),
                    )
                ),
            )
        )
        return [row[0] for row in q.order_by(User.id).all()]

    def run_tick(self, now: datetime | None = None) -> TickReport:
        now = now or self.clock.now()
        report = TickReport(started_at=as_naive_utc(now))
        deadline = time.monotonic() + self.deadline_seconds

        with self.session_factory() as db:
            user_ids = self.eligible_users(db)
        logger.info("tick started: %d eligible user(s)", len(user_ids))

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="duesync-tick"
        ) as executor:
            futures = {executor.submit(self._process_user, uid, now, deadline): uid for uid in user_ids}
            for future in concurrent.futures.as_completed(futures):
                uid = futures[future]
                try:
                    report.users.append(future.result())
                except Exception as exc:  # _process_user guards its steps; this is session setup failing
                    logger.exception("user %s crashed outside of its steps", uid)
                    report.users.append(UserOutcome(user_id=uid, status="failed", errors=[repr(exc)]))

        report.users.sort(key=lambda o: o.user_id)
        report.finished_at = as_naive_utc(self.clock.now())
        logger.info(
            "tick finished: %d user(s), %d failed, %d deferred",
            len(report.users), len(report.failed), len(report.deferred),
        )
        return report

    def run_for_user(self, user_id: int, now: datetime | None = None) -> UserOutcome:
        """On-demand run for a single user; same steps and guarantees as a tick."""
        return self._process_user(user_id, now or self.clock.now(), math.inf)

    def run_forever(self, interval: float | None = None, stop_event: threading.Event | None = None) -> None:
        interval = settings.SCHEDULER_INTERVAL_SECONDS if interval is None else interval
        stop_event = stop_event or threading.Event()
        logger.info("scheduler loop started (interval=%ss)", interval)
        while not stop_event.is_set():
            try:
                self.run_tick()
            except Exception:  # a broken tick must not kill the loop
                logger.exception("scheduler tick failed")
            stop_event.wait(interval)
        logger.info("scheduler loop stopped")

    # ------------------------------------------------------------ per user

    def _process_user(self, user_id: int, now: datetime, deadline: float) -> UserOutcome:
        outcome = UserOutcome(user_id=user_id)
        if time.monotonic() >= deadline:
            outcome.status = "deferred"
            return outcome

        failures = 0
        with self.session_factory() as db:
            dispatcher = self.dispatcher_factory(db)
            try:
                for step in self.STEPS:
                    try:
                        getattr(self, f"_step_{step}")(db, dispatcher, user_id, now, outcome)
                    except ReconnectRequired as exc:
                        db.rollback()
                        outcome.sync_status = exc.code
                        outcome.errors.append(f"{step}: {exc.code}")
                        failures += 1
                    except Exception as exc:
                        db.rollback()
                        logger.exception("user %s: %s step failed", user_id, step)
                        outcome.errors.append(f"{step}: {exc.__class__.__name__}: {exc}")
                        failures += 1
            finally:
                close = getattr(dispatcher, "close", None)
                if callable(close):
                    close()

        if failures == len(self.STEPS):
            outcome.status = "failed"
        elif failures or outcome.errors:
            outcome.status = "partial"
        return outcome

    def _step_generation(self, db, dispatcher, user_id, now, outcome: UserOutcome) -> None:
        tz_name = (
            db.query(models.UserProfile.timezone).filter(models.UserProfile.user_id == user_id).scalar()
        )
        today = local_today(now, resolve_zone(tz_name))
        outcome.instances_created = InstanceStore(db, self.clock).generate_for_user(user_id, today)

    def _step_reminders(self, db, dispatcher, user_id, now, outcome: UserOutcome) -> None:
        report = ReminderPlanner(db, dispatcher, self.clock).dispatch_due(now, user_id)
        outcome.reminders_sent = report.sent
        outcome.reminders_skipped = report.skipped
        outcome.reminders_failed = report.failed
        outcome.errors.extend(report.errors)

    def _step_agenda(self, db, dispatcher, user_id, now, outcome: UserOutcome) -> None:
        outcome.agenda_sent = AgendaService(db, dispatcher, self.clock).send_if_due(user_id, now)

    def _step_sync(self, db, dispatcher, user_id, now, outcome: UserOutcome) -> None:
        coordinator = SyncCoordinator(db, self.adapter_factory, self.clock)
        connection = coordinator.get_connection(user_id)
        if connection is not None and connection.is_revoked:
            # waits for an explicit reconnect; nothing to report as a new failure
            outcome.sync_status = ReconnectRequired.code
            return
        result = coordinator.reconcile(user_id)
        outcome.sync_status = result.status
        outcome.errors.extend(result.errors)
