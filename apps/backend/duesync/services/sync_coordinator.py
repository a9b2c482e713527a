"""
Commitment <-> Google Calendar synchronization

Sync states per commitment:
- unlinked: no remote event yet
- linked: remote event id stored, local and remote agree
- stale: linked, with local edits not yet pushed

Conflict policy: a remote change overwrites local data only when its
``updated`` timestamp is strictly newer than ``local_modified_at``. Tombstoned
commitments (deleted locally, remote delete pending) are never resurrected by
a pull.

All sync work for one user runs under a per-user re-entrant lock.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..core.clock import Clock, SystemClock
from ..core.config import settings
from ..core.timezones import as_naive_utc, resolve_zone, to_utc_naive
from ..exceptions import (
    CalendarAuthRevoked,
    CalendarEventNotFound,
    CalendarTransientError,
    CommitmentNotFound,
    ReconnectRequired,
)
from .calendar_adapter import (
    CalendarSyncAdapter,
    EventFields,
    RemoteEvent,
    google_adapter_for,
    revoke_google_token,
)
from .recurrence_expander import normalize_reminder_offsets
from .reminder_planner import ReminderPlanner


logger = logging.getLogger(__name__)

AdapterFactory = Callable[[models.CalendarConnection], CalendarSyncAdapter]

_locks_guard = threading.Lock()
_user_locks: dict[int, threading.RLock] = {}


def user_sync_lock(user_id: int) -> threading.RLock:
    with _locks_guard:
        lock = _user_locks.get(user_id)
        if lock is None:
            lock = _user_locks[user_id] = threading.RLock()
        return lock


@dataclass
class PushResult:
    ok: bool
    op: str
    commitment_id: int
    remote_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class SyncOutcome:
    status: str = "ok"  # ok | partial | not_connected | reconnect_required | failed
    pushed: int = 0
    push_failed: int = 0
    imported: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)


def default_reminder_offsets(db: Session, user_id: int) -> list[int]:
    offsets = (
        db.query(models.UserProfile.default_reminder_offsets)
        .filter(models.UserProfile.user_id == user_id)
        .scalar()
    )
    return normalize_reminder_offsets(offsets, default=settings.DEFAULT_REMINDER_OFFSETS)


class SyncCoordinator:
    def __init__(
        self,
        db: Session,
        adapter_factory: AdapterFactory | None = None,
        clock: Clock | None = None,
        token_revoker: Callable[[str], bool] | None = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.adapter_factory = adapter_factory or self._google_adapter
        self.token_revoker = token_revoker or (lambda token: revoke_google_token(token))
        self.planner = ReminderPlanner(db, clock=self.clock)

    def _now(self) -> datetime:
        return as_naive_utc(self.clock.now())

    # ----------------------------------------------------------- connection

    def _google_adapter(self, connection: models.CalendarConnection) -> CalendarSyncAdapter:
        connection_id = connection.id

        def _persist(access_token: str, expires_at: datetime) -> None:
            self.db.query(models.CalendarConnection).filter(models.CalendarConnection.id == connection_id).update(
                {
                    models.CalendarConnection.access_token: access_token,
                    models.CalendarConnection.token_expires_at: expires_at,
                },
                synchronize_session=False,
            )
            self.db.commit()

        tz_name = (
            self.db.query(models.UserProfile.timezone)
            .filter(models.UserProfile.user_id == connection.user_id)
            .scalar()
        )
        return google_adapter_for(
            access_token=connection.access_token,
            refresh_token=connection.refresh_token,
            expires_at=connection.token_expires_at,
            calendar_id=connection.calendar_id,
            time_zone=resolve_zone(tz_name).key,
            clock=self.clock,
            on_refresh=_persist,
        )

    def get_connection(self, user_id: int) -> models.CalendarConnection | None:
        return (
            self.db.query(models.CalendarConnection)
            .filter(models.CalendarConnection.user_id == user_id)
            .populate_existing()
            .one_or_none()
        )

    def connect(
        self,
        user_id: int,
        *,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int | None = None,
        calendar_email: str | None = None,
        calendar_id: str = "primary",
    ) -> models.CalendarConnection:
        """Store (or replace) the user's connection. This is the only way out of ``revoked``."""
        now = self._now()
        expires_at = now + timedelta(seconds=expires_in) if expires_in else None
        connection = self.get_connection(user_id)
        if connection is None:
            connection = models.CalendarConnection(user_id=user_id)
            self.db.add(connection)
        elif refresh_token is None:
            # Google only returns a refresh token on first consent
            refresh_token = connection.refresh_token
        connection.provider = "google"
        connection.access_token = access_token
        connection.refresh_token = refresh_token
        connection.token_expires_at = expires_at
        connection.calendar_email = calendar_email
        connection.calendar_id = calendar_id or "primary"
        connection.connected_at = now
        connection.status = models.ConnectionStatus.ACTIVE
        connection.revoked_at = None
        connection.revoked_reason = None
        self.db.commit()
        self.db.refresh(connection)
        logger.info("calendar connected for user %s", user_id)
        return connection

    def disconnect(self, user_id: int) -> bool:
        """Revoke the token (best effort), drop the connection and unlink commitments."""
        with user_sync_lock(user_id):
            connection = self.get_connection(user_id)
            if connection is None:
                return False
            if connection.status == models.ConnectionStatus.ACTIVE:
                self.token_revoker(connection.access_token)
            self.db.delete(connection)
            # tombstones can no longer reach the provider
            for commitment in (
                self.db.query(models.Commitment)
                .filter(models.Commitment.user_id == user_id, models.Commitment.deleted_at.isnot(None))
                .all()
            ):
                self.db.delete(commitment)
            self.db.query(models.Commitment).filter(
                models.Commitment.user_id == user_id,
                models.Commitment.google_event_id.isnot(None),
            ).update(
                {
                    models.Commitment.google_event_id: None,
                    models.Commitment.sync_state: models.SyncState.UNLINKED,
                    models.Commitment.remote_updated_at: None,
                },
                synchronize_session=False,
            )
            self.db.commit()
            logger.info("calendar disconnected for user %s", user_id)
            return True

    def connection_status(self, user_id: int) -> dict[str, Any]:
        connection = self.get_connection(user_id)
        if connection is None:
            return {"connected": False}
        return {
            "connected": connection.status == models.ConnectionStatus.ACTIVE,
            "status": connection.status,
            "calendar_email": connection.calendar_email,
            "connected_at": connection.connected_at,
            "last_synced_at": connection.last_synced_at,
            "revoked_reason": connection.revoked_reason,
        }

    def revoke(self, connection_id: int, reason: str) -> bool:
        updated = (
            self.db.query(models.CalendarConnection)
            .filter(
                models.CalendarConnection.id == connection_id,
                models.CalendarConnection.status == models.ConnectionStatus.ACTIVE,
            )
            .update(
                {
                    models.CalendarConnection.status: models.ConnectionStatus.REVOKED,
                    models.CalendarConnection.revoked_at: self._now(),
                    models.CalendarConnection.revoked_reason: reason[:64],
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        if updated:
            logger.warning("calendar connection %s revoked: %s", connection_id, reason)
        return updated == 1

    def _active_adapter(self, user_id: int) -> tuple[models.CalendarConnection, CalendarSyncAdapter] | None:
        connection = self.get_connection(user_id)
        if connection is None:
            return None
        if connection.status == models.ConnectionStatus.REVOKED:
            raise ReconnectRequired("calendar connection was revoked; reconnect to resume sync")
        return connection, self.adapter_factory(connection)

    @contextmanager
    def _auth_guard(self, connection: models.CalendarConnection) -> Iterator[None]:
        try:
            yield
        except CalendarAuthRevoked as exc:
            self.db.rollback()
            self.revoke(connection.id, exc.message)
            raise ReconnectRequired("calendar authorization revoked; reconnect to resume sync") from exc

    @staticmethod
    def _close(adapter: CalendarSyncAdapter) -> None:
        close = getattr(adapter, "close", None)
        if callable(close):
            close()

    # ----------------------------------------------------------------- push

    def _fields(self, commitment: models.Commitment, connection: models.CalendarConnection) -> EventFields:
        tz_name = (
            self.db.query(models.UserProfile.timezone)
            .filter(models.UserProfile.user_id == commitment.user_id)
            .scalar()
        )
        return EventFields(
            title=commitment.title,
            start=commitment.scheduled_at,
            duration_minutes=commitment.duration_minutes or 60,
            description=commitment.description,
            location=commitment.location,
            time_zone=resolve_zone(tz_name).key,
        )

    def push(self, commitment: models.Commitment, op: str) -> PushResult:
        """Push one local change. Failures are recorded, never retried inline."""
        if op not in ("create", "update", "delete"):
            raise ValueError(f"unknown push operation: {op}")
        commitment_id = commitment.id
        user_id = commitment.user_id

        with user_sync_lock(user_id):
            if op == "delete" and commitment.google_event_id is None:
                self.db.delete(commitment)
                self.db.commit()
                return PushResult(True, op, commitment_id)

            active = self._active_adapter(user_id)
            if active is None:
                return PushResult(False, op, commitment_id, error="not_connected")
            connection, adapter = active
            try:
                with self._auth_guard(connection):
                    return self._push(adapter, connection, commitment, op)
            except CalendarTransientError as exc:
                self.db.rollback()
                self._record_error(commitment_id, exc.message)
                logger.warning("push %s of commitment %s failed: %s", op, commitment_id, exc.message)
                return PushResult(False, op, commitment_id, error=exc.message)
            finally:
                self._close(adapter)

    def _push(
        self,
        adapter: CalendarSyncAdapter,
        connection: models.CalendarConnection,
        commitment: models.Commitment,
        op: str,
    ) -> PushResult:
        commitment_id = commitment.id
        if op == "create" and commitment.google_event_id:
            return PushResult(True, op, commitment_id, remote_id=commitment.google_event_id, skipped=True)

        if op == "delete":
            try:
                adapter.delete_event(commitment.google_event_id)
            except CalendarEventNotFound:
                logger.info("remote event of commitment %s already gone", commitment_id)
            remote_id = commitment.google_event_id
            self.db.delete(commitment)
            self.db.commit()
            return PushResult(True, op, commitment_id, remote_id=remote_id)

        fields = self._fields(commitment, connection)
        if commitment.google_event_id is None:
            remote_id = adapter.create_event(fields)
        else:
            remote_id = commitment.google_event_id
            try:
                adapter.update_event(remote_id, fields)
            except CalendarEventNotFound:
                logger.info("remote event %s vanished; recreating for commitment %s", remote_id, commitment_id)
                remote_id = adapter.create_event(fields)
        return self._link(commitment_id, remote_id, op)

    def _link(self, commitment_id: int, remote_id: str, op: str) -> PushResult:
        # taken after the provider call returned, so the echo of this write is never newer
        now = self._now()
        try:
            self.db.query(models.Commitment).filter(models.Commitment.id == commitment_id).update(
                {
                    models.Commitment.google_event_id: remote_id,
                    models.Commitment.sync_state: models.SyncState.LINKED,
                    models.Commitment.local_modified_at: now,
                    models.Commitment.remote_updated_at: now,
                    models.Commitment.last_synced_at: now,
                    models.Commitment.last_sync_error: None,
                },
                synchronize_session=False,
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            message = f"remote event {remote_id} is already linked to another commitment"
            self._record_error(commitment_id, message)
            return PushResult(False, op, commitment_id, remote_id=remote_id, error=message)
        return PushResult(True, op, commitment_id, remote_id=remote_id)

    def _record_error(self, commitment_id: int, message: str) -> None:
        self.db.query(models.Commitment).filter(models.Commitment.id == commitment_id).update(
            {models.Commitment.last_sync_error: message[:500]}, synchronize_session=False
        )
        self.db.commit()

    # ----------------------------------------------------------------- pull

    def pull(self, user_id: int, remote_events: Sequence[RemoteEvent]) -> dict[str, int]:
        """Apply remote events to local commitments keyed by remote id."""
        counts = {"imported": 0, "updated": 0, "deleted": 0}
        if not remote_events:
            return counts
        with user_sync_lock(user_id):
            ids = [event.remote_id for event in remote_events]
            local_by_remote = {
                c.google_event_id: c
                for c in self.db.query(models.Commitment)
                .filter(models.Commitment.user_id == user_id, models.Commitment.google_event_id.in_(ids))
                .all()
            }
            offsets: list[int] | None = None
            now = self._now()

            for event in remote_events:
                local = local_by_remote.get(event.remote_id)
                if local is None:
                    if event.cancelled:
                        continue
                    if offsets is None:
                        offsets = default_reminder_offsets(self.db, user_id)
                    if self._import(user_id, event, offsets, now):
                        counts["imported"] += 1
                    continue

                if local.deleted_at is not None:
                    continue
                if not event.updated > local.local_modified_at:
                    continue

                if event.cancelled:
                    self.db.delete(local)
                    self.db.commit()
                    counts["deleted"] += 1
                    logger.info("commitment %s deleted remotely", local.id)
                    continue

                start_changed = local.scheduled_at != event.start
                local.title = event.title
                local.description = event.description
                local.location = event.location
                local.scheduled_at = event.start
                local.duration_minutes = event.duration_minutes
                local.local_modified_at = event.updated
                local.remote_updated_at = event.updated
                local.sync_state = models.SyncState.LINKED
                local.last_synced_at = now
                local.last_sync_error = None
                if start_changed:
                    self.planner.reset_commitment_reminders(local.id)
                self.db.commit()
                counts["updated"] += 1
        return counts

    def _import(self, user_id: int, event: RemoteEvent, offsets: list[int], now: datetime) -> bool:
        organization_id = self.db.query(models.User.organization_id).filter(models.User.id == user_id).scalar()
        commitment = models.Commitment(
            user_id=user_id,
            organization_id=organization_id,
            title=event.title,
            description=event.description,
            location=event.location,
            scheduled_at=event.start,
            duration_minutes=event.duration_minutes,
            category=models.CommitmentCategory.MEETING if event.has_conference else models.CommitmentCategory.OTHER,
            participants=[],
            origin=models.CommitmentOrigin.GOOGLE,
            google_event_id=event.remote_id,
            sync_state=models.SyncState.LINKED,
            remote_updated_at=event.updated,
            local_modified_at=event.updated,
            last_synced_at=now,
        )
        commitment.reminders = [
            models.ReminderDelivery(user_id=user_id, minutes_before=offset) for offset in offsets
        ]
        self.db.add(commitment)
        try:
            self.db.commit()
        except IntegrityError:
            # imported concurrently
            self.db.rollback()
            return False
        return True

    # ------------------------------------------------------------ reconcile

    def reconcile(self, user_id: int) -> SyncOutcome:
        """Pull remote changes, then push pending local changes for one user.

        Raises ReconnectRequired when the connection is (or becomes) revoked.
        """
        with user_sync_lock(user_id):
            active = self._active_adapter(user_id)
            if active is None:
                return SyncOutcome(status="not_connected")
            connection, adapter = active
            outcome = SyncOutcome()
            now = self._now()
            try:
                with self._auth_guard(connection):
                    try:
                        events = adapter.list_events(now, now + timedelta(days=settings.SYNC_IMPORT_WINDOW_DAYS))
                    except CalendarTransientError as exc:
                        outcome.errors.append(f"list: {exc.message}")
                    else:
                        counts = self.pull(user_id, events)
                        outcome.imported = counts["imported"]
                        outcome.updated = counts["updated"]
                        outcome.deleted = counts["deleted"]

                    for commitment, op in self._pending_pushes(user_id, now):
                        try:
                            result = self._push(adapter, connection, commitment, op)
                        except CalendarTransientError as exc:
                            self.db.rollback()
                            self._record_error(commitment.id, exc.message)
                            result = PushResult(False, op, commitment.id, error=exc.message)
                        if result.ok:
                            outcome.pushed += 0 if result.skipped else 1
                        else:
                            outcome.push_failed += 1
                            outcome.errors.append(f"push {op} {result.commitment_id}: {result.error}")
            finally:
                self._close(adapter)

            self.db.query(models.CalendarConnection).filter(models.CalendarConnection.id == connection.id).update(
                {models.CalendarConnection.last_synced_at: self._now()}, synchronize_session=False
            )
            self.db.commit()
            if outcome.errors:
                outcome.status = "partial"
            logger.info(
                "sync user %s: %s pushed=%d imported=%d updated=%d deleted=%d failed=%d",
                user_id, outcome.status, outcome.pushed, outcome.imported,
                outcome.updated, outcome.deleted, outcome.push_failed,
            )
            return outcome

    def _pending_pushes(self, user_id: int, now: datetime) -> list[tuple[models.Commitment, str]]:
        Commitment = models.Commitment
        tombstones = (
            self.db.query(Commitment)
            .filter(Commitment.user_id == user_id, Commitment.deleted_at.isnot(None))
            .order_by(Commitment.id)
            .all()
        )
        stale = (
            self.db.query(Commitment)
            .filter(
                Commitment.user_id == user_id,
                Commitment.deleted_at.is_(None),
                Commitment.sync_state == models.SyncState.STALE,
            )
            .order_by(Commitment.scheduled_at)
            .all()
        )
        unlinked = (
            self.db.query(Commitment)
            .filter(
                Commitment.user_id == user_id,
                Commitment.deleted_at.is_(None),
                Commitment.google_event_id.is_(None),
                Commitment.scheduled_at >= now,
            )
            .order_by(Commitment.scheduled_at)
            .limit(settings.SYNC_PUSH_BATCH_LIMIT)
            .all()
        )
        pending = [(c, "delete") for c in tombstones]
        pending += [(c, "update") for c in stale]
        pending += [(c, "create") for c in unlinked if c.sync_state != models.SyncState.STALE]
        return pending


class CommitmentService:
    """Local commitment edits with an immediate, non-fatal push."""

    def __init__(self, db: Session, coordinator: SyncCoordinator | None = None, clock: Clock | None = None):
        self.db = db
        self.clock = clock or (coordinator.clock if coordinator else SystemClock())
        self.coordinator = coordinator or SyncCoordinator(db, clock=self.clock)
        self.planner = ReminderPlanner(db, clock=self.clock)

    def _now(self) -> datetime:
        return as_naive_utc(self.clock.now())

    def _zone(self, user_id: int):
        return self.planner.zone_for(user_id)

    def get(self, commitment_id: int) -> models.Commitment:
        commitment = self.db.get(models.Commitment, commitment_id)
        if commitment is None or commitment.deleted_at is not None:
            raise CommitmentNotFound(f"commitment {commitment_id} not found")
        return commitment

    def list(
        self,
        owner_ids: Sequence[int],
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[models.Commitment]:
        q = self.db.query(models.Commitment).filter(
            models.Commitment.user_id.in_(list(owner_ids)),
            models.Commitment.deleted_at.is_(None),
        )
        if start is not None:
            q = q.filter(models.Commitment.scheduled_at >= to_utc_naive(start))
        if end is not None:
            q = q.filter(models.Commitment.scheduled_at < to_utc_naive(end))
        return q.order_by(models.Commitment.scheduled_at, models.Commitment.id).all()

    def _try_push(self, commitment: models.Commitment, op: str) -> PushResult | None:
        if self.coordinator.get_connection(commitment.user_id) is None and op != "delete":
            return None
        try:
            return self.coordinator.push(commitment, op)
        except ReconnectRequired as exc:
            return PushResult(False, op, commitment.id, error=exc.code)

    def create(self, owner: models.User, payload: Any) -> tuple[models.Commitment, PushResult | None]:
        data = payload.model_dump() if hasattr(payload, "model_dump") else dict(payload)
        offsets = data.get("reminder_offsets")
        if offsets is None:
            offsets = default_reminder_offsets(self.db, owner.id)
        commitment = models.Commitment(
            user_id=owner.id,
            organization_id=owner.organization_id,
            title=data["title"],
            description=data.get("description"),
            scheduled_at=to_utc_naive(data["scheduled_at"], self._zone(owner.id)),
            duration_minutes=data.get("duration_minutes") or 60,
            category=data.get("category") or models.CommitmentCategory.OTHER,
            location=data.get("location"),
            participants=list(data.get("participants") or []),
            origin=models.CommitmentOrigin.LOCAL,
            sync_state=models.SyncState.UNLINKED,
            local_modified_at=self._now(),
        )
        self.planner.schedule_commitment_reminders(commitment, normalize_reminder_offsets(offsets))
        self.db.add(commitment)
        self.db.commit()
        self.db.refresh(commitment)
        result = self._try_push(commitment, "create")
        self.db.refresh(commitment)
        return commitment, result

    def update(self, commitment_id: int, changes: dict[str, Any]) -> tuple[models.Commitment, PushResult | None]:
        commitment = self.get(commitment_id)
        rescheduled = False
        for name in ("title", "duration_minutes", "category", "participants"):
            if changes.get(name) is not None:
                setattr(commitment, name, changes[name])
        for name in ("description", "location"):
            if name in changes:
                setattr(commitment, name, changes[name])
        if changes.get("scheduled_at") is not None:
            scheduled_at = to_utc_naive(changes["scheduled_at"], self._zone(commitment.user_id))
            rescheduled = scheduled_at != commitment.scheduled_at
            commitment.scheduled_at = scheduled_at
        commitment.local_modified_at = self._now()
        if commitment.google_event_id is not None:
            commitment.sync_state = models.SyncState.STALE
        if rescheduled:
            self.planner.reset_commitment_reminders(commitment.id)
        self.db.commit()
        self.db.refresh(commitment)
        result = self._try_push(commitment, "update")
        self.db.refresh(commitment)
        return commitment, result

    def delete(self, commitment_id: int) -> PushResult | None:
        """Linked commitments become tombstones until the remote delete succeeds."""
        commitment = self.get(commitment_id)
        if commitment.google_event_id is None:
            self.db.delete(commitment)
            self.db.commit()
            return None
        commitment.deleted_at = self._now()
        commitment.local_modified_at = commitment.deleted_at
        self.db.commit()
        return self._try_push(commitment, "delete")
