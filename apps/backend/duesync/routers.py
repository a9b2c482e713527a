from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from . import models
from .core.clock import Clock
from .core.database import get_db
from .core.deps import (
    Capability,
    can_edit,
    get_adapter_factory,
    get_capabilities,
    get_clock,
    get_current_user,
    get_dispatcher_factory,
    get_session_factory,
    get_token_revoker,
    visible_user_ids,
)
from .core.timezones import local_today, resolve_zone
from .exceptions import (
    CommitmentNotFound,
    DuesyncError,
    InstanceConflict,
    InstanceNotFound,
    InvalidTransition,
    ReconnectRequired,
    RuleNotFound,
    RuleValidationError,
)
from .schemas import (
    CalendarConnect,
    CommitmentCreate,
    CommitmentOut,
    CommitmentUpdate,
    ConnectionStatusOut,
    InstancePay,
    InstancePostpone,
    RecurringInstanceOut,
    RecurringRuleCreate,
    RecurringRuleOut,
    RecurringRulePreviewOut,
    RecurringRuleUpdate,
    ReminderOut,
    SyncOutcomeOut,
    TickReportOut,
    UserOutcomeOut,
)
from .services.instance_store import InstanceStore
from .services.recurrence_expander import preview
from .services.scheduler_runner import SchedulerRunner
from .services.sync_coordinator import CommitmentService, PushResult, SyncCoordinator


router = APIRouter()

_STATUS_BY_ERROR: list[tuple[type[DuesyncError], int]] = [
    (RuleNotFound, 404),
    (InstanceNotFound, 404),
    (CommitmentNotFound, 404),
    (RuleValidationError, 422),
    (InvalidTransition, 409),
    (InstanceConflict, 409),
    (ReconnectRequired, 409),
]


def _http_error(exc: DuesyncError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"code": exc.code, "message": exc.message})
    return HTTPException(status_code=400, detail={"code": exc.code, "message": exc.message})


def _require_edit(db: Session, user: models.User, caps: Capability, owner_id: int) -> None:
    owner = db.get(models.User, owner_id)
    if not can_edit(user, caps, owner, owner_id):
        raise HTTPException(status_code=403, detail="Not allowed to modify this record")


def _require_view(db: Session, user: models.User, caps: Capability, owner_id: int) -> None:
    if owner_id not in visible_user_ids(db, user, caps):
        raise HTTPException(status_code=404, detail="Not found")


def _instance_to_schema(instance: models.RecurringInstance) -> RecurringInstanceOut:
    return RecurringInstanceOut(
        id=instance.id,
        rule_id=instance.rule_id,
        user_id=instance.user_id,
        title=instance.title,
        kind=instance.kind,
        category_id=instance.category_id,
        due_date=instance.due_date,
        slot_date=instance.slot_date,
        amount=float(instance.amount),
        status=instance.effective_status,
        notes=instance.notes,
        paid_at=instance.paid_at,
        transaction_id=instance.transaction_id,
        reminders=[ReminderOut(minutes_before=r.minutes_before, sent=r.sent) for r in instance.reminders],
    )


def _commitment_to_schema(commitment: models.Commitment, push: PushResult | None = None) -> CommitmentOut:
    out = CommitmentOut.model_validate(commitment)
    if push is not None and not push.ok:
        out.sync_warning = push.error
    return out


# ======================== Recurring rules ========================

@router.get("/recurring-rules", response_model=list[RecurringRuleOut])
def list_recurring_rules(
    active: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
):
    return InstanceStore(db).list_rules(visible_user_ids(db, user, caps), active=active)


@router.post("/recurring-rules", response_model=RecurringRuleOut, status_code=201)
def create_recurring_rule(
    payload: RecurringRuleCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        return InstanceStore(db).create_rule(user, payload)
    except DuesyncError as exc:
        raise _http_error(exc) from exc


@router.get("/recurring-rules/{rule_id}", response_model=RecurringRuleOut)
def get_recurring_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
):
    try:
        rule = InstanceStore(db).get_rule(rule_id)
    except DuesyncError as exc:
        raise _http_error(exc) from exc
    _require_view(db, user, caps, rule.user_id)
    return rule


@router.patch("/recurring-rules/{rule_id}", response_model=RecurringRuleOut)
def update_recurring_rule(
    rule_id: int,
    payload: RecurringRuleUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
):
    store = InstanceStore(db)
    try:
        rule = store.get_rule(rule_id)
        _require_edit(db, user, caps, rule.user_id)
        return store.update_rule(rule_id, payload.model_dump(exclude_unset=True))
    except DuesyncError as exc:
        raise _http_error(exc) from exc


@router.delete("/recurring-rules/{rule_id}", status_code=204)
def delete_recurring_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
):
    store = InstanceStore(db)
    try:
        rule = store.get_rule(rule_id)
        _require_edit(db, user, caps, rule.user_id)
        store.delete_rule(rule_id)
    except DuesyncError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@router.post("/recurring-rules/{rule_id}/pause", response_model=RecurringRuleOut)
def pause_recurring_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
):
    store = InstanceStore(db)
    try:
        _require_edit(db, user, caps, store.get_rule(rule_id).user_id)
        return store.pause_rule(rule_id)
    except DuesyncError as exc:
        raise _http_error(exc) from exc


@router.post("/recurring-rules/{rule_id}/resume", response_model=RecurringRuleOut)
def resume_recurring_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
):
    store = InstanceStore(db)
    try:
        _require_edit(db, user, caps, store.get_rule(rule_id).user_id)
        return store.resume_rule(rule_id)
    except DuesyncError as exc:
        raise _http_error(exc) from exc


@router.get("/recurring-rules/{rule_id}/preview", response_model=RecurringRulePreviewOut)
def preview_recurring_rule(
    rule_id: int,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
    clock: Clock = Depends(get_clock),
):
    try:
        rule = InstanceStore(db, clock).get_rule(rule_id)
    except DuesyncError as exc:
        raise _http_error(exc) from exc
    _require_view(db, user, caps, rule.user_id)
    if start is None:
        tz_name = db.query(models.UserProfile.timezone).filter(models.UserProfile.user_id == rule.user_id).scalar()
        start = max(rule.start_date, local_today(clock.now(), resolve_zone(tz_name)))
    end = end or (start + timedelta(days=90))
    if end < start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    return RecurringRulePreviewOut(rule_id=rule.id, start=start, end=end, dates=preview(rule, start, end))


# ======================== Instances ========================

@router.get("/recurring-instances", response_model=list[RecurringInstanceOut])
def list_recurring_instances(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    status: Optional[models.InstanceStatus] = Query(None),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
):
    instances = InstanceStore(db).list_instances(
        visible_user_ids(db, user, caps), start=start, end=end, status=status
    )
    return [_instance_to_schema(i) for i in instances]


@router.post("/recurring-instances/{instance_id}/pay", response_model=RecurringInstanceOut)
def pay_recurring_instance(
    instance_id: int,
    payload: InstancePay,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
    clock: Clock = Depends(get_clock),
):
    store = InstanceStore(db, clock)
    try:
        _require_edit(db, user, caps, store.get_instance(instance_id).user_id)
        instance = store.pay_instance(instance_id, paid_at=payload.paid_at, transaction_id=payload.transaction_id)
    except DuesyncError as exc:
        raise _http_error(exc) from exc
    return _instance_to_schema(instance)


@router.post("/recurring-instances/{instance_id}/postpone", response_model=RecurringInstanceOut)
def postpone_recurring_instance(
    instance_id: int,
    payload: InstancePostpone,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
):
    store = InstanceStore(db)
    try:
        _require_edit(db, user, caps, store.get_instance(instance_id).user_id)
        instance = store.postpone_instance(instance_id, payload.new_due_date, payload.notes)
    except DuesyncError as exc:
        raise _http_error(exc) from exc
    return _instance_to_schema(instance)


# ======================== Commitments ========================

def _commitment_service(db: Session, clock: Clock, adapter_factory) -> CommitmentService:
    coordinator = SyncCoordinator(db, adapter_factory, clock)
    return CommitmentService(db, coordinator, clock)


@router.get("/commitments", response_model=list[CommitmentOut])
def list_commitments(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
    clock: Clock = Depends(get_clock),
    adapter_factory=Depends(get_adapter_factory),
):
    service = _commitment_service(db, clock, adapter_factory)
    return [_commitment_to_schema(c) for c in service.list(visible_user_ids(db, user, caps), start=start, end=end)]


@router.post("/commitments", response_model=CommitmentOut, status_code=201)
def create_commitment(
    payload: CommitmentCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    adapter_factory=Depends(get_adapter_factory),
):
    commitment, push = _commitment_service(db, clock, adapter_factory).create(user, payload)
    return _commitment_to_schema(commitment, push)


@router.get("/commitments/{commitment_id}", response_model=CommitmentOut)
def get_commitment(
    commitment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
    clock: Clock = Depends(get_clock),
    adapter_factory=Depends(get_adapter_factory),
):
    try:
        commitment = _commitment_service(db, clock, adapter_factory).get(commitment_id)
    except DuesyncError as exc:
        raise _http_error(exc) from exc
    _require_view(db, user, caps, commitment.user_id)
    return _commitment_to_schema(commitment)


@router.patch("/commitments/{commitment_id}", response_model=CommitmentOut)
def update_commitment(
    commitment_id: int,
    payload: CommitmentUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
    clock: Clock = Depends(get_clock),
    adapter_factory=Depends(get_adapter_factory),
):
    service = _commitment_service(db, clock, adapter_factory)
    try:
        _require_edit(db, user, caps, service.get(commitment_id).user_id)
        commitment, push = service.update(commitment_id, payload.model_dump(exclude_unset=True))
    except DuesyncError as exc:
        raise _http_error(exc) from exc
    return _commitment_to_schema(commitment, push)


@router.delete("/commitments/{commitment_id}", status_code=204)
def delete_commitment(
    commitment_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
    clock: Clock = Depends(get_clock),
    adapter_factory=Depends(get_adapter_factory),
):
    service = _commitment_service(db, clock, adapter_factory)
    try:
        _require_edit(db, user, caps, service.get(commitment_id).user_id)
        push = service.delete(commitment_id)
    except DuesyncError as exc:
        raise _http_error(exc) from exc
    response = Response(status_code=204)
    if push is not None and not push.ok:
        response.headers["X-Sync-Warning"] = push.error or "sync_failed"
    return response


# ======================== Calendar connection ========================

def _target_user(user: models.User, caps: Capability, user_id: Optional[int], db: Session) -> int:
    if user_id is None or user_id == user.id:
        return user.id
    owner = db.get(models.User, user_id)
    if not caps & Capability.MANAGE_CALENDAR or owner is None or owner.organization_id != user.organization_id:
        raise HTTPException(status_code=403, detail="Not allowed to manage this calendar")
    return user_id


@router.get("/calendar/connection", response_model=ConnectionStatusOut)
def get_calendar_connection(
    user_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
    clock: Clock = Depends(get_clock),
):
    target = _target_user(user, caps, user_id, db)
    return ConnectionStatusOut(**SyncCoordinator(db, clock=clock).connection_status(target))


@router.post("/calendar/connection", response_model=ConnectionStatusOut, status_code=201)
def connect_calendar(
    payload: CalendarConnect,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
):
    coordinator = SyncCoordinator(db, clock=clock)
    coordinator.connect(
        user.id,
        access_token=payload.access_token,
        refresh_token=payload.refresh_token,
        expires_in=payload.expires_in,
        calendar_email=payload.calendar_email,
        calendar_id=payload.calendar_id,
    )
    return ConnectionStatusOut(**coordinator.connection_status(user.id))


@router.delete("/calendar/connection", status_code=204)
def disconnect_calendar(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    token_revoker=Depends(get_token_revoker),
):
    if not SyncCoordinator(db, clock=clock, token_revoker=token_revoker).disconnect(user.id):
        raise HTTPException(status_code=404, detail="Calendar connection not found")
    return Response(status_code=204)


@router.post("/calendar/sync", response_model=SyncOutcomeOut)
def sync_calendar_now(
    user_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
    clock: Clock = Depends(get_clock),
    adapter_factory=Depends(get_adapter_factory),
):
    target = _target_user(user, caps, user_id, db)
    try:
        outcome = SyncCoordinator(db, adapter_factory, clock).reconcile(target)
    except ReconnectRequired as exc:
        raise _http_error(exc) from exc
    return SyncOutcomeOut(**outcome.__dict__)


# ======================== Scheduler ========================

@router.post("/scheduler/run-now", response_model=TickReportOut)
def run_scheduler_now(
    user_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    caps: Capability = Depends(get_capabilities),
    clock: Clock = Depends(get_clock),
    session_factory=Depends(get_session_factory),
    dispatcher_factory=Depends(get_dispatcher_factory),
    adapter_factory=Depends(get_adapter_factory),
):
    """Run the scheduler immediately, for one user or (with RUN_SCHEDULER) for everyone."""
    if user_id is not None and user_id != user.id:
        _require_edit(db, user, caps, user_id)
    if user_id is None and not caps & Capability.RUN_SCHEDULER:
        user_id = user.id

    runner = SchedulerRunner(
        session_factory,
        dispatcher_factory=dispatcher_factory,
        adapter_factory=adapter_factory,
        clock=clock,
    )
    started = clock.now()
    if user_id is not None:
        outcomes = [runner.run_for_user(user_id)]
        finished = clock.now()
    else:
        report = runner.run_tick()
        outcomes, started, finished = report.users, report.started_at, report.finished_at
    return TickReportOut(
        started_at=started,
        finished_at=finished,
        users=[UserOutcomeOut(**o.__dict__) for o in outcomes],
        deferred=[o.user_id for o in outcomes if o.status == "deferred"],
    )
