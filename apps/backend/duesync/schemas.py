from __future__ import annotations

import math
from datetime import date, datetime
from typing import Optional, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import (
    CommitmentCategory,
    CommitmentOrigin,
    ConnectionStatus,
    EntryKind,
    InstanceStatus,
    RecurringFrequency,
    SyncState,
)
from .services.recurrence_expander import normalize_reminder_offsets, validate_rule_parameters


def _positive_amount(v: float | None) -> float | None:
    if v is None:
        return v
    if not math.isfinite(v):
        raise ValueError("amount must be finite")
    if v <= 0:
        raise ValueError("amount must be positive")
    return v


# ======================== Recurring rules ========================

class RecurringRuleCreate(BaseModel):
    title: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    amount: float
    kind: EntryKind = EntryKind.EXPENSE
    category_id: Optional[str] = Field(default=None, max_length=64)
    frequency: RecurringFrequency
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    interval_days: Optional[int] = None
    start_date: date
    end_date: Optional[date] = None
    is_active: bool = True
    reminder_offsets: Optional[list[int]] = None

    @field_validator("amount")
    def amount_positive(cls, v: float):
        return _positive_amount(v)

    @field_validator("reminder_offsets")
    def offsets_normalized(cls, v: list[int] | None):
        if v is None:
            return v
        return normalize_reminder_offsets(v)

    @model_validator(mode="after")
    def frequency_parameters(self):
        validate_rule_parameters(
            self.frequency,
            day_of_month=self.day_of_month,
            day_of_week=self.day_of_week,
            interval_days=self.interval_days,
            start_date=self.start_date,
            end_date=self.end_date,
        )
        return self


class RecurringRuleUpdate(BaseModel):
    """Partial update. Frequency parameters are re-validated against the merged rule."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    amount: Optional[float] = None
    kind: Optional[EntryKind] = None
    category_id: Optional[str] = Field(default=None, max_length=64)
    frequency: Optional[RecurringFrequency] = None
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    interval_days: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reminder_offsets: Optional[list[int]] = None

    @field_validator("title", "amount", "kind", "frequency", "start_date", "reminder_offsets")
    def not_null(cls, v, info):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v

    @field_validator("amount")
    def amount_positive(cls, v: float | None):
        return _positive_amount(v)

    @field_validator("reminder_offsets")
    def offsets_normalized(cls, v: list[int] | None):
        if v is None:
            return v
        return normalize_reminder_offsets(v)


class RecurringRuleOut(BaseModel):
    id: int
    user_id: int
    organization_id: Optional[int]
    title: str
    description: Optional[str]
    amount: float
    kind: EntryKind
    category_id: Optional[str]
    frequency: RecurringFrequency
    day_of_month: Optional[int]
    day_of_week: Optional[int]
    interval_days: Optional[int]
    start_date: date
    end_date: Optional[date]
    is_active: bool
    reminder_offsets: list[int]
    last_generated_on: Optional[date]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RecurringRulePreviewOut(BaseModel):
    rule_id: int
    start: date
    end: date
    dates: list[date]


# ======================== Instances ========================

class ReminderOut(BaseModel):
    minutes_before: int
    sent: bool


class RecurringInstanceOut(BaseModel):
    id: int
    rule_id: Optional[int]
    user_id: int
    title: str
    kind: EntryKind
    category_id: Optional[str]
    due_date: date
    slot_date: date
    amount: float
    status: InstanceStatus
    notes: Optional[str]
    paid_at: Optional[datetime]
    transaction_id: Optional[str]
    reminders: list[ReminderOut] = []


class InstancePay(BaseModel):
    paid_at: Optional[datetime] = None
    transaction_id: Optional[str] = Field(default=None, max_length=64)


class InstancePostpone(BaseModel):
    new_due_date: date
    notes: Optional[str] = None


# ======================== Commitments ========================

class CommitmentCreate(BaseModel):
    """``scheduled_at`` without an offset is read as wall clock in the owner's zone."""

    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    scheduled_at: datetime
    duration_minutes: int = Field(default=60, ge=1, le=60 * 24)
    category: CommitmentCategory = CommitmentCategory.OTHER
    location: Optional[str] = Field(default=None, max_length=255)
    participants: list[str] = []
    reminder_offsets: Optional[list[int]] = None

    @field_validator("reminder_offsets")
    def offsets_normalized(cls, v: list[int] | None):
        if v is None:
            return v
        return normalize_reminder_offsets(v)


class CommitmentUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=60 * 24)
    category: Optional[CommitmentCategory] = None
    location: Optional[str] = Field(default=None, max_length=255)
    participants: Optional[list[str]] = None


class CommitmentOut(BaseModel):
    id: int
    user_id: int
    title: str
    description: Optional[str]
    scheduled_at: datetime
    duration_minutes: int
    category: CommitmentCategory
    location: Optional[str]
    participants: list[str]
    origin: CommitmentOrigin
    google_event_id: Optional[str]
    sync_state: SyncState
    last_synced_at: Optional[datetime]
    last_sync_error: Optional[str]
    scheduled_reminders: list[ReminderOut] = []
    sync_warning: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# ======================== Calendar connection ========================

class CalendarConnect(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, ge=0)
    calendar_email: Optional[str] = None
    calendar_id: str = "primary"


class ConnectionStatusOut(BaseModel):
    connected: bool
    status: Optional[ConnectionStatus] = None
    calendar_email: Optional[str] = None
    connected_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None


class SyncOutcomeOut(BaseModel):
    status: Literal["ok", "partial", "not_connected", "reconnect_required", "failed"]
    pushed: int = 0
    push_failed: int = 0
    imported: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = []


# ======================== Scheduler ========================

class UserOutcomeOut(BaseModel):
    user_id: int
    status: Literal["ok", "partial", "failed", "deferred"]
    instances_created: int = 0
    reminders_sent: int = 0
    reminders_skipped: int = 0
    reminders_failed: int = 0
    agenda_sent: bool = False
    sync_status: Optional[str] = None
    errors: list[str] = []


class TickReportOut(BaseModel):
    started_at: datetime
    finished_at: datetime
    users: list[UserOutcomeOut]
    deferred: list[int] = []
