from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Index,
    Boolean,
    JSON,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .core.clock import utcnow_naive
from .core.database import Base


def _enum_column(enum_cls: type[Enum]) -> SAEnum:
    # Persist the lowercase values (not member names) so check constraints and
    # raw SQL read the same strings the API exposes.
    return SAEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=16,
    )


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive, onupdate=utcnow_naive, nullable=False)


class User(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    organization_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    org_role: Mapped[str | None] = mapped_column(String(16), nullable=True)  # owner | admin | member

    profile: Mapped["UserProfile"] = relationship(back_populates="user", uselist=False)


class UserProfile(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(100))
    phone_number: Mapped[str | None] = mapped_column(String(32))
    timezone: Mapped[str | None] = mapped_column(String(64))
    default_reminder_offsets: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    daily_agenda_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    user: Mapped[User] = relationship(back_populates="profile")


class EntryKind(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class RecurringFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class RecurringRule(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    organization_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    kind: Mapped[EntryKind] = mapped_column(_enum_column(EntryKind), nullable=False)
    category_id: Mapped[str | None] = mapped_column(String(64))
    frequency: Mapped[RecurringFrequency] = mapped_column(_enum_column(RecurringFrequency), nullable=False)
    day_of_month: Mapped[int | None] = mapped_column(Integer)  # 1-31, clamped per month
    day_of_week: Mapped[int | None] = mapped_column(Integer)  # 0=Sun .. 6=Sat
    interval_days: Mapped[int | None] = mapped_column(Integer)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    reminder_offsets: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    last_generated_on: Mapped[date | None] = mapped_column(Date)

    instances: Mapped[list["RecurringInstance"]] = relationship(
        "RecurringInstance", back_populates="rule", passive_deletes="all"
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_recurring_amount_positive"),
        CheckConstraint(
            "(frequency = 'monthly' AND day_of_month IS NOT NULL AND day_of_week IS NULL AND interval_days IS NULL)"
            " OR (frequency = 'weekly' AND day_of_week IS NOT NULL AND day_of_month IS NULL AND interval_days IS NULL)"
            " OR (frequency = 'custom' AND interval_days IS NOT NULL AND day_of_month IS NULL AND day_of_week IS NULL)"
            " OR (frequency IN ('daily', 'yearly') AND day_of_month IS NULL AND day_of_week IS NULL AND interval_days IS NULL)",
            name="ck_recurring_frequency_params",
        ),
        CheckConstraint("end_date IS NULL OR end_date >= start_date", name="ck_recurring_date_bounds"),
        Index("ix_recurring_rule_user_active", "user_id", "is_active"),
    )


class InstanceStatus(str, Enum):
    SCHEDULED = "scheduled"
    PAID = "paid"
    POSTPONED = "postponed"
    PAUSED = "paused"


OPEN_INSTANCE_STATUSES = (InstanceStatus.SCHEDULED, InstanceStatus.POSTPONED)


class RecurringInstance(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rule_id: Mapped[int | None] = mapped_column(ForeignKey("recurringrule.id", ondelete="SET NULL"), nullable=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(120), nullable=False)
    kind: Mapped[EntryKind] = mapped_column(_enum_column(EntryKind), nullable=False)
    category_id: Mapped[str | None] = mapped_column(String(64))
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[InstanceStatus] = mapped_column(
        _enum_column(InstanceStatus), default=InstanceStatus.SCHEDULED, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)
    transaction_id: Mapped[str | None] = mapped_column(String(64))

    rule: Mapped["RecurringRule | None"] = relationship("RecurringRule", back_populates="instances")
    reminders: Mapped[list["ReminderDelivery"]] = relationship(
        "ReminderDelivery",
        back_populates="instance",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ReminderDelivery.minutes_before.desc()",
    )

    @property
    def effective_status(self) -> InstanceStatus:
        """Stored status, reported as PAUSED while the owning rule is paused."""
        if self.status in OPEN_INSTANCE_STATUSES and self.rule is not None and not self.rule.is_active:
            return InstanceStatus.PAUSED
        return self.status

    __table_args__ = (
        UniqueConstraint("rule_id", "due_date", name="uq_recurring_instance_rule_due"),
        Index("ix_recurring_instance_user_due", "user_id", "due_date"),
    )


class ReminderStatus(str, Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"
    SENT = "sent"
    SKIPPED = "skipped"


class ReminderDelivery(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    commitment_id: Mapped[int | None] = mapped_column(ForeignKey("commitment.id", ondelete="CASCADE"))
    instance_id: Mapped[int | None] = mapped_column(ForeignKey("recurringinstance.id", ondelete="CASCADE"))
    minutes_before: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ReminderStatus] = mapped_column(
        _enum_column(ReminderStatus), default=ReminderStatus.PENDING, nullable=False
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    skip_reason: Mapped[str | None] = mapped_column(String(32))

    commitment: Mapped["Commitment | None"] = relationship("Commitment", back_populates="reminders")
    instance: Mapped["RecurringInstance | None"] = relationship("RecurringInstance", back_populates="reminders")

    @property
    def sent(self) -> bool:
        return self.status == ReminderStatus.SENT

    __table_args__ = (
        CheckConstraint(
            "(commitment_id IS NOT NULL AND instance_id IS NULL)"
            " OR (commitment_id IS NULL AND instance_id IS NOT NULL)",
            name="ck_reminder_single_target",
        ),
        CheckConstraint("minutes_before >= 0", name="ck_reminder_offset_non_negative"),
        UniqueConstraint("commitment_id", "minutes_before", name="uq_reminder_commitment_offset"),
        UniqueConstraint("instance_id", "minutes_before", name="uq_reminder_instance_offset"),
        Index("ix_reminder_user_status", "user_id", "status"),
    )


class CommitmentCategory(str, Enum):
    PAYMENT = "payment"
    MEETING = "meeting"
    APPOINTMENT = "appointment"
    OTHER = "other"


class CommitmentOrigin(str, Enum):
    LOCAL = "local"
    GOOGLE = "google"


class SyncState(str, Enum):
    UNLINKED = "unlinked"
    LINKED = "linked"
    STALE = "stale"


class Commitment(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    organization_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # naive UTC
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    category: Mapped[CommitmentCategory] = mapped_column(
        _enum_column(CommitmentCategory), default=CommitmentCategory.OTHER, nullable=False
    )
    location: Mapped[str | None] = mapped_column(String(255))
    participants: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    origin: Mapped[CommitmentOrigin] = mapped_column(
        _enum_column(CommitmentOrigin), default=CommitmentOrigin.LOCAL, nullable=False
    )
    google_event_id: Mapped[str | None] = mapped_column(String(255))
    sync_state: Mapped[SyncState] = mapped_column(
        _enum_column(SyncState), default=SyncState.UNLINKED, nullable=False
    )
    remote_updated_at: Mapped[datetime | None] = mapped_column(DateTime)
    local_modified_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_sync_error: Mapped[str | None] = mapped_column(Text)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)

    reminders: Mapped[list["ReminderDelivery"]] = relationship(
        "ReminderDelivery",
        back_populates="commitment",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ReminderDelivery.minutes_before.desc()",
    )

    @property
    def scheduled_reminders(self) -> list[dict[str, Any]]:
        return [{"minutes_before": r.minutes_before, "sent": r.sent} for r in self.reminders]

    __table_args__ = (
        UniqueConstraint("user_id", "google_event_id", name="uq_commitment_user_remote"),
        CheckConstraint("duration_minutes > 0", name="ck_commitment_duration_positive"),
        Index("ix_commitment_user_scheduled", "user_id", "scheduled_at"),
        Index("ix_commitment_sync_state", "sync_state"),
    )


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class CalendarConnection(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"), unique=True, nullable=False)
    provider: Mapped[str] = mapped_column(String(16), default="google", nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    calendar_email: Mapped[str | None] = mapped_column(String(320))
    calendar_id: Mapped[str] = mapped_column(String(255), default="primary", nullable=False)
    connected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive, nullable=False)
    status: Mapped[ConnectionStatus] = mapped_column(
        _enum_column(ConnectionStatus), default=ConnectionStatus.ACTIVE, nullable=False
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime)
    revoked_reason: Mapped[str | None] = mapped_column(String(64))
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime)

    @property
    def is_revoked(self) -> bool:
        return self.status == ConnectionStatus.REVOKED


class AgendaDelivery(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    local_date: Mapped[date] = mapped_column(Date, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime)
    commitments_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "local_date", name="uq_agenda_user_date"),
    )
