"""initial schema: rules, instances, reminders, commitments, calendar connections

Revision ID: 7c1e5d0a9b42
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "7c1e5d0a9b42"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _enum(*values: str) -> sa.Enum:
    return sa.Enum(*values, native_enum=False, length=16)


def upgrade() -> None:
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=True),
        sa.Column("org_role", sa.String(length=16), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "userprofile",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("display_name", sa.String(length=100), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("default_reminder_offsets", sa.JSON(), nullable=True),
        sa.Column("daily_agenda_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "recurringrule",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("kind", _enum("income", "expense"), nullable=False),
        sa.Column("category_id", sa.String(length=64), nullable=True),
        sa.Column("frequency", _enum("daily", "weekly", "monthly", "yearly", "custom"), nullable=False),
        sa.Column("day_of_month", sa.Integer(), nullable=True),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("interval_days", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("reminder_offsets", sa.JSON(), nullable=False),
        sa.Column("last_generated_on", sa.Date(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
        sa.CheckConstraint("amount > 0", name="ck_recurring_amount_positive"),
        sa.CheckConstraint(
            "(frequency = 'monthly' AND day_of_month IS NOT NULL AND day_of_week IS NULL AND interval_days IS NULL)"
            " OR (frequency = 'weekly' AND day_of_week IS NOT NULL AND day_of_month IS NULL AND interval_days IS NULL)"
            " OR (frequency = 'custom' AND interval_days IS NOT NULL AND day_of_month IS NULL AND day_of_week IS NULL)"
            " OR (frequency IN ('daily', 'yearly') AND day_of_month IS NULL AND day_of_week IS NULL AND interval_days IS NULL)",
            name="ck_recurring_frequency_params",
        ),
        sa.CheckConstraint("end_date IS NULL OR end_date >= start_date", name="ck_recurring_date_bounds"),
    )
    op.create_index("ix_recurring_rule_user_active", "recurringrule", ["user_id", "is_active"], unique=False)

    op.create_table(
        "recurringinstance",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("rule_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=120), nullable=False),
        sa.Column("kind", _enum("income", "expense"), nullable=False),
        sa.Column("category_id", sa.String(length=64), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("slot_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", _enum("scheduled", "paid", "postponed", "paused"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("transaction_id", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["rule_id"], ["recurringrule.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("rule_id", "due_date", name="uq_recurring_instance_rule_due"),
    )
    op.create_index("ix_recurring_instance_user_due", "recurringinstance", ["user_id", "due_date"], unique=False)

    op.create_table(
        "commitment",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("category", _enum("payment", "meeting", "appointment", "other"), nullable=False),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("participants", sa.JSON(), nullable=False),
        sa.Column("origin", _enum("local", "google"), nullable=False),
        sa.Column("google_event_id", sa.String(length=255), nullable=True),
        sa.Column("sync_state", _enum("unlinked", "linked", "stale"), nullable=False),
        sa.Column("remote_updated_at", sa.DateTime(), nullable=True),
        sa.Column("local_modified_at", sa.DateTime(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "google_event_id", name="uq_commitment_user_remote"),
        sa.CheckConstraint("duration_minutes > 0", name="ck_commitment_duration_positive"),
    )
    op.create_index("ix_commitment_user_scheduled", "commitment", ["user_id", "scheduled_at"], unique=False)
    op.create_index("ix_commitment_sync_state", "commitment", ["sync_state"], unique=False)

    op.create_table(
        "reminderdelivery",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("commitment_id", sa.Integer(), nullable=True),
        sa.Column("instance_id", sa.Integer(), nullable=True),
        sa.Column("minutes_before", sa.Integer(), nullable=False),
        sa.Column("status", _enum("pending", "dispatching", "sent", "skipped"), nullable=False),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("skip_reason", sa.String(length=32), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["commitment_id"], ["commitment.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["instance_id"], ["recurringinstance.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "(commitment_id IS NOT NULL AND instance_id IS NULL)"
            " OR (commitment_id IS NULL AND instance_id IS NOT NULL)",
            name="ck_reminder_single_target",
        ),
        sa.CheckConstraint("minutes_before >= 0", name="ck_reminder_offset_non_negative"),
        sa.UniqueConstraint("commitment_id", "minutes_before", name="uq_reminder_commitment_offset"),
        sa.UniqueConstraint("instance_id", "minutes_before", name="uq_reminder_instance_offset"),
    )
    op.create_index("ix_reminder_user_status", "reminderdelivery", ["user_id", "status"], unique=False)

    op.create_table(
        "calendarconnection",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("provider", sa.String(length=16), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(), nullable=True),
        sa.Column("calendar_email", sa.String(length=320), nullable=True),
        sa.Column("calendar_id", sa.String(length=255), nullable=False),
        sa.Column("connected_at", sa.DateTime(), nullable=False),
        sa.Column("status", _enum("active", "revoked"), nullable=False),
        sa.Column("revoked_at", sa.DateTime(), nullable=True),
        sa.Column("revoked_reason", sa.String(length=64), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "agendadelivery",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("local_date", sa.Date(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("commitments_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "local_date", name="uq_agenda_user_date"),
    )


def downgrade() -> None:
    op.drop_table("agendadelivery")
    op.drop_table("calendarconnection")
    op.drop_index("ix_reminder_user_status", table_name="reminderdelivery")
    op.drop_table("reminderdelivery")
    op.drop_index("ix_commitment_sync_state", table_name="commitment")
    op.drop_index("ix_commitment_user_scheduled", table_name="commitment")
    op.drop_table("commitment")
    op.drop_index("ix_recurring_instance_user_due", table_name="recurringinstance")
    op.drop_table("recurringinstance")
    op.drop_index("ix_recurring_rule_user_active", table_name="recurringrule")
    op.drop_table("recurringrule")
    op.drop_table("userprofile")
    op.drop_table("user")
