"""Initial duty integrity schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = postgresql.ENUM("student", "core_team", "teacher", name="user_role", create_type=False)
strike_reason = postgresql.ENUM(
    "missed_hourly_log",
    "insufficient_duty_hours",
    "excessive_break",
    "other",
    name="strike_reason",
    create_type=False,
)
strike_severity = postgresql.ENUM("warning", "minor", "major", name="strike_severity", create_type=False)
audit_actor_type = postgresql.ENUM("USER", "SYSTEM", name="audit_actor_type", create_type=False)


def _timestamp(name: str, *, nullable: bool = False, server_default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.text("CURRENT_TIMESTAMP") if server_default else None,
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (user_role, strike_reason, strike_severity, audit_actor_type):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("role", user_role, nullable=False, server_default=sa.text("'student'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("strike_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("suspended_until", nullable=True),
        _timestamp("created_at", server_default=True),
        sa.CheckConstraint("strike_count >= 0", name="ck_users_strike_count_non_negative"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "duty_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        _timestamp("started_at"),
        _timestamp("ended_at", nullable=True),
        sa.Column("total_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("last_reminder_at", nullable=True),
        _timestamp("created_at", server_default=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.CheckConstraint("ended_at IS NULL OR ended_at >= started_at", name="ck_duty_sessions_end_after_start"),
    )
    op.create_index("ix_duty_sessions_user_id", "duty_sessions", ["user_id"], unique=False)
    op.create_index(
        "uq_duty_sessions_active_user",
        "duty_sessions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("ended_at IS NULL"),
    )

    op.create_table(
        "hourly_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("duty_session_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("previous_hour_work", sa.Text(), nullable=False),
        sa.Column("next_hour_plan", sa.Text(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at", nullable=True),
        _timestamp("break_started_at", nullable=True),
        _timestamp("break_ended_at", nullable=True),
        sa.ForeignKeyConstraint(["duty_session_id"], ["duty_sessions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "break_ended_at IS NULL OR (break_started_at IS NOT NULL AND break_ended_at >= break_started_at)",
            name="ck_hourly_logs_break_order",
        ),
    )
    op.create_index("ix_hourly_logs_duty_session_id", "hourly_logs", ["duty_session_id"], unique=False)
    op.create_index("ix_hourly_logs_user_id", "hourly_logs", ["user_id"], unique=False)

    op.create_table(
        "strikes",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("reason", strike_reason, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        _timestamp("created_at"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("strike_count_at_time", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("severity", strike_severity, nullable=False, server_default=sa.text("'minor'")),
        sa.Column("session_id", sa.Integer(), nullable=True),
        sa.Column("log_id", sa.Integer(), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.Integer(), nullable=True),
        _timestamp("resolved_at", nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["session_id"], ["duty_sessions.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["log_id"], ["hourly_logs.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["resolved_by"], ["users.id"], ondelete="SET NULL"),
        sa.CheckConstraint("is_active OR resolved_at IS NOT NULL", name="ck_strikes_resolved_at_when_inactive"),
    )
    op.create_index("ix_strikes_user_id", "strikes", ["user_id"], unique=False)
    op.create_index("ix_strikes_date", "strikes", ["date"], unique=False)
    op.create_index("ix_strikes_is_active", "strikes", ["is_active"], unique=False)
    op.create_index("ix_strikes_user_reason_active", "strikes", ["user_id", "reason", "is_active"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _timestamp("created_at", server_default=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _timestamp("ts_utc"),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=True),
        sa.Column("entity_id", sa.String(length=100), nullable=True),
        sa.Column("ip", sa.String(length=100), nullable=True),
        sa.Column("user_agent", sa.String(length=1000), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_strikes_user_reason_active", table_name="strikes")
    op.drop_index("ix_strikes_is_active", table_name="strikes")
    op.drop_index("ix_strikes_date", table_name="strikes")
    op.drop_index("ix_strikes_user_id", table_name="strikes")
    op.drop_table("strikes")
    op.drop_index("ix_hourly_logs_user_id", table_name="hourly_logs")
    op.drop_index("ix_hourly_logs_duty_session_id", table_name="hourly_logs")
    op.drop_table("hourly_logs")
    op.drop_index("uq_duty_sessions_active_user", table_name="duty_sessions")
    op.drop_index("ix_duty_sessions_user_id", table_name="duty_sessions")
    op.drop_table("duty_sessions")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in (audit_actor_type, strike_severity, strike_reason, user_role):
        enum_type.drop(bind, checkfirst=True)
