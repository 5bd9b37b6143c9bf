from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dutywatch.db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UserRole(str, enum.Enum):
    STUDENT = "student"
    CORE_TEAM = "core_team"
    TEACHER = "teacher"


ELEVATED_ROLES = frozenset({UserRole.CORE_TEAM, UserRole.TEACHER})


class StrikeReason(str, enum.Enum):
    MISSED_HOURLY_LOG = "missed_hourly_log"
    INSUFFICIENT_DUTY_HOURS = "insufficient_duty_hours"
    EXCESSIVE_BREAK = "excessive_break"
    OTHER = "other"


class StrikeSeverity(str, enum.Enum):
    WARNING = "warning"
    MINOR = "minor"
    MAJOR = "major"


class AuditActorType(str, enum.Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("strike_count >= 0", name="ck_users_strike_count_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=_enum_values),
        nullable=False,
        default=UserRole.STUDENT,
        server_default=text("'student'"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    strike_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    suspended_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    duty_sessions: Mapped[list[DutySession]] = relationship(back_populates="user")
    strikes: Mapped[list[Strike]] = relationship(
        back_populates="user",
        foreign_keys="Strike.user_id",
    )

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES


class DutySession(Base):
    __tablename__ = "duty_sessions"
    __table_args__ = (
        Index(
            "uq_duty_sessions_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("ended_at IS NULL"),
            sqlite_where=text("ended_at IS NULL"),
        ),
        CheckConstraint("ended_at IS NULL OR ended_at >= started_at", name="ck_duty_sessions_end_after_start"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user: Mapped[User] = relationship(back_populates="duty_sessions")
    hourly_logs: Mapped[list[HourlyLog]] = relationship(
        back_populates="duty_session",
        order_by="HourlyLog.created_at",
    )

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


class HourlyLog(Base):
    __tablename__ = "hourly_logs"
    __table_args__ = (
        CheckConstraint(
            "break_ended_at IS NULL OR (break_started_at IS NOT NULL AND break_ended_at >= break_started_at)",
            name="ck_hourly_logs_break_order",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    duty_session_id: Mapped[int] = mapped_column(
        ForeignKey("duty_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    previous_hour_work: Mapped[str] = mapped_column(Text, nullable=False)
    next_hour_plan: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        onupdate=lambda: datetime.now(timezone.utc),
    )
    break_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    break_ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    duty_session: Mapped[DutySession] = relationship(back_populates="hourly_logs")

    @property
    def has_open_break(self) -> bool:
        return self.break_started_at is not None and self.break_ended_at is None


class Strike(Base):
    __tablename__ = "strikes"
    __table_args__ = (
        Index("ix_strikes_user_reason_active", "user_id", "reason", "is_active"),
        CheckConstraint("is_active OR resolved_at IS NOT NULL", name="ck_strikes_resolved_at_when_inactive"),
        Index(
            "ix_strikes_missed_log_session",
            "user_id",
            "session_id",
            "missed_log_expected_at",
            postgresql_where=text("reason = 'missed_hourly_log'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    reason: Mapped[StrikeReason] = mapped_column(
        Enum(StrikeReason, name="strike_reason", values_callable=_enum_values),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    strike_date: Mapped[date] = mapped_column("date", Date, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
        index=True,
    )
    strike_count_at_time: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))
    severity: Mapped[StrikeSeverity] = mapped_column(
        Enum(StrikeSeverity, name="strike_severity", values_callable=_enum_values),
        nullable=False,
        default=StrikeSeverity.MINOR,
        server_default=text("'minor'"),
    )
    session_id: Mapped[int | None] = mapped_column(
        ForeignKey("duty_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )
    log_id: Mapped[int | None] = mapped_column(
        ForeignKey("hourly_logs.id", ondelete="SET NULL"),
        nullable=True,
    )
    missed_log_expected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped[User] = relationship(back_populates="strikes", foreign_keys=[user_id])
    resolver: Mapped[User | None] = relationship(foreign_keys=[resolved_by])


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
