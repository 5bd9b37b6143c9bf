from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from dutywatch.clock import minutes_between, normalize_ts
from dutywatch.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError
from dutywatch.models import DutySession, HourlyLog, User
from dutywatch.settings import get_settings


@dataclass(frozen=True, slots=True)
class DutyEligibility:
    total_minutes: int
    break_minutes: int
    meets_minimum: bool
    minimum_minutes: int


@dataclass(frozen=True, slots=True)
class DutySessionStats:
    session_count: int
    total_minutes: int
    average_minutes: int


def _resolve_active_session_for_user(db: Session, *, user_id: int) -> DutySession | None:
    return db.scalar(
        select(DutySession)
        .options(selectinload(DutySession.hourly_logs))
        .where(
            DutySession.user_id == user_id,
            DutySession.ended_at.is_(None),
        )
    )


def _load_session_with_logs(db: Session, *, session_id: int) -> DutySession | None:
    return db.scalar(
        select(DutySession)
        .options(selectinload(DutySession.hourly_logs))
        .where(DutySession.id == session_id)
    )


def calculate_break_minutes(logs: Iterable[HourlyLog]) -> int:
    total = 0
    for log in logs:
        # Open breaks are not counted until they are ended.
        if log.break_started_at is not None and log.break_ended_at is not None:
            total += minutes_between(log.break_started_at, log.break_ended_at)
    return total


def calculate_duty_minutes(
    session: DutySession,
    logs: Iterable[HourlyLog] | None = None,
    *,
    now_utc: datetime | None = None,
) -> int:
    session_logs = list(session.hourly_logs if logs is None else logs)
    end = session.ended_at if session.ended_at is not None else normalize_ts(now_utc)
    return minutes_between(session.started_at, end) - calculate_break_minutes(session_logs)


def evaluate_duty_eligibility(
    session: DutySession,
    logs: Iterable[HourlyLog] | None = None,
    *,
    minimum_minutes: int | None = None,
    now_utc: datetime | None = None,
) -> DutyEligibility:
    session_logs = list(session.hourly_logs if logs is None else logs)
    required = get_settings().minimum_duty_minutes if minimum_minutes is None else minimum_minutes
    total = calculate_duty_minutes(session, session_logs, now_utc=now_utc)
    return DutyEligibility(
        total_minutes=total,
        break_minutes=calculate_break_minutes(session_logs),
        meets_minimum=total >= required,
        minimum_minutes=required,
    )


def start_duty_session(
    db: Session,
    *,
    user: User,
    started_at_utc: datetime | None = None,
    notes: str | None = None,
) -> DutySession:
    if _resolve_active_session_for_user(db, user_id=user.id) is not None:
        raise ConflictError("Active duty session already exists.", code="ACTIVE_SESSION_EXISTS")

    session = DutySession(
        user_id=user.id,
        started_at=normalize_ts(started_at_utc),
        ended_at=None,
        notes=notes,
    )
    db.add(session)
    try:
        db.commit()
    except IntegrityError as exc:
        # Lost the race against a concurrent start; the partial unique index caught it.
        db.rollback()
        raise ConflictError("Active duty session already exists.", code="ACTIVE_SESSION_EXISTS") from exc
    db.refresh(session)
    return session


def end_duty_session(
    db: Session,
    *,
    session_id: int,
    actor: User,
    ended_at_utc: datetime | None = None,
) -> tuple[DutySession, DutyEligibility]:
    session = _load_session_with_logs(db, session_id=session_id)
    if session is None:
        raise NotFoundError("Duty session not found.", code="SESSION_NOT_FOUND")
    if session.user_id != actor.id and not actor.is_elevated:
        raise ForbiddenError("Only the session owner can end this duty session.")
    if session.ended_at is not None:
        raise InvalidStateError("Session already ended.", code="SESSION_ALREADY_ENDED")

    ended_at = normalize_ts(ended_at_utc)
    if ended_at < normalize_ts(session.started_at):
        raise InvalidStateError("Session cannot end before it started.", code="SESSION_END_BEFORE_START")

    session.ended_at = ended_at
    eligibility = evaluate_duty_eligibility(session, now_utc=ended_at)
    session.total_duration_minutes = eligibility.total_minutes
    db.commit()
    db.refresh(session)
    return session, eligibility


def get_active_session(db: Session, *, user_id: int) -> DutySession | None:
    return _resolve_active_session_for_user(db, user_id=user_id)


def get_session_for_viewer(db: Session, *, session_id: int, viewer: User) -> DutySession:
    session = _load_session_with_logs(db, session_id=session_id)
    if session is None:
        raise NotFoundError("Duty session not found.", code="SESSION_NOT_FOUND")
    if session.user_id != viewer.id and not viewer.is_elevated:
        raise ForbiddenError()
    return session


def list_user_sessions(
    db: Session,
    *,
    user_id: int,
    from_utc: datetime | None = None,
    to_utc: datetime | None = None,
) -> list[DutySession]:
    stmt = (
        select(DutySession)
        .options(selectinload(DutySession.hourly_logs))
        .where(DutySession.user_id == user_id)
    )
    if from_utc is not None:
        stmt = stmt.where(DutySession.started_at >= normalize_ts(from_utc))
    if to_utc is not None:
        stmt = stmt.where(DutySession.started_at <= normalize_ts(to_utc))
    stmt = stmt.order_by(DutySession.started_at.desc(), DutySession.id.desc())
    return list(db.scalars(stmt).all())


def summarize_sessions(sessions: Iterable[DutySession]) -> DutySessionStats:
    durations = [session.total_duration_minutes or 0 for session in sessions]
    total = sum(durations)
    average = round(total / len(durations)) if durations else 0
    return DutySessionStats(session_count=len(durations), total_minutes=total, average_minutes=average)
