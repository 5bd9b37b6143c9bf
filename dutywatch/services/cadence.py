from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from dutywatch.clock import minutes_between, normalize_ts
from dutywatch.errors import (
    EditWindowExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from dutywatch.models import DutySession, HourlyLog, Strike, StrikeReason, User
from dutywatch.services.notifications import Notifier
from dutywatch.services.strikes import create_missed_log_strike
from dutywatch.settings import get_settings

logger = logging.getLogger("dutywatch.cadence")


@dataclass(frozen=True, slots=True)
class MissedLogCandidate:
    user_id: int
    session_id: int
    gap_minutes: int
    expected_at: datetime
    gap_started_at: datetime
    gap_ended_at: datetime


@dataclass(frozen=True, slots=True)
class CadenceWindow:
    expected_at: datetime
    opens_at: datetime
    closes_at: datetime

    def contains(self, ts_utc: datetime) -> bool:
        return self.opens_at <= normalize_ts(ts_utc) <= self.closes_at


def _order_logs(logs: Sequence[HourlyLog]) -> list[HourlyLog]:
    return sorted(logs, key=lambda log: (normalize_ts(log.created_at), log.id or 0))


def _load_session_logs(db: Session, *, session_id: int) -> list[HourlyLog]:
    return list(
        db.scalars(
            select(HourlyLog)
            .where(HourlyLog.duty_session_id == session_id)
            .order_by(HourlyLog.created_at.asc(), HourlyLog.id.asc())
        ).all()
    )


def _load_user_sessions(db: Session, *, user_id: int, session_id: int | None) -> list[DutySession]:
    stmt = select(DutySession).where(DutySession.user_id == user_id)
    if session_id is not None:
        stmt = stmt.where(DutySession.id == session_id)
    return list(db.scalars(stmt.order_by(DutySession.started_at.asc())).all())


def _resolve_struck_missed_logs(db: Session, *, user_id: int) -> set[tuple[int, datetime | None]]:
    rows = db.execute(
        select(Strike.session_id, Strike.missed_log_expected_at).where(
            Strike.user_id == user_id,
            Strike.reason == StrikeReason.MISSED_HOURLY_LOG,
            Strike.session_id.is_not(None),
        )
    ).all()
    return {
        (session_id, normalize_ts(expected_at) if expected_at is not None else None)
        for session_id, expected_at in rows
    }


def expected_next_log_time(
    session: DutySession,
    logs: Sequence[HourlyLog],
    *,
    interval_minutes: int | None = None,
) -> datetime:
    """Next check-in is one interval after the latest log, or after the start.

    The cadence follows the previous log, so a late log moves every later
    expectation by the same amount.
    """
    interval = timedelta(
        minutes=get_settings().cadence_interval_minutes if interval_minutes is None else interval_minutes
    )
    ordered = _order_logs(logs)
    anchor = ordered[-1].created_at if ordered else session.started_at
    return normalize_ts(anchor) + interval


def cadence_window(
    session: DutySession,
    logs: Sequence[HourlyLog],
    *,
    tolerance_minutes: int | None = None,
    interval_minutes: int | None = None,
) -> CadenceWindow:
    tolerance = timedelta(
        minutes=get_settings().cadence_tolerance_minutes if tolerance_minutes is None else tolerance_minutes
    )
    expected = expected_next_log_time(session, logs, interval_minutes=interval_minutes)
    return CadenceWindow(expected_at=expected, opens_at=expected - tolerance, closes_at=expected + tolerance)


def is_within_cadence_window(
    session: DutySession,
    logs: Sequence[HourlyLog],
    proposed_utc: datetime,
    *,
    tolerance_minutes: int | None = None,
) -> bool:
    window = cadence_window(session, logs, tolerance_minutes=tolerance_minutes)
    return window.contains(proposed_utc)


def detect_missed_log_gaps(
    session: DutySession,
    logs: Sequence[HourlyLog],
    *,
    threshold_minutes: int | None = None,
    interval_minutes: int | None = None,
) -> list[MissedLogCandidate]:
    settings = get_settings()
    threshold = timedelta(minutes=settings.missed_log_gap_minutes if threshold_minutes is None else threshold_minutes)
    interval = timedelta(minutes=settings.cadence_interval_minutes if interval_minutes is None else interval_minutes)

    ordered = _order_logs(logs)
    candidates: list[MissedLogCandidate] = []
    for current, following in zip(ordered, ordered[1:]):
        started = normalize_ts(current.created_at)
        ended = normalize_ts(following.created_at)
        if ended - started <= threshold:
            continue
        candidates.append(
            MissedLogCandidate(
                user_id=session.user_id,
                session_id=session.id,
                gap_minutes=minutes_between(started, ended),
                expected_at=started + interval,
                gap_started_at=started,
                gap_ended_at=ended,
            )
        )
    return candidates


def preview_missed_logs(
    db: Session,
    *,
    user_id: int,
    session_id: int | None = None,
) -> list[MissedLogCandidate]:
    candidates: list[MissedLogCandidate] = []
    for session in _load_user_sessions(db, user_id=user_id, session_id=session_id):
        logs = _load_session_logs(db, session_id=session.id)
        candidates.extend(detect_missed_log_gaps(session, logs))
    return candidates


def commit_missed_log_strikes(
    db: Session,
    *,
    user_id: int,
    session_id: int | None = None,
    now_utc: datetime | None = None,
    notifier: Notifier | None = None,
) -> list[Strike]:
    """Submit each detected gap to the strike ledger once.

    A gap that already has a missed-log strike, active or resolved, is skipped.
    Older strikes without a recorded expected time cover their whole session.
    """
    candidates = preview_missed_logs(db, user_id=user_id, session_id=session_id)
    if not candidates:
        return []

    struck = _resolve_struck_missed_logs(db, user_id=user_id)
    created: list[Strike] = []
    for candidate in candidates:
        expected_at = normalize_ts(candidate.expected_at)
        if (candidate.session_id, expected_at) in struck or (candidate.session_id, None) in struck:
            logger.info(
                "missed_log_already_struck",
                extra={
                    "user_id": candidate.user_id,
                    "session_id": candidate.session_id,
                    "expected_at": expected_at.isoformat(),
                },
            )
            continue
        strike = create_missed_log_strike(
            db,
            user_id=candidate.user_id,
            session_id=candidate.session_id,
            expected_at=candidate.expected_at,
            gap_minutes=candidate.gap_minutes,
            now_utc=now_utc,
            notifier=notifier,
        )
        if strike is not None:
            created.append(strike)
    return created


def create_hourly_log(
    db: Session,
    *,
    session_id: int,
    user: User,
    previous_hour_work: str,
    next_hour_plan: str,
    now_utc: datetime | None = None,
) -> HourlyLog:
    session = db.get(DutySession, session_id)
    if session is None:
        raise NotFoundError("Duty session not found.", code="SESSION_NOT_FOUND")
    if session.user_id != user.id:
        raise ForbiddenError("Hourly logs can only be submitted for your own duty session.")
    if session.ended_at is not None:
        raise InvalidStateError("Duty session has already ended.", code="SESSION_ALREADY_ENDED")

    submitted_at = normalize_ts(now_utc)
    window = cadence_window(session, _load_session_logs(db, session_id=session.id))
    if not window.contains(submitted_at):
        raise ValidationError(
            "Log not within allowed hourly cadence window.",
            code="LOG_OUTSIDE_CADENCE_WINDOW",
            details={
                "expected_at": window.expected_at.isoformat(),
                "opens_at": window.opens_at.isoformat(),
                "closes_at": window.closes_at.isoformat(),
            },
        )

    log = HourlyLog(
        duty_session_id=session.id,
        user_id=user.id,
        previous_hour_work=previous_hour_work,
        next_hour_plan=next_hour_plan,
        created_at=submitted_at,
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log


def update_hourly_log(
    db: Session,
    *,
    log_id: int,
    user: User,
    previous_hour_work: str | None = None,
    next_hour_plan: str | None = None,
    now_utc: datetime | None = None,
) -> HourlyLog:
    log = db.get(HourlyLog, log_id)
    if log is None:
        raise NotFoundError("Hourly log not found.", code="LOG_NOT_FOUND")
    if log.user_id != user.id:
        raise ForbiddenError("Only the author can edit this hourly log.")

    window_minutes = get_settings().log_edit_window_minutes
    age = normalize_ts(now_utc) - normalize_ts(log.created_at)
    if age > timedelta(minutes=window_minutes):
        raise EditWindowExpiredError(window_minutes=window_minutes)

    if previous_hour_work is not None:
        log.previous_hour_work = previous_hour_work
    if next_hour_plan is not None:
        log.next_hour_plan = next_hour_plan
    db.commit()
    db.refresh(log)
    return log


def list_session_logs(db: Session, *, session_id: int) -> list[HourlyLog]:
    return _load_session_logs(db, session_id=session_id)
