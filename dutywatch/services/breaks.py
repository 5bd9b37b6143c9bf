from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from dutywatch.clock import ceil_minutes_between, normalize_ts
from dutywatch.errors import BreakLimitExceededError, ForbiddenError, InvalidStateError, NotFoundError
from dutywatch.models import HourlyLog, User
from dutywatch.services.notifications import Notifier
from dutywatch.services.strikes import create_excessive_break_strike
from dutywatch.settings import get_settings

logger = logging.getLogger("dutywatch.breaks")


def is_break_within_limit(
    started_at: datetime,
    ended_at: datetime,
    *,
    max_break_minutes: int | None = None,
) -> bool:
    limit = get_settings().max_break_minutes if max_break_minutes is None else max_break_minutes
    return normalize_ts(ended_at) - normalize_ts(started_at) <= timedelta(minutes=limit)


def _resolve_owned_log(db: Session, *, log_id: int, user: User) -> HourlyLog:
    log = db.get(HourlyLog, log_id)
    if log is None:
        raise NotFoundError("Hourly log not found.", code="LOG_NOT_FOUND")
    if log.user_id != user.id:
        raise ForbiddenError("Breaks can only be managed on your own hourly logs.")
    return log


def start_break(
    db: Session,
    *,
    log_id: int,
    user: User,
    now_utc: datetime | None = None,
) -> HourlyLog:
    log = _resolve_owned_log(db, log_id=log_id, user=user)
    if log.break_started_at is not None:
        raise InvalidStateError("Break already started.", code="BREAK_ALREADY_STARTED")

    log.break_started_at = normalize_ts(now_utc)
    db.commit()
    db.refresh(log)
    return log


def end_break(
    db: Session,
    *,
    log_id: int,
    user: User,
    now_utc: datetime | None = None,
    notifier: Notifier | None = None,
) -> HourlyLog:
    """Close the open break on a log.

    The end time is always persisted. When the break ran over the ceiling an
    excessive-break strike is requested and ``BreakLimitExceededError`` is
    raised afterwards.
    """
    log = _resolve_owned_log(db, log_id=log_id, user=user)
    if not log.has_open_break:
        raise InvalidStateError("Break not started.", code="BREAK_NOT_STARTED")

    ended_at = normalize_ts(now_utc)
    log.break_ended_at = ended_at
    db.commit()
    db.refresh(log)

    max_break_minutes = get_settings().max_break_minutes
    if is_break_within_limit(log.break_started_at, ended_at, max_break_minutes=max_break_minutes):
        return log

    break_minutes = ceil_minutes_between(log.break_started_at, ended_at)
    try:
        create_excessive_break_strike(
            db,
            user_id=log.user_id,
            log_id=log.id,
            break_minutes=break_minutes,
            now_utc=ended_at,
            notifier=notifier,
        )
    except Exception:
        logger.exception(
            "excessive_break_strike_failed",
            extra={"user_id": log.user_id, "log_id": log.id, "break_minutes": break_minutes},
        )
    raise BreakLimitExceededError(break_minutes=break_minutes, max_break_minutes=max_break_minutes)
