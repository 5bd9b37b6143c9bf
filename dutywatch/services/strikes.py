from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dutywatch.clock import normalize_ts
from dutywatch.errors import NotFoundError
from dutywatch.models import Strike, StrikeReason, StrikeSeverity, User
from dutywatch.services.escalation import (
    EscalationAction,
    apply_escalation,
    escalation_level,
    notify_escalation,
)
from dutywatch.services.notifications import KIND_STRIKE_RESOLVED, Notifier
from dutywatch.settings import get_settings

logger = logging.getLogger("dutywatch.strikes")

STRIKE_NOT_FOUND_MESSAGE = "Strike not found or already resolved"


@dataclass(slots=True)
class StrikePage:
    items: list[Strike]
    total: int
    page: int
    page_size: int


@dataclass(slots=True)
class StrikeStatistics:
    total_strikes: int
    active_strikes: int
    resolved_strikes: int
    by_reason: dict[str, int] = field(default_factory=dict)
    escalation_level: str = EscalationAction.NONE.value


@dataclass(slots=True)
class BulkResolveResult:
    resolved: list[Strike] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


def _lock_user(db: Session, user_id: int) -> User | None:
    return db.scalar(select(User).where(User.id == user_id).with_for_update())


def _resolve_recent_active_strike(
    db: Session,
    *,
    user_id: int,
    reason: StrikeReason,
    since_utc: datetime,
) -> Strike | None:
    return db.scalar(
        select(Strike)
        .where(
            Strike.user_id == user_id,
            Strike.reason == reason,
            Strike.is_active.is_(True),
            Strike.created_at >= since_utc,
        )
        .order_by(Strike.created_at.desc())
        .limit(1)
    )


def _created_between(from_date: date | None, to_date: date | None) -> list:
    # Inclusive calendar days in UTC.
    conditions = []
    if from_date is not None:
        conditions.append(Strike.created_at >= datetime.combine(from_date, time.min, tzinfo=timezone.utc))
    if to_date is not None:
        conditions.append(
            Strike.created_at < datetime.combine(to_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        )
    return conditions


def count_active_strikes(db: Session, user_id: int) -> int:
    """Active strike count read from the strike table; the audit source of truth."""
    value = db.scalar(
        select(func.count(Strike.id)).where(
            Strike.user_id == user_id,
            Strike.is_active.is_(True),
        )
    )
    return int(value or 0)


def create_strike(
    db: Session,
    *,
    user_id: int,
    reason: StrikeReason,
    description: str | None,
    session_id: int | None = None,
    log_id: int | None = None,
    missed_log_expected_at: datetime | None = None,
    severity: StrikeSeverity = StrikeSeverity.MINOR,
    now_utc: datetime | None = None,
    notifier: Notifier | None = None,
) -> Strike | None:
    """Record a violation for ``user_id`` and run the escalation policy.

    Returns ``None`` when an active strike with the same reason was created
    inside the duplicate window. Duplicate check, insert, counter update and
    escalation all happen while the user row is locked, so concurrent
    violations for one user are serialized.
    """
    reference = normalize_ts(now_utc)
    window = timedelta(hours=get_settings().strike_duplicate_window_hours)

    try:
        user = _lock_user(db, user_id)
        if user is None:
            raise NotFoundError("User not found.", code="USER_NOT_FOUND")

        duplicate = _resolve_recent_active_strike(
            db,
            user_id=user_id,
            reason=reason,
            since_utc=reference - window,
        )
        if duplicate is not None:
            db.rollback()
            logger.info(
                "strike_duplicate_suppressed",
                extra={"user_id": user_id, "reason": reason.value, "existing_strike_id": duplicate.id},
            )
            return None

        previous_count = count_active_strikes(db, user_id)
        active_count = previous_count + 1
        strike = Strike(
            user_id=user_id,
            reason=reason,
            description=description,
            strike_date=reference.date(),
            created_at=reference,
            is_active=True,
            strike_count_at_time=active_count,
            severity=severity,
            session_id=session_id,
            log_id=log_id,
            missed_log_expected_at=missed_log_expected_at,
        )
        db.add(strike)
        user.strike_count = (user.strike_count or 0) + 1

        decision = apply_escalation(
            user,
            active_strike_count=active_count,
            previous_strike_count=previous_count,
            now_utc=reference,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(strike)
    logger.info(
        "strike_created",
        extra={
            "user_id": user_id,
            "strike_id": strike.id,
            "reason": reason.value,
            "active_strike_count": active_count,
            "escalation": decision.action.value,
        },
    )

    if notifier is not None:
        try:
            notify_escalation(notifier, user, decision)
        except Exception:
            logger.exception(
                "strike_escalation_notify_failed",
                extra={"user_id": user_id, "escalation": decision.action.value},
            )
    return strike


def resolve_strike(
    db: Session,
    *,
    strike_id: int,
    resolved_by: int,
    resolution_notes: str | None = None,
    now_utc: datetime | None = None,
    notifier: Notifier | None = None,
) -> Strike:
    try:
        strike = db.scalar(select(Strike).where(Strike.id == strike_id).with_for_update())
        if strike is None or not strike.is_active:
            raise NotFoundError(STRIKE_NOT_FOUND_MESSAGE, code="STRIKE_NOT_FOUND")

        strike.is_active = False
        strike.resolved_by = resolved_by
        strike.resolved_at = normalize_ts(now_utc)
        if resolution_notes:
            strike.resolution_notes = resolution_notes

        user = _lock_user(db, strike.user_id)
        if user is not None and (user.strike_count or 0) > 0:
            user.strike_count = user.strike_count - 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(strike)
    logger.info(
        "strike_resolved",
        extra={"strike_id": strike.id, "user_id": strike.user_id, "resolved_by": resolved_by},
    )

    if notifier is not None:
        try:
            notifier.notify_user(
                strike.user_id,
                KIND_STRIKE_RESOLVED,
                {"strike_id": strike.id, "reason": strike.reason.value},
            )
        except Exception:
            logger.exception("strike_resolved_notify_failed", extra={"strike_id": strike.id})
    return strike


def bulk_resolve_strikes(
    db: Session,
    *,
    strike_ids: list[int],
    resolved_by: int,
    resolution_notes: str | None = None,
    now_utc: datetime | None = None,
    notifier: Notifier | None = None,
) -> BulkResolveResult:
    result = BulkResolveResult()
    for strike_id in strike_ids:
        try:
            strike = resolve_strike(
                db,
                strike_id=strike_id,
                resolved_by=resolved_by,
                resolution_notes=resolution_notes,
                now_utc=now_utc,
                notifier=notifier,
            )
        except NotFoundError as exc:
            result.errors.append({"strike_id": strike_id, "error": exc.message})
            continue
        result.resolved.append(strike)
    return result


def reconcile_strike_count(db: Session, *, user_id: int) -> int:
    try:
        user = _lock_user(db, user_id)
        if user is None:
            raise NotFoundError("User not found.", code="USER_NOT_FOUND")
        active_count = count_active_strikes(db, user_id)
        if user.strike_count != active_count:
            logger.warning(
                "strike_count_drift_corrected",
                extra={"user_id": user_id, "stored": user.strike_count, "actual": active_count},
            )
            user.strike_count = active_count
        db.commit()
    except Exception:
        db.rollback()
        raise
    return active_count


def list_strikes(
    db: Session,
    *,
    user_id: int | None = None,
    status: str | None = None,
    reason: StrikeReason | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
    page: int = 1,
    page_size: int = 20,
) -> StrikePage:
    conditions = []
    if user_id is not None:
        conditions.append(Strike.user_id == user_id)
    if status == "active":
        conditions.append(Strike.is_active.is_(True))
    elif status == "resolved":
        conditions.append(Strike.is_active.is_(False))
    if reason is not None:
        conditions.append(Strike.reason == reason)
    conditions.extend(_created_between(from_date, to_date))

    page = max(1, page)
    page_size = max(1, page_size)
    total = int(db.scalar(select(func.count(Strike.id)).where(*conditions)) or 0)
    items = list(
        db.scalars(
            select(Strike)
            .where(*conditions)
            .order_by(Strike.created_at.desc(), Strike.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
    )
    return StrikePage(items=items, total=total, page=page, page_size=page_size)


def summarize_strikes(strikes: list[Strike]) -> StrikeStatistics:
    active = sum(1 for strike in strikes if strike.is_active)
    by_reason = Counter(strike.reason.value for strike in strikes)
    return StrikeStatistics(
        total_strikes=len(strikes),
        active_strikes=active,
        resolved_strikes=len(strikes) - active,
        by_reason=dict(by_reason),
        escalation_level=escalation_level(active).value,
    )


def calculate_strike_statistics(
    db: Session,
    *,
    user_id: int | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
) -> StrikeStatistics:
    conditions = _created_between(from_date, to_date)
    if user_id is not None:
        conditions.append(Strike.user_id == user_id)
    statistics = summarize_strikes(list(db.scalars(select(Strike).where(*conditions)).all()))
    if user_id is None:
        # Per-user escalation level is meaningless for an aggregate.
        statistics.escalation_level = EscalationAction.NONE.value
    return statistics


def create_missed_log_strike(
    db: Session,
    *,
    user_id: int,
    session_id: int,
    expected_at: datetime,
    gap_minutes: int,
    now_utc: datetime | None = None,
    notifier: Notifier | None = None,
) -> Strike | None:
    description = (
        "Missed hourly log during duty session. "
        f"Expected log at {normalize_ts(expected_at).isoformat()}, gap of {gap_minutes} minutes."
    )
    return create_strike(
        db,
        user_id=user_id,
        reason=StrikeReason.MISSED_HOURLY_LOG,
        description=description,
        session_id=session_id,
        missed_log_expected_at=normalize_ts(expected_at),
        now_utc=now_utc,
        notifier=notifier,
    )


def create_insufficient_duty_strike(
    db: Session,
    *,
    user_id: int,
    session_id: int,
    actual_minutes: int,
    now_utc: datetime | None = None,
    notifier: Notifier | None = None,
) -> Strike | None:
    required_minutes = get_settings().minimum_duty_minutes
    description = (
        f"Insufficient duty hours: {actual_minutes} minutes logged, {required_minutes} minutes required."
    )
    return create_strike(
        db,
        user_id=user_id,
        reason=StrikeReason.INSUFFICIENT_DUTY_HOURS,
        description=description,
        session_id=session_id,
        now_utc=now_utc,
        notifier=notifier,
    )


def create_excessive_break_strike(
    db: Session,
    *,
    user_id: int,
    log_id: int,
    break_minutes: int,
    now_utc: datetime | None = None,
    notifier: Notifier | None = None,
) -> Strike | None:
    max_break_minutes = get_settings().max_break_minutes
    description = (
        f"Excessive break duration: {break_minutes} minutes taken, "
        f"maximum allowed is {max_break_minutes} minutes."
    )
    return create_strike(
        db,
        user_id=user_id,
        reason=StrikeReason.EXCESSIVE_BREAK,
        description=description,
        log_id=log_id,
        now_utc=now_utc,
        notifier=notifier,
    )
