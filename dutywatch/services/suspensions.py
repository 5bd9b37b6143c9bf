from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from dutywatch.clock import normalize_ts
from dutywatch.errors import AccountSuspendedError, NotFoundError
from dutywatch.models import User, UserRole
from dutywatch.settings import get_settings


def calculate_suspension_end(start_utc: datetime, days: int) -> datetime:
    # Plain calendar days; weekends and holidays are not skipped.
    return normalize_ts(start_utc) + timedelta(days=days)


def is_suspended(user: User, *, now_utc: datetime | None = None) -> bool:
    if user.suspended_until is None:
        return False
    return normalize_ts(now_utc) < normalize_ts(user.suspended_until)


def apply_suspension(user: User, *, days: int | None = None, now_utc: datetime | None = None) -> datetime:
    """Set ``suspended_until`` on an already loaded (and locked) user row.

    The caller owns the transaction.
    """
    suspension_days = get_settings().suspension_days if days is None else days
    suspended_until = calculate_suspension_end(normalize_ts(now_utc), suspension_days)
    user.suspended_until = suspended_until
    return suspended_until


def suspend_user(
    db: Session,
    *,
    user_id: int,
    days: int | None = None,
    now_utc: datetime | None = None,
) -> User:
    user = db.scalar(select(User).where(User.id == user_id).with_for_update())
    if user is None:
        raise NotFoundError("User not found.", code="USER_NOT_FOUND")
    apply_suspension(user, days=days, now_utc=now_utc)
    db.commit()
    db.refresh(user)
    return user


def check_suspension_expiry(db: Session, user: User, *, now_utc: datetime | None = None) -> bool:
    if user.suspended_until is None or is_suspended(user, now_utc=now_utc):
        return False
    user.suspended_until = None
    db.commit()
    return True


def expire_lapsed_suspensions(db: Session, *, now_utc: datetime | None = None) -> list[int]:
    reference = normalize_ts(now_utc)
    users = list(
        db.scalars(
            select(User).where(
                User.suspended_until.is_not(None),
                User.suspended_until <= reference,
            )
        ).all()
    )
    if not users:
        return []
    for user in users:
        user.suspended_until = None
    db.commit()
    return [user.id for user in users]


def ensure_not_suspended(db: Session, user: User, *, now_utc: datetime | None = None) -> None:
    if user.role != UserRole.STUDENT:
        return
    if is_suspended(user, now_utc=now_utc):
        raise AccountSuspendedError(normalize_ts(user.suspended_until))
    check_suspension_expiry(db, user, now_utc=now_utc)
