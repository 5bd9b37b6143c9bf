from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from dutywatch.clock import normalize_ts
from dutywatch.models import DutySession
from dutywatch.services.cadence import expected_next_log_time
from dutywatch.services.notifications import KIND_HOURLY_REMINDER, Notifier

logger = logging.getLogger("dutywatch.reminders")


def is_reminder_due(session: DutySession, *, now_utc: datetime) -> bool:
    expected_at = expected_next_log_time(session, list(session.hourly_logs))
    if normalize_ts(now_utc) < expected_at:
        return False
    # One reminder per expected check-in.
    if session.last_reminder_at is not None and normalize_ts(session.last_reminder_at) >= expected_at:
        return False
    return True


def send_hourly_reminders(
    db: Session,
    *,
    notifier: Notifier,
    now_utc: datetime | None = None,
) -> list[int]:
    reference = normalize_ts(now_utc)
    sessions = list(
        db.scalars(
            select(DutySession)
            .options(selectinload(DutySession.hourly_logs))
            .where(DutySession.ended_at.is_(None))
        ).all()
    )
    due_sessions = [session for session in sessions if is_reminder_due(session, now_utc=reference)]
    if not due_sessions:
        return []

    for session in due_sessions:
        session.last_reminder_at = reference
    db.commit()

    for session in due_sessions:
        notifier.notify_user(
            session.user_id,
            KIND_HOURLY_REMINDER,
            {
                "session_id": session.id,
                "expected_at": expected_next_log_time(session, list(session.hourly_logs)).isoformat(),
            },
        )
    logger.info("hourly_reminders_sent", extra={"session_count": len(due_sessions)})
    return [session.id for session in due_sessions]
