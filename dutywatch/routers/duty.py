from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from dutywatch.audit import audit_request_action
from dutywatch.clock import Clock, get_clock
from dutywatch.db import get_db
from dutywatch.errors import BreakLimitExceededError
from dutywatch.models import User
from dutywatch.schemas import (
    DutyEligibilityRead,
    DutySessionDetailRead,
    DutySessionEndResponse,
    DutySessionRead,
    DutySessionStartRequest,
    DutySessionStatsRead,
    HourlyLogCreateRequest,
    HourlyLogRead,
    HourlyLogUpdateRequest,
    MissedLogCandidateRead,
    NextLogWindowRead,
    StrikeRead,
)
from dutywatch.security import (
    ensure_self_or_elevated,
    require_active_user,
    require_elevated_user,
)
from dutywatch.services.breaks import end_break, start_break
from dutywatch.services.cadence import (
    cadence_window,
    commit_missed_log_strikes,
    create_hourly_log,
    list_session_logs,
    preview_missed_logs,
    update_hourly_log,
)
from dutywatch.services.duty_sessions import (
    end_duty_session,
    evaluate_duty_eligibility,
    get_active_session,
    get_session_for_viewer,
    list_user_sessions,
    start_duty_session,
    summarize_sessions,
)
from dutywatch.services.notifications import Notifier, get_notifier
from dutywatch.services.strikes import create_insufficient_duty_strike
from dutywatch.settings import get_settings

router = APIRouter(tags=["duty"])
logger = logging.getLogger("dutywatch.duty")


@router.post("/api/duty-sessions", response_model=DutySessionRead, status_code=status.HTTP_201_CREATED)
def start_session(
    payload: DutySessionStartRequest,
    request: Request,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DutySessionRead:
    session = start_duty_session(db, user=user, started_at_utc=clock.now(), notes=payload.notes)
    audit_request_action(
        db,
        request,
        actor=user,
        action="DUTY_SESSION_STARTED",
        entity_type="duty_session",
        entity_id=session.id,
    )
    return session


@router.get("/api/duty-sessions/current", response_model=DutySessionDetailRead | None)
def current_session(
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
) -> DutySessionDetailRead | None:
    return get_active_session(db, user_id=user.id)


@router.get("/api/duty-sessions/history", response_model=list[DutySessionRead])
def session_history(
    user_id: int | None = None,
    from_utc: datetime | None = None,
    to_utc: datetime | None = None,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
) -> list[DutySessionRead]:
    target_user_id = user.id if user_id is None else user_id
    ensure_self_or_elevated(user, target_user_id)
    return list_user_sessions(db, user_id=target_user_id, from_utc=from_utc, to_utc=to_utc)


@router.get("/api/duty-sessions/stats", response_model=DutySessionStatsRead)
def session_stats(
    user_id: int | None = None,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
) -> DutySessionStatsRead:
    target_user_id = user.id if user_id is None else user_id
    ensure_self_or_elevated(user, target_user_id)
    return summarize_sessions(list_user_sessions(db, user_id=target_user_id))


@router.post("/api/duty-sessions/{session_id}/end", response_model=DutySessionEndResponse)
def end_session(
    session_id: int,
    request: Request,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
) -> DutySessionEndResponse:
    now_utc = clock.now()
    session, eligibility = end_duty_session(db, session_id=session_id, actor=user, ended_at_utc=now_utc)

    if get_settings().missed_log_strikes_on_session_end:
        try:
            commit_missed_log_strikes(
                db,
                user_id=session.user_id,
                session_id=session.id,
                now_utc=now_utc,
                notifier=notifier,
            )
        except Exception:
            logger.exception(
                "missed_log_strike_check_failed",
                extra={"session_id": session.id, "user_id": session.user_id},
            )

    audit_request_action(
        db,
        request,
        actor=user,
        action="DUTY_SESSION_ENDED",
        entity_type="duty_session",
        entity_id=session.id,
        details={
            "total_minutes": eligibility.total_minutes,
            "break_minutes": eligibility.break_minutes,
            "meets_minimum": eligibility.meets_minimum,
        },
    )
    return DutySessionEndResponse(
        session=DutySessionRead.model_validate(session),
        eligibility=DutyEligibilityRead.model_validate(eligibility),
    )


@router.get("/api/duty-sessions/{session_id}/eligibility", response_model=DutyEligibilityRead)
def session_eligibility(
    session_id: int,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DutyEligibilityRead:
    session = get_session_for_viewer(db, session_id=session_id, viewer=user)
    return evaluate_duty_eligibility(session, now_utc=clock.now())


@router.post(
    "/api/duty-sessions/{session_id}/insufficient-duty-strike",
    response_model=StrikeRead | None,
)
def record_insufficient_duty(
    session_id: int,
    request: Request,
    reviewer: User = Depends(require_elevated_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
) -> StrikeRead | None:
    now_utc = clock.now()
    session = get_session_for_viewer(db, session_id=session_id, viewer=reviewer)
    eligibility = evaluate_duty_eligibility(session, now_utc=now_utc)
    if eligibility.meets_minimum:
        return None
    strike = create_insufficient_duty_strike(
        db,
        user_id=session.user_id,
        session_id=session.id,
        actual_minutes=eligibility.total_minutes,
        now_utc=now_utc,
        notifier=notifier,
    )
    if strike is not None:
        audit_request_action(
            db,
            request,
            actor=reviewer,
            action="STRIKE_CREATED",
            entity_type="strike",
            entity_id=strike.id,
        )
    return strike


@router.get("/api/duty-sessions/{session_id}/next-log", response_model=NextLogWindowRead)
def next_log_window(
    session_id: int,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
) -> NextLogWindowRead:
    session = get_session_for_viewer(db, session_id=session_id, viewer=user)
    window = cadence_window(session, list_session_logs(db, session_id=session.id))
    return NextLogWindowRead(
        session_id=session.id,
        expected_at=window.expected_at,
        opens_at=window.opens_at,
        closes_at=window.closes_at,
    )


@router.get("/api/duty-sessions/{session_id}/hourly-logs", response_model=list[HourlyLogRead])
def session_logs(
    session_id: int,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
) -> list[HourlyLogRead]:
    session = get_session_for_viewer(db, session_id=session_id, viewer=user)
    return list_session_logs(db, session_id=session.id)


@router.post("/api/hourly-logs", response_model=HourlyLogRead, status_code=status.HTTP_201_CREATED)
def submit_hourly_log(
    payload: HourlyLogCreateRequest,
    request: Request,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> HourlyLogRead:
    log = create_hourly_log(
        db,
        session_id=payload.session_id,
        user=user,
        previous_hour_work=payload.previous_hour_work,
        next_hour_plan=payload.next_hour_plan,
        now_utc=clock.now(),
    )
    audit_request_action(
        db,
        request,
        actor=user,
        action="HOURLY_LOG_CREATED",
        entity_type="hourly_log",
        entity_id=log.id,
    )
    return log


@router.patch("/api/hourly-logs/{log_id}", response_model=HourlyLogRead)
def edit_hourly_log(
    log_id: int,
    payload: HourlyLogUpdateRequest,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> HourlyLogRead:
    return update_hourly_log(
        db,
        log_id=log_id,
        user=user,
        previous_hour_work=payload.previous_hour_work,
        next_hour_plan=payload.next_hour_plan,
        now_utc=clock.now(),
    )


@router.post("/api/hourly-logs/{log_id}/break/start", response_model=HourlyLogRead)
def begin_break(
    log_id: int,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> HourlyLogRead:
    return start_break(db, log_id=log_id, user=user, now_utc=clock.now())


@router.post("/api/hourly-logs/{log_id}/break/end", response_model=HourlyLogRead)
def finish_break(
    log_id: int,
    request: Request,
    user: User = Depends(require_active_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
) -> HourlyLogRead:
    try:
        return end_break(db, log_id=log_id, user=user, now_utc=clock.now(), notifier=notifier)
    except BreakLimitExceededError as exc:
        audit_request_action(
            db,
            request,
            actor=user,
            action="BREAK_LIMIT_EXCEEDED",
            entity_type="hourly_log",
            entity_id=log_id,
            success=False,
            details=exc.details,
        )
        raise


@router.get("/api/users/{user_id}/missed-logs", response_model=list[MissedLogCandidateRead])
def missed_logs_preview(
    user_id: int,
    session_id: int | None = None,
    viewer: User = Depends(require_active_user),
    db: Session = Depends(get_db),
) -> list[MissedLogCandidateRead]:
    ensure_self_or_elevated(viewer, user_id)
    return preview_missed_logs(db, user_id=user_id, session_id=session_id)


@router.post("/api/users/{user_id}/missed-logs/strikes", response_model=list[StrikeRead])
def missed_logs_commit(
    user_id: int,
    session_id: int | None = None,
    reviewer: User = Depends(require_elevated_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
) -> list[StrikeRead]:
    return commit_missed_log_strikes(
        db,
        user_id=user_id,
        session_id=session_id,
        now_utc=clock.now(),
        notifier=notifier,
    )
