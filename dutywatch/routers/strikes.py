from __future__ import annotations

from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from dutywatch.audit import audit_request_action
from dutywatch.clock import Clock, get_clock
from dutywatch.db import get_db
from dutywatch.models import StrikeReason, User
from dutywatch.schemas import (
    NotificationRead,
    StrikeBulkResolveRequest,
    StrikeBulkResolveResponse,
    StrikeCountResponse,
    StrikePageRead,
    StrikeRead,
    StrikeResolveRequest,
    StrikeStatisticsRead,
)
from dutywatch.security import get_current_user, require_elevated_user
from dutywatch.services.notifications import Notifier, get_notifier, list_user_notifications
from dutywatch.services.strikes import (
    bulk_resolve_strikes,
    calculate_strike_statistics,
    count_active_strikes,
    list_strikes,
    reconcile_strike_count,
    resolve_strike,
)

router = APIRouter(tags=["strikes"])

StrikeStatus = Literal["active", "resolved"]


@router.get("/api/strikes/me", response_model=StrikePageRead)
def my_strikes(
    status: StrikeStatus | None = None,
    reason: StrikeReason | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> StrikePageRead:
    return list_strikes(
        db,
        user_id=user.id,
        status=status,
        reason=reason,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )


@router.get("/api/strikes/me/count", response_model=StrikeCountResponse)
def my_strike_count(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> StrikeCountResponse:
    return StrikeCountResponse(user_id=user.id, count=count_active_strikes(db, user.id))


@router.get("/api/strikes/stats", response_model=StrikeStatisticsRead)
def strike_statistics(
    user_id: int | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
    _reviewer: User = Depends(require_elevated_user),
    db: Session = Depends(get_db),
) -> StrikeStatisticsRead:
    return calculate_strike_statistics(db, user_id=user_id, from_date=from_date, to_date=to_date)


@router.get("/api/strikes", response_model=StrikePageRead)
def all_strikes(
    user_id: int | None = None,
    status: StrikeStatus | None = None,
    reason: StrikeReason | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=200),
    _reviewer: User = Depends(require_elevated_user),
    db: Session = Depends(get_db),
) -> StrikePageRead:
    return list_strikes(
        db,
        user_id=user_id,
        status=status,
        reason=reason,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )


@router.get("/api/users/{user_id}/strikes/count", response_model=StrikeCountResponse)
def user_strike_count(
    user_id: int,
    _reviewer: User = Depends(require_elevated_user),
    db: Session = Depends(get_db),
) -> StrikeCountResponse:
    return StrikeCountResponse(user_id=user_id, count=count_active_strikes(db, user_id))


@router.post("/api/users/{user_id}/strikes/reconcile", response_model=StrikeCountResponse)
def reconcile_user_strikes(
    user_id: int,
    request: Request,
    reviewer: User = Depends(require_elevated_user),
    db: Session = Depends(get_db),
) -> StrikeCountResponse:
    count = reconcile_strike_count(db, user_id=user_id)
    audit_request_action(
        db,
        request,
        actor=reviewer,
        action="STRIKE_COUNT_RECONCILED",
        entity_type="user",
        entity_id=user_id,
        details={"active_strikes": count},
    )
    return StrikeCountResponse(user_id=user_id, count=count)


@router.post("/api/strikes/{strike_id}/resolve", response_model=StrikeRead)
def resolve(
    strike_id: int,
    request: Request,
    payload: StrikeResolveRequest | None = None,
    reviewer: User = Depends(require_elevated_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
) -> StrikeRead:
    strike = resolve_strike(
        db,
        strike_id=strike_id,
        resolved_by=reviewer.id,
        resolution_notes=payload.resolution_notes if payload else None,
        now_utc=clock.now(),
        notifier=notifier,
    )
    audit_request_action(
        db,
        request,
        actor=reviewer,
        action="STRIKE_RESOLVED",
        entity_type="strike",
        entity_id=strike.id,
        details={"subject_user_id": strike.user_id, "reason": strike.reason.value},
    )
    return strike


@router.post("/api/strikes/bulk-resolve", response_model=StrikeBulkResolveResponse)
def bulk_resolve(
    payload: StrikeBulkResolveRequest,
    request: Request,
    reviewer: User = Depends(require_elevated_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
) -> StrikeBulkResolveResponse:
    result = bulk_resolve_strikes(
        db,
        strike_ids=payload.strike_ids,
        resolved_by=reviewer.id,
        resolution_notes=payload.resolution_notes,
        now_utc=clock.now(),
        notifier=notifier,
    )
    audit_request_action(
        db,
        request,
        actor=reviewer,
        action="STRIKES_BULK_RESOLVED",
        entity_type="strike",
        entity_id=None,
        success=not result.errors,
        details={
            "resolved_ids": [strike.id for strike in result.resolved],
            "errors": result.errors,
        },
    )
    return StrikeBulkResolveResponse(
        resolved_count=len(result.resolved),
        resolved=[StrikeRead.model_validate(strike) for strike in result.resolved],
        errors=result.errors,
    )


@router.get("/api/notifications/me", response_model=list[NotificationRead])
def my_notifications(
    unread_only: bool = False,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[NotificationRead]:
    return list_user_notifications(db, user_id=user.id, unread_only=unread_only)
