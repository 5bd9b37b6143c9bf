from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from dutywatch.models import AuditActorType, AuditLog, User

logger = logging.getLogger("dutywatch.audit")

SYSTEM_ACTOR_ID = "reminder_worker"


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditLog | None:
    """Write one audit row in its own commit.

    Returns ``None`` when the write fails; the audited change is already
    committed and stays in place.
    """
    row = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=ip,
        user_agent=user_agent,
        success=success,
        details=details or {},
    )
    context = {
        "request_id": request_id,
        "action": action,
        "actor_type": actor_type,
        "actor_id": actor_id,
        "entity": f"{entity_type}:{entity_id}" if entity_type else None,
        "success": success,
    }
    db.add(row)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=context)
        return None

    logger.info("audit_event", extra={**context, "details": row.details})
    return row


def audit_request_action(
    db: Session,
    request: Request,
    *,
    actor: User,
    action: str,
    entity_type: str,
    entity_id: int | None,
    success: bool = True,
    details: dict[str, Any] | None = None,
) -> AuditLog | None:
    return log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(actor.id),
        action=action,
        success=success,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )


def audit_system_action(
    db: Session,
    *,
    action: str,
    entity_type: str,
    entity_ids: list[int],
    details: dict[str, Any] | None = None,
) -> AuditLog | None:
    """Record a background sweep that touched ``entity_ids``; no row for empty sweeps."""
    if not entity_ids:
        return None
    return log_audit(
        db,
        actor_type=AuditActorType.SYSTEM,
        actor_id=SYSTEM_ACTOR_ID,
        action=action,
        success=True,
        entity_type=entity_type,
        details={**(details or {}), "ids": list(entity_ids)},
    )
