from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from dutywatch.db import get_db
from dutywatch.models import Notification, User, UserRole

logger = logging.getLogger("dutywatch.notifications")

KIND_HOURLY_REMINDER = "hourly_reminder"
KIND_STRIKE_WARNING = "strike_warning"
KIND_SUSPENSION = "suspension"
KIND_STRIKE_RESOLVED = "strike_resolved"


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    title: str
    message: str


class Notifier(Protocol):
    def notify_user(self, user_id: int, kind: str, payload: dict[str, Any]) -> None: ...

    def notify_role(self, role: UserRole, kind: str, payload: dict[str, Any]) -> None: ...


def build_message(kind: str, payload: dict[str, Any], *, for_role: bool = False) -> NotificationMessage:
    strike_count = payload.get("strike_count")
    subject_name = payload.get("full_name") or "A student"

    if kind == KIND_HOURLY_REMINDER:
        return NotificationMessage(title="Hourly Reminder", message="Time to log your hourly work.")

    if kind == KIND_STRIKE_WARNING:
        if for_role:
            return NotificationMessage(
                title="Student Strike Warning",
                message=f"{subject_name} has {strike_count} active strikes.",
            )
        return NotificationMessage(
            title="Strike Warning",
            message=f"You have {strike_count} active strikes. Further violations may result in suspension.",
        )

    if kind == KIND_SUSPENSION:
        days = payload.get("suspension_days")
        if for_role:
            return NotificationMessage(
                title="Student Suspended",
                message=f"{subject_name} has been suspended for {days} days.",
            )
        return NotificationMessage(
            title="Account Suspended",
            message=f"Your account has been suspended for {days} days due to {strike_count} active strikes.",
        )

    if kind == KIND_STRIKE_RESOLVED:
        reason = payload.get("reason") or "a violation"
        return NotificationMessage(
            title="Strike Resolved",
            message=f"Your strike for {reason} has been resolved.",
        )

    return NotificationMessage(title=kind.replace("_", " ").title(), message="")


class DatabaseNotifier:
    """In-app notifier that stores one notification row per recipient.

    Delivery is fire and forget: failures are logged and swallowed so the
    caller's already committed work is never affected.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def notify_user(self, user_id: int, kind: str, payload: dict[str, Any]) -> None:
        message = build_message(kind, payload)
        self._safe_store([user_id], kind=kind, message=message, payload=payload)

    def notify_role(self, role: UserRole, kind: str, payload: dict[str, Any]) -> None:
        try:
            recipient_ids = list(
                self.db.scalars(
                    select(User.id).where(User.role == role, User.is_active.is_(True))
                ).all()
            )
        except Exception:
            logger.exception(
                "notification_role_lookup_failed",
                extra={"role": role.value, "kind": kind},
            )
            return
        if not recipient_ids:
            return
        message = build_message(kind, payload, for_role=True)
        self._safe_store(recipient_ids, kind=kind, message=message, payload=payload)

    def _safe_store(
        self,
        recipient_ids: list[int],
        *,
        kind: str,
        message: NotificationMessage,
        payload: dict[str, Any],
    ) -> None:
        try:
            for recipient_id in recipient_ids:
                self.db.add(
                    Notification(
                        user_id=recipient_id,
                        kind=kind,
                        title=message.title,
                        message=message.message,
                        payload=dict(payload),
                        is_read=False,
                    )
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(
                "notification_dispatch_failed",
                extra={"kind": kind, "recipient_count": len(recipient_ids)},
            )
            return

        logger.info(
            "notification_dispatched",
            extra={"kind": kind, "recipient_count": len(recipient_ids)},
        )


def list_user_notifications(db: Session, *, user_id: int, unread_only: bool = False) -> list[Notification]:
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
    return list(db.scalars(stmt).all())


def get_notifier(db: Session = Depends(get_db)) -> Notifier:
    return DatabaseNotifier(db)
