from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from dutywatch.models import User, UserRole
from dutywatch.services.notifications import KIND_STRIKE_WARNING, KIND_SUSPENSION, Notifier
from dutywatch.services.suspensions import apply_suspension
from dutywatch.settings import get_settings

OBSERVER_ROLES: tuple[UserRole, ...] = (UserRole.CORE_TEAM, UserRole.TEACHER)


class EscalationAction(str, enum.Enum):
    NONE = "none"
    WARNING = "warning"
    SUSPENSION = "suspension"


@dataclass(frozen=True, slots=True)
class EscalationDecision:
    action: EscalationAction
    user_id: int
    active_strike_count: int
    suspension_days: int | None = None
    suspended_until: datetime | None = None


def escalation_level(
    active_strike_count: int,
    *,
    warning_threshold: int | None = None,
    suspension_threshold: int | None = None,
) -> EscalationAction:
    settings = get_settings()
    warning_at = settings.strike_warning_threshold if warning_threshold is None else warning_threshold
    suspension_at = settings.strike_suspension_threshold if suspension_threshold is None else suspension_threshold
    if active_strike_count >= suspension_at:
        return EscalationAction.SUSPENSION
    if active_strike_count >= warning_at:
        return EscalationAction.WARNING
    return EscalationAction.NONE


def decide_escalation(
    active_strike_count: int,
    *,
    previous_strike_count: int | None = None,
    warning_threshold: int | None = None,
    suspension_threshold: int | None = None,
) -> EscalationAction:
    """Map the active count after a new strike to the action to take.

    Suspension is applied on every strike at or above the suspension
    threshold. A warning is only issued when the new strike crosses the
    warning threshold, so later strikes below the suspension threshold do not
    repeat it.
    """
    settings = get_settings()
    warning_at = settings.strike_warning_threshold if warning_threshold is None else warning_threshold
    level = escalation_level(
        active_strike_count,
        warning_threshold=warning_at,
        suspension_threshold=suspension_threshold,
    )
    if level != EscalationAction.WARNING:
        return level

    previous = active_strike_count - 1 if previous_strike_count is None else previous_strike_count
    if previous < warning_at:
        return EscalationAction.WARNING
    return EscalationAction.NONE


def apply_escalation(
    user: User,
    *,
    active_strike_count: int,
    previous_strike_count: int,
    now_utc: datetime | None = None,
) -> EscalationDecision:
    """Evaluate the policy and apply any state change to ``user``.

    Must run inside the caller's transaction holding the user row lock.
    """
    action = decide_escalation(active_strike_count, previous_strike_count=previous_strike_count)
    if action == EscalationAction.SUSPENSION:
        suspension_days = get_settings().suspension_days
        suspended_until = apply_suspension(user, days=suspension_days, now_utc=now_utc)
        return EscalationDecision(
            action=action,
            user_id=user.id,
            active_strike_count=active_strike_count,
            suspension_days=suspension_days,
            suspended_until=suspended_until,
        )
    return EscalationDecision(action=action, user_id=user.id, active_strike_count=active_strike_count)


def notify_escalation(notifier: Notifier, user: User, decision: EscalationDecision) -> None:
    if decision.action == EscalationAction.NONE:
        return

    payload: dict[str, Any] = {
        "user_id": decision.user_id,
        "full_name": user.full_name,
        "strike_count": decision.active_strike_count,
    }
    if decision.action == EscalationAction.SUSPENSION:
        kind = KIND_SUSPENSION
        payload["suspension_days"] = decision.suspension_days
        payload["suspended_until"] = decision.suspended_until.isoformat() if decision.suspended_until else None
    else:
        kind = KIND_STRIKE_WARNING

    notifier.notify_user(decision.user_id, kind, payload)
    for role in OBSERVER_ROLES:
        notifier.notify_role(role, kind, payload)
