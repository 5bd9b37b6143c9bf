from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from typing import Any

from dutywatch.errors import AccountSuspendedError
from dutywatch.models import User, UserRole
from dutywatch.services.escalation import (
    EscalationAction,
    EscalationDecision,
    apply_escalation,
    decide_escalation,
    escalation_level,
    notify_escalation,
)
from dutywatch.services.suspensions import (
    calculate_suspension_end,
    ensure_not_suspended,
    expire_lapsed_suspensions,
    is_suspended,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class _ScalarRows:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return self._rows


class _FakeSuspensionDB:
    def __init__(self, *, users: list[User] | None = None) -> None:
        self._users = users or []
        self.commit_count = 0

    def scalars(self, _statement):  # type: ignore[no-untyped-def]
        return _ScalarRows(self._users)

    def commit(self) -> None:
        self.commit_count += 1


class _RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, object, str, dict[str, Any]]] = []

    def notify_user(self, user_id: int, kind: str, payload: dict[str, Any]) -> None:
        self.calls.append(("user", user_id, kind, payload))

    def notify_role(self, role: UserRole, kind: str, payload: dict[str, Any]) -> None:
        self.calls.append(("role", role, kind, payload))


def _build_user(
    *,
    user_id: int = 7,
    role: UserRole = UserRole.STUDENT,
    suspended_until: datetime | None = None,
) -> User:
    return User(
        id=user_id,
        email=f"user{user_id}@club.test",
        full_name="Escalation Test",
        role=role,
        is_active=True,
        strike_count=0,
        suspended_until=suspended_until,
    )


class EscalationPolicyTests(unittest.TestCase):
    def test_levels_follow_thresholds(self) -> None:
        self.assertEqual(escalation_level(0), EscalationAction.NONE)
        self.assertEqual(escalation_level(2), EscalationAction.NONE)
        self.assertEqual(escalation_level(3), EscalationAction.WARNING)
        self.assertEqual(escalation_level(4), EscalationAction.WARNING)
        self.assertEqual(escalation_level(5), EscalationAction.SUSPENSION)
        self.assertEqual(escalation_level(8), EscalationAction.SUSPENSION)

    def test_warning_only_when_threshold_is_crossed(self) -> None:
        self.assertEqual(decide_escalation(1, previous_strike_count=0), EscalationAction.NONE)
        self.assertEqual(decide_escalation(3, previous_strike_count=2), EscalationAction.WARNING)
        self.assertEqual(decide_escalation(4, previous_strike_count=3), EscalationAction.NONE)

    def test_suspension_applies_on_every_strike_at_or_above_threshold(self) -> None:
        self.assertEqual(decide_escalation(5, previous_strike_count=4), EscalationAction.SUSPENSION)
        self.assertEqual(decide_escalation(6, previous_strike_count=5), EscalationAction.SUSPENSION)

    def test_custom_thresholds(self) -> None:
        self.assertEqual(
            decide_escalation(2, previous_strike_count=1, warning_threshold=2, suspension_threshold=4),
            EscalationAction.WARNING,
        )
        self.assertEqual(
            decide_escalation(4, previous_strike_count=3, warning_threshold=2, suspension_threshold=4),
            EscalationAction.SUSPENSION,
        )

    def test_apply_suspension_sets_end_date(self) -> None:
        user = _build_user()
        decision = apply_escalation(user, active_strike_count=5, previous_strike_count=4, now_utc=NOW)

        self.assertEqual(decision.action, EscalationAction.SUSPENSION)
        self.assertEqual(decision.suspension_days, 7)
        self.assertEqual(decision.suspended_until, NOW + timedelta(days=7))
        self.assertEqual(user.suspended_until, NOW + timedelta(days=7))

    def test_warning_leaves_user_unsuspended(self) -> None:
        user = _build_user()
        decision = apply_escalation(user, active_strike_count=3, previous_strike_count=2, now_utc=NOW)

        self.assertEqual(decision.action, EscalationAction.WARNING)
        self.assertIsNone(user.suspended_until)

    def test_notify_warning_reaches_user_and_both_elevated_roles(self) -> None:
        notifier = _RecordingNotifier()
        decision = EscalationDecision(action=EscalationAction.WARNING, user_id=7, active_strike_count=3)

        notify_escalation(notifier, _build_user(), decision)

        self.assertEqual(
            [(channel, target, kind) for channel, target, kind, _ in notifier.calls],
            [
                ("user", 7, "strike_warning"),
                ("role", UserRole.CORE_TEAM, "strike_warning"),
                ("role", UserRole.TEACHER, "strike_warning"),
            ],
        )
        self.assertEqual(notifier.calls[0][3], {"user_id": 7, "full_name": "Escalation Test", "strike_count": 3})

    def test_no_action_sends_nothing(self) -> None:
        notifier = _RecordingNotifier()
        decision = EscalationDecision(action=EscalationAction.NONE, user_id=7, active_strike_count=1)

        notify_escalation(notifier, _build_user(), decision)

        self.assertEqual(notifier.calls, [])


class SuspensionTests(unittest.TestCase):
    def test_suspension_end_counts_calendar_days(self) -> None:
        saturday = datetime(2026, 3, 7, 9, 30, tzinfo=timezone.utc)

        self.assertEqual(calculate_suspension_end(saturday, 7), datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc))

    def test_suspension_lapses_at_end_instant(self) -> None:
        user = _build_user(suspended_until=NOW)

        self.assertTrue(is_suspended(user, now_utc=NOW - timedelta(seconds=1)))
        self.assertFalse(is_suspended(user, now_utc=NOW))

    def test_suspended_student_is_rejected_with_end_date(self) -> None:
        db = _FakeSuspensionDB()
        user = _build_user(suspended_until=datetime(2026, 3, 8, 18, 0, tzinfo=timezone.utc))

        with self.assertRaises(AccountSuspendedError) as exc:
            ensure_not_suspended(db, user, now_utc=NOW)

        self.assertEqual(exc.exception.status_code, 403)
        self.assertEqual(exc.exception.code, "ACCOUNT_SUSPENDED")
        self.assertEqual(exc.exception.message, "Your account is suspended until 2026-03-08")
        self.assertEqual(db.commit_count, 0)

    def test_lapsed_suspension_is_cleared_lazily(self) -> None:
        db = _FakeSuspensionDB()
        user = _build_user(suspended_until=NOW - timedelta(hours=1))

        ensure_not_suspended(db, user, now_utc=NOW)

        self.assertIsNone(user.suspended_until)
        self.assertEqual(db.commit_count, 1)

    def test_elevated_roles_are_not_blocked(self) -> None:
        db = _FakeSuspensionDB()
        user = _build_user(role=UserRole.TEACHER, suspended_until=NOW + timedelta(days=2))

        ensure_not_suspended(db, user, now_utc=NOW)

        self.assertEqual(user.suspended_until, NOW + timedelta(days=2))

    def test_expiry_sweep_clears_lapsed_users(self) -> None:
        first = _build_user(user_id=1, suspended_until=NOW - timedelta(days=1))
        second = _build_user(user_id=2, suspended_until=NOW)
        db = _FakeSuspensionDB(users=[first, second])

        cleared = expire_lapsed_suspensions(db, now_utc=NOW)

        self.assertEqual(cleared, [1, 2])
        self.assertIsNone(first.suspended_until)
        self.assertIsNone(second.suspended_until)
        self.assertEqual(db.commit_count, 1)

    def test_expiry_sweep_without_lapsed_users_skips_commit(self) -> None:
        db = _FakeSuspensionDB()

        self.assertEqual(expire_lapsed_suspensions(db, now_utc=NOW), [])
        self.assertEqual(db.commit_count, 0)


if __name__ == "__main__":
    unittest.main()
