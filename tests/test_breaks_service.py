from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

from dutywatch.clock import ceil_minutes_between
from dutywatch.errors import BreakLimitExceededError, ForbiddenError, InvalidStateError, NotFoundError
from dutywatch.models import HourlyLog, User, UserRole
from dutywatch.services.breaks import end_break, is_break_within_limit, start_break

LOGGED_AT = datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc)


class _FakeBreakDB:
    def __init__(self, log: HourlyLog | None) -> None:
        self._log = log
        self.commit_count = 0

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        if model is HourlyLog and self._log is not None and pk == self._log.id:
            return self._log
        return None

    def commit(self) -> None:
        self.commit_count += 1

    def refresh(self, _obj: object) -> None:
        return


def _build_user(user_id: int = 7) -> User:
    return User(
        id=user_id,
        email=f"user{user_id}@club.test",
        full_name="Break Test",
        role=UserRole.STUDENT,
        is_active=True,
        strike_count=0,
    )


def _build_log(*, break_started_at: datetime | None = None) -> HourlyLog:
    return HourlyLog(
        id=31,
        duty_session_id=21,
        user_id=7,
        previous_hour_work="Cataloguing",
        next_hour_plan="Break then desk",
        created_at=LOGGED_AT,
        break_started_at=break_started_at,
        break_ended_at=None,
    )


class BreakLimitTests(unittest.TestCase):
    def test_limit_is_inclusive(self) -> None:
        self.assertTrue(is_break_within_limit(LOGGED_AT, LOGGED_AT + timedelta(minutes=30)))
        self.assertFalse(is_break_within_limit(LOGGED_AT, LOGGED_AT + timedelta(minutes=31)))


class StartBreakTests(unittest.TestCase):
    def test_start_break_sets_start_time(self) -> None:
        log = _build_log()
        db = _FakeBreakDB(log)

        result = start_break(db, log_id=31, user=_build_user(), now_utc=LOGGED_AT + timedelta(minutes=5))

        self.assertEqual(result.break_started_at, LOGGED_AT + timedelta(minutes=5))
        self.assertTrue(result.has_open_break)
        self.assertEqual(db.commit_count, 1)

    def test_second_break_on_same_log_is_rejected(self) -> None:
        log = _build_log(break_started_at=LOGGED_AT)

        with self.assertRaises(InvalidStateError) as exc:
            start_break(_FakeBreakDB(log), log_id=31, user=_build_user(), now_utc=LOGGED_AT)

        self.assertEqual(exc.exception.code, "BREAK_ALREADY_STARTED")

    def test_start_break_on_missing_log_raises_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            start_break(_FakeBreakDB(None), log_id=31, user=_build_user(), now_utc=LOGGED_AT)

    def test_start_break_on_other_users_log_is_forbidden(self) -> None:
        with self.assertRaises(ForbiddenError):
            start_break(_FakeBreakDB(_build_log()), log_id=31, user=_build_user(user_id=8), now_utc=LOGGED_AT)


class EndBreakTests(unittest.TestCase):
    def test_end_without_open_break_is_rejected(self) -> None:
        with self.assertRaises(InvalidStateError) as exc:
            end_break(_FakeBreakDB(_build_log()), log_id=31, user=_build_user(), now_utc=LOGGED_AT)

        self.assertEqual(exc.exception.code, "BREAK_NOT_STARTED")

    def test_break_of_exactly_thirty_minutes_is_accepted(self) -> None:
        log = _build_log(break_started_at=LOGGED_AT)
        db = _FakeBreakDB(log)

        with patch("dutywatch.services.breaks.create_excessive_break_strike") as create_strike:
            result = end_break(db, log_id=31, user=_build_user(), now_utc=LOGGED_AT + timedelta(minutes=30))

        self.assertEqual(result.break_ended_at, LOGGED_AT + timedelta(minutes=30))
        self.assertFalse(result.has_open_break)
        create_strike.assert_not_called()

    def test_long_break_is_persisted_then_rejected_with_strike(self) -> None:
        log = _build_log(break_started_at=LOGGED_AT)
        db = _FakeBreakDB(log)
        notifier = SimpleNamespace()

        with patch(
            "dutywatch.services.breaks.create_excessive_break_strike",
            return_value=SimpleNamespace(id=77),
        ) as create_strike:
            with self.assertRaises(BreakLimitExceededError) as exc:
                end_break(
                    db,
                    log_id=31,
                    user=_build_user(),
                    now_utc=LOGGED_AT + timedelta(minutes=31),
                    notifier=notifier,
                )

        self.assertEqual(log.break_ended_at, LOGGED_AT + timedelta(minutes=31))
        self.assertEqual(db.commit_count, 1)
        self.assertEqual(exc.exception.code, "BREAK_LIMIT_EXCEEDED")
        self.assertEqual(exc.exception.details, {"break_minutes": 31, "max_break_minutes": 30})
        create_strike.assert_called_once()
        self.assertEqual(create_strike.call_args.kwargs["user_id"], 7)
        self.assertEqual(create_strike.call_args.kwargs["log_id"], 31)
        self.assertEqual(create_strike.call_args.kwargs["break_minutes"], 31)
        self.assertIs(create_strike.call_args.kwargs["notifier"], notifier)

    def test_strike_failure_does_not_hide_limit_error(self) -> None:
        log = _build_log(break_started_at=LOGGED_AT)

        with patch(
            "dutywatch.services.breaks.create_excessive_break_strike",
            side_effect=RuntimeError("database unavailable"),
        ):
            with self.assertRaises(BreakLimitExceededError):
                end_break(
                    _FakeBreakDB(log),
                    log_id=31,
                    user=_build_user(),
                    now_utc=LOGGED_AT + timedelta(minutes=45),
                )

        self.assertEqual(log.break_ended_at, LOGGED_AT + timedelta(minutes=45))

    def test_partial_minute_over_limit_is_reported_as_next_whole_minute(self) -> None:
        log = _build_log(break_started_at=LOGGED_AT)

        with patch("dutywatch.services.breaks.create_excessive_break_strike") as create_strike:
            with self.assertRaises(BreakLimitExceededError) as exc:
                end_break(
                    _FakeBreakDB(log),
                    log_id=31,
                    user=_build_user(),
                    now_utc=LOGGED_AT + timedelta(minutes=30, seconds=30),
                )

        self.assertEqual(exc.exception.details["break_minutes"], 31)
        self.assertEqual(create_strike.call_args.kwargs["break_minutes"], 31)


class CeilMinutesTests(unittest.TestCase):
    def test_partial_minutes_round_up(self) -> None:
        self.assertEqual(ceil_minutes_between(LOGGED_AT, LOGGED_AT + timedelta(minutes=30, seconds=1)), 31)
        self.assertEqual(ceil_minutes_between(LOGGED_AT, LOGGED_AT + timedelta(minutes=30)), 30)

    def test_naive_and_aware_bounds_are_compared_in_utc(self) -> None:
        started = datetime(2026, 3, 2, 11, 0)

        self.assertEqual(ceil_minutes_between(started, LOGGED_AT + timedelta(seconds=59)), 1)


if __name__ == "__main__":
    unittest.main()
