from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

from dutywatch.errors import (
    EditWindowExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from dutywatch.models import DutySession, HourlyLog, User, UserRole
from dutywatch.services.cadence import (
    MissedLogCandidate,
    commit_missed_log_strikes,
    create_hourly_log,
    detect_missed_log_gaps,
    expected_next_log_time,
    is_within_cadence_window,
    update_hourly_log,
)

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class _FakeCadenceDB:
    def __init__(self, *, get_map: dict | None = None) -> None:
        self._get_map = get_map or {}
        self.added: list[object] = []
        self.commit_count = 0

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        return self._get_map.get((model, pk))

    def add(self, obj: object) -> None:
        self.added.append(obj)

    def commit(self) -> None:
        self.commit_count += 1

    def refresh(self, _obj: object) -> None:
        return


def _build_user(user_id: int = 7) -> User:
    return User(
        id=user_id,
        email=f"user{user_id}@club.test",
        full_name="Cadence Test",
        role=UserRole.STUDENT,
        is_active=True,
        strike_count=0,
    )


def _build_session(*, user_id: int = 7, ended_at: datetime | None = None) -> DutySession:
    return DutySession(id=21, user_id=user_id, started_at=START, ended_at=ended_at)


def _build_log(log_id: int, minutes_after_start: int, *, user_id: int = 7) -> HourlyLog:
    return HourlyLog(
        id=log_id,
        duty_session_id=21,
        user_id=user_id,
        previous_hour_work="Answered member questions",
        next_hour_plan="Inventory count",
        created_at=START + timedelta(minutes=minutes_after_start),
    )


class ExpectedNextLogTests(unittest.TestCase):
    def test_first_log_is_expected_one_interval_after_start(self) -> None:
        self.assertEqual(expected_next_log_time(_build_session(), []), START + timedelta(minutes=60))

    def test_cadence_follows_latest_log(self) -> None:
        logs = [_build_log(2, 130), _build_log(1, 70)]

        self.assertEqual(
            expected_next_log_time(_build_session(), logs),
            START + timedelta(minutes=190),
        )

    def test_window_bounds_are_inclusive(self) -> None:
        session = _build_session()

        self.assertTrue(is_within_cadence_window(session, [], START + timedelta(minutes=45)))
        self.assertTrue(is_within_cadence_window(session, [], START + timedelta(minutes=75)))
        self.assertFalse(is_within_cadence_window(session, [], START + timedelta(minutes=44)))
        self.assertFalse(is_within_cadence_window(session, [], START + timedelta(minutes=76)))


class CreateHourlyLogTests(unittest.TestCase):
    def _submit(self, db: _FakeCadenceDB, *, minutes_after_start: int, user: User | None = None) -> HourlyLog:
        return create_hourly_log(
            db,
            session_id=21,
            user=user or _build_user(),
            previous_hour_work="Sorted returns",
            next_hour_plan="Front desk",
            now_utc=START + timedelta(minutes=minutes_after_start),
        )

    def test_log_on_time_is_accepted(self) -> None:
        db = _FakeCadenceDB(get_map={(DutySession, 21): _build_session()})
        with patch("dutywatch.services.cadence._load_session_logs", return_value=[]):
            log = self._submit(db, minutes_after_start=60)

        self.assertEqual(db.added, [log])
        self.assertEqual(log.created_at, START + timedelta(minutes=60))
        self.assertEqual(log.duty_session_id, 21)

    def test_log_within_tolerance_is_accepted(self) -> None:
        db = _FakeCadenceDB(get_map={(DutySession, 21): _build_session()})
        with patch("dutywatch.services.cadence._load_session_logs", return_value=[]):
            log = self._submit(db, minutes_after_start=74)

        self.assertEqual(log.created_at, START + timedelta(minutes=74))

    def test_log_outside_tolerance_is_rejected_without_side_effects(self) -> None:
        db = _FakeCadenceDB(get_map={(DutySession, 21): _build_session()})
        with patch("dutywatch.services.cadence._load_session_logs", return_value=[]):
            with self.assertRaises(ValidationError) as exc:
                self._submit(db, minutes_after_start=76)

        self.assertEqual(exc.exception.code, "LOG_OUTSIDE_CADENCE_WINDOW")
        self.assertEqual(exc.exception.status_code, 422)
        self.assertEqual(exc.exception.details["expected_at"], (START + timedelta(minutes=60)).isoformat())
        self.assertEqual(db.added, [])
        self.assertEqual(db.commit_count, 0)

    def test_log_for_missing_session_raises_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self._submit(_FakeCadenceDB(), minutes_after_start=60)

    def test_log_for_other_users_session_is_forbidden(self) -> None:
        db = _FakeCadenceDB(get_map={(DutySession, 21): _build_session(user_id=8)})
        with self.assertRaises(ForbiddenError):
            self._submit(db, minutes_after_start=60)

    def test_log_for_ended_session_is_invalid_state(self) -> None:
        db = _FakeCadenceDB(
            get_map={(DutySession, 21): _build_session(ended_at=START + timedelta(minutes=50))}
        )
        with self.assertRaises(InvalidStateError):
            self._submit(db, minutes_after_start=60)


class MissedLogGapTests(unittest.TestCase):
    def test_gap_over_threshold_is_reported(self) -> None:
        logs = [_build_log(1, 0), _build_log(2, 60), _build_log(3, 152)]
        candidates = detect_missed_log_gaps(_build_session(), logs)

        self.assertEqual(len(candidates), 1)
        candidate = candidates[0]
        self.assertEqual(candidate.user_id, 7)
        self.assertEqual(candidate.session_id, 21)
        self.assertEqual(candidate.gap_minutes, 92)
        self.assertEqual(candidate.expected_at, START + timedelta(minutes=120))

    def test_gap_at_threshold_is_not_reported(self) -> None:
        logs = [_build_log(1, 0), _build_log(2, 90)]

        self.assertEqual(detect_missed_log_gaps(_build_session(), logs), [])

    def test_regular_cadence_reports_nothing(self) -> None:
        logs = [_build_log(1, 0), _build_log(2, 60)]

        self.assertEqual(detect_missed_log_gaps(_build_session(), logs), [])

    def test_single_log_reports_nothing(self) -> None:
        self.assertEqual(detect_missed_log_gaps(_build_session(), [_build_log(1, 60)]), [])

    def test_commit_returns_only_strikes_that_were_created(self) -> None:
        candidates = [
            MissedLogCandidate(
                user_id=7,
                session_id=21,
                gap_minutes=92,
                expected_at=START + timedelta(minutes=120),
                gap_started_at=START + timedelta(minutes=60),
                gap_ended_at=START + timedelta(minutes=152),
            ),
            MissedLogCandidate(
                user_id=7,
                session_id=21,
                gap_minutes=100,
                expected_at=START + timedelta(minutes=212),
                gap_started_at=START + timedelta(minutes=152),
                gap_ended_at=START + timedelta(minutes=252),
            ),
        ]
        created_strike = SimpleNamespace(id=501)

        with (
            patch("dutywatch.services.cadence.preview_missed_logs", return_value=candidates),
            patch("dutywatch.services.cadence._resolve_struck_missed_logs", return_value=set()),
            patch(
                "dutywatch.services.cadence.create_missed_log_strike",
                side_effect=[created_strike, None],
            ) as create_strike,
        ):
            strikes = commit_missed_log_strikes(object(), user_id=7, session_id=21)

        self.assertEqual(strikes, [created_strike])
        self.assertEqual(create_strike.call_count, 2)
        self.assertEqual(create_strike.call_args_list[0].kwargs["gap_minutes"], 92)


class _RecordedRows:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return self._rows


class _StruckLogsDB:
    def __init__(self, rows) -> None:
        self._rows = rows
        self.statements: list[object] = []

    def execute(self, statement):  # type: ignore[no-untyped-def]
        self.statements.append(statement)
        return _RecordedRows(self._rows)


def _gap(expected_minutes: int, *, session_id: int = 21) -> MissedLogCandidate:
    return MissedLogCandidate(
        user_id=7,
        session_id=session_id,
        gap_minutes=92,
        expected_at=START + timedelta(minutes=expected_minutes),
        gap_started_at=START + timedelta(minutes=expected_minutes - 60),
        gap_ended_at=START + timedelta(minutes=expected_minutes + 32),
    )


class MissedLogIdempotenceTests(unittest.TestCase):
    def test_gap_with_resolved_strike_is_not_struck_again(self) -> None:
        # The earlier strike for the 11:00 gap was resolved; its row still counts.
        db = _StruckLogsDB([(21, START + timedelta(minutes=120))])

        with (
            patch(
                "dutywatch.services.cadence.preview_missed_logs",
                return_value=[_gap(120), _gap(212)],
            ),
            patch(
                "dutywatch.services.cadence.create_missed_log_strike",
                return_value=SimpleNamespace(id=502),
            ) as create_strike,
        ):
            strikes = commit_missed_log_strikes(db, user_id=7)

        self.assertEqual(len(strikes), 1)
        create_strike.assert_called_once()
        self.assertEqual(
            create_strike.call_args.kwargs["expected_at"],
            START + timedelta(minutes=212),
        )

    def test_lookup_ignores_active_flag_and_creation_time(self) -> None:
        db = _StruckLogsDB([])

        with (
            patch("dutywatch.services.cadence.preview_missed_logs", return_value=[_gap(120)]),
            patch("dutywatch.services.cadence.create_missed_log_strike", return_value=None),
        ):
            commit_missed_log_strikes(db, user_id=7)

        self.assertEqual(len(db.statements), 1)
        sql = str(db.statements[0].compile())
        self.assertIn("strikes.user_id =", sql)
        self.assertIn("strikes.reason =", sql)
        self.assertIn("strikes.session_id IS NOT NULL", sql)
        self.assertNotIn("is_active", sql)
        self.assertNotIn("created_at", sql)

    def test_naive_expected_times_are_matched_as_utc(self) -> None:
        db = _StruckLogsDB([(21, datetime(2026, 3, 2, 11, 0))])

        with (
            patch("dutywatch.services.cadence.preview_missed_logs", return_value=[_gap(120)]),
            patch("dutywatch.services.cadence.create_missed_log_strike") as create_strike,
        ):
            strikes = commit_missed_log_strikes(db, user_id=7)

        self.assertEqual(strikes, [])
        create_strike.assert_not_called()

    def test_strike_without_expected_time_covers_its_whole_session(self) -> None:
        db = _StruckLogsDB([(21, None)])

        with (
            patch(
                "dutywatch.services.cadence.preview_missed_logs",
                return_value=[_gap(120), _gap(212), _gap(120, session_id=22)],
            ),
            patch(
                "dutywatch.services.cadence.create_missed_log_strike",
                return_value=SimpleNamespace(id=503),
            ) as create_strike,
        ):
            strikes = commit_missed_log_strikes(db, user_id=7)

        self.assertEqual(len(strikes), 1)
        self.assertEqual(create_strike.call_args.kwargs["session_id"], 22)

    def test_no_gaps_skips_the_strike_lookup(self) -> None:
        db = _StruckLogsDB([])

        with patch("dutywatch.services.cadence.preview_missed_logs", return_value=[]):
            self.assertEqual(commit_missed_log_strikes(db, user_id=7), [])

        self.assertEqual(db.statements, [])


class UpdateHourlyLogTests(unittest.TestCase):
    def test_owner_can_edit_within_window(self) -> None:
        log = _build_log(5, 60)
        db = _FakeCadenceDB(get_map={(HourlyLog, 5): log})

        updated = update_hourly_log(
            db,
            log_id=5,
            user=_build_user(),
            next_hour_plan="Help with the event setup",
            now_utc=START + timedelta(minutes=75),
        )

        self.assertEqual(updated.next_hour_plan, "Help with the event setup")
        self.assertEqual(updated.previous_hour_work, "Answered member questions")
        self.assertEqual(db.commit_count, 1)

    def test_edit_after_window_is_rejected(self) -> None:
        log = _build_log(5, 60)
        db = _FakeCadenceDB(get_map={(HourlyLog, 5): log})

        with self.assertRaises(EditWindowExpiredError) as exc:
            update_hourly_log(
                db,
                log_id=5,
                user=_build_user(),
                next_hour_plan="Too late",
                now_utc=START + timedelta(minutes=76),
            )

        self.assertEqual(exc.exception.code, "EDIT_WINDOW_EXPIRED")
        self.assertEqual(log.next_hour_plan, "Inventory count")
        self.assertEqual(db.commit_count, 0)

    def test_edit_by_other_user_is_forbidden(self) -> None:
        db = _FakeCadenceDB(get_map={(HourlyLog, 5): _build_log(5, 60)})

        with self.assertRaises(ForbiddenError):
            update_hourly_log(
                db,
                log_id=5,
                user=_build_user(user_id=8),
                next_hour_plan="Not mine",
                now_utc=START + timedelta(minutes=61),
            )


if __name__ == "__main__":
    unittest.main()
