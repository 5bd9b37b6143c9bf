from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


_system_clock = SystemClock()


def utcnow() -> datetime:
    return _system_clock.now()


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return utcnow()

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def minutes_between(start: datetime, end: datetime) -> int:
    return round((normalize_ts(end) - normalize_ts(start)).total_seconds() / 60)


def ceil_minutes_between(start: datetime, end: datetime) -> int:
    # A partial minute counts as a whole one.
    return math.ceil((normalize_ts(end) - normalize_ts(start)).total_seconds() / 60)


def get_clock() -> Clock:
    return _system_clock
