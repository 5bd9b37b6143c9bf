from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from dutywatch.models import StrikeReason, StrikeSeverity


class DutySessionStartRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class HourlyLogRead(BaseModel):
    id: int
    duty_session_id: int
    user_id: int
    previous_hour_work: str
    next_hour_plan: str
    created_at: datetime
    updated_at: datetime | None = None
    break_started_at: datetime | None = None
    break_ended_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class DutySessionRead(BaseModel):
    id: int
    user_id: int
    started_at: datetime
    ended_at: datetime | None = None
    total_duration_minutes: int | None = None
    notes: str | None = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class DutySessionDetailRead(DutySessionRead):
    hourly_logs: list[HourlyLogRead] = Field(default_factory=list)


class DutyEligibilityRead(BaseModel):
    total_minutes: int
    break_minutes: int
    meets_minimum: bool
    minimum_minutes: int

    model_config = ConfigDict(from_attributes=True)


class DutySessionEndResponse(BaseModel):
    session: DutySessionRead
    eligibility: DutyEligibilityRead


class DutySessionStatsRead(BaseModel):
    session_count: int
    total_minutes: int
    average_minutes: int

    model_config = ConfigDict(from_attributes=True)


class NextLogWindowRead(BaseModel):
    session_id: int
    expected_at: datetime
    opens_at: datetime
    closes_at: datetime


class HourlyLogCreateRequest(BaseModel):
    session_id: int = Field(ge=1)
    previous_hour_work: str = Field(min_length=1, max_length=5000)
    next_hour_plan: str = Field(min_length=1, max_length=5000)


class HourlyLogUpdateRequest(BaseModel):
    previous_hour_work: str | None = Field(default=None, min_length=1, max_length=5000)
    next_hour_plan: str | None = Field(default=None, min_length=1, max_length=5000)


class MissedLogCandidateRead(BaseModel):
    user_id: int
    session_id: int
    gap_minutes: int
    expected_at: datetime
    gap_started_at: datetime
    gap_ended_at: datetime
    reason: Literal["missed_hourly_log"] = "missed_hourly_log"

    model_config = ConfigDict(from_attributes=True)


class StrikeRead(BaseModel):
    id: int
    user_id: int
    reason: StrikeReason
    description: str | None = None
    strike_date: date
    created_at: datetime
    is_active: bool
    strike_count_at_time: int
    severity: StrikeSeverity
    session_id: int | None = None
    log_id: int | None = None
    missed_log_expected_at: datetime | None = None
    resolution_notes: str | None = None
    resolved_by: int | None = None
    resolved_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class StrikePageRead(BaseModel):
    items: list[StrikeRead]
    total: int
    page: int
    page_size: int

    model_config = ConfigDict(from_attributes=True)


class StrikeCountResponse(BaseModel):
    user_id: int
    count: int


class StrikeResolveRequest(BaseModel):
    resolution_notes: str | None = Field(default=None, min_length=3, max_length=2000)


class StrikeBulkResolveRequest(BaseModel):
    strike_ids: list[int] = Field(min_length=1)
    resolution_notes: str | None = Field(default=None, min_length=3, max_length=2000)


class StrikeBulkResolveResponse(BaseModel):
    resolved_count: int
    resolved: list[StrikeRead]
    errors: list[dict[str, Any]]


class StrikeStatisticsRead(BaseModel):
    total_strikes: int
    active_strikes: int
    resolved_strikes: int
    by_reason: dict[str, int]
    escalation_level: str

    model_config = ConfigDict(from_attributes=True)


class NotificationRead(BaseModel):
    id: int
    kind: str
    title: str
    message: str
    payload: dict[str, Any]
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
