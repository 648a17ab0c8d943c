from __future__ import annotations

from datetime import date, datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import EndReason


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite returns naive values; stored times are always UTC.
    if value is None:
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BreakRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    org_id: str
    subject_id: str
    label: str
    started_at: datetime
    ends_at: datetime
    ended_at: Optional[datetime] = None
    end_reason: Optional[EndReason] = None
    ended_by_user_id: Optional[str] = None
    is_active: bool
    # Countdown hint for displays; the expiry sweep is authoritative.
    remaining_seconds: int = 0

    @field_validator("started_at", "ends_at", "ended_at")
    @classmethod
    def _normalize_utc(cls, value):
        return _utc(value)


class StartBreakRequest(BaseModel):
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=24 * 60)


class StartBreakResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    already_active: bool = False
    message: str
    break_: Optional[BreakRead] = Field(default=None, alias="break")


class EndBreakResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    message: str
    break_: BreakRead = Field(alias="break")


class CapacityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    org_id: str
    capacity: int
    default_duration_minutes: int
    updated_by_user_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("updated_at")
    @classmethod
    def _normalize_utc(cls, value):
        return _utc(value)


class CapacityUpdate(BaseModel):
    capacity: int
    default_duration_minutes: Optional[int] = None


class PoolStatusRead(BaseModel):
    org_id: str
    capacity: int
    default_duration_minutes: int
    active_count: int
    available: int
    locked: bool
    next_free_at: Optional[datetime] = None
    as_of: datetime
    active: List[BreakRead]
    my_break: Optional[BreakRead] = None


class PersonBreaks(BaseModel):
    label: str
    breaks: List[BreakRead]


class DayBoardRead(BaseModel):
    day: date
    time_zone: str
    total: int
    people: List[PersonBreaks]


class TickResult(BaseModel):
    ok: bool = True
    ended: int
    scanned: int
    skipped: int
    failed: int
