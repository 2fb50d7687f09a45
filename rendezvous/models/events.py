"""Event records and the tagged requirement variant."""

from datetime import UTC, date, datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rendezvous.models.availability import TimeSlot


class EventStatus(str, Enum):
    OPEN = "open"
    MATCHED = "matched"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not EventStatus.OPEN


class _SlotRestricted(BaseModel):
    allowed_slots: frozenset[TimeSlot] | None = None

    @field_validator("allowed_slots")
    @classmethod
    def validate_allowed_slots(cls, v: frozenset[TimeSlot] | None) -> frozenset[TimeSlot] | None:
        if v is not None and not v:
            raise ValueError("allowed_slots must not be empty when given")
        return v


class ConsecutiveDays(_SlotRestricted):
    kind: Literal["consecutive_days"] = "consecutive_days"
    count: int = Field(ge=1)


class FlexibleDays(_SlotRestricted):
    kind: Literal["flexible_days"] = "flexible_days"
    count: int = Field(ge=1)


class HourBudget(_SlotRestricted):
    kind: Literal["hour_budget"] = "hour_budget"
    hours: float = Field(gt=0)


Requirement = Annotated[
    Union[ConsecutiveDays, FlexibleDays, HourBudget],
    Field(discriminator="kind"),
]


class MatchedSlot(BaseModel):
    """One element of a matched result. ``slot`` is only set for hour budgets."""

    model_config = ConfigDict(frozen=True)

    day: date
    slot: TimeSlot | None = None


def _clean_name(v: str | None) -> str | None:
    if v is None:
        return v
    v = v.strip()
    if not v or len(v) > 200:
        raise ValueError("name must be 1-200 characters")
    return v


def _as_utc(v: datetime | None) -> datetime | None:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=UTC)
    return v


class EventCreate(BaseModel):
    name: str
    description: str | None = None
    requirement: Requirement
    min_participants: int = Field(default=1, ge=1)
    max_participants: int | None = Field(default=None, ge=1)
    deadline: datetime | None = None
    period_start: date
    period_end: date

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _clean_name(v)

    @field_validator("deadline")
    @classmethod
    def validate_deadline(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @model_validator(mode="after")
    def validate_bounds(self) -> "EventCreate":
        if self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        if self.max_participants is not None and self.min_participants > self.max_participants:
            raise ValueError("min_participants must not exceed max_participants")
        return self


class EventUpdate(BaseModel):
    """Partial edit of an open event. Unset fields are left alone."""

    name: str | None = None
    description: str | None = None
    requirement: Requirement | None = None
    min_participants: int | None = Field(default=None, ge=1)
    max_participants: int | None = Field(default=None, ge=1)
    deadline: datetime | None = None
    period_start: date | None = None
    period_end: date | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        return _clean_name(v)

    @field_validator("deadline")
    @classmethod
    def validate_deadline(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


class Event(BaseModel):
    id: str
    name: str
    description: str | None = None
    creator_id: str
    participants: list[str] = Field(default_factory=list)
    requirement: Requirement
    min_participants: int = 1
    max_participants: int | None = None
    deadline: datetime | None = None
    period_start: date
    period_end: date
    status: EventStatus = EventStatus.OPEN
    matched_result: list[MatchedSlot] | None = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def validate_invariants(self) -> "Event":
        if len(set(self.participants)) != len(self.participants):
            raise ValueError("participants must be unique")
        if self.creator_id in self.participants:
            raise ValueError("creator cannot be a participant")
        if self.max_participants is not None and self.min_participants > self.max_participants:
            raise ValueError("min_participants must not exceed max_participants")
        if self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        if (self.status is EventStatus.MATCHED) != (self.matched_result is not None):
            raise ValueError("matched_result is set if and only if status is matched")
        return self

    def in_window(self, day: date) -> bool:
        return self.period_start <= day <= self.period_end

    def deadline_passed(self, now: datetime) -> bool:
        return self.deadline is not None and now > self.deadline

    @property
    def is_full(self) -> bool:
        return self.max_participants is not None and len(self.participants) >= self.max_participants


class StatusChange(BaseModel):
    event_id: str
    previous_status: EventStatus
    new_status: EventStatus
    reason: str
    timestamp: datetime
