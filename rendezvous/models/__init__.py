from rendezvous.models.availability import AvailabilityRecord, TimeSlot, WriteMode
from rendezvous.models.events import (
    ConsecutiveDays,
    Event,
    EventCreate,
    EventStatus,
    EventUpdate,
    FlexibleDays,
    HourBudget,
    MatchedSlot,
    Requirement,
    StatusChange,
)
from rendezvous.models.matching import MatchDecision

__all__ = [
    "AvailabilityRecord",
    "ConsecutiveDays",
    "Event",
    "EventCreate",
    "EventStatus",
    "EventUpdate",
    "FlexibleDays",
    "HourBudget",
    "MatchDecision",
    "MatchedSlot",
    "Requirement",
    "StatusChange",
    "TimeSlot",
    "WriteMode",
]
