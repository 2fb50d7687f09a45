from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel


class TimeSlot(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    FULLDAY = "fullday"


class WriteMode(str, Enum):
    """How a bulk availability write treats an existing record."""

    MERGE = "merge"
    REPLACE = "replace"


class AvailabilityRecord(BaseModel):
    user_id: str
    day: date
    slots: frozenset[TimeSlot]
    created_at: datetime
    updated_at: datetime

    @property
    def is_available(self) -> bool:
        return bool(self.slots)
