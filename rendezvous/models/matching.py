from datetime import date

from pydantic import BaseModel, Field

from rendezvous.models.events import EventStatus, MatchedSlot


class MatchDecision(BaseModel):
    """Outcome handed back to the external layer after every check."""

    event_id: str
    matched: bool
    reason: str
    result: list[MatchedSlot] = Field(default_factory=list)
    transition: EventStatus | None = None

    @property
    def dates(self) -> list[date]:
        return sorted({s.day for s in self.result})
