from typing import Literal, Optional, TypedDict


class MatchedDay(TypedDict):
    day: str
    slot: Optional[str]


class StatusNotice(TypedDict):
    type: Literal["event_status"]
    event_id: str
    status: Literal["matched", "expired", "cancelled"]
    reason: str
    result: list[MatchedDay]
    timestamp: str
