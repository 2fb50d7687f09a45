"""
Decision bus backed by Redis pub/sub.

Committed status transitions are announced here so the notification layer
can tell participants. Publishing happens after the event's lock is released.
"""
import json
from datetime import UTC, datetime
from typing import Final

import redis.asyncio as redis

from rendezvous.models import EventStatus, MatchDecision
from rendezvous.notices import StatusNotice

CHANNEL_DECISIONS: Final[str] = "rendezvous:decisions"
CHANNEL_EVENT_PREFIX: Final[str] = "rendezvous:event:"


def build_notice(event_id: str, status: EventStatus, reason: str, decision: MatchDecision | None = None) -> StatusNotice:
    result = decision.result if decision is not None else []
    return {
        "type": "event_status",
        "event_id": event_id,
        "status": status.value,
        "reason": reason,
        "result": [
            {"day": s.day.isoformat(), "slot": s.slot.value if s.slot else None}
            for s in result
        ],
        "timestamp": datetime.now(UTC).isoformat(),
    }


class DecisionBus:
    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client

    @staticmethod
    def event_channel(event_id: str) -> str:
        return f"{CHANNEL_EVENT_PREFIX}{event_id}"

    async def publish(self, notice: StatusNotice) -> None:
        payload = json.dumps(notice)
        await self.redis_client.publish(CHANNEL_DECISIONS, payload)
        await self.redis_client.publish(self.event_channel(notice["event_id"]), payload)
