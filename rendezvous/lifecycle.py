"""Lifecycle controller.

The single entry point the external layer calls after any mutation that can
change a matching outcome:

- participant joined      -> ``on_participant_added(event_id)``
- availability bulk-set   -> ``on_availability_changed(user_id)``
- scheduled job           -> ``sweep()``

Every check runs read-decide-write inside the event store's per-event
scope. Notices go out on the decision bus only after that scope is released.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Final

from rendezvous.bus import DecisionBus, build_notice
from rendezvous.engine import (
    REASON_CANCELLED,
    AvailabilitySnapshot,
    MatchingEngine,
    existing_outcome,
    not_found,
)
from rendezvous.models import Event, EventStatus, MatchDecision
from rendezvous.notices import StatusNotice
from rendezvous.stores.base import AvailabilityStore, EventStore, EventTransaction

logger = logging.getLogger(__name__)

REASON_COMMIT_REFUSED: Final[str] = "match could not be committed"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LifecycleController:
    def __init__(
        self,
        events: EventStore,
        availability: AvailabilityStore,
        *,
        engine: MatchingEngine | None = None,
        bus: DecisionBus | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.events = events
        self.availability = availability
        self.engine = engine or MatchingEngine()
        self.bus = bus
        self.clock = clock

    async def _snapshot(self, tx: EventTransaction, event: Event) -> AvailabilitySnapshot:
        records = await tx.availability(
            self.availability, event.participants, event.period_start, event.period_end
        )
        return AvailabilitySnapshot.from_records(records)

    async def _after_refused_commit(self, tx: EventTransaction, event_id: str) -> MatchDecision:
        current = await tx.reload()
        if current is None:
            return not_found(event_id)
        if current.status.is_terminal:
            return existing_outcome(current)
        return MatchDecision(event_id=event_id, matched=False, reason=REASON_COMMIT_REFUSED)

    async def _decide(self, event_id: str) -> tuple[MatchDecision, StatusNotice | None]:
        async with self.events.locked(event_id) as tx:
            event = tx.event
            if event is None:
                return not_found(event_id), None
            if event.status.is_terminal:
                return existing_outcome(event), None

            snapshot = await self._snapshot(tx, event)
            decision = self.engine.evaluate(event, snapshot, self.clock())
            if decision.transition is None:
                logger.debug("Event %s unchanged: %s", event_id, decision.reason)
                return decision, None

            result = decision.result if decision.transition is EventStatus.MATCHED else None
            if not await tx.update_status(decision.transition, result, reason=decision.reason):
                logger.warning("Commit of %s refused for event %s", decision.transition.value, event_id)
                return await self._after_refused_commit(tx, event_id), None

        logger.info("Event %s -> %s: %s", event_id, decision.transition.value, decision.reason)
        return decision, build_notice(event_id, decision.transition, decision.reason, decision)

    async def _announce(self, notice: StatusNotice | None) -> None:
        if notice is None or self.bus is None:
            return
        try:
            await self.bus.publish(notice)
        except Exception:
            logger.exception("Failed to publish %s notice for event %s", notice["status"], notice["event_id"])

    async def check_event(self, event_id: str) -> MatchDecision:
        """Evaluate one event and commit a matched/expired transition if due."""
        decision, notice = await self._decide(event_id)
        await self._announce(notice)
        return decision

    async def on_participant_added(self, event_id: str) -> MatchDecision:
        return await self.check_event(event_id)

    async def on_availability_changed(self, user_id: str) -> list[MatchDecision]:
        """Re-check every open event the user participates in."""
        events = await self.events.list_by_participant(user_id, EventStatus.OPEN)
        return [await self.check_event(e.id) for e in events]

    async def sweep(self) -> list[MatchDecision]:
        """Expire overdue events, then re-check every remaining open event.

        Each event takes and releases its own scope; nothing is held across
        events.
        """
        now = self.clock()
        overdue = await self.events.list_expired_candidates(now)
        decisions = [await self.check_event(e.id) for e in overdue]
        seen = {e.id for e in overdue}

        for event in await self.events.list_by_status(EventStatus.OPEN):
            if event.id not in seen:
                decisions.append(await self.check_event(event.id))

        matched = sum(1 for d in decisions if d.transition is EventStatus.MATCHED)
        expired = sum(1 for d in decisions if d.transition is EventStatus.EXPIRED)
        logger.info("Sweep checked %d events: %d matched, %d expired", len(decisions), matched, expired)
        return decisions

    async def cancel_event(self, event_id: str, reason: str = REASON_CANCELLED) -> MatchDecision:
        """Move an open event to cancelled. Decided events are returned as-is."""
        async with self.events.locked(event_id) as tx:
            event = tx.event
            if event is None:
                return not_found(event_id)
            if event.status.is_terminal:
                return existing_outcome(event)
            if not await tx.update_status(EventStatus.CANCELLED, None, reason=reason):
                return await self._after_refused_commit(tx, event_id)

        decision = MatchDecision(
            event_id=event_id,
            matched=False,
            reason=reason,
            transition=EventStatus.CANCELLED,
        )
        logger.info("Event %s cancelled: %s", event_id, reason)
        await self._announce(build_notice(event_id, EventStatus.CANCELLED, reason))
        return decision

    async def get_stats(self) -> dict[str, int]:
        counts = await self.events.count_by_status()
        return {
            "total": sum(counts.values()),
            "open": counts.get(EventStatus.OPEN, 0),
            "matched": counts.get(EventStatus.MATCHED, 0),
            "expired": counts.get(EventStatus.EXPIRED, 0),
            "cancelled": counts.get(EventStatus.CANCELLED, 0),
        }
