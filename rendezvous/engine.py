"""Matching engine.

Pure decision logic: given an event and a snapshot of its participants'
availability, decide whether the requirement is met and which dates/slots
make up the match. Nothing in this module talks to storage; the lifecycle
controller builds the snapshot under the event's lock and commits whatever
transition the returned decision carries.

Usage:
    engine = MatchingEngine()
    snapshot = AvailabilitySnapshot.from_records(records)
    decision = engine.evaluate(event, snapshot, now)
"""

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from datetime import date, datetime
from typing import Final

from rendezvous.models import (
    AvailabilityRecord,
    ConsecutiveDays,
    Event,
    EventStatus,
    FlexibleDays,
    HourBudget,
    MatchDecision,
    MatchedSlot,
    TimeSlot,
)
from rendezvous.slots import consecutive_runs, iter_dates, ordered_slots, slot_hours

logger = logging.getLogger(__name__)

REASON_MATCHED: Final[str] = "Successfully matched"
REASON_DEADLINE_PASSED: Final[str] = "deadline passed"
REASON_CANCELLED: Final[str] = "event cancelled"
REASON_NOT_FOUND: Final[str] = "event not found"
REASON_NO_COMMON_DATES: Final[str] = "no common available dates"
REASON_INSUFFICIENT_HOURS: Final[str] = "insufficient hours available"

# Picks `count` days out of the candidate runs (ascending, maximal), or None.
RunRanker = Callable[[list[list[date]], int], list[date] | None]

_EMPTY: Final[frozenset[TimeSlot]] = frozenset()


class AvailabilitySnapshot:
    """Read-only (user, day) -> slots view. Unknown pairs read as busy."""

    def __init__(self, slots_by_user: Mapping[str, Mapping[date, frozenset[TimeSlot]]] | None = None) -> None:
        self._slots: dict[str, dict[date, frozenset[TimeSlot]]] = {
            user: dict(days) for user, days in (slots_by_user or {}).items()
        }

    @classmethod
    def from_records(cls, records: Iterable[AvailabilityRecord]) -> "AvailabilitySnapshot":
        grouped: dict[str, dict[date, frozenset[TimeSlot]]] = defaultdict(dict)
        for record in records:
            grouped[record.user_id][record.day] = frozenset(record.slots)
        return cls(grouped)

    def slots_for(self, user_id: str, day: date) -> frozenset[TimeSlot]:
        return self._slots.get(user_id, {}).get(day, _EMPTY)

    def users(self) -> set[str]:
        return set(self._slots)


def first_run(runs: list[list[date]], count: int) -> list[date] | None:
    """Default run ranking: the earliest run long enough wins."""
    for run in runs:
        if len(run) >= count:
            return run[:count]
    return None


def _qualifying(slots: frozenset[TimeSlot], allowed: frozenset[TimeSlot] | None) -> frozenset[TimeSlot]:
    if allowed is None:
        return slots
    return slots & allowed


def participants_by_date(event: Event, snapshot: AvailabilitySnapshot) -> dict[date, set[str]]:
    """For each day of the window, the participants with a qualifying slot."""
    allowed = event.requirement.allowed_slots
    out: dict[date, set[str]] = {}
    for day in iter_dates(event.period_start, event.period_end):
        out[day] = {
            user for user in event.participants
            if _qualifying(snapshot.slots_for(user, day), allowed)
        }
    return out


def common_available_dates(event: Event, snapshot: AvailabilitySnapshot) -> list[date]:
    if not event.participants:
        return []
    everyone = set(event.participants)
    return sorted(day for day, users in participants_by_date(event, snapshot).items() if users == everyone)


def common_available_slots(event: Event, snapshot: AvailabilitySnapshot) -> list[MatchedSlot]:
    """(day, slot) pairs every participant has flagged, chronological then SLOT_ORDER."""
    if not event.participants:
        return []
    allowed = event.requirement.allowed_slots
    out: list[MatchedSlot] = []
    for day in iter_dates(event.period_start, event.period_end):
        shared: frozenset[TimeSlot] | None = None
        for user in event.participants:
            slots = _qualifying(snapshot.slots_for(user, day), allowed)
            shared = slots if shared is None else shared & slots
            if not shared:
                break
        if shared:
            out.extend(MatchedSlot(day=day, slot=slot) for slot in ordered_slots(shared))
    return out


def _match_consecutive(event: Event, snapshot: AvailabilitySnapshot, ranker: RunRanker) -> list[MatchedSlot] | None:
    runs = consecutive_runs(common_available_dates(event, snapshot))
    chosen = ranker(runs, event.requirement.count)
    if not chosen:
        return None
    return [MatchedSlot(day=d) for d in chosen]


def _match_flexible(event: Event, snapshot: AvailabilitySnapshot, ranker: RunRanker) -> list[MatchedSlot] | None:
    dates = common_available_dates(event, snapshot)
    count = event.requirement.count
    if len(dates) < count:
        return None
    return [MatchedSlot(day=d) for d in dates[:count]]


def _match_hours(event: Event, snapshot: AvailabilitySnapshot, ranker: RunRanker) -> list[MatchedSlot] | None:
    needed = event.requirement.hours
    picked: list[MatchedSlot] = []
    total = 0
    for candidate in common_available_slots(event, snapshot):
        picked.append(candidate)
        total += slot_hours(candidate.slot)
        if total >= needed:
            return picked
    return None


_STRATEGIES: Final[dict[type, tuple[Callable, str]]] = {
    ConsecutiveDays: (_match_consecutive, REASON_NO_COMMON_DATES),
    FlexibleDays: (_match_flexible, REASON_NO_COMMON_DATES),
    HourBudget: (_match_hours, REASON_INSUFFICIENT_HOURS),
}


def existing_outcome(event: Event) -> MatchDecision:
    """Decision for an event that already left `open`. Never recomputed."""
    if event.status is EventStatus.MATCHED:
        return MatchDecision(
            event_id=event.id,
            matched=True,
            reason=REASON_MATCHED,
            result=list(event.matched_result or []),
        )
    reason = REASON_DEADLINE_PASSED if event.status is EventStatus.EXPIRED else REASON_CANCELLED
    return MatchDecision(event_id=event.id, matched=False, reason=reason)


def not_found(event_id: str) -> MatchDecision:
    return MatchDecision(event_id=event_id, matched=False, reason=REASON_NOT_FOUND)


class MatchingEngine:
    """Stateless matcher. `ranker` chooses among consecutive-day runs."""

    def __init__(self, ranker: RunRanker = first_run) -> None:
        self.ranker = ranker

    def find_available_slots(self, event: Event, snapshot: AvailabilitySnapshot) -> list[MatchedSlot] | None:
        strategy, _ = _STRATEGIES[type(event.requirement)]
        return strategy(event, snapshot, self.ranker)

    def evaluate(self, event: Event, snapshot: AvailabilitySnapshot, now: datetime) -> MatchDecision:
        if event.status is not EventStatus.OPEN:
            return existing_outcome(event)

        if event.deadline_passed(now):
            return MatchDecision(
                event_id=event.id,
                matched=False,
                reason=REASON_DEADLINE_PASSED,
                transition=EventStatus.EXPIRED,
            )

        joined = len(event.participants)
        if joined < event.min_participants:
            return MatchDecision(
                event_id=event.id,
                matched=False,
                reason=f"insufficient participants: {joined}/{event.min_participants}",
            )

        result = self.find_available_slots(event, snapshot)
        if result is None:
            _, reason = _STRATEGIES[type(event.requirement)]
            logger.debug("Event %s unmatched: %s", event.id, reason)
            return MatchDecision(event_id=event.id, matched=False, reason=reason)

        return MatchDecision(
            event_id=event.id,
            matched=True,
            reason=REASON_MATCHED,
            result=result,
            transition=EventStatus.MATCHED,
        )
