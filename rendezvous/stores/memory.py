"""In-memory stores.

Each instance owns its own state, so tests and embedded callers never share
hidden globals. Methods never await while mutating, so every write is atomic
with respect to other coroutines on the same event loop; the per-event
``asyncio.Lock`` exists to make read-decide-write sequences atomic.
"""

import asyncio
import logging
import secrets
import string
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime

from rendezvous.errors import ConflictError, NotFoundError
from rendezvous.models import (
    AvailabilityRecord,
    Event,
    EventCreate,
    EventStatus,
    EventUpdate,
    MatchedSlot,
    StatusChange,
    TimeSlot,
    WriteMode,
)
from rendezvous.stores.base import (
    AvailabilityStore,
    apply_changes,
    check_transition,
    join_refusal,
    normalize_dates,
    require_mode,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def generate_event_id(length: int = 10) -> str:
    chars = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(chars) for _ in range(length))


class InMemoryAvailabilityStore:
    def __init__(self) -> None:
        self._records: dict[tuple[str, date], AvailabilityRecord] = {}

    async def set_availability(
        self,
        user_id: str,
        dates: Iterable[date | str],
        slots: Iterable[TimeSlot],
        mode: WriteMode,
    ) -> list[AvailabilityRecord]:
        mode = require_mode(mode)
        flags = frozenset(TimeSlot(s) for s in slots)
        now = _now()
        out: list[AvailabilityRecord] = []
        for day in normalize_dates(dates):
            existing = self._records.get((user_id, day))
            if existing is None:
                record = AvailabilityRecord(
                    user_id=user_id, day=day, slots=flags, created_at=now, updated_at=now
                )
            else:
                merged = existing.slots | flags if mode is WriteMode.MERGE else flags
                record = existing.model_copy(update={"slots": merged, "updated_at": now})
            self._records[(user_id, day)] = record
            out.append(record)
        logger.debug("set_availability user=%s dates=%d mode=%s", user_id, len(out), mode.value)
        return out

    async def get_by_user(self, user_id: str) -> list[AvailabilityRecord]:
        return sorted(
            (r for (uid, _), r in self._records.items() if uid == user_id),
            key=lambda r: r.day,
        )

    async def get_by_user_in_range(self, user_id: str, start: date, end: date) -> list[AvailabilityRecord]:
        return [r for r in await self.get_by_user(user_id) if start <= r.day <= end]

    async def get_by_users_in_range(
        self, user_ids: Sequence[str], start: date, end: date
    ) -> list[AvailabilityRecord]:
        wanted = set(user_ids)
        return sorted(
            (r for (uid, day), r in self._records.items() if uid in wanted and start <= day <= end),
            key=lambda r: (r.user_id, r.day),
        )

    async def reset(self, user_id: str, dates: Iterable[date | str] = ()) -> int:
        days = set(normalize_dates(dates))
        doomed = [key for key in self._records if key[0] == user_id and (not days or key[1] in days)]
        for key in doomed:
            del self._records[key]
        return len(doomed)

    async def available_dates(self, user_id: str, start: date, end: date) -> list[date]:
        return [r.day for r in await self.get_by_user_in_range(user_id, start, end) if r.is_available]


class _MemoryEventTransaction:
    def __init__(self, store: "InMemoryEventStore", event_id: str) -> None:
        self._store = store
        self._event_id = event_id
        self.event = store._copy(event_id)

    async def availability(
        self, store: AvailabilityStore, user_ids: Sequence[str], start: date, end: date
    ) -> list[AvailabilityRecord]:
        if not user_ids:
            return []
        return await store.get_by_users_in_range(user_ids, start, end)

    async def reload(self) -> Event | None:
        self.event = self._store._copy(self._event_id)
        return self.event

    async def update_status(
        self,
        status: EventStatus,
        matched_result: list[MatchedSlot] | None = None,
        reason: str = "",
    ) -> bool:
        ok = self._store._apply_status(self._event_id, status, matched_result, reason)
        self.event = self._store._copy(self._event_id)
        return ok


class InMemoryEventStore:
    def __init__(self) -> None:
        self._events: dict[str, Event] = {}
        self._history: dict[str, list[StatusChange]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _copy(self, event_id: str) -> Event | None:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event is not None else None

    def _lock_for(self, event_id: str) -> asyncio.Lock:
        # Unknown ids get a throwaway lock so the map only holds live events.
        if event_id not in self._events:
            return asyncio.Lock()
        return self._locks[event_id]

    def _select(self, predicate) -> list[Event]:
        matches = [e for e in self._events.values() if predicate(e)]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in matches]

    @asynccontextmanager
    async def locked(self, event_id: str) -> AsyncIterator[_MemoryEventTransaction]:
        async with self._lock_for(event_id):
            yield _MemoryEventTransaction(self, event_id)

    async def create(self, data: EventCreate, creator_id: str) -> Event:
        now = _now()
        event_id = generate_event_id()
        while event_id in self._events:
            event_id = generate_event_id()
        event = Event(
            id=event_id,
            creator_id=creator_id,
            created_at=now,
            updated_at=now,
            **data.model_dump(),
        )
        self._events[event_id] = event
        logger.info("Created event id=%s creator=%s", event_id, creator_id)
        return event.model_copy(deep=True)

    async def get_by_id(self, event_id: str) -> Event | None:
        return self._copy(event_id)

    async def list_by_creator(self, creator_id: str) -> list[Event]:
        return self._select(lambda e: e.creator_id == creator_id)

    async def list_by_status(self, status: EventStatus) -> list[Event]:
        return self._select(lambda e: e.status is status)

    async def list_by_participant(self, user_id: str, status: EventStatus | None = None) -> list[Event]:
        return self._select(lambda e: user_id in e.participants and (status is None or e.status is status))

    async def add_participant(self, event_id: str, user_id: str) -> bool:
        async with self._lock_for(event_id):
            event = self._events.get(event_id)
            refusal = join_refusal(event, user_id)
            if refusal:
                logger.debug("Join refused event=%s user=%s: %s", event_id, user_id, refusal)
                return False
            self._events[event_id] = event.model_copy(
                update={"participants": [*event.participants, user_id], "updated_at": _now()}
            )
            return True

    async def remove_participant(self, event_id: str, user_id: str) -> bool:
        async with self._lock_for(event_id):
            event = self._events.get(event_id)
            if event is None or user_id not in event.participants:
                return False
            remaining = [p for p in event.participants if p != user_id]
            self._events[event_id] = event.model_copy(update={"participants": remaining, "updated_at": _now()})
            return True

    def _apply_status(
        self,
        event_id: str,
        status: EventStatus,
        matched_result: list[MatchedSlot] | None,
        reason: str,
    ) -> bool:
        event = self._events.get(event_id)
        if event is None:
            return False
        refusal = check_transition(event, status, matched_result)
        if refusal:
            logger.warning("Refused %s -> %s for event %s: %s", event.status.value, status.value, event_id, refusal)
            return False
        now = _now()
        self._events[event_id] = event.model_copy(
            update={
                "status": status,
                "matched_result": list(matched_result) if matched_result else None,
                "updated_at": now,
            }
        )
        self._history[event_id].append(
            StatusChange(
                event_id=event_id,
                previous_status=event.status,
                new_status=status,
                reason=reason,
                timestamp=now,
            )
        )
        return True

    async def update_status(
        self,
        event_id: str,
        status: EventStatus,
        matched_result: list[MatchedSlot] | None = None,
        reason: str = "",
    ) -> bool:
        async with self._lock_for(event_id):
            return self._apply_status(event_id, status, matched_result, reason)

    async def update(self, event_id: str, changes: EventUpdate) -> Event:
        async with self._lock_for(event_id):
            event = self._events.get(event_id)
            if event is None:
                raise NotFoundError(detail="Event not found", resource_id=event_id)
            if event.status is not EventStatus.OPEN:
                raise ConflictError(detail=f"Event is {event.status.value}", resource_id=event_id)
            updated = apply_changes(event, changes, _now())
            self._events[event_id] = updated
            return updated.model_copy(deep=True)

    async def delete(self, event_id: str) -> bool:
        async with self._lock_for(event_id):
            removed = self._events.pop(event_id, None)
            self._history.pop(event_id, None)
        self._locks.pop(event_id, None)
        return removed is not None

    async def list_expired_candidates(self, now: datetime) -> list[Event]:
        return self._select(lambda e: e.status is EventStatus.OPEN and e.deadline_passed(now))

    async def count_by_status(self) -> dict[EventStatus, int]:
        counts = {status: 0 for status in EventStatus}
        for event in self._events.values():
            counts[event.status] += 1
        return counts

    async def history(self, event_id: str) -> list[StatusChange]:
        return list(self._history.get(event_id, []))
