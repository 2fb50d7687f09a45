"""Store interfaces injected into the lifecycle controller.

Two backends implement them: ``rendezvous.stores.memory`` (isolated per
instance, used by tests and single-process deployments) and
``rendezvous.db`` (PostgreSQL via psycopg).
"""

from collections.abc import Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime
from typing import Protocol

from rendezvous.errors import BadRequestError
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
from rendezvous.slots import parse_date


class AvailabilityStore(Protocol):
    async def set_availability(
        self,
        user_id: str,
        dates: Iterable[date | str],
        slots: Iterable[TimeSlot],
        mode: WriteMode,
    ) -> list[AvailabilityRecord]: ...

    async def get_by_user(self, user_id: str) -> list[AvailabilityRecord]: ...

    async def get_by_user_in_range(self, user_id: str, start: date, end: date) -> list[AvailabilityRecord]: ...

    async def get_by_users_in_range(
        self, user_ids: Sequence[str], start: date, end: date
    ) -> list[AvailabilityRecord]: ...

    async def reset(self, user_id: str, dates: Iterable[date | str] = ()) -> int: ...

    async def available_dates(self, user_id: str, start: date, end: date) -> list[date]: ...


class EventTransaction(Protocol):
    """Handle for one event while its exclusive scope is held.

    Reads made through the handle reuse the scope's own resources, so a
    held scope never waits on a second database connection.
    """

    event: Event | None

    async def availability(
        self, store: AvailabilityStore, user_ids: Sequence[str], start: date, end: date
    ) -> list[AvailabilityRecord]: ...

    async def reload(self) -> Event | None: ...

    async def update_status(
        self,
        status: EventStatus,
        matched_result: list[MatchedSlot] | None = None,
        reason: str = "",
    ) -> bool: ...


class EventStore(Protocol):
    async def create(self, data: EventCreate, creator_id: str) -> Event: ...

    async def get_by_id(self, event_id: str) -> Event | None: ...

    async def list_by_creator(self, creator_id: str) -> list[Event]: ...

    async def list_by_status(self, status: EventStatus) -> list[Event]: ...

    async def list_by_participant(self, user_id: str, status: EventStatus | None = None) -> list[Event]: ...

    async def add_participant(self, event_id: str, user_id: str) -> bool: ...

    async def remove_participant(self, event_id: str, user_id: str) -> bool: ...

    async def update_status(
        self,
        event_id: str,
        status: EventStatus,
        matched_result: list[MatchedSlot] | None = None,
        reason: str = "",
    ) -> bool: ...

    async def update(self, event_id: str, changes: EventUpdate) -> Event: ...

    async def delete(self, event_id: str) -> bool: ...

    async def list_expired_candidates(self, now: datetime) -> list[Event]: ...

    async def count_by_status(self) -> dict[EventStatus, int]: ...

    async def history(self, event_id: str) -> list[StatusChange]: ...

    def locked(self, event_id: str) -> AbstractAsyncContextManager[EventTransaction]: ...


def require_mode(mode: object) -> WriteMode:
    """Bulk writes must name their mode; there is no implicit default."""
    if not isinstance(mode, WriteMode):
        raise BadRequestError(
            detail="availability write mode must be WriteMode.MERGE or WriteMode.REPLACE",
            mode=repr(mode),
        )
    return mode


def check_transition(event: Event, status: EventStatus, matched_result: list[MatchedSlot] | None) -> str | None:
    """Return why a status write must be refused, or None when it is allowed."""
    if event.status.is_terminal:
        return f"event already {event.status.value}"
    if status is EventStatus.OPEN:
        return "cannot transition to open"
    if status is EventStatus.MATCHED:
        if not matched_result:
            return "matched status requires a result"
        outside = [s.day for s in matched_result if not event.in_window(s.day)]
        if outside:
            return f"result outside period window: {outside[0].isoformat()}"
    elif matched_result is not None:
        return "only matched events carry a result"
    return None


def apply_changes(event: Event, changes: EventUpdate, now: datetime) -> Event:
    """Validated copy of `event` with `changes` applied (raises BadRequestError)."""
    data = event.model_dump()
    # Copy set fields as-is; dumping would drop the unset `kind` tag of a nested requirement.
    data.update({name: getattr(changes, name) for name in changes.model_fields_set})
    data["updated_at"] = now
    try:
        return Event.model_validate(data)
    except ValueError as e:
        raise BadRequestError(detail=str(e), event_id=event.id) from e


def join_refusal(event: Event | None, user_id: str) -> str | None:
    """Return why `user_id` may not join `event`, or None when the join is allowed."""
    if event is None:
        return "event not found"
    if event.creator_id == user_id:
        return "creator cannot join"
    if user_id in event.participants:
        return "already joined"
    if event.status is not EventStatus.OPEN:
        return f"event is {event.status.value}"
    if event.is_full:
        return "event is full"
    return None


def normalize_dates(dates: Iterable[date | str]) -> list[date]:
    """Distinct calendar days, ascending. ISO strings are accepted."""
    try:
        return sorted({parse_date(d) for d in dates})
    except ValueError as e:
        raise BadRequestError(detail=f"invalid date: {e}") from e
