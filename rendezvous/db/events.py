"""PostgreSQL event store.

The per-event exclusive scope is a transaction holding ``SELECT ... FOR
UPDATE`` on the event row. ``locked()``, ``add_participant``,
``remove_participant``, ``update_status`` and ``update`` all take it, so a
join and a match check on the same event serialize.
"""

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from typing import Any

from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from rendezvous.db.availability import PostgresAvailabilityStore, fetch_by_users_in_range
from rendezvous.db.core import _get_connection
from rendezvous.errors import ConflictError, NotFoundError, StorageError
from rendezvous.models import (
    AvailabilityRecord,
    Event,
    EventCreate,
    EventStatus,
    EventUpdate,
    MatchedSlot,
    StatusChange,
)
from rendezvous.stores.base import AvailabilityStore, apply_changes, check_transition, join_refusal
from rendezvous.stores.memory import generate_event_id

logger = logging.getLogger(__name__)

_SELECT_EVENT = """
    SELECT e.id, e.name, e.description, e.creator_id, e.requirement,
           e.min_participants, e.max_participants, e.deadline,
           e.period_start, e.period_end, e.status, e.matched_result,
           e.created_at, e.updated_at,
           COALESCE(
               (SELECT array_agg(p.user_id ORDER BY p.joined_at, p.user_id)
                FROM match_event_participants p WHERE p.event_id = e.id),
               '{}'
           ) AS participants
    FROM match_events e
"""


def _row_to_event(row) -> Event:
    return Event(
        id=row[0],
        name=row[1],
        description=row[2],
        creator_id=row[3],
        requirement=row[4],
        min_participants=row[5],
        max_participants=row[6],
        deadline=row[7].astimezone(UTC) if row[7] else None,
        period_start=row[8],
        period_end=row[9],
        status=EventStatus(row[10]),
        matched_result=row[11],
        created_at=row[12].astimezone(UTC),
        updated_at=row[13].astimezone(UTC),
        participants=list(row[14] or []),
    )


def _result_json(matched_result: list[MatchedSlot] | None) -> Jsonb | None:
    if not matched_result:
        return None
    return Jsonb([s.model_dump(mode="json") for s in matched_result])


async def _fetch_event(conn, event_id: str, for_update: bool = False) -> Event | None:
    sql = _SELECT_EVENT + " WHERE e.id = %s"
    if for_update:
        sql += " FOR UPDATE OF e"
    row = await (await conn.execute(sql, (event_id,))).fetchone()
    return _row_to_event(row) if row else None


async def _fetch_events(conn, where: str, params: tuple[Any, ...]) -> list[Event]:
    rows = await conn.execute(f"{_SELECT_EVENT} WHERE {where} ORDER BY e.created_at DESC", params)
    return [_row_to_event(row) async for row in rows]


class _PostgresEventTransaction:
    def __init__(self, conn, event_id: str, event: Event | None) -> None:
        self.conn = conn
        self.event_id = event_id
        self.event = event

    async def availability(
        self, store: AvailabilityStore, user_ids: Sequence[str], start: date, end: date
    ) -> list[AvailabilityRecord]:
        # A second pool connection while the row lock is held can exhaust the pool.
        if isinstance(store, PostgresAvailabilityStore):
            return await fetch_by_users_in_range(self.conn, user_ids, start, end)
        return await store.get_by_users_in_range(user_ids, start, end) if user_ids else []

    async def reload(self) -> Event | None:
        self.event = await _fetch_event(self.conn, self.event_id)
        return self.event

    async def update_status(
        self,
        status: EventStatus,
        matched_result: list[MatchedSlot] | None = None,
        reason: str = "",
    ) -> bool:
        if self.event is None:
            return False
        refusal = check_transition(self.event, status, matched_result)
        if refusal:
            logger.warning(
                "Refused %s -> %s for event %s: %s",
                self.event.status.value, status.value, self.event.id, refusal,
            )
            return False
        now = datetime.now(UTC)
        cur = await self.conn.execute(
            """UPDATE match_events SET status = %s, matched_result = %s, updated_at = %s
               WHERE id = %s AND status = 'open'""",
            (status.value, _result_json(matched_result), now, self.event.id),
        )
        if cur.rowcount != 1:
            return False
        await self.conn.execute(
            """INSERT INTO match_event_history (event_id, previous_status, new_status, reason, ts)
               VALUES (%s, %s, %s, %s, %s)""",
            (self.event.id, self.event.status.value, status.value, reason, now),
        )
        self.event = self.event.model_copy(
            update={
                "status": status,
                "matched_result": list(matched_result) if matched_result else None,
                "updated_at": now,
            }
        )
        return True


class PostgresEventStore:
    @asynccontextmanager
    async def locked(self, event_id: str) -> AsyncIterator[_PostgresEventTransaction]:
        async with _get_connection(autocommit=False) as conn:
            async with conn.transaction():
                event = await _fetch_event(conn, event_id, for_update=True)
                yield _PostgresEventTransaction(conn, event_id, event)

    async def create(self, data: EventCreate, creator_id: str) -> Event:
        now = datetime.now(UTC)
        async with _get_connection() as conn:
            for _ in range(10):
                event_id = generate_event_id()
                try:
                    await conn.execute(
                        """INSERT INTO match_events (id, name, description, creator_id, requirement,
                               min_participants, max_participants, deadline, period_start, period_end,
                               status, created_at, updated_at)
                           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'open', %s, %s)""",
                        (
                            event_id,
                            data.name,
                            data.description,
                            creator_id,
                            Jsonb(data.requirement.model_dump(mode="json")),
                            data.min_participants,
                            data.max_participants,
                            data.deadline,
                            data.period_start,
                            data.period_end,
                            now,
                            now,
                        ),
                    )
                except pg_errors.UniqueViolation:
                    continue
                logger.info("Created event id=%s creator=%s", event_id, creator_id)
                return Event(
                    id=event_id,
                    creator_id=creator_id,
                    created_at=now,
                    updated_at=now,
                    **data.model_dump(),
                )
        raise StorageError(detail="Failed to generate unique event ID")

    async def get_by_id(self, event_id: str) -> Event | None:
        async with _get_connection() as conn:
            return await _fetch_event(conn, event_id)

    async def list_by_creator(self, creator_id: str) -> list[Event]:
        async with _get_connection() as conn:
            return await _fetch_events(conn, "e.creator_id = %s", (creator_id,))

    async def list_by_status(self, status: EventStatus) -> list[Event]:
        async with _get_connection() as conn:
            return await _fetch_events(conn, "e.status = %s", (status.value,))

    async def list_by_participant(self, user_id: str, status: EventStatus | None = None) -> list[Event]:
        where = "EXISTS (SELECT 1 FROM match_event_participants p WHERE p.event_id = e.id AND p.user_id = %s)"
        params: tuple[Any, ...] = (user_id,)
        if status is not None:
            where += " AND e.status = %s"
            params += (status.value,)
        async with _get_connection() as conn:
            return await _fetch_events(conn, where, params)

    async def add_participant(self, event_id: str, user_id: str) -> bool:
        async with _get_connection(autocommit=False) as conn:
            async with conn.transaction():
                event = await _fetch_event(conn, event_id, for_update=True)
                refusal = join_refusal(event, user_id)
                if refusal:
                    logger.debug("Join refused event=%s user=%s: %s", event_id, user_id, refusal)
                    return False
                now = datetime.now(UTC)
                cur = await conn.execute(
                    """INSERT INTO match_event_participants (event_id, user_id, joined_at)
                       VALUES (%s, %s, %s) ON CONFLICT DO NOTHING""",
                    (event_id, user_id, now),
                )
                await conn.execute("UPDATE match_events SET updated_at = %s WHERE id = %s", (now, event_id))
                return cur.rowcount == 1

    async def remove_participant(self, event_id: str, user_id: str) -> bool:
        async with _get_connection(autocommit=False) as conn:
            async with conn.transaction():
                event = await _fetch_event(conn, event_id, for_update=True)
                if event is None or user_id not in event.participants:
                    return False
                cur = await conn.execute(
                    "DELETE FROM match_event_participants WHERE event_id = %s AND user_id = %s",
                    (event_id, user_id),
                )
                await conn.execute(
                    "UPDATE match_events SET updated_at = %s WHERE id = %s", (datetime.now(UTC), event_id)
                )
                return cur.rowcount == 1

    async def update_status(
        self,
        event_id: str,
        status: EventStatus,
        matched_result: list[MatchedSlot] | None = None,
        reason: str = "",
    ) -> bool:
        async with self.locked(event_id) as tx:
            return await tx.update_status(status, matched_result, reason)

    async def update(self, event_id: str, changes: EventUpdate) -> Event:
        async with self.locked(event_id) as tx:
            event = tx.event
            if event is None:
                raise NotFoundError(detail="Event not found", resource_id=event_id)
            if event.status is not EventStatus.OPEN:
                raise ConflictError(detail=f"Event is {event.status.value}", resource_id=event_id)
            updated = apply_changes(event, changes, datetime.now(UTC))
            await tx.conn.execute(
                """UPDATE match_events SET name = %s, description = %s, requirement = %s,
                       min_participants = %s, max_participants = %s, deadline = %s,
                       period_start = %s, period_end = %s, updated_at = %s
                   WHERE id = %s""",
                (
                    updated.name,
                    updated.description,
                    Jsonb(updated.requirement.model_dump(mode="json")),
                    updated.min_participants,
                    updated.max_participants,
                    updated.deadline,
                    updated.period_start,
                    updated.period_end,
                    updated.updated_at,
                    event_id,
                ),
            )
            return updated

    async def delete(self, event_id: str) -> bool:
        async with _get_connection() as conn:
            cur = await conn.execute("DELETE FROM match_events WHERE id = %s", (event_id,))
            if cur.rowcount:
                logger.info("Deleted event id=%s", event_id)
            return cur.rowcount == 1

    async def list_expired_candidates(self, now: datetime) -> list[Event]:
        async with _get_connection() as conn:
            return await _fetch_events(
                conn, "e.status = 'open' AND e.deadline IS NOT NULL AND e.deadline < %s", (now,)
            )

    async def count_by_status(self) -> dict[EventStatus, int]:
        counts = {status: 0 for status in EventStatus}
        async with _get_connection() as conn:
            rows = await conn.execute("SELECT status, COUNT(*) FROM match_events GROUP BY status")
            async for status, n in rows:
                counts[EventStatus(status)] = int(n)
        return counts

    async def history(self, event_id: str) -> list[StatusChange]:
        async with _get_connection() as conn:
            rows = await conn.execute(
                """SELECT event_id, previous_status, new_status, reason, ts
                   FROM match_event_history WHERE event_id = %s ORDER BY ts, id""",
                (event_id,),
            )
            return [
                StatusChange(
                    event_id=r[0],
                    previous_status=EventStatus(r[1]),
                    new_status=EventStatus(r[2]),
                    reason=r[3],
                    timestamp=r[4].astimezone(UTC),
                )
                async for r in rows
            ]
