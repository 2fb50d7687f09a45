"""PostgreSQL availability store.

One row per (user_id, day). Bulk writes run in a single transaction and
each date is an ``INSERT ... ON CONFLICT`` upsert, so a concurrent writer
never observes a half-applied record.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime

from rendezvous.db.core import _get_connection
from rendezvous.models import AvailabilityRecord, TimeSlot, WriteMode
from rendezvous.stores.base import normalize_dates, require_mode

logger = logging.getLogger(__name__)

_COLUMNS = "user_id, day, slots, created_at, updated_at"

_UPSERT_MERGE = f"""
    INSERT INTO availability AS a (user_id, day, slots, created_at, updated_at)
    VALUES (%s, %s, %s, %s, %s)
    ON CONFLICT (user_id, day) DO UPDATE SET
        slots = ARRAY(SELECT DISTINCT s FROM unnest(a.slots || EXCLUDED.slots) AS s ORDER BY s),
        updated_at = EXCLUDED.updated_at
    RETURNING {_COLUMNS}
"""

_UPSERT_REPLACE = f"""
    INSERT INTO availability AS a (user_id, day, slots, created_at, updated_at)
    VALUES (%s, %s, %s, %s, %s)
    ON CONFLICT (user_id, day) DO UPDATE SET
        slots = EXCLUDED.slots,
        updated_at = EXCLUDED.updated_at
    RETURNING {_COLUMNS}
"""


def _row_to_record(row) -> AvailabilityRecord:
    return AvailabilityRecord(
        user_id=row[0],
        day=row[1],
        slots=frozenset(TimeSlot(s) for s in row[2]),
        created_at=row[3].astimezone(UTC),
        updated_at=row[4].astimezone(UTC),
    )


async def fetch_by_users_in_range(
    conn, user_ids: Sequence[str], start: date, end: date
) -> list[AvailabilityRecord]:
    """Records of `user_ids` within [start, end], read on an already-open connection."""
    if not user_ids:
        return []
    rows = await conn.execute(
        f"""SELECT {_COLUMNS} FROM availability
           WHERE user_id = ANY(%s) AND day BETWEEN %s AND %s
           ORDER BY user_id, day""",
        (list(user_ids), start, end),
    )
    return [_row_to_record(row) async for row in rows]


class PostgresAvailabilityStore:
    async def set_availability(
        self,
        user_id: str,
        dates: Iterable[date | str],
        slots: Iterable[TimeSlot],
        mode: WriteMode,
    ) -> list[AvailabilityRecord]:
        mode = require_mode(mode)
        days = normalize_dates(dates)
        flags = sorted(TimeSlot(s).value for s in set(slots))
        sql = _UPSERT_MERGE if mode is WriteMode.MERGE else _UPSERT_REPLACE
        now = datetime.now(UTC)
        out: list[AvailabilityRecord] = []
        async with _get_connection(autocommit=False) as conn:
            async with conn.transaction():
                for day in days:
                    row = await (await conn.execute(sql, (user_id, day, flags, now, now))).fetchone()
                    out.append(_row_to_record(row))
        logger.info("Stored availability user=%s dates=%d mode=%s", user_id, len(out), mode.value)
        return out

    async def get_by_user(self, user_id: str) -> list[AvailabilityRecord]:
        async with _get_connection() as conn:
            rows = await conn.execute(
                f"SELECT {_COLUMNS} FROM availability WHERE user_id = %s ORDER BY day",
                (user_id,),
            )
            return [_row_to_record(row) async for row in rows]

    async def get_by_user_in_range(self, user_id: str, start: date, end: date) -> list[AvailabilityRecord]:
        async with _get_connection() as conn:
            rows = await conn.execute(
                f"SELECT {_COLUMNS} FROM availability WHERE user_id = %s AND day BETWEEN %s AND %s ORDER BY day",
                (user_id, start, end),
            )
            return [_row_to_record(row) async for row in rows]

    async def get_by_users_in_range(
        self, user_ids: Sequence[str], start: date, end: date
    ) -> list[AvailabilityRecord]:
        if not user_ids:
            return []
        async with _get_connection() as conn:
            return await fetch_by_users_in_range(conn, user_ids, start, end)

    async def reset(self, user_id: str, dates: Iterable[date | str] = ()) -> int:
        days = normalize_dates(dates)
        async with _get_connection() as conn:
            if days:
                cur = await conn.execute(
                    "DELETE FROM availability WHERE user_id = %s AND day = ANY(%s)",
                    (user_id, days),
                )
            else:
                cur = await conn.execute("DELETE FROM availability WHERE user_id = %s", (user_id,))
            logger.info("Reset availability user=%s deleted=%d", user_id, cur.rowcount)
            return cur.rowcount

    async def available_dates(self, user_id: str, start: date, end: date) -> list[date]:
        async with _get_connection() as conn:
            rows = await conn.execute(
                """SELECT day FROM availability
                   WHERE user_id = %s AND day BETWEEN %s AND %s AND cardinality(slots) > 0
                   ORDER BY day""",
                (user_id, start, end),
            )
            return [row[0] async for row in rows]
