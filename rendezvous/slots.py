"""Date and time-slot helpers shared by the stores and the matching engine."""

from collections.abc import Iterable, Iterator
from datetime import date, datetime, timedelta
from typing import Final

from rendezvous.models.availability import TimeSlot
from rendezvous.models.events import MatchedSlot

SLOT_HOURS: Final[dict[TimeSlot, int]] = {
    TimeSlot.FULLDAY: 10,
    TimeSlot.MORNING: 4,
    TimeSlot.AFTERNOON: 4,
    TimeSlot.EVENING: 3,
}

# Order in which slots of the same day are consumed by hour budgets.
SLOT_ORDER: Final[tuple[TimeSlot, ...]] = (
    TimeSlot.FULLDAY,
    TimeSlot.MORNING,
    TimeSlot.AFTERNOON,
    TimeSlot.EVENING,
)

ONE_DAY: Final[timedelta] = timedelta(days=1)


def slot_hours(slot: TimeSlot) -> int:
    return SLOT_HOURS[slot]


def ordered_slots(slots: Iterable[TimeSlot]) -> list[TimeSlot]:
    present = set(slots)
    return [s for s in SLOT_ORDER if s in present]


def iter_dates(start: date, end: date) -> Iterator[date]:
    """Yield every calendar day from start to end, both inclusive."""
    current = start
    while current <= end:
        yield current
        current += ONE_DAY


def dates_by_weekdays(start: date, end: date, weekdays: Iterable[int]) -> list[date]:
    """All dates in [start, end] whose weekday (Monday=0 .. Sunday=6) is listed."""
    wanted = set(weekdays)
    bad = [w for w in wanted if not 0 <= w <= 6]
    if bad:
        raise ValueError(f"invalid weekday(s): {sorted(bad)}")
    return [d for d in iter_dates(start, end) if d.weekday() in wanted]


def consecutive_runs(dates: Iterable[date]) -> list[list[date]]:
    """Split dates into maximal runs of consecutive calendar days, ascending."""
    runs: list[list[date]] = []
    for d in sorted(set(dates)):
        if runs and d - runs[-1][-1] == ONE_DAY:
            runs[-1].append(d)
        else:
            runs.append([d])
    return runs


def total_hours(result: Iterable[MatchedSlot]) -> int:
    return sum(slot_hours(s.slot) for s in result if s.slot is not None)


def parse_date(value: str | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)
