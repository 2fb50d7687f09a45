import os
import sys
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from datetime import UTC, date, datetime, timedelta

import pytest
import fakeredis.aioredis as fakeredis

from rendezvous.bus import DecisionBus
from rendezvous.config import clear_settings_cache
from rendezvous.lifecycle import LifecycleController
from rendezvous.models import ConsecutiveDays, EventCreate
from rendezvous.stores import InMemoryAvailabilityStore, InMemoryEventStore


class FrozenClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _fresh_settings():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 1, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def make_event_create(clock):
    """Factory for EventCreate payloads over the 2025-01-20..26 window."""

    def _make(requirement=None, **overrides) -> EventCreate:
        data = {
            "name": "Team offsite",
            "requirement": requirement or ConsecutiveDays(count=2),
            "min_participants": 2,
            "deadline": clock.now + timedelta(days=3),
            "period_start": date(2025, 1, 20),
            "period_end": date(2025, 1, 26),
        }
        data.update(overrides)
        return EventCreate(**data)

    return _make


@pytest.fixture
def event_store():
    return InMemoryEventStore()


@pytest.fixture
def availability_store():
    return InMemoryAvailabilityStore()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def controller(event_store, availability_store, clock):
    return LifecycleController(event_store, availability_store, clock=clock)


@pytest.fixture
def bus_controller(event_store, availability_store, clock, fake_redis):
    return LifecycleController(
        event_store, availability_store, bus=DecisionBus(fake_redis), clock=clock
    )
