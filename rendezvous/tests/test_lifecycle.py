"""Tests for the lifecycle controller over the in-memory stores."""

import asyncio
from datetime import date, timedelta
from unittest.mock import AsyncMock

import pytest

from rendezvous.bus import DecisionBus
from rendezvous.lifecycle import LifecycleController
from rendezvous.models import (
    ConsecutiveDays,
    EventStatus,
    FlexibleDays,
    HourBudget,
    MatchedSlot,
    TimeSlot,
    WriteMode,
)
from rendezvous.slots import total_hours


def d(day: int) -> date:
    return date(2025, 1, day)


async def seed(event_store, availability_store, payload, participants=(), availability=None):
    """Create an event owned by 'owner', join participants, store availability."""
    event = await event_store.create(payload, "owner")
    for user in participants:
        assert await event_store.add_participant(event.id, user)
    for user, days in (availability or {}).items():
        for day, slots in days.items():
            await availability_store.set_availability(user, [day], slots, WriteMode.MERGE)
    return event


class TestScenarios:
    @pytest.mark.asyncio
    async def test_consecutive_match_commits(self, controller, event_store, availability_store, make_event_create):
        event = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=2), min_participants=2),
            participants=["alice", "bob"],
            availability={
                "alice": {d(21): [TimeSlot.MORNING], d(22): [TimeSlot.EVENING]},
                "bob": {d(21): [TimeSlot.FULLDAY], d(22): [TimeSlot.AFTERNOON]},
            },
        )

        decision = await controller.check_event(event.id)

        stored = await event_store.get_by_id(event.id)
        assert decision.matched is True
        assert decision.dates == [d(21), d(22)]
        assert stored.status is EventStatus.MATCHED
        assert stored.matched_result == [MatchedSlot(day=d(21)), MatchedSlot(day=d(22))]

    @pytest.mark.asyncio
    async def test_insufficient_participants(self, controller, event_store, availability_store, make_event_create):
        event = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1), min_participants=3),
            participants=["alice"],
            availability={"alice": {d(21): [TimeSlot.FULLDAY]}},
        )

        decision = await controller.check_event(event.id)

        assert decision.matched is False
        assert "insufficient participants: 1/3" in decision.reason
        assert (await event_store.get_by_id(event.id)).status is EventStatus.OPEN

    @pytest.mark.asyncio
    async def test_deadline_expires_and_stays_expired(
        self, controller, event_store, availability_store, make_event_create, clock
    ):
        event = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1), deadline=clock.now - timedelta(hours=1)),
            participants=["alice", "bob"],
        )

        first = await controller.check_event(event.id)
        await availability_store.set_availability("alice", [d(21)], [TimeSlot.FULLDAY], WriteMode.MERGE)
        await availability_store.set_availability("bob", [d(21)], [TimeSlot.FULLDAY], WriteMode.MERGE)
        second = await controller.check_event(event.id)

        assert first.reason == "deadline passed"
        assert first.transition is EventStatus.EXPIRED
        assert (second.matched, second.reason, second.result) == (False, "deadline passed", [])
        assert second.transition is None
        assert (await event_store.get_by_id(event.id)).status is EventStatus.EXPIRED
        assert len(await event_store.history(event.id)) == 1

    @pytest.mark.asyncio
    async def test_disjoint_dates(self, controller, event_store, availability_store, make_event_create):
        event = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1)),
            participants=["alice", "bob"],
            availability={"alice": {d(21): [TimeSlot.FULLDAY]}, "bob": {d(22): [TimeSlot.FULLDAY]}},
        )

        decision = await controller.check_event(event.id)

        assert decision.reason == "no common available dates"
        assert (await event_store.get_by_id(event.id)).status is EventStatus.OPEN

    @pytest.mark.asyncio
    async def test_hour_budget(self, controller, event_store, availability_store, make_event_create):
        event = await seed(
            event_store,
            availability_store,
            make_event_create(HourBudget(hours=13)),
            participants=["alice", "bob"],
            availability={
                "alice": {d(20): [TimeSlot.FULLDAY], d(21): [TimeSlot.EVENING]},
                "bob": {d(20): [TimeSlot.FULLDAY], d(21): [TimeSlot.EVENING]},
            },
        )

        decision = await controller.check_event(event.id)

        assert decision.matched is True
        assert len(decision.result) == 2
        assert total_hours(decision.result) >= 13


class TestCheckEvent:
    @pytest.mark.asyncio
    async def test_missing_event(self, controller):
        decision = await controller.check_event("missing")

        assert decision.matched is False
        assert decision.reason == "event not found"

    @pytest.mark.asyncio
    async def test_matched_event_is_never_recomputed(
        self, controller, event_store, availability_store, make_event_create
    ):
        event = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1)),
            participants=["alice", "bob"],
            availability={"alice": {d(21): [TimeSlot.FULLDAY]}, "bob": {d(21): [TimeSlot.FULLDAY]}},
        )
        first = await controller.check_event(event.id)

        await availability_store.reset("alice")
        second = await controller.check_event(event.id)

        assert second.matched is True
        assert second.result == first.result
        assert second.transition is None
        assert len(await event_store.history(event.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_checks_commit_once(
        self, controller, event_store, availability_store, make_event_create
    ):
        event = await seed(
            event_store,
            availability_store,
            make_event_create(FlexibleDays(count=1)),
            participants=["alice", "bob"],
            availability={"alice": {d(23): [TimeSlot.EVENING]}, "bob": {d(23): [TimeSlot.EVENING]}},
        )

        decisions = await asyncio.gather(*(controller.check_event(event.id) for _ in range(5)))

        assert all(dec.matched for dec in decisions)
        assert sum(1 for dec in decisions if dec.transition is EventStatus.MATCHED) == 1
        assert len(await event_store.history(event.id)) == 1

    @pytest.mark.asyncio
    async def test_join_then_check(self, controller, event_store, availability_store, make_event_create):
        event = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1)),
            participants=["alice"],
            availability={"alice": {d(21): [TimeSlot.FULLDAY]}, "bob": {d(21): [TimeSlot.MORNING]}},
        )
        assert (await controller.on_participant_added(event.id)).matched is False

        await event_store.add_participant(event.id, "bob")
        decision = await controller.on_participant_added(event.id)

        assert decision.matched is True
        assert decision.dates == [d(21)]

    @pytest.mark.asyncio
    async def test_concurrent_joins_and_checks_commit_once(
        self, controller, event_store, availability_store, make_event_create
    ):
        event = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1), min_participants=2),
            availability={"alice": {d(21): [TimeSlot.FULLDAY]}, "bob": {d(21): [TimeSlot.MORNING]}},
        )

        async def join_and_check(user):
            assert await event_store.add_participant(event.id, user)
            return await controller.on_participant_added(event.id)

        decisions = await asyncio.gather(join_and_check("alice"), join_and_check("bob"))

        stored = await event_store.get_by_id(event.id)
        assert sum(1 for dec in decisions if dec.transition is EventStatus.MATCHED) == 1
        assert stored.status is EventStatus.MATCHED
        assert stored.participants == ["alice", "bob"]
        assert len(await event_store.history(event.id)) == 1

    @pytest.mark.asyncio
    async def test_refused_commit_reports_current_state(
        self, event_store, availability_store, make_event_create, clock
    ):
        def outside_window(runs, count):
            return [d(30)]

        from rendezvous.engine import MatchingEngine

        ctl = LifecycleController(
            event_store, availability_store, engine=MatchingEngine(ranker=outside_window), clock=clock
        )
        event = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1)),
            participants=["alice", "bob"],
            availability={"alice": {d(21): [TimeSlot.FULLDAY]}, "bob": {d(21): [TimeSlot.FULLDAY]}},
        )

        decision = await ctl.check_event(event.id)

        assert decision.matched is False
        assert decision.transition is None
        assert (await event_store.get_by_id(event.id)).status is EventStatus.OPEN


class TestAvailabilityChanged:
    @pytest.mark.asyncio
    async def test_rechecks_open_events_of_user(
        self, controller, event_store, availability_store, make_event_create
    ):
        first = await seed(
            event_store, availability_store, make_event_create(ConsecutiveDays(count=1)), participants=["alice", "bob"]
        )
        second = await seed(
            event_store, availability_store, make_event_create(HourBudget(hours=8)), participants=["alice", "bob"]
        )
        await seed(event_store, availability_store, make_event_create(), participants=["carol", "dave"])
        await availability_store.set_availability("bob", [d(24)], [TimeSlot.FULLDAY], WriteMode.MERGE)
        await availability_store.set_availability("alice", [d(24)], [TimeSlot.FULLDAY], WriteMode.MERGE)

        decisions = await controller.on_availability_changed("alice")

        assert {dec.event_id for dec in decisions} == {first.id, second.id}
        assert all(dec.matched for dec in decisions)

    @pytest.mark.asyncio
    async def test_user_without_events(self, controller):
        assert await controller.on_availability_changed("nobody") == []


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_expires_and_matches(
        self, controller, event_store, availability_store, make_event_create, clock
    ):
        overdue = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1), deadline=clock.now + timedelta(hours=1)),
            participants=["alice", "bob"],
        )
        ready = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1), deadline=None),
            participants=["carol", "dave"],
            availability={"carol": {d(25): [TimeSlot.MORNING]}, "dave": {d(25): [TimeSlot.MORNING]}},
        )
        waiting = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1), deadline=None),
            participants=["erin", "frank"],
        )
        clock.advance(hours=2)

        decisions = await controller.sweep()

        by_id = {dec.event_id: dec for dec in decisions}
        assert by_id[overdue.id].transition is EventStatus.EXPIRED
        assert by_id[ready.id].transition is EventStatus.MATCHED
        assert by_id[waiting.id].transition is None
        assert len(decisions) == 3

    @pytest.mark.asyncio
    async def test_sweep_skips_decided_events(
        self, controller, event_store, availability_store, make_event_create
    ):
        event = await seed(event_store, availability_store, make_event_create(), participants=["alice", "bob"])
        await controller.cancel_event(event.id)

        assert await controller.sweep() == []

    @pytest.mark.asyncio
    async def test_sweep_propagates_storage_errors(self, controller, event_store):
        from rendezvous.errors import StorageError

        event_store.list_expired_candidates = AsyncMock(side_effect=StorageError(detail="down"))

        with pytest.raises(StorageError):
            await controller.sweep()


class TestCancelAndStats:
    @pytest.mark.asyncio
    async def test_cancel_open_event(self, controller, event_store, availability_store, make_event_create):
        event = await seed(event_store, availability_store, make_event_create())

        decision = await controller.cancel_event(event.id, reason="owner changed plans")

        history = await event_store.history(event.id)
        assert decision.transition is EventStatus.CANCELLED
        assert decision.reason == "owner changed plans"
        assert history[-1].reason == "owner changed plans"
        assert (await controller.check_event(event.id)).reason == "event cancelled"

    @pytest.mark.asyncio
    async def test_cancel_matched_event_keeps_match(
        self, controller, event_store, availability_store, make_event_create
    ):
        event = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1)),
            participants=["alice", "bob"],
            availability={"alice": {d(21): [TimeSlot.FULLDAY]}, "bob": {d(21): [TimeSlot.FULLDAY]}},
        )
        await controller.check_event(event.id)

        decision = await controller.cancel_event(event.id)

        assert decision.matched is True
        assert (await event_store.get_by_id(event.id)).status is EventStatus.MATCHED

    @pytest.mark.asyncio
    async def test_cancel_missing_event(self, controller):
        assert (await controller.cancel_event("missing")).reason == "event not found"
        assert (await controller.check_event("missing")).reason == "event not found"
        assert "missing" not in controller.events._locks

    @pytest.mark.asyncio
    async def test_stats(self, controller, event_store, availability_store, make_event_create, clock):
        await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1)),
            participants=["alice", "bob"],
            availability={"alice": {d(21): [TimeSlot.FULLDAY]}, "bob": {d(21): [TimeSlot.FULLDAY]}},
        )
        await seed(event_store, availability_store, make_event_create(deadline=clock.now - timedelta(minutes=1)))
        cancelled = await seed(event_store, availability_store, make_event_create())
        await seed(event_store, availability_store, make_event_create(deadline=None))
        await controller.cancel_event(cancelled.id)
        await controller.sweep()

        stats = await controller.get_stats()

        assert stats == {"total": 4, "open": 1, "matched": 1, "expired": 1, "cancelled": 1}


class TestDecisionNotices:
    @pytest.mark.asyncio
    async def test_publishes_after_commit(self, event_store, availability_store, make_event_create, clock):
        bus = AsyncMock(spec=DecisionBus)
        ctl = LifecycleController(event_store, availability_store, bus=bus, clock=clock)
        event = await seed(
            event_store,
            availability_store,
            make_event_create(ConsecutiveDays(count=1)),
            participants=["alice", "bob"],
            availability={"alice": {d(21): [TimeSlot.FULLDAY]}, "bob": {d(21): [TimeSlot.FULLDAY]}},
        )

        await ctl.check_event(event.id)
        await ctl.check_event(event.id)

        bus.publish.assert_awaited_once()
        notice = bus.publish.await_args.args[0]
        assert notice["event_id"] == event.id
        assert notice["status"] == "matched"
        assert notice["result"] == [{"day": "2025-01-21", "slot": None}]

    @pytest.mark.asyncio
    async def test_no_publish_without_transition(
        self, event_store, availability_store, make_event_create, clock
    ):
        bus = AsyncMock(spec=DecisionBus)
        ctl = LifecycleController(event_store, availability_store, bus=bus, clock=clock)
        event = await seed(event_store, availability_store, make_event_create(), participants=["alice"])

        await ctl.check_event(event.id)

        bus.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_commit(
        self, event_store, availability_store, make_event_create, clock
    ):
        bus = AsyncMock(spec=DecisionBus)
        bus.publish.side_effect = ConnectionError("redis down")
        ctl = LifecycleController(event_store, availability_store, bus=bus, clock=clock)
        event = await seed(event_store, availability_store, make_event_create())

        decision = await ctl.cancel_event(event.id)

        assert decision.transition is EventStatus.CANCELLED
        assert (await event_store.get_by_id(event.id)).status is EventStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_fakeredis_bus(self, bus_controller, event_store, availability_store, make_event_create, fake_redis):
        pubsub = fake_redis.pubsub()
        await pubsub.subscribe("rendezvous:decisions")
        event = await seed(event_store, availability_store, make_event_create())

        await bus_controller.cancel_event(event.id)

        message = None
        for _ in range(10):
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
            if message:
                break
        await pubsub.aclose()
        assert message is not None
        assert event.id in message["data"]
