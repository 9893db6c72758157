"""
Seat map subscriptions: snapshot followed by live diffs
"""

import asyncio

import pytest

from app.errors import SeatsUnavailable, TripNotOpen
from app.schemas.seatmap import SeatStatus


async def _drain(subscription, count, timeout=1.0):
    events = []
    for _ in range(count):
        event = await subscription.get(timeout=timeout)
        assert event is not None, f"expected {count} events, got {len(events)}"
        events.append(event)
    return events


@pytest.mark.asyncio
class TestSubscribe:
    async def test_unknown_trip(self, hub):
        with pytest.raises(TripNotOpen):
            await hub.subscribe("missing")

    async def test_snapshot_then_diffs(self, hub, seat_locks, trip, topology):
        subscription = await hub.subscribe(trip)

        assert subscription.topology == topology
        assert all(s.status == SeatStatus.AVAILABLE for s in subscription.snapshot)

        await seat_locks.acquire(trip, ["L1"], "x")
        await seat_locks.release(trip, ["L1"], "x")

        held, released = await _drain(subscription, 2)
        assert (held.seat_id, held.old_status, held.new_status, held.holder_token) == (
            "L1",
            SeatStatus.AVAILABLE,
            SeatStatus.HELD,
            "x",
        )
        assert (released.old_status, released.new_status, released.version) == (
            SeatStatus.HELD,
            SeatStatus.AVAILABLE,
            2,
        )
        subscription.close()

    async def test_snapshot_already_covers_earlier_swaps(self, hub, seat_locks, trip):
        await seat_locks.acquire(trip, ["L2"], "x")

        subscription = await hub.subscribe(trip)

        states = {s.seat_id: s for s in subscription.snapshot}
        assert states["L2"].status == SeatStatus.HELD
        assert await subscription.get(timeout=0.2) is None
        subscription.close()

    async def test_every_subscriber_sees_every_diff(self, hub, seat_locks, trip):
        first = await hub.subscribe(trip)
        second = await hub.subscribe(trip)
        assert hub.subscriber_count(trip) == 2

        await seat_locks.acquire(trip, ["L3", "L4"], "x")

        for subscription in (first, second):
            events = await _drain(subscription, 2)
            assert [e.seat_id for e in events] == ["L3", "L4"]
            subscription.close()

    async def test_close_ends_iteration(self, hub, seat_locks, trip):
        subscription = await hub.subscribe(trip)

        async def collect():
            return [event.seat_id async for event in subscription]

        collector = asyncio.create_task(collect())
        await seat_locks.acquire(trip, ["L5"], "x")
        await asyncio.sleep(0.2)
        subscription.close()

        assert await asyncio.wait_for(collector, timeout=1) == ["L5"]
        assert subscription.closed
        assert hub.subscriber_count(trip) == 0

    async def test_hub_close_releases_subscribers(self, hub, trip):
        subscription = await hub.subscribe(trip)

        await hub.close()

        assert await subscription.get(timeout=1) is None
        assert hub.subscriber_count(trip) == 0


@pytest.mark.asyncio
class TestCheckoutScenario:
    async def test_watcher_sees_competing_checkout_book(self, hub, seat_locks, finalizer, booking_store, trip):
        """X holds and books two seats while Y, watching the trip, is refused one of them"""
        watcher = await hub.subscribe(trip)

        await seat_locks.acquire(trip, ["L1", "L2"], "x")
        with pytest.raises(SeatsUnavailable) as exc_info:
            await seat_locks.acquire(trip, ["L2", "L3"], "y")
        assert exc_info.value.conflicting_seat_ids == ["L2"]

        result = await finalizer.commit(trip, ["L1", "L2"], "x", {"passengers": []})

        events = await _drain(watcher, 4)
        assert [(e.seat_id, e.new_status) for e in events] == [
            ("L1", SeatStatus.HELD),
            ("L2", SeatStatus.HELD),
            ("L1", SeatStatus.BOOKED),
            ("L2", SeatStatus.BOOKED),
        ]
        assert {e.booking_id for e in events[2:]} == {result.booking_id}
        # Y's refused request left no trace on L3
        assert await watcher.get(timeout=0.2) is None
        assert result.booking_id in booking_store.bookings
        watcher.close()

    async def test_booked_seat_is_refused_to_the_next_checkout(self, seat_locks, finalizer, trip):
        await seat_locks.acquire(trip, ["L1", "L2"], "x")
        await finalizer.commit(trip, ["L1", "L2"], "x", {"passengers": []})

        with pytest.raises(SeatsUnavailable) as exc_info:
            await seat_locks.acquire(trip, ["L1"], "y")
        assert exc_info.value.seats == {"L1": "booked"}
