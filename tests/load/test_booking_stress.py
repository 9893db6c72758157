"""
Stress test: many concurrent checkouts competing for a small bus.

Every checkout picks a few random seats, tries to hold them and commits. Sweeps run
alongside with a clock that keeps moving. Whatever the interleaving, a seat must be
booked at most once and every booked seat must belong to exactly one saved booking.
"""

import asyncio
import random

import pytest

from app.errors import HoldLostDuringCheckout, InvalidSeatSelection, SeatsUnavailable
from app.schemas.seatmap import SeatStatus

pytestmark = [pytest.mark.load, pytest.mark.asyncio]

CHECKOUTS = 60


async def test_no_double_booking_under_contention(seat_locks, finalizer, booking_store, store, trip, topology, clock):
    rng = random.Random(1234)
    seat_ids = topology.seat_ids()
    outcomes = {"booked": 0, "refused": 0, "lost": 0}

    async def checkout(n):
        holder = f"checkout-{n}"
        wanted = rng.sample(seat_ids, rng.randint(1, 3))
        await asyncio.sleep(rng.random() / 100)
        try:
            hold = await seat_locks.acquire(trip, wanted, holder, ttl=rng.choice([1, 30, 300]))
        except (SeatsUnavailable, InvalidSeatSelection):
            outcomes["refused"] += 1
            return
        await asyncio.sleep(rng.random() / 100)
        try:
            await finalizer.commit(trip, hold.seat_ids, holder, {"passengers": []})
        except HoldLostDuringCheckout:
            outcomes["lost"] += 1
            return
        outcomes["booked"] += 1

    async def sweeper():
        for _ in range(20):
            clock.advance(1)
            await seat_locks.sweep_all()
            await asyncio.sleep(0.001)

    await asyncio.gather(sweeper(), *[checkout(n) for n in range(CHECKOUTS)])

    assert sum(outcomes.values()) == CHECKOUTS
    assert outcomes["booked"] >= 1

    saved_seats = [s for booking in booking_store.bookings.values() for s in booking["seat_ids"]]
    assert len(saved_seats) == len(set(saved_seats))

    states = {s.seat_id: s for s in await store.snapshot(trip)}
    booked = {seat_id for seat_id, s in states.items() if s.status == SeatStatus.BOOKED}
    assert booked == set(saved_seats)
    for booking_id, booking in booking_store.bookings.items():
        assert {states[s].booking_id for s in booking["seat_ids"]} == {booking_id}


async def test_racing_commits_for_one_hold(seat_locks, finalizer, booking_store, trip):
    """Two submissions of the same checkout: one booking, one lost hold"""
    await seat_locks.acquire(trip, ["L1", "L2"], "x")

    results = await asyncio.gather(
        *[finalizer.commit(trip, ["L1", "L2"], "x", {"passengers": []}) for _ in range(2)],
        return_exceptions=True,
    )

    assert len([r for r in results if isinstance(r, HoldLostDuringCheckout)]) == 1
    assert len(booking_store.bookings) == 1
