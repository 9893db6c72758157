"""
SQL booking store against sqlite
"""

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.models import Base, Booking, BookingSeat
from app.services.booking_store import BookingStoreError, SqlBookingStore


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.asyncio
class TestSqlBookingStore:
    async def test_persists_booking_with_seats(self, session_factory):
        store = SqlBookingStore(session_factory)
        details = {"passengers": [{"seat_id": "L1", "name": "Okello"}], "contact": None}

        await store.persist("a" * 32, "trip-1", ["L1", "L2"], "x", details)

        async with session_factory() as session:
            booking = await session.get(Booking, "a" * 32)
            seats = (await session.execute(select(BookingSeat.seat_id).order_by(BookingSeat.seat_id))).scalars().all()
        assert booking.trip_id == "trip-1"
        assert booking.status == "confirmed"
        assert booking.passenger_details == details
        assert seats == ["L1", "L2"]

    async def test_seat_cannot_be_booked_twice(self, session_factory):
        store = SqlBookingStore(session_factory)
        await store.persist("a" * 32, "trip-1", ["L1"], "x", {})

        with pytest.raises(BookingStoreError):
            await store.persist("b" * 32, "trip-1", ["L1", "L2"], "y", {})

        async with session_factory() as session:
            assert await session.get(Booking, "b" * 32) is None

    async def test_same_seat_on_another_trip(self, session_factory):
        store = SqlBookingStore(session_factory)
        await store.persist("a" * 32, "trip-1", ["L1"], "x", {})
        await store.persist("b" * 32, "trip-2", ["L1"], "y", {})

        async with session_factory() as session:
            count = len((await session.execute(select(BookingSeat))).scalars().all())
        assert count == 2
