"""
Test configuration and fixtures
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Set test environment before the app reads its settings
_DB_DIR = tempfile.mkdtemp(prefix="ibbs-seats-")
DB_PATH = os.path.join(_DB_DIR, "test.db")
os.environ["SEAT_STORE_BACKEND"] = "memory"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{DB_PATH}"
os.environ["SENTRY_DSN"] = ""
os.environ["LOG_LEVEL"] = "WARNING"

from sqlalchemy import create_engine

from app.models import Base
from app.services import seatmap
from app.services.booking_finalizer import BookingFinalizer
from app.services.booking_store import BookingStore, BookingStoreError
from app.services.seat_events import SeatEventHub
from app.services.seat_lock import SeatLockService
from app.services.seat_state import InMemorySeatStateStore

TRIP_ID = "trip-1"


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class RecordingBookingStore(BookingStore):
    """Keeps persisted bookings in memory; ``fail`` makes every write raise."""

    def __init__(self, fail=False):
        self.fail = fail
        self.bookings = {}

    async def persist(self, booking_id, trip_id, seat_ids, holder_token, passenger_details):
        if self.fail:
            raise BookingStoreError("database unavailable")
        self.bookings[booking_id] = {
            "trip_id": trip_id,
            "seat_ids": list(seat_ids),
            "holder_token": holder_token,
            "passenger_details": passenger_details,
        }


@pytest.fixture(scope="session", autouse=True)
def database_schema():
    """Create the tables once in the sqlite file the app is configured with"""
    engine = create_engine(f"sqlite:///{DB_PATH}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def topology():
    # seater, 4 per row: L1..L8
    return seatmap.generate("seater", 8)


@pytest.fixture
def store():
    return InMemorySeatStateStore()


@pytest_asyncio.fixture
async def trip(store, topology):
    await store.open_trip(TRIP_ID, topology)
    return TRIP_ID


@pytest.fixture
def seat_locks(store, clock):
    return SeatLockService(store, clock=clock, default_ttl=600, max_ttl=1800, max_seats_per_hold=6)


@pytest.fixture
def booking_store():
    return RecordingBookingStore()


@pytest.fixture
def finalizer(seat_locks, booking_store):
    return BookingFinalizer(seat_locks, booking_store)


@pytest_asyncio.fixture
async def hub(store):
    hub = SeatEventHub(store, block_ms=50, retry_delay=0.05)
    yield hub
    await hub.close()
