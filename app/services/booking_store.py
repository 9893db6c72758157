import logging
from abc import ABC, abstractmethod
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.models import Booking, BookingSeat

logger = logging.getLogger(__name__)


class BookingStoreError(Exception):
    pass


class BookingStore(ABC):
    """Persists the passenger/payment side of a committed booking."""

    @abstractmethod
    async def persist(
        self,
        booking_id: str,
        trip_id: str,
        seat_ids: List[str],
        holder_token: str,
        passenger_details: dict,
    ) -> None:
        raise NotImplementedError()


class SqlBookingStore(BookingStore):
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def persist(self, booking_id, trip_id, seat_ids, holder_token, passenger_details) -> None:
        booking = Booking(
            id=booking_id,
            trip_id=trip_id,
            holder_token=holder_token,
            status="confirmed",
            passenger_details=passenger_details,
        )
        booking.seats = [BookingSeat(trip_id=trip_id, seat_id=seat_id) for seat_id in seat_ids]
        session: AsyncSession
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    session.add(booking)
            except IntegrityError as exc:
                # (trip_id, seat_id) already booked, or booking id reused
                raise BookingStoreError(f"Booking {booking_id} conflicts with an existing booking") from exc
        logger.info("Booking persisted", extra={"booking_id": booking_id, "trip_id": trip_id, "seat_ids": seat_ids})
