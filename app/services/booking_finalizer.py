"""Turns a checkout's live holds into a booking.

Seats are flipped ``held -> booked`` one compare-and-swap each before the booking
record is written, so two finalizers racing for a seat are separated by a single
swap instead of by an external write. If the write fails the flipped seats go back
to available and the caller gets ``BookingPersistenceFailed``.
"""
import logging
import uuid
from typing import Dict, Iterable, List, Optional

from app.errors import BookingPersistenceFailed, HoldLostDuringCheckout, InvalidSeatSelection
from app.metrics import BOOKING_COMMITS
from app.schemas.booking import BookingResult
from app.schemas.seatmap import SeatState, SeatStatus
from app.services.booking_store import BookingStore
from app.services.seat_lock import SeatLockService, unique_seat_ids

logger = logging.getLogger(__name__)


class BookingFinalizer:
    def __init__(self, seat_locks: SeatLockService, booking_store: BookingStore):
        self.seat_locks = seat_locks
        self.store = seat_locks.store
        self.booking_store = booking_store

    async def commit(
        self,
        trip_id: str,
        seat_ids: Iterable[str],
        holder_token: str,
        passenger_details: dict,
    ) -> BookingResult:
        seat_ids = unique_seat_ids(seat_ids)
        if not seat_ids:
            raise InvalidSeatSelection("No seats selected")
        # raises TripNotOpen, as acquire and renew do
        await self.store.topology(trip_id)

        now = self.seat_locks.clock()
        held: Dict[str, SeatState] = {}
        lost: Dict[str, Optional[str]] = {}
        for seat_id in seat_ids:
            state = await self.store.get(trip_id, seat_id)
            if state is not None and state.is_held_by(holder_token, now):
                held[seat_id] = state
            else:
                lost[seat_id] = state.status.value if state else None
        if lost:
            # still-valid holds stay with the caller
            BOOKING_COMMITS.labels(result="hold_lost").inc()
            raise HoldLostDuringCheckout(lost)

        booking_id = uuid.uuid4().hex
        flipped: List[str] = []
        for seat_id in seat_ids:
            ok = await self.store.compare_and_swap(
                trip_id,
                seat_id,
                SeatStatus.HELD,
                SeatState.booked(trip_id, seat_id, holder_token, booking_id),
                expected_holder=holder_token,
                expected_version=held[seat_id].version,
            )
            if not ok:
                await self._restore_holds(trip_id, flipped, held, holder_token)
                current = await self.store.get(trip_id, seat_id)
                BOOKING_COMMITS.labels(result="hold_lost").inc()
                raise HoldLostDuringCheckout({seat_id: current.status.value if current else None})
            flipped.append(seat_id)

        try:
            await self.booking_store.persist(booking_id, trip_id, seat_ids, holder_token, passenger_details)
        except Exception as exc:
            released = await self._release_booked(trip_id, flipped, holder_token)
            BOOKING_COMMITS.labels(result="persistence_failed").inc()
            logger.exception(
                "Booking persistence failed; seats released",
                extra={"booking_id": booking_id, "trip_id": trip_id, "seat_ids": released},
            )
            raise BookingPersistenceFailed(
                booking_id, seats={s: SeatStatus.AVAILABLE.value for s in released}
            ) from exc

        BOOKING_COMMITS.labels(result="success").inc()
        logger.info("Booking committed", extra={"booking_id": booking_id, "trip_id": trip_id, "seat_ids": seat_ids})
        return BookingResult(
            booking_id=booking_id,
            trip_id=trip_id,
            holder_token=holder_token,
            seat_ids=seat_ids,
            booked_at=self.seat_locks.clock(),
        )

    async def _restore_holds(
        self, trip_id: str, seat_ids: List[str], previous: Dict[str, SeatState], holder_token: str
    ):
        # nothing was persisted yet: live holds go back to the caller, lapsed ones are freed
        now = self.seat_locks.clock()
        for seat_id in seat_ids:
            expires_at = previous[seat_id].hold_expires_at
            if expires_at > now:
                restored = SeatState.held(trip_id, seat_id, holder_token, expires_at)
            else:
                restored = SeatState.available(trip_id, seat_id)
            await self.store.compare_and_swap(
                trip_id, seat_id, SeatStatus.BOOKED, restored, expected_holder=holder_token
            )

    async def _release_booked(self, trip_id: str, seat_ids: List[str], holder_token: str) -> List[str]:
        released = []
        for seat_id in seat_ids:
            ok = await self.store.compare_and_swap(
                trip_id,
                seat_id,
                SeatStatus.BOOKED,
                SeatState.available(trip_id, seat_id),
                expected_holder=holder_token,
            )
            if ok:
                released.append(seat_id)
        return released
