"""Seat hold protocol: acquire, renew, release and expiry sweep.

Every transition is a per-seat compare-and-swap against the seat state store; no
lock is held across an operation. Multi-seat acquisition is all-or-nothing by
compensation: seats taken earlier in a failed call are swapped back to available.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from app.config import settings
from app.errors import (
    HoldExpired,
    InvalidSeatSelection,
    NotHolder,
    SeatsUnavailable,
    TripNotOpen,
)
from app.metrics import SEAT_HOLD_ATTEMPTS, SEAT_HOLD_LATENCY, SEAT_HOLDS_EXPIRED
from app.schemas.booking import Hold
from app.schemas.seatmap import SeatState, SeatStatus
from app.services.seat_state import SeatStateStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def unique_seat_ids(seat_ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(seat_ids))


class SeatLockService:
    def __init__(
        self,
        store: SeatStateStore,
        clock: Clock = _now,
        default_ttl: int = settings.SEAT_HOLD_TTL_SECONDS,
        max_ttl: int = settings.SEAT_HOLD_MAX_TTL_SECONDS,
        max_seats_per_hold: int = settings.MAX_SEATS_PER_HOLD,
    ):
        self.store = store
        self.clock = clock
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl
        self.max_seats_per_hold = max_seats_per_hold

    def _expiry(self, ttl: Optional[int]) -> datetime:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise InvalidSeatSelection("Hold TTL must be positive")
        if ttl > self.max_ttl:
            raise InvalidSeatSelection(f"Hold TTL cannot exceed {self.max_ttl} seconds")
        return self.clock() + timedelta(seconds=ttl)

    async def _states(self, trip_id: str) -> Dict[str, SeatState]:
        return {s.seat_id: s for s in await self.store.snapshot(trip_id)}

    def _check_selection(self, states: Dict[str, SeatState], seat_ids: List[str], holder_token: str):
        if not seat_ids:
            raise InvalidSeatSelection("No seats selected")
        if not holder_token:
            raise InvalidSeatSelection("holder_token is required")
        unknown = [s for s in seat_ids if s not in states]
        if unknown:
            raise InvalidSeatSelection(
                "Invalid seats: %s" % ", ".join(unknown), seats={s: None for s in unknown}
            )

    async def acquire(
        self, trip_id: str, seat_ids: Iterable[str], holder_token: str, ttl: Optional[int] = None
    ) -> Hold:
        """Hold every requested seat for ``holder_token`` or none of them."""
        start = time.perf_counter()
        seat_ids = unique_seat_ids(seat_ids)
        expires_at = self._expiry(ttl)
        await self.sweep_expired(trip_id)

        now = self.clock()
        states = await self._states(trip_id)
        self._check_selection(states, seat_ids, holder_token)

        owned = {s for s, st in states.items() if st.is_held_by(holder_token, now)}
        if len(owned | set(seat_ids)) > self.max_seats_per_hold:
            raise InvalidSeatSelection(f"Cannot hold more than {self.max_seats_per_hold} seats at once")

        conflicts = {
            s: states[s].status.value
            for s in seat_ids
            if s not in owned and states[s].status != SeatStatus.AVAILABLE
        }
        if conflicts:
            SEAT_HOLD_ATTEMPTS.labels(operation="acquire", result="conflict").inc()
            raise SeatsUnavailable(conflicts)

        taken: List[str] = []
        for seat_id in seat_ids:
            new_state = SeatState.held(trip_id, seat_id, holder_token, expires_at)
            if seat_id in owned:
                ok = await self.store.compare_and_swap(
                    trip_id,
                    seat_id,
                    SeatStatus.HELD,
                    new_state,
                    expected_holder=holder_token,
                    expected_version=states[seat_id].version,
                )
            else:
                ok = await self.store.compare_and_swap(trip_id, seat_id, SeatStatus.AVAILABLE, new_state)
                if ok:
                    taken.append(seat_id)
            if not ok:
                await self._roll_back(trip_id, taken, holder_token)
                SEAT_HOLD_ATTEMPTS.labels(operation="acquire", result="conflict").inc()
                raise SeatsUnavailable(await self._conflicts(trip_id, seat_ids, holder_token, taken, seat_id))

        await self._align(trip_id, holder_token, expires_at, skip=seat_ids)
        SEAT_HOLD_ATTEMPTS.labels(operation="acquire", result="success").inc()
        SEAT_HOLD_LATENCY.labels(operation="acquire").observe(time.perf_counter() - start)
        logger.debug("Seats held", extra={"trip_id": trip_id, "seat_ids": seat_ids})
        return Hold(trip_id=trip_id, holder_token=holder_token, seat_ids=seat_ids, expires_at=expires_at)

    async def _roll_back(self, trip_id: str, seat_ids: List[str], holder_token: str):
        for seat_id in seat_ids:
            await self.store.compare_and_swap(
                trip_id,
                seat_id,
                SeatStatus.HELD,
                SeatState.available(trip_id, seat_id),
                expected_holder=holder_token,
            )

    async def _conflicts(
        self, trip_id: str, seat_ids: List[str], holder_token: str, rolled_back: List[str], lost: str
    ) -> Dict[str, Optional[str]]:
        now = self.clock()
        conflicts = {}
        for seat_id in seat_ids:
            if seat_id in rolled_back:
                continue
            state = await self.store.get(trip_id, seat_id)
            if state is None:
                conflicts[seat_id] = None
            elif state.status != SeatStatus.AVAILABLE and not state.is_held_by(holder_token, now):
                conflicts[seat_id] = state.status.value
            elif seat_id == lost:
                conflicts[seat_id] = state.status.value
        return conflicts

    async def _align(self, trip_id: str, holder_token: str, expires_at: datetime, skip: Iterable[str] = ()):
        # a checkout's holds on one trip all share a single expiry
        skip = set(skip)
        now = self.clock()
        for state in await self.store.snapshot(trip_id):
            if state.seat_id in skip or not state.is_held_by(holder_token, now):
                continue
            if state.hold_expires_at == expires_at:
                continue
            await self.store.compare_and_swap(
                trip_id,
                state.seat_id,
                SeatStatus.HELD,
                SeatState.held(trip_id, state.seat_id, holder_token, expires_at),
                expected_holder=holder_token,
                expected_version=state.version,
            )

    async def renew(
        self, trip_id: str, seat_ids: Iterable[str], holder_token: str, ttl: Optional[int] = None
    ) -> Hold:
        """Extend holds owned by ``holder_token``. A lapsed hold is not recovered."""
        seat_ids = unique_seat_ids(seat_ids)
        expires_at = self._expiry(ttl)
        now = self.clock()
        states = await self._states(trip_id)
        self._check_selection(states, seat_ids, holder_token)

        foreign, lapsed = {}, {}
        for seat_id in seat_ids:
            state = states[seat_id]
            if state.status == SeatStatus.BOOKED or (
                state.status == SeatStatus.HELD and state.holder_token != holder_token
            ):
                foreign[seat_id] = state.status.value
            elif not state.is_held_by(holder_token, now):
                lapsed[seat_id] = state.status.value
        if foreign:
            SEAT_HOLD_ATTEMPTS.labels(operation="renew", result="not_holder").inc()
            raise NotHolder(foreign)
        if lapsed:
            SEAT_HOLD_ATTEMPTS.labels(operation="renew", result="expired").inc()
            raise HoldExpired(lapsed)

        for seat_id in seat_ids:
            ok = await self.store.compare_and_swap(
                trip_id,
                seat_id,
                SeatStatus.HELD,
                SeatState.held(trip_id, seat_id, holder_token, expires_at),
                expected_holder=holder_token,
                expected_version=states[seat_id].version,
            )
            if not ok:
                # swept or released between the read and the swap
                current = await self.store.get(trip_id, seat_id)
                SEAT_HOLD_ATTEMPTS.labels(operation="renew", result="expired").inc()
                raise HoldExpired({seat_id: current.status.value if current else None})

        await self._align(trip_id, holder_token, expires_at, skip=seat_ids)
        SEAT_HOLD_ATTEMPTS.labels(operation="renew", result="success").inc()
        return Hold(trip_id=trip_id, holder_token=holder_token, seat_ids=seat_ids, expires_at=expires_at)

    async def release(
        self, trip_id: str, seat_ids: Optional[Iterable[str]], holder_token: str
    ) -> List[str]:
        """Release seats held by ``holder_token``; ``seat_ids=None`` releases all of them.

        Idempotent: foreign, already-released and unknown seats are skipped silently.
        """
        try:
            states = await self._states(trip_id)
        except TripNotOpen:
            return []
        if seat_ids is None:
            candidates = [s for s, st in states.items() if st.holder_token == holder_token]
        else:
            candidates = [s for s in unique_seat_ids(seat_ids) if s in states]

        released = []
        for seat_id in candidates:
            ok = await self.store.compare_and_swap(
                trip_id,
                seat_id,
                SeatStatus.HELD,
                SeatState.available(trip_id, seat_id),
                expected_holder=holder_token,
            )
            if ok:
                released.append(seat_id)
        SEAT_HOLD_ATTEMPTS.labels(operation="release", result="success").inc()
        if released:
            logger.debug("Seats released", extra={"trip_id": trip_id, "seat_ids": released})
        return released

    async def sweep_expired(self, trip_id: str) -> List[str]:
        """Return expired holds on ``trip_id`` to available.

        The swap is guarded by holder and version, so concurrent sweepers and a
        racing renewal cannot release a hold that was extended in the meantime.
        """
        now = self.clock()
        released = []
        for state in await self.store.snapshot(trip_id):
            if state.status != SeatStatus.HELD or state.hold_expires_at > now:
                continue
            ok = await self.store.compare_and_swap(
                trip_id,
                state.seat_id,
                SeatStatus.HELD,
                SeatState.available(trip_id, state.seat_id),
                expected_holder=state.holder_token,
                expected_version=state.version,
            )
            if ok:
                released.append(state.seat_id)
        if released:
            SEAT_HOLDS_EXPIRED.inc(len(released))
            logger.info("Expired holds released", extra={"trip_id": trip_id, "seat_ids": released})
        return released

    async def sweep_all(self) -> int:
        total = 0
        for trip_id in await self.store.open_trip_ids():
            total += len(await self.sweep_expired(trip_id))
        return total

    async def sweep_and_trim(self, max_events: int) -> int:
        """Periodic job: sweep every open trip, then cap each trip's event stream."""
        released = await self.sweep_all()
        for trip_id in await self.store.open_trip_ids():
            await self.store.trim_events(trip_id, max_events)
        return released
