"""Authoritative per-trip seat state.

Every mutation goes through ``compare_and_swap``; it is the only serialization point
for seat state. A successful swap bumps the seat's version and appends one
``SeatDiffEvent`` to the trip's event stream in the same atomic step, so the stream
order is the order in which swaps were applied.
"""
import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from app.errors import InvalidConfiguration, TripNotOpen
from app.metrics import SEAT_CAS_LATENCY, SEAT_CAS_TOTAL
from app.schemas.seatmap import SeatDiffEvent, SeatState, SeatStatus, SeatTopology

logger = logging.getLogger(__name__)

EventBatch = List[Tuple[str, SeatDiffEvent]]


class SeatStateStore(ABC):
    @abstractmethod
    async def open_trip(self, trip_id: str, topology: SeatTopology) -> None:
        """Create an available state for every seat; reopening keeps existing states."""

    @abstractmethod
    async def topology(self, trip_id: str) -> SeatTopology:
        raise NotImplementedError()

    @abstractmethod
    async def snapshot(self, trip_id: str) -> List[SeatState]:
        raise NotImplementedError()

    @abstractmethod
    async def get(self, trip_id: str, seat_id: str) -> Optional[SeatState]:
        raise NotImplementedError()

    @abstractmethod
    async def compare_and_swap(
        self,
        trip_id: str,
        seat_id: str,
        expected_status: SeatStatus,
        new_state: SeatState,
        *,
        expected_holder: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> bool:
        """Replace the seat's state if it still matches the expectation.

        Returns False when the status (and, if given, holder token or version) no
        longer matches; losing the race is not an error.
        """

    @abstractmethod
    async def stream_position(self, trip_id: str) -> str:
        """Cursor of the newest event on the trip's stream."""

    @abstractmethod
    async def read_events(self, trip_id: str, cursor: str, block_ms: int) -> EventBatch:
        """Events after ``cursor``, waiting up to ``block_ms`` for the first one."""

    @abstractmethod
    async def open_trip_ids(self) -> List[str]:
        raise NotImplementedError()

    async def trim_events(self, trip_id: str, max_len: int) -> None:
        return None

    async def ping(self) -> bool:
        return True


def _matches(current: SeatState, expected_status, expected_holder, expected_version) -> bool:
    if current.status != expected_status:
        return False
    if expected_holder is not None and current.holder_token != expected_holder:
        return False
    if expected_version is not None and current.version != expected_version:
        return False
    return True


def _check_reopen(existing: SeatTopology, topology: SeatTopology, trip_id: str):
    if set(existing.seat_ids()) != set(topology.seat_ids()):
        raise InvalidConfiguration(f"Trip {trip_id} is already open with a different seat layout")


class _TripRecord:
    def __init__(self, topology: SeatTopology):
        self.topology = topology
        self.states: Dict[str, SeatState] = {}
        self.events: List[SeatDiffEvent] = []
        # events dropped from the front by trim_events
        self.offset = 0
        self.changed = asyncio.Condition()


class InMemorySeatStateStore(SeatStateStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self._trips: Dict[str, _TripRecord] = {}
        self._lock = threading.Lock()

    def _record(self, trip_id: str) -> _TripRecord:
        record = self._trips.get(trip_id)
        if record is None:
            raise TripNotOpen(trip_id)
        return record

    async def open_trip(self, trip_id: str, topology: SeatTopology) -> None:
        with self._lock:
            record = self._trips.get(trip_id)
            if record is not None:
                _check_reopen(record.topology, topology, trip_id)
                return
            record = _TripRecord(topology)
            for seat_id in topology.seat_ids():
                record.states[seat_id] = SeatState.available(trip_id, seat_id)
            self._trips[trip_id] = record
        logger.info("Trip opened for booking", extra={"trip_id": trip_id, "seats": topology.total_seats})

    async def topology(self, trip_id: str) -> SeatTopology:
        return self._record(trip_id).topology

    async def snapshot(self, trip_id: str) -> List[SeatState]:
        record = self._record(trip_id)
        with self._lock:
            return [record.states[seat_id] for seat_id in record.topology.seat_ids()]

    async def get(self, trip_id: str, seat_id: str) -> Optional[SeatState]:
        record = self._trips.get(trip_id)
        if record is None:
            return None
        return record.states.get(seat_id)

    async def compare_and_swap(
        self,
        trip_id,
        seat_id,
        expected_status,
        new_state,
        *,
        expected_holder=None,
        expected_version=None,
    ) -> bool:
        record = self._trips.get(trip_id)
        if record is None:
            return False
        with self._lock:
            current = record.states.get(seat_id)
            if current is None or not _matches(current, expected_status, expected_holder, expected_version):
                SEAT_CAS_TOTAL.labels(result="mismatch").inc()
                return False
            version = current.version + 1
            record.states[seat_id] = new_state.model_copy(
                update={"trip_id": trip_id, "seat_id": seat_id, "version": version}
            )
            record.events.append(
                SeatDiffEvent(
                    trip_id=trip_id,
                    seat_id=seat_id,
                    old_status=current.status,
                    new_status=new_state.status,
                    holder_token=new_state.holder_token,
                    booking_id=new_state.booking_id,
                    version=version,
                )
            )
        SEAT_CAS_TOTAL.labels(result="swapped").inc()
        async with record.changed:
            record.changed.notify_all()
        return True

    async def stream_position(self, trip_id: str) -> str:
        record = self._record(trip_id)
        return str(record.offset + len(record.events))

    async def read_events(self, trip_id: str, cursor: str, block_ms: int) -> EventBatch:
        record = self._record(trip_id)
        start = max(int(cursor), record.offset)
        if record.offset + len(record.events) <= start:
            async with record.changed:
                try:
                    await asyncio.wait_for(
                        record.changed.wait_for(lambda: record.offset + len(record.events) > start),
                        timeout=block_ms / 1000,
                    )
                except asyncio.TimeoutError:
                    return []
        with self._lock:
            start = max(start, record.offset)
            events = record.events[start - record.offset :]
        return [(str(start + i + 1), event) for i, event in enumerate(events)]

    async def trim_events(self, trip_id: str, max_len: int) -> None:
        record = self._trips.get(trip_id)
        if record is None:
            return
        with self._lock:
            excess = len(record.events) - max(max_len, 0)
            if excess > 0:
                del record.events[:excess]
                record.offset += excess

    async def open_trip_ids(self) -> List[str]:
        return sorted(self._trips)


STATE_KEY_TPL = "seat_state:{{{trip_id}}}:{seat_id}"
STREAM_KEY_TPL = "seat_events:{{{trip_id}}}"
TRIP_KEY_TPL = "seat_trip:{{{trip_id}}}"
OPEN_TRIPS_KEY = "seat_trips"

_STATE_FIELDS = ("status", "holder_token", "hold_expires_at", "booking_id", "version")

# KEYS: state hash, event stream
# ARGV: expected status, expected holder ('' = any), expected version ('' = any),
#       new status, new holder, new expiry, new booking id, trip id, seat id
_CAS_SCRIPT = """
local cur = redis.call('HMGET', KEYS[1], 'status', 'holder_token', 'version')
if not cur[1] then
  return {0, '', ''}
end
if cur[1] ~= ARGV[1] or (ARGV[2] ~= '' and cur[2] ~= ARGV[2]) or (ARGV[3] ~= '' and cur[3] ~= ARGV[3]) then
  return {0, cur[1], cur[3] or ''}
end
local version = tostring(tonumber(cur[3] or '0') + 1)
redis.call('HSET', KEYS[1], 'status', ARGV[4], 'holder_token', ARGV[5], 'hold_expires_at', ARGV[6],
  'booking_id', ARGV[7], 'version', version)
redis.call('XADD', KEYS[2], '*', 'trip_id', ARGV[8], 'seat_id', ARGV[9], 'old_status', cur[1],
  'new_status', ARGV[4], 'holder_token', ARGV[5], 'booking_id', ARGV[7], 'version', version)
return {1, ARGV[4], version}
"""


def _encode_ts(value: Optional[datetime]) -> str:
    return "" if value is None else "%.6f" % value.timestamp()


def _decode_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RedisSeatStateStore(SeatStateStore):
    """Shared store: one hash per (trip, seat) plus one event stream per trip.

    Keys carry the trip id as a hash tag so a trip's seats and its stream land in
    the same cluster slot and the swap script can touch both atomically.
    """

    def __init__(self, redis_client, event_batch: int = 100):
        self._redis = redis_client
        self._event_batch = event_batch
        self._cas = redis_client.register_script(_CAS_SCRIPT)
        self._topologies: Dict[str, SeatTopology] = {}

    async def open_trip(self, trip_id: str, topology: SeatTopology) -> None:
        trip_key = TRIP_KEY_TPL.format(trip_id=trip_id)
        created = await self._redis.set(trip_key, topology.model_dump_json(), nx=True)
        if not created:
            _check_reopen(await self.topology(trip_id), topology, trip_id)
        async with self._redis.pipeline(transaction=False) as pipe:
            for seat_id in topology.seat_ids():
                key = STATE_KEY_TPL.format(trip_id=trip_id, seat_id=seat_id)
                # HSETNX per field keeps reopening from resetting live state
                pipe.hsetnx(key, "status", SeatStatus.AVAILABLE.value)
                pipe.hsetnx(key, "holder_token", "")
                pipe.hsetnx(key, "hold_expires_at", "")
                pipe.hsetnx(key, "booking_id", "")
                pipe.hsetnx(key, "version", "0")
            pipe.sadd(OPEN_TRIPS_KEY, trip_id)
            await pipe.execute()
        if created:
            logger.info("Trip opened for booking", extra={"trip_id": trip_id, "seats": topology.total_seats})

    async def topology(self, trip_id: str) -> SeatTopology:
        cached = self._topologies.get(trip_id)
        if cached is not None:
            return cached
        raw = await self._redis.get(TRIP_KEY_TPL.format(trip_id=trip_id))
        if raw is None:
            raise TripNotOpen(trip_id)
        topology = SeatTopology.model_validate_json(raw)
        self._topologies[trip_id] = topology
        return topology

    def _to_state(self, trip_id: str, seat_id: str, row: Dict[str, str]) -> SeatState:
        return SeatState(
            trip_id=trip_id,
            seat_id=seat_id,
            status=SeatStatus(row["status"]),
            holder_token=row.get("holder_token") or None,
            hold_expires_at=_decode_ts(row.get("hold_expires_at")),
            booking_id=row.get("booking_id") or None,
            version=int(row.get("version") or 0),
        )

    async def snapshot(self, trip_id: str) -> List[SeatState]:
        seat_ids = (await self.topology(trip_id)).seat_ids()
        async with self._redis.pipeline(transaction=False) as pipe:
            for seat_id in seat_ids:
                pipe.hgetall(STATE_KEY_TPL.format(trip_id=trip_id, seat_id=seat_id))
            rows = await pipe.execute()
        return [self._to_state(trip_id, seat_id, row) for seat_id, row in zip(seat_ids, rows) if row]

    async def get(self, trip_id: str, seat_id: str) -> Optional[SeatState]:
        row = await self._redis.hgetall(STATE_KEY_TPL.format(trip_id=trip_id, seat_id=seat_id))
        if not row:
            return None
        return self._to_state(trip_id, seat_id, row)

    async def compare_and_swap(
        self,
        trip_id,
        seat_id,
        expected_status,
        new_state,
        *,
        expected_holder=None,
        expected_version=None,
    ) -> bool:
        keys = [
            STATE_KEY_TPL.format(trip_id=trip_id, seat_id=seat_id),
            STREAM_KEY_TPL.format(trip_id=trip_id),
        ]
        args = [
            SeatStatus(expected_status).value,
            expected_holder or "",
            "" if expected_version is None else str(expected_version),
            new_state.status.value,
            new_state.holder_token or "",
            _encode_ts(new_state.hold_expires_at),
            new_state.booking_id or "",
            trip_id,
            seat_id,
        ]
        start = time.perf_counter()
        res = await self._cas(keys=keys, args=args)
        SEAT_CAS_LATENCY.observe(time.perf_counter() - start)
        ok = bool(int(res[0]))
        SEAT_CAS_TOTAL.labels(result=("swapped" if ok else "mismatch")).inc()
        return ok

    async def stream_position(self, trip_id: str) -> str:
        entries = await self._redis.xrevrange(STREAM_KEY_TPL.format(trip_id=trip_id), count=1)
        if not entries:
            return "0-0"
        return entries[0][0]

    async def read_events(self, trip_id: str, cursor: str, block_ms: int) -> EventBatch:
        key = STREAM_KEY_TPL.format(trip_id=trip_id)
        resp = await self._redis.xread({key: cursor}, count=self._event_batch, block=block_ms or None)
        batch = []
        for _stream, entries in resp or []:
            for event_id, fields in entries:
                batch.append(
                    (
                        event_id,
                        SeatDiffEvent(
                            trip_id=fields["trip_id"],
                            seat_id=fields["seat_id"],
                            old_status=SeatStatus(fields["old_status"]),
                            new_status=SeatStatus(fields["new_status"]),
                            holder_token=fields.get("holder_token") or None,
                            booking_id=fields.get("booking_id") or None,
                            version=int(fields["version"]),
                        ),
                    )
                )
        return batch

    async def open_trip_ids(self) -> List[str]:
        return sorted(await self._redis.smembers(OPEN_TRIPS_KEY))

    async def trim_events(self, trip_id: str, max_len: int) -> None:
        await self._redis.xtrim(STREAM_KEY_TPL.format(trip_id=trip_id), maxlen=max_len, approximate=True)

    async def ping(self) -> bool:
        return bool(await self._redis.ping())
