"""Fan-out of seat diff events to everyone watching a trip's seat map.

One pump task per watched trip tails the store's event stream and copies each event
into every subscriber's own queue. Queues are unbounded so a slow reader never
stalls the pump; a closed subscription just stops receiving.

A subscription registers its queue before reading the snapshot and drops events
whose version is not newer than the snapshot's for that seat, so a client sees the
snapshot followed by every later swap exactly once.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set

from app.config import settings
from app.metrics import SEAT_EVENTS_DELIVERED, SEAT_SUBSCRIBERS
from app.schemas.seatmap import SeatDiffEvent, SeatState, SeatTopology
from app.services.seat_state import SeatStateStore

logger = logging.getLogger(__name__)

_CLOSED = object()


class SeatSubscription:
    def __init__(self, hub: "SeatEventHub", trip_id: str, queue: asyncio.Queue):
        self.trip_id = trip_id
        self.topology: Optional[SeatTopology] = None
        self.snapshot: List[SeatState] = []
        self._hub = hub
        self._queue = queue
        self._versions: Dict[str, int] = {}
        self._closed = False

    def _load(self, topology: SeatTopology, snapshot: List[SeatState]):
        self.topology = topology
        self.snapshot = snapshot
        self._versions = {s.seat_id: s.version for s in snapshot}

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self, timeout: Optional[float] = None) -> Optional[SeatDiffEvent]:
        """Next diff event; None once closed or when ``timeout`` elapses."""
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout)
            except asyncio.TimeoutError:
                return None
            if item is _CLOSED:
                self._closed = True
                return None
            if item.version <= self._versions.get(item.seat_id, -1):
                continue
            self._versions[item.seat_id] = item.version
            return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> SeatDiffEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._hub._unregister(self.trip_id, self._queue)
        self._queue.put_nowait(_CLOSED)


class _TripChannel:
    def __init__(self, trip_id: str, cursor: str):
        self.trip_id = trip_id
        self.cursor = cursor
        self.subscribers: Set[asyncio.Queue] = set()
        self.task: Optional[asyncio.Task] = None


class SeatEventHub:
    def __init__(
        self,
        store: SeatStateStore,
        block_ms: int = settings.SEAT_EVENT_BLOCK_MS,
        retry_delay: float = 1.0,
    ):
        self.store = store
        self.block_ms = block_ms
        self.retry_delay = retry_delay
        self._channels: Dict[str, _TripChannel] = {}

    async def subscribe(self, trip_id: str) -> SeatSubscription:
        topology = await self.store.topology(trip_id)
        channel = self._channels.get(trip_id)
        if channel is None:
            cursor = await self.store.stream_position(trip_id)
            channel = self._channels.get(trip_id)
            if channel is None:
                channel = _TripChannel(trip_id, cursor)
                self._channels[trip_id] = channel
                channel.task = asyncio.create_task(self._pump(channel))

        queue: asyncio.Queue = asyncio.Queue()
        channel.subscribers.add(queue)
        SEAT_SUBSCRIBERS.inc()
        subscription = SeatSubscription(self, trip_id, queue)
        try:
            subscription._load(topology, await self.store.snapshot(trip_id))
        except Exception:
            subscription.close()
            raise
        return subscription

    def _unregister(self, trip_id: str, queue: asyncio.Queue):
        channel = self._channels.get(trip_id)
        if channel is not None and queue in channel.subscribers:
            channel.subscribers.discard(queue)
            SEAT_SUBSCRIBERS.dec()

    def subscriber_count(self, trip_id: str) -> int:
        channel = self._channels.get(trip_id)
        return len(channel.subscribers) if channel else 0

    async def _pump(self, channel: _TripChannel):
        try:
            while channel.subscribers:
                try:
                    batch = await self.store.read_events(channel.trip_id, channel.cursor, self.block_ms)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Seat event stream read failed", extra={"trip_id": channel.trip_id})
                    await asyncio.sleep(self.retry_delay)
                    continue
                for cursor, event in batch:
                    channel.cursor = cursor
                    for queue in list(channel.subscribers):
                        queue.put_nowait(event)
                        SEAT_EVENTS_DELIVERED.inc()
        finally:
            if self._channels.get(channel.trip_id) is channel and not channel.subscribers:
                del self._channels[channel.trip_id]

    async def close(self):
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            for queue in list(channel.subscribers):
                channel.subscribers.discard(queue)
                SEAT_SUBSCRIBERS.dec()
                queue.put_nowait(_CLOSED)
            if channel.task is not None:
                channel.task.cancel()
        for channel in channels:
            if channel.task is not None:
                try:
                    await channel.task
                except asyncio.CancelledError:
                    pass
