import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_session
from app.deps import get_seat_store
from app.errors import TripNotOpen
from app.logging_setup import TRIP_ID_CTX
from app.models.models import Bus, SeatMap
from app.schemas.booking import ErrorResponse
from app.schemas.seatmap import (
    OpenTripRequest,
    SeatLayoutRequest,
    SeatLayoutResponse,
    SeatMapSnapshot,
    SeatTopology,
)
from app.services import seatmap as seatmap_service
from app.services.seat_events import SeatSubscription
from app.services.seat_state import SeatStateStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["seatmaps"])


async def _load_seatmap(db: AsyncSession, bus_id: int) -> Optional[SeatMap]:
    res = await db.execute(sa_select(SeatMap).where(SeatMap.bus_id == bus_id))
    return res.scalars().first()


@router.get("/")
async def seatmaps_root():
    return {"module": "seatmaps", "status": "ok"}


@router.post(
    "/buses/{bus_id}/layout",
    response_model=SeatLayoutResponse,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def save_bus_layout(bus_id: int, req: SeatLayoutRequest, db: AsyncSession = Depends(get_session)):
    """Generate (or regenerate) and store the seat map for a bus.

    Changing the seat-id set of an existing map is refused unless ``force`` is set.
    """
    bus = await db.get(Bus, bus_id)
    if bus is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bus not found")
    seatmap = await _load_seatmap(db, bus_id)
    previous = SeatTopology.model_validate(seatmap.layout) if seatmap else None

    change = seatmap_service.regenerate(previous, req.bus_type, req.total_seats, req.layout, force=req.force)
    layout = change.topology.model_dump(mode="json")
    if seatmap is None:
        db.add(SeatMap(bus_id=bus_id, layout=layout))
    else:
        seatmap.layout = layout
    bus.bus_type = change.topology.bus_type.value
    bus.total_seats = change.topology.total_seats
    await db.commit()
    return SeatLayoutResponse(
        bus_id=bus_id,
        topology=change.topology,
        removed_seat_ids=change.removed,
        added_seat_ids=change.added,
    )


@router.get("/buses/{bus_id}/layout", response_model=SeatTopology)
async def get_bus_layout(bus_id: int, db: AsyncSession = Depends(get_session)):
    seatmap = await _load_seatmap(db, bus_id)
    if seatmap is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Seat map not found")
    return SeatTopology.model_validate(seatmap.layout)


@router.post("/trips/{trip_id}/open", response_model=SeatMapSnapshot, responses={422: {"model": ErrorResponse}})
async def open_trip(
    trip_id: str,
    req: OpenTripRequest,
    db: AsyncSession = Depends(get_session),
    store: SeatStateStore = Depends(get_seat_store),
):
    """Open a trip for booking using its bus's stored seat map."""
    TRIP_ID_CTX.set(trip_id)
    seatmap = await _load_seatmap(db, req.bus_id)
    if seatmap is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Seat map not found")
    topology = SeatTopology.model_validate(seatmap.layout)
    await store.open_trip(trip_id, topology)
    return SeatMapSnapshot(trip_id=trip_id, topology=topology, states=await store.snapshot(trip_id))


@router.get("/trips/{trip_id}", response_model=SeatMapSnapshot, responses={404: {"model": ErrorResponse}})
async def get_trip_seatmap(trip_id: str, store: SeatStateStore = Depends(get_seat_store)):
    topology = await store.topology(trip_id)
    return SeatMapSnapshot(trip_id=trip_id, topology=topology, states=await store.snapshot(trip_id))


async def _forward(websocket: WebSocket, subscription: SeatSubscription, send_lock: asyncio.Lock):
    async with send_lock:
        await websocket.send_json(
            {
                "type": "snapshot",
                "trip_id": subscription.trip_id,
                "topology": subscription.topology.model_dump(mode="json"),
                "states": [s.model_dump(mode="json") for s in subscription.snapshot],
            }
        )
    async for event in subscription:
        async with send_lock:
            await websocket.send_json({"type": "diff", **event.model_dump(mode="json")})


@router.websocket("/trips/{trip_id}/ws")
async def seatmap_updates(websocket: WebSocket, trip_id: str, holder_token: Optional[str] = None):
    """Snapshot followed by live seat diffs for one trip.

    When the connection drops, every hold owned by ``holder_token`` on the trip is
    released.
    """
    TRIP_ID_CTX.set(trip_id)
    hub = websocket.app.state.seat_events
    seat_locks = websocket.app.state.seat_locks
    await websocket.accept()
    try:
        subscription = await hub.subscribe(trip_id)
    except TripNotOpen as exc:
        await websocket.send_json({"type": "error", **exc.to_dict()})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    send_lock = asyncio.Lock()
    sender = asyncio.create_task(_forward(websocket, subscription, send_lock))
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                async with send_lock:
                    await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()
        sender.cancel()
        try:
            await sender
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass
        if holder_token:
            released = await seat_locks.release(trip_id, None, holder_token)
            if released:
                logger.info("Released holds on disconnect", extra={"trip_id": trip_id, "seat_ids": released})
