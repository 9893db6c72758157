from fastapi import APIRouter, Depends

from app.deps import get_booking_finalizer, get_seat_locks
from app.schemas.booking import (
    AcquireHoldRequest,
    BookingResponse,
    CommitBookingRequest,
    ErrorResponse,
    Hold,
    ReleaseHoldRequest,
    ReleaseHoldResponse,
    RenewHoldRequest,
)
from app.services.booking_finalizer import BookingFinalizer
from app.services.seat_lock import SeatLockService

router = APIRouter(tags=["bookings"])

CONFLICT_RESPONSES = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    410: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


@router.get("/")
async def bookings_root():
    return {"module": "bookings", "status": "ok"}


@router.post("/holds", response_model=Hold, responses=CONFLICT_RESPONSES)
async def acquire_hold(req: AcquireHoldRequest, seat_locks: SeatLockService = Depends(get_seat_locks)):
    """Hold all requested seats for one checkout, or none of them."""
    return await seat_locks.acquire(req.trip_id, req.seat_ids, req.holder_token, ttl=req.ttl)


@router.post("/holds/renew", response_model=Hold, responses=CONFLICT_RESPONSES)
async def renew_hold(req: RenewHoldRequest, seat_locks: SeatLockService = Depends(get_seat_locks)):
    return await seat_locks.renew(req.trip_id, req.seat_ids, req.holder_token, ttl=req.ttl)


@router.post("/holds/release", response_model=ReleaseHoldResponse)
async def release_hold(req: ReleaseHoldRequest, seat_locks: SeatLockService = Depends(get_seat_locks)):
    """Release holds; releasing seats that are not held by this checkout is a no-op."""
    released = await seat_locks.release(req.trip_id, req.seat_ids, req.holder_token)
    return ReleaseHoldResponse(trip_id=req.trip_id, released=released)


@router.post(
    "/commit",
    response_model=BookingResponse,
    responses={**CONFLICT_RESPONSES, 503: {"model": ErrorResponse}},
)
async def commit_booking(req: CommitBookingRequest, finalizer: BookingFinalizer = Depends(get_booking_finalizer)):
    """Convert the checkout's holds into a confirmed booking."""
    result = await finalizer.commit(req.trip_id, req.seat_ids, req.holder_token, req.passenger_details())
    return BookingResponse(
        booking_id=result.booking_id,
        trip_id=result.trip_id,
        seat_ids=result.seat_ids,
        booked_at=result.booked_at,
    )
