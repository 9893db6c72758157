from fastapi import Request

from app.services.booking_finalizer import BookingFinalizer
from app.services.seat_lock import SeatLockService
from app.services.seat_state import SeatStateStore

# services are built once in the app lifespan and kept on app.state


def get_seat_store(request: Request) -> SeatStateStore:
    return request.app.state.seat_store


def get_seat_locks(request: Request) -> SeatLockService:
    return request.app.state.seat_locks


def get_booking_finalizer(request: Request) -> BookingFinalizer:
    return request.app.state.booking_finalizer
