"""Reservation error taxonomy.

Contention outcomes (``SeatsUnavailable``, ``HoldLostDuringCheckout``, ``NotHolder``,
``HoldExpired``) are normal steady-state results and are rendered to callers as typed
bodies; only ``BookingPersistenceFailed`` and storage I/O failures are operational
problems worth an error log.
"""
from typing import Dict, Iterable, List, Optional


class ReservationError(Exception):
    code = "reservation_error"
    status_code = 400

    def __init__(self, detail: str, seats: Optional[Dict[str, Optional[str]]] = None):
        super().__init__(detail)
        self.detail = detail
        # seat_id -> current status (None when the seat is unknown)
        self.seats = dict(seats or {})

    @property
    def seat_ids(self) -> List[str]:
        return list(self.seats)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "detail": self.detail,
            "seats": [{"seat_id": s, "status": st} for s, st in self.seats.items()],
        }


class InvalidConfiguration(ReservationError):
    code = "invalid_configuration"
    status_code = 422


class LayoutChangeRefused(InvalidConfiguration):
    code = "layout_change_refused"
    status_code = 409

    def __init__(self, removed: Iterable[str], added: Iterable[str]):
        self.removed = sorted(removed)
        self.added = sorted(added)
        super().__init__(
            "Seat layout change would invalidate seat ids %s; pass force=true to apply"
            % ", ".join(self.removed or ["(none)"])
        )

    def to_dict(self) -> dict:
        body = super().to_dict()
        body.update(removed=self.removed, added=self.added)
        return body


class InvalidSeatSelection(ReservationError):
    code = "invalid_seat_selection"
    status_code = 422


class TripNotOpen(ReservationError):
    code = "trip_not_open"
    status_code = 404

    def __init__(self, trip_id: str):
        self.trip_id = trip_id
        super().__init__(f"Trip {trip_id} is not open for booking")


class SeatsUnavailable(ReservationError):
    code = "seats_unavailable"
    status_code = 409

    def __init__(self, conflicts: Dict[str, Optional[str]]):
        super().__init__("Seats not available: %s" % ", ".join(conflicts), seats=conflicts)

    @property
    def conflicting_seat_ids(self) -> List[str]:
        return self.seat_ids


class NotHolder(ReservationError):
    code = "not_holder"
    status_code = 409

    def __init__(self, seats: Dict[str, Optional[str]]):
        super().__init__("Seats are not held by this checkout: %s" % ", ".join(seats), seats=seats)


class HoldExpired(ReservationError):
    code = "hold_expired"
    status_code = 410

    def __init__(self, seats: Dict[str, Optional[str]]):
        super().__init__("Hold expired for seats: %s" % ", ".join(seats), seats=seats)


class HoldLostDuringCheckout(ReservationError):
    code = "hold_lost_during_checkout"
    status_code = 409

    def __init__(self, seats: Dict[str, Optional[str]]):
        super().__init__("Hold lost during checkout for seats: %s" % ", ".join(seats), seats=seats)


class BookingPersistenceFailed(ReservationError):
    code = "booking_persistence_failed"
    status_code = 503

    def __init__(self, booking_id: str, seats: Optional[Dict[str, Optional[str]]] = None):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} could not be saved; seats were released", seats=seats)
