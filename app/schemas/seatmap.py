from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BusType(str, Enum):
    SEATER = "seater"
    LUXURY = "luxury"
    SEMI_SLEEPER = "semi-sleeper"
    SLEEPER = "sleeper"


class Deck(str, Enum):
    LOWER = "lower"
    UPPER = "upper"


class Side(str, Enum):
    LEFT = "left"
    RIGHT = "right"


class SeatStatus(str, Enum):
    AVAILABLE = "available"
    HELD = "held"
    BOOKED = "booked"


class SeatDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    seat_id: str = Field(..., min_length=1)
    deck: Deck
    side: Side
    row: int = Field(..., ge=1)
    column: int = Field(..., ge=1)


class SeatTopology(BaseModel):
    model_config = ConfigDict(frozen=True)

    bus_type: Optional[BusType] = None
    total_seats: int
    custom: bool = False
    seats: Tuple[SeatDescriptor, ...]

    def seat_ids(self) -> List[str]:
        return [s.seat_id for s in self.seats]


class SeatState(BaseModel):
    """Authoritative state of one seat on one trip."""

    trip_id: str
    seat_id: str
    status: SeatStatus = SeatStatus.AVAILABLE
    holder_token: Optional[str] = None
    hold_expires_at: Optional[datetime] = None
    booking_id: Optional[str] = None
    version: int = 0

    @model_validator(mode="after")
    def _check_status_fields(self):
        if self.status == SeatStatus.HELD:
            if not self.holder_token or self.hold_expires_at is None:
                raise ValueError("held seat needs holder_token and hold_expires_at")
        elif self.status == SeatStatus.BOOKED:
            if not self.booking_id:
                raise ValueError("booked seat needs booking_id")
        elif self.holder_token or self.hold_expires_at or self.booking_id:
            raise ValueError("available seat cannot carry hold or booking data")
        return self

    @classmethod
    def available(cls, trip_id: str, seat_id: str) -> "SeatState":
        return cls(trip_id=trip_id, seat_id=seat_id)

    @classmethod
    def held(cls, trip_id: str, seat_id: str, holder_token: str, expires_at: datetime) -> "SeatState":
        return cls(
            trip_id=trip_id,
            seat_id=seat_id,
            status=SeatStatus.HELD,
            holder_token=holder_token,
            hold_expires_at=expires_at,
        )

    @classmethod
    def booked(cls, trip_id: str, seat_id: str, holder_token: Optional[str], booking_id: str) -> "SeatState":
        return cls(
            trip_id=trip_id,
            seat_id=seat_id,
            status=SeatStatus.BOOKED,
            holder_token=holder_token,
            booking_id=booking_id,
        )

    def is_held_by(self, holder_token: str, now: datetime) -> bool:
        return (
            self.status == SeatStatus.HELD
            and self.holder_token == holder_token
            and self.hold_expires_at is not None
            and self.hold_expires_at > now
        )


class SeatDiffEvent(BaseModel):
    trip_id: str
    seat_id: str
    old_status: SeatStatus
    new_status: SeatStatus
    holder_token: Optional[str] = None
    booking_id: Optional[str] = None
    version: int


class SeatMapSnapshot(BaseModel):
    trip_id: str
    topology: SeatTopology
    states: List[SeatState]


class SeatLayoutRequest(BaseModel):
    bus_type: str
    total_seats: int
    layout: Optional[List[Dict[str, Any]]] = None
    force: bool = False


class SeatLayoutResponse(BaseModel):
    bus_id: int
    topology: SeatTopology
    removed_seat_ids: List[str] = []
    added_seat_ids: List[str] = []


class OpenTripRequest(BaseModel):
    bus_id: int
