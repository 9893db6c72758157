from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator


class Hold(BaseModel):
    trip_id: str
    holder_token: str
    seat_ids: List[str]
    expires_at: datetime


class BookingResult(BaseModel):
    booking_id: str
    trip_id: str
    holder_token: str
    seat_ids: List[str]
    booked_at: datetime


class AcquireHoldRequest(BaseModel):
    trip_id: str
    seat_ids: List[str] = Field(..., min_length=1)
    holder_token: str = Field(..., min_length=1)
    ttl: Optional[int] = Field(None, description="Hold TTL in seconds")


class RenewHoldRequest(AcquireHoldRequest):
    pass


class ReleaseHoldRequest(BaseModel):
    trip_id: str
    holder_token: str = Field(..., min_length=1)
    # omitted: release every seat this checkout holds on the trip
    seat_ids: Optional[List[str]] = None


class ReleaseHoldResponse(BaseModel):
    trip_id: str
    released: List[str]


class PassengerIn(BaseModel):
    seat_id: str
    name: str = Field(..., min_length=1, max_length=255)
    age: Optional[int] = Field(None, ge=0, le=150)
    gender: Optional[str] = None


class ContactIn(BaseModel):
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class CommitBookingRequest(BaseModel):
    trip_id: str
    seat_ids: List[str] = Field(..., min_length=1)
    holder_token: str = Field(..., min_length=1)
    passengers: List[PassengerIn] = Field(..., min_length=1)
    contact: Optional[ContactIn] = None

    @model_validator(mode="after")
    def _one_passenger_per_seat(self):
        seats = [p.seat_id for p in self.passengers]
        if len(seats) != len(set(seats)) or set(seats) != set(self.seat_ids):
            raise ValueError("passengers must name each booked seat exactly once")
        return self

    def passenger_details(self) -> dict:
        return {
            "passengers": [p.model_dump() for p in self.passengers],
            "contact": self.contact.model_dump() if self.contact else None,
        }


class BookingResponse(BaseModel):
    booking_id: str
    trip_id: str
    seat_ids: List[str]
    status: str = "confirmed"
    booked_at: datetime


class SeatConflict(BaseModel):
    seat_id: str
    status: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    detail: str
    seats: List[SeatConflict] = []
