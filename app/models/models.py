from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base


class Bus(Base):
    __tablename__ = "buses"
    id = Column(Integer, primary_key=True)
    registration_number = Column(String(64), nullable=False, unique=True, index=True)
    bus_type = Column(String(32), nullable=False, default="seater")
    total_seats = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    seatmap = relationship("SeatMap", back_populates="bus", uselist=False)


class SeatMap(Base):
    __tablename__ = "seatmaps"
    id = Column(Integer, primary_key=True)
    bus_id = Column(Integer, ForeignKey("buses.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    # serialized SeatTopology
    layout = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    bus = relationship("Bus", back_populates="seatmap")


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(String(32), primary_key=True)
    trip_id = Column(String(64), nullable=False, index=True)
    holder_token = Column(String(128), nullable=False, index=True)
    status = Column(String(50), nullable=False, default="confirmed", index=True)
    passenger_details = Column(JSON, nullable=True)
    booked_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    seats = relationship("BookingSeat", back_populates="booking", cascade="all, delete-orphan")


class BookingSeat(Base):
    __tablename__ = "booking_seats"
    id = Column(Integer, primary_key=True)
    booking_id = Column(String(32), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    trip_id = Column(String(64), nullable=False)
    seat_id = Column(String(32), nullable=False)

    booking = relationship("Booking", back_populates="seats")

    __table_args__ = (UniqueConstraint("trip_id", "seat_id", name="uq_trip_seat"),)
