from app.db.base import Base
from .models import *

__all__ = [
    "Base",
    "Bus",
    "SeatMap",
    "Booking",
    "BookingSeat",
]
