"""
Pydantic schemas for seat holds and bookings.
"""

from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel

from app.models.train import ClassType


class HoldRequest(BaseModel):
    seat_id: int
    train_id: int
    travel_date: date


class HoldResponse(BaseModel):
    seat_id: int
    train_id: int
    travel_date: date
    user_id: int
    locked_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}


class HoldReleaseResponse(BaseModel):
    released: bool


class BookingCreate(BaseModel):
    passenger_id: int
    seat_id: int
    train_id: int
    travel_date: date


class PassengerSummary(BaseModel):
    id: int
    full_name: str
    id_number: str

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: int
    booking_reference: str
    user_id: int
    train_id: int
    seat_id: int
    travel_date: date
    class_type: ClassType
    total_amount: int
    status: str
    passenger: Optional[PassengerSummary] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingSummaryResponse(BaseModel):
    total_bookings: int
    upcoming_trips: int
    total_spent: int
