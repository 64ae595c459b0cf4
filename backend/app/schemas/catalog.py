"""
Pydantic schemas for stations, train search and seat maps.
"""

import enum
from datetime import date, time
from pydantic import BaseModel

from app.models.train import ClassType


class StationResponse(BaseModel):
    id: int
    name: str
    code: str
    city: str

    model_config = {"from_attributes": True}


class RouteResponse(BaseModel):
    id: int
    name: str
    distance_km: int
    duration_minutes: int
    origin: StationResponse
    destination: StationResponse

    model_config = {"from_attributes": True}


class TrainClassResponse(BaseModel):
    id: int
    class_type: ClassType
    total_seats: int
    price_per_km: float
    fare: int

    model_config = {"from_attributes": True}


class TrainResponse(BaseModel):
    id: int
    name: str
    number: str
    departure_time: time
    arrival_time: time
    route: RouteResponse
    classes: list[TrainClassResponse]


class TrainSearchResponse(BaseModel):
    trains: list[TrainResponse]
    cached: bool = False


class SeatStatus(str, enum.Enum):
    AVAILABLE = "available"
    SELECTED = "selected"  # held by the viewer
    LOCKED = "locked"  # held by someone else
    BOOKED = "booked"


class SeatMapEntry(BaseModel):
    id: int
    seat_number: str
    is_window: bool
    status: SeatStatus


class SeatMapResponse(BaseModel):
    train_id: int
    train_class_id: int
    travel_date: date
    seats: list[SeatMapEntry]
