"""
Catalog reads: stations, train search and the per-viewer seat map.

Seat status on the map is derived on every read, never stored:
  booked     a confirmed booking exists for (seat, train, date)
  selected   the viewer holds an active hold on it
  locked     somebody else holds an active hold on it
  available  otherwise

Expired holds are simply ignored, so a seat whose hold lapsed shows as
available without any cleanup having run.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.models.booking import Booking, BookingStatus
from app.models.station import Route, Station
from app.models.train import Seat, Train
from app.schemas.catalog import SeatStatus
from app.services.seat_lock_service import list_active_holds

logger = get_logger(__name__)


async def list_stations(db: AsyncSession) -> list[Station]:
    result = await db.execute(select(Station).order_by(Station.name))
    return list(result.scalars().all())


async def search_trains(
    db: AsyncSession, origin_station_id: int, destination_station_id: int
) -> list[Train]:
    """Active trains running origin -> destination, earliest departure first."""
    result = await db.execute(
        select(Train)
        .join(Route, Train.route_id == Route.id)
        .where(
            Train.is_active.is_(True),
            Route.origin_station_id == origin_station_id,
            Route.destination_station_id == destination_station_id,
        )
        .order_by(Train.departure_time)
    )
    trains = list(result.scalars().all())
    logger.info(
        "train_search",
        origin=origin_station_id,
        destination=destination_station_id,
        results=len(trains),
    )
    return trains


async def get_train(db: AsyncSession, train_id: int) -> Train:
    train = await db.get(Train, train_id)
    if not train or not train.is_active:
        raise NotFoundError(f"Train {train_id} not found")
    return train


def train_to_dict(train: Train) -> dict:
    """JSON-ready train with its route and per-class fares."""
    route = train.route
    return {
        "id": train.id,
        "name": train.name,
        "number": train.number,
        "departure_time": train.departure_time.isoformat(),
        "arrival_time": train.arrival_time.isoformat(),
        "route": {
            "id": route.id,
            "name": route.name,
            "distance_km": route.distance_km,
            "duration_minutes": route.duration_minutes,
            "origin": _station_to_dict(route.origin),
            "destination": _station_to_dict(route.destination),
        },
        "classes": [
            {
                "id": c.id,
                "class_type": c.class_type,
                "total_seats": c.total_seats,
                "price_per_km": c.price_per_km,
                "fare": c.fare_for(route.distance_km),
            }
            for c in sorted(train.classes, key=lambda c: c.id)
        ],
    }


def _station_to_dict(station: Station) -> dict:
    return {"id": station.id, "name": station.name, "code": station.code, "city": station.city}


async def get_seat_map(
    db: AsyncSession,
    train_id: int,
    train_class_id: int,
    travel_date: date,
    viewer_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[dict]:
    train = await get_train(db, train_id)
    if not any(c.id == train_class_id for c in train.classes):
        raise NotFoundError(f"Class {train_class_id} not found on train {train_id}")

    seats = (
        await db.execute(
            select(Seat).where(Seat.train_class_id == train_class_id).order_by(Seat.id)
        )
    ).scalars().all()

    booked = set(
        (
            await db.execute(
                select(Booking.seat_id).where(
                    Booking.train_id == train_id,
                    Booking.travel_date == travel_date,
                    Booking.status == BookingStatus.CONFIRMED.value,
                )
            )
        ).scalars().all()
    )
    holders = {hold.seat_id: hold.user_id for hold in await list_active_holds(db, train_id, travel_date, now=now)}

    seat_map = []
    for seat in seats:
        if seat.id in booked:
            status = SeatStatus.BOOKED
        elif seat.id in holders:
            status = SeatStatus.SELECTED if holders[seat.id] == viewer_id else SeatStatus.LOCKED
        else:
            status = SeatStatus.AVAILABLE
        seat_map.append(
            {"id": seat.id, "seat_number": seat.seat_number, "is_window": seat.is_window, "status": status}
        )
    return seat_map

