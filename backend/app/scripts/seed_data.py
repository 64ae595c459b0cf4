"""
Seed script to load the rail catalog: stations, routes, trains, classes and seats.

Usage (after `alembic upgrade head`):
    python -m app.scripts.seed_data

Safe to run again: stations are matched by code, routes by their station pair,
trains by number and classes by (train, class type). Existing rows are left as
they are and only missing ones are created. Cached catalog reads are
invalidated at the end so search picks up new trains immediately.
"""

import asyncio
from datetime import time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger, setup_logging
from app.db.session import AsyncSessionLocal
from app.models import ClassType, Route, Seat, Station, Train, TrainClass
from app.services.cache_service import close_redis, invalidate_catalog_cache

logger = get_logger(__name__)

STATIONS = [
    {"code": "NRB", "name": "Nairobi Terminus", "city": "Nairobi"},
    {"code": "MSA", "name": "Mombasa Terminus", "city": "Mombasa"},
    {"code": "NVS", "name": "Naivasha", "city": "Naivasha"},
    {"code": "VOI", "name": "Voi", "city": "Voi"},
]

ROUTES = [
    {"origin": "NRB", "destination": "MSA", "distance_km": 485, "duration_minutes": 480},
    {"origin": "MSA", "destination": "NRB", "distance_km": 485, "duration_minutes": 480},
    {"origin": "NRB", "destination": "VOI", "distance_km": 327, "duration_minutes": 330},
    {"origin": "NRB", "destination": "NVS", "distance_km": 90, "duration_minutes": 120},
    {"origin": "NVS", "destination": "NRB", "distance_km": 90, "duration_minutes": 120},
]

# class type -> (seat count, price per km in KSh)
EXPRESS_CLASSES = {
    ClassType.ECONOMY: (60, 3.0),
    ClassType.FIRST_CLASS: (24, 9.0),
}
COMMUTER_CLASSES = {
    ClassType.ECONOMY: (40, 2.0),
    ClassType.BUSINESS: (16, 5.0),
}

TRAINS = [
    {"number": "MX101", "name": "Madaraka Express", "route": ("NRB", "MSA"),
     "departure_time": time(8, 0), "arrival_time": time(16, 0), "classes": EXPRESS_CLASSES},
    {"number": "MX102", "name": "Madaraka Express", "route": ("MSA", "NRB"),
     "departure_time": time(8, 0), "arrival_time": time(16, 0), "classes": EXPRESS_CLASSES},
    {"number": "MX103", "name": "Madaraka Express Inter-County", "route": ("NRB", "VOI"),
     "departure_time": time(15, 0), "arrival_time": time(20, 30), "classes": EXPRESS_CLASSES},
    {"number": "NC301", "name": "Naivasha Commuter", "route": ("NRB", "NVS"),
     "departure_time": time(7, 30), "arrival_time": time(9, 30), "classes": COMMUTER_CLASSES},
    {"number": "NC302", "name": "Naivasha Commuter", "route": ("NVS", "NRB"),
     "departure_time": time(17, 0), "arrival_time": time(19, 0), "classes": COMMUTER_CLASSES},
]

SEAT_PREFIX = {
    ClassType.ECONOMY: "E",
    ClassType.FIRST_CLASS: "F",
    ClassType.BUSINESS: "B",
}
SEATS_PER_ROW = 4


async def seed_stations(db: AsyncSession) -> dict[str, Station]:
    stations = {}
    for data in STATIONS:
        result = await db.execute(select(Station).where(Station.code == data["code"]))
        station = result.scalar_one_or_none()
        if station is None:
            station = Station(**data)
            db.add(station)
            logger.info("seed_station_created", code=data["code"])
        stations[data["code"]] = station
    await db.flush()
    return stations


async def seed_routes(db: AsyncSession, stations: dict[str, Station]) -> dict[tuple, Route]:
    routes = {}
    for data in ROUTES:
        origin, destination = stations[data["origin"]], stations[data["destination"]]
        result = await db.execute(
            select(Route).where(
                Route.origin_station_id == origin.id,
                Route.destination_station_id == destination.id,
            )
        )
        route = result.scalar_one_or_none()
        if route is None:
            route = Route(
                name=f"{origin.city} - {destination.city}",
                origin_station_id=origin.id,
                destination_station_id=destination.id,
                distance_km=data["distance_km"],
                duration_minutes=data["duration_minutes"],
            )
            db.add(route)
            logger.info("seed_route_created", route=route.name)
        routes[(data["origin"], data["destination"])] = route
    await db.flush()
    return routes


def build_seats(train_class: TrainClass, class_type: ClassType, count: int) -> list[Seat]:
    """Seats laid out in rows of four; the outer two of each row are window seats."""
    prefix = SEAT_PREFIX[class_type]
    return [
        Seat(
            train_class_id=train_class.id,
            seat_number=f"{prefix}{n}",
            is_window=n % SEATS_PER_ROW in (0, 1),
        )
        for n in range(1, count + 1)
    ]


async def seed_train_classes(db: AsyncSession, train: Train, classes: dict) -> int:
    result = await db.execute(select(TrainClass.class_type).where(TrainClass.train_id == train.id))
    existing = set(result.scalars().all())

    seats_created = 0
    for class_type, (total_seats, price_per_km) in classes.items():
        if class_type.value in existing:
            continue
        train_class = TrainClass(
            train_id=train.id,
            class_type=class_type.value,
            total_seats=total_seats,
            price_per_km=price_per_km,
        )
        db.add(train_class)
        await db.flush()
        db.add_all(build_seats(train_class, class_type, total_seats))
        seats_created += total_seats
    return seats_created


async def seed_trains(db: AsyncSession, routes: dict[tuple, Route]) -> dict[str, int]:
    summary = {"trains_created": 0, "seats_created": 0}
    for data in TRAINS:
        result = await db.execute(select(Train).where(Train.number == data["number"]))
        train = result.scalar_one_or_none()
        if train is None:
            train = Train(
                name=data["name"],
                number=data["number"],
                route_id=routes[data["route"]].id,
                departure_time=data["departure_time"],
                arrival_time=data["arrival_time"],
            )
            db.add(train)
            await db.flush()
            summary["trains_created"] += 1
            logger.info("seed_train_created", number=train.number)
        summary["seats_created"] += await seed_train_classes(db, train, data["classes"])
    return summary


async def seed_catalog(db: AsyncSession) -> dict[str, int]:
    """Create whatever part of the catalog is missing and commit it in one transaction."""
    try:
        stations = await seed_stations(db)
        routes = await seed_routes(db, stations)
        summary = await seed_trains(db, routes)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await invalidate_catalog_cache()
    logger.info("seed_complete", **summary)
    return summary


async def seed_database():
    setup_logging()
    async with AsyncSessionLocal() as db:
        try:
            await seed_catalog(db)
        finally:
            await close_redis()


if __name__ == "__main__":
    asyncio.run(seed_database())
